import logging
from datetime import date
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm

import allocations
import analytics
import audit
import deliveries
import fleet
import payments
import personnel
import pricing
from availability import available_personnel, available_trucks
from config import ADMIN_PASSWORD, ADMIN_USERNAME, DATABASE_NAME, DATABASE_URL, LOG_LEVEL, PORT
from database import CLIENTS, DRIVERS, HELPERS, TRUCKS, USERS, db, ensure_indexes, get_db, get_documents, serialize
from errors import ForbiddenError
from reconcile import reconcile_all
from schemas import (
    AllocateTrucksRequest,
    BookingRequest,
    CancelRequest,
    ClientCreate,
    ClientProfileUpdate,
    ClientUpdate,
    DeliveryStatusPatch,
    DriverCreate,
    DriverUpdate,
    HelperCreate,
    HelperUpdate,
    LoginRequest,
    PasswordChange,
    PaymentStatusPatch,
    RescheduleRequest,
    RouteChangeRequest,
    Token,
    TruckCreate,
    TruckStatusPatch,
    TruckUpdate,
    UserCreate,
    UserOut,
    UserUpdate,
    VehicleRate,
)
from security import authenticate_user, get_current_client, get_current_user, require_roles, token_for_user

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

# FastAPI app
app = FastAPI(title="FleetDesk API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

staff_only = require_roles("admin", "staff")
admin_only = require_roles("admin")


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Server error"})


@app.on_event("startup")
def startup():
    if db is None:
        logger.warning("DATABASE_URL not set, running without a database")
        return
    ensure_indexes(db)
    if not db[USERS].find_one({"username": ADMIN_USERNAME}):
        personnel.create_account(db, ADMIN_USERNAME, ADMIN_PASSWORD, "admin")
        logger.info("Seeded default admin account %s", ADMIN_USERNAME)


# Root
@app.get("/")
def read_root():
    return {"message": "FleetDesk Backend Running"}


# Auth routes
@app.post("/auth/login", response_model=Token)
def login(form_data: OAuth2PasswordRequestForm = Depends(), database=Depends(get_db)):
    user = authenticate_user(database, form_data.username, form_data.password)
    return Token(access_token=token_for_user(user))


@app.post("/auth/login/json", response_model=Token)
def login_json(body: LoginRequest, database=Depends(get_db)):
    user = authenticate_user(database, body.username, body.password)
    return Token(access_token=token_for_user(user))


@app.get("/auth/me", response_model=UserOut)
def me(current_user: dict = Depends(get_current_user)):
    return serialize(current_user)


# Back-office accounts
@app.get("/users", response_model=List[UserOut])
def list_users(role: Optional[str] = None, database=Depends(get_db), _=Depends(admin_only)):
    return personnel.list_users(database, role)


@app.post("/users")
def create_user(payload: UserCreate, database=Depends(get_db), user: dict = Depends(admin_only)):
    user_id = personnel.create_user(database, payload)
    audit.log_action(database, user, "user.create", "user", user_id, {"username": payload.username, "role": payload.role})
    return {"id": user_id}


@app.put("/users/{user_id}", response_model=UserOut)
def update_user(user_id: str, payload: UserUpdate, database=Depends(get_db), user: dict = Depends(admin_only)):
    updated = personnel.update_user(database, user_id, payload)
    changed = sorted(k for k in payload.model_dump(exclude_none=True) if k != "password")
    audit.log_action(database, user, "user.update", "user", user_id, {"fields": changed})
    return updated


@app.delete("/users/{user_id}")
def delete_user(user_id: str, database=Depends(get_db), user: dict = Depends(admin_only)):
    personnel.delete_user(database, user_id, user)
    audit.log_action(database, user, "user.delete", "user", user_id)
    return {"deleted": True}


# Trucks
@app.get("/trucks")
def list_trucks(database=Depends(get_db), _=Depends(staff_only)):
    return get_documents(database, TRUCKS)


@app.post("/trucks")
def create_truck(payload: TruckCreate, database=Depends(get_db), _=Depends(staff_only)):
    return {"id": fleet.create_truck(database, payload)}


@app.get("/trucks/available")
def list_available_trucks(database=Depends(get_db), _=Depends(staff_only)):
    return available_trucks(database)


@app.get("/trucks/{truck_id}")
def get_truck(truck_id: str, database=Depends(get_db), _=Depends(staff_only)):
    return serialize(fleet.get_truck(database, truck_id))


@app.put("/trucks/{truck_id}")
def update_truck(truck_id: str, payload: TruckUpdate, database=Depends(get_db), _=Depends(staff_only)):
    return fleet.update_truck(database, truck_id, payload)


@app.patch("/trucks/{truck_id}/status")
def patch_truck_status(truck_id: str, body: TruckStatusPatch, database=Depends(get_db), _=Depends(staff_only)):
    return fleet.set_truck_maintenance(database, truck_id, body.status)


@app.delete("/trucks/{truck_id}")
def delete_truck(truck_id: str, database=Depends(get_db), _=Depends(staff_only)):
    fleet.delete_truck(database, truck_id)
    return {"deleted": True}


# Drivers
@app.get("/drivers")
def list_drivers(database=Depends(get_db), _=Depends(staff_only)):
    return get_documents(database, DRIVERS)


@app.post("/drivers")
def create_driver(payload: DriverCreate, database=Depends(get_db), _=Depends(staff_only)):
    return {"id": personnel.create_driver(database, payload)}


@app.get("/drivers/available")
def list_available_drivers(database=Depends(get_db), _=Depends(staff_only)):
    return available_personnel(database, "driver")


@app.get("/drivers/{driver_id}")
def get_driver(driver_id: str, database=Depends(get_db), _=Depends(staff_only)):
    return serialize(personnel.get_personnel(database, "driver", driver_id))


@app.put("/drivers/{driver_id}")
def update_driver(driver_id: str, payload: DriverUpdate, database=Depends(get_db), _=Depends(staff_only)):
    return personnel.update_personnel(database, "driver", driver_id, payload)


@app.delete("/drivers/{driver_id}")
def delete_driver(driver_id: str, database=Depends(get_db), _=Depends(staff_only)):
    personnel.delete_personnel(database, "driver", driver_id)
    return {"deleted": True}


# Helpers
@app.get("/helpers")
def list_helpers(database=Depends(get_db), _=Depends(staff_only)):
    return get_documents(database, HELPERS)


@app.post("/helpers")
def create_helper(payload: HelperCreate, database=Depends(get_db), _=Depends(staff_only)):
    return {"id": personnel.create_helper(database, payload)}


@app.get("/helpers/available")
def list_available_helpers(database=Depends(get_db), _=Depends(staff_only)):
    return available_personnel(database, "helper")


@app.get("/helpers/{helper_id}")
def get_helper(helper_id: str, database=Depends(get_db), _=Depends(staff_only)):
    return serialize(personnel.get_personnel(database, "helper", helper_id))


@app.put("/helpers/{helper_id}")
def update_helper(helper_id: str, payload: HelperUpdate, database=Depends(get_db), _=Depends(staff_only)):
    return personnel.update_personnel(database, "helper", helper_id, payload)


@app.delete("/helpers/{helper_id}")
def delete_helper(helper_id: str, database=Depends(get_db), _=Depends(staff_only)):
    personnel.delete_personnel(database, "helper", helper_id)
    return {"deleted": True}


# Clients
@app.get("/clients")
def list_clients(database=Depends(get_db), _=Depends(staff_only)):
    return get_documents(database, CLIENTS)


@app.post("/clients")
def create_client(payload: ClientCreate, database=Depends(get_db), _=Depends(staff_only)):
    return {"id": personnel.create_client(database, payload)}


@app.get("/clients/{client_id}")
def get_client(client_id: str, database=Depends(get_db), _=Depends(staff_only)):
    return serialize(personnel.get_client(database, client_id))


@app.put("/clients/{client_id}")
def update_client(client_id: str, payload: ClientUpdate, database=Depends(get_db), _=Depends(staff_only)):
    return personnel.update_client(database, client_id, payload)


@app.delete("/clients/{client_id}")
def delete_client(client_id: str, database=Depends(get_db), _=Depends(staff_only)):
    personnel.delete_client(database, client_id)
    return {"deleted": True}


@app.get("/clients/{client_id}/trucks")
def list_client_trucks(client_id: str, database=Depends(get_db), _=Depends(staff_only)):
    personnel.get_client(database, client_id)
    return allocations.client_trucks(database, client_id)


@app.post("/clients/{client_id}/allocate-trucks")
def allocate_trucks(client_id: str, body: AllocateTrucksRequest, database=Depends(get_db), user: dict = Depends(staff_only)):
    result = allocations.allocate_trucks(database, client_id, body.truckIds)
    for allocated in result["successfulAllocations"]:
        audit.log_action(database, user, "truck.allocate", "allocation", allocated["allocationId"],
                         {"clientId": client_id, "truckId": allocated["truckId"]})
    return result


@app.delete("/clients/{client_id}/trucks/{truck_id}")
def deallocate_truck(client_id: str, truck_id: str, database=Depends(get_db), user: dict = Depends(staff_only)):
    allocation = allocations.deallocate_truck(database, client_id, truck_id)
    audit.log_action(database, user, "truck.deallocate", "allocation", allocation["id"],
                     {"clientId": client_id, "truckId": truck_id})
    return allocation


# Allocations
@app.get("/allocations")
def list_allocations(
    status: Optional[str] = None,
    clientId: Optional[str] = None,
    truckId: Optional[str] = None,
    database=Depends(get_db),
    _=Depends(staff_only),
):
    return allocations.list_allocations(database, status, clientId, truckId)


@app.post("/allocations/{allocation_id}/return")
def return_allocation(allocation_id: str, database=Depends(get_db), user: dict = Depends(staff_only)):
    allocation = allocations.return_allocation(database, allocation_id)
    audit.log_action(database, user, "truck.return", "allocation", allocation_id, {"truckId": allocation.get("truckId")})
    return allocation


# Deliveries
@app.get("/deliveries")
def list_deliveries(
    status: Optional[str] = None,
    clientId: Optional[str] = None,
    driverId: Optional[str] = None,
    helperId: Optional[str] = None,
    database=Depends(get_db),
    _=Depends(staff_only),
):
    return deliveries.list_deliveries(database, status, clientId, driverId, helperId)


@app.get("/deliveries/{delivery_id}")
def get_delivery(delivery_id: str, database=Depends(get_db), _=Depends(staff_only)):
    return serialize(deliveries.get_delivery(database, delivery_id))


@app.put("/deliveries/{delivery_id}/status")
def update_delivery_status(
    delivery_id: str,
    body: DeliveryStatusPatch,
    database=Depends(get_db),
    current_user: dict = Depends(require_roles("admin", "staff", "driver")),
):
    updated = deliveries.update_delivery_status(database, delivery_id, body.status, current_user, body.reason)
    audit.log_action(database, current_user, "delivery.status", "delivery", delivery_id,
                     {"status": updated["deliveryStatus"], "reason": body.reason})
    return updated


@app.get("/driver/deliveries")
def my_assignments(database=Depends(get_db), current_user: dict = Depends(require_roles("driver", "helper"))):
    return deliveries.deliveries_for_person(database, current_user)


# Client portal
def _client_actor(client: dict) -> dict:
    return {"_id": client.get("userId"), "username": client.get("username"), "role": "client"}


@app.get("/client/profile")
def client_profile(client: dict = Depends(get_current_client)):
    return serialize(client)


@app.put("/client/profile")
def update_client_profile(body: ClientProfileUpdate, database=Depends(get_db), client: dict = Depends(get_current_client)):
    return personnel.update_client_profile(database, client, body)


@app.put("/client/profile/password")
def change_client_password(
    body: PasswordChange,
    database=Depends(get_db),
    current_user: dict = Depends(require_roles("client")),
):
    personnel.change_password(database, current_user, body.currentPassword, body.newPassword)
    return {"success": True, "message": "Password updated"}


@app.get("/client/trucks")
def client_trucks(database=Depends(get_db), client: dict = Depends(get_current_client)):
    return allocations.client_trucks(database, str(client["_id"]))


@app.get("/client/deliveries")
def client_deliveries(status: Optional[str] = None, database=Depends(get_db), client: dict = Depends(get_current_client)):
    return deliveries.list_deliveries(database, status=status, client_id=str(client["_id"]))


@app.get("/client/availability/trucks-for-date/{day}")
def trucks_for_date(day: date, database=Depends(get_db), client: dict = Depends(get_current_client)):
    return deliveries.available_trucks_for_date(database, str(client["_id"]), day)


@app.get("/client/availability/dates-for-truck/{truck_id}")
def dates_for_truck(truck_id: str, database=Depends(get_db), client: dict = Depends(get_current_client)):
    return deliveries.booked_dates_for_truck(database, str(client["_id"]), truck_id)


@app.post("/client/bookings")
def book(body: BookingRequest, database=Depends(get_db), client: dict = Depends(get_current_client)):
    result = deliveries.book_delivery(database, client, body)
    for delivery in result["deliveries"]:
        audit.log_action(database, _client_actor(client), "delivery.book", "delivery", delivery["id"],
                         {"truckId": delivery["truckId"], "deliveryRate": delivery["deliveryRate"]})
    return result


@app.post("/client/deliveries/{delivery_id}/confirm")
def confirm(delivery_id: str, database=Depends(get_db), client: dict = Depends(get_current_client)):
    updated = deliveries.confirm_delivery(database, client, delivery_id)
    audit.log_action(database, _client_actor(client), "delivery.confirm", "delivery", delivery_id)
    return updated


@app.post("/client/deliveries/{delivery_id}/cancel")
def cancel(
    delivery_id: str,
    body: Optional[CancelRequest] = None,
    database=Depends(get_db),
    client: dict = Depends(get_current_client),
):
    reason = body.reason if body else None
    updated = deliveries.cancel_delivery(database, client, delivery_id, reason)
    audit.log_action(database, _client_actor(client), "delivery.cancel", "delivery", delivery_id, {"reason": reason})
    return updated


@app.post("/client/deliveries/{delivery_id}/rebook")
def rebook(delivery_id: str, body: RescheduleRequest, database=Depends(get_db), client: dict = Depends(get_current_client)):
    updated = deliveries.reschedule_delivery(database, client, delivery_id, body)
    audit.log_action(database, _client_actor(client), "delivery.reschedule", "delivery", delivery_id,
                     {"deliveryDate": updated["deliveryDateString"]})
    return updated


@app.post("/client/deliveries/{delivery_id}/change-route")
def change_route(delivery_id: str, body: RouteChangeRequest, database=Depends(get_db), client: dict = Depends(get_current_client)):
    updated = deliveries.change_route(database, client, delivery_id, body)
    audit.log_action(database, _client_actor(client), "delivery.route", "delivery", delivery_id,
                     {"deliveryDistance": updated["deliveryDistance"], "deliveryRate": updated["deliveryRate"]})
    return updated


# Payments
@app.get("/payments/client/{client_id}")
def client_payments(
    client_id: str,
    database=Depends(get_db),
    current_user: dict = Depends(require_roles("admin", "staff", "client")),
):
    if current_user["role"] == "client":
        own = database[CLIENTS].find_one({"userId": str(current_user["_id"])})
        if not own or str(own["_id"]) != client_id:
            raise ForbiddenError("Not enough permissions")
    else:
        personnel.get_client(database, client_id)
    return payments.client_payment_summary(database, client_id)


@app.put("/payments/{delivery_id}/status")
def update_payment(delivery_id: str, body: PaymentStatusPatch, database=Depends(get_db), user: dict = Depends(staff_only)):
    result = payments.mark_payment(database, delivery_id, body.status)
    audit.log_action(database, user, "payment.status", "delivery", delivery_id, {"paymentStatus": body.status})
    return result


@app.post("/payments/{delivery_id}/cancel")
def cancel_payment(delivery_id: str, database=Depends(get_db), user: dict = Depends(staff_only)):
    result = payments.cancel_payment(database, delivery_id)
    if result["success"]:
        audit.log_action(database, user, "payment.cancel", "delivery", delivery_id)
    return result


# Vehicle rates
@app.get("/vehicle-rates")
def list_vehicle_rates(database=Depends(get_db), _=Depends(staff_only)):
    return pricing.list_rates(database)


@app.put("/vehicle-rates")
def put_vehicle_rate(body: VehicleRate, database=Depends(get_db), _=Depends(staff_only)):
    return pricing.upsert_rate(database, body)


# Analytics
@app.get("/analytics/fleet")
def analytics_fleet(database=Depends(get_db), _=Depends(staff_only)):
    return analytics.fleet_stats(database)


@app.get("/analytics/deliveries")
def analytics_deliveries(database=Depends(get_db), _=Depends(staff_only)):
    return analytics.delivery_stats(database)


@app.get("/analytics/dashboard")
def analytics_dashboard(database=Depends(get_db), _=Depends(staff_only)):
    return analytics.dashboard(database)


# Maintenance
@app.post("/maintenance/reconcile")
def run_reconcile(dry_run: bool = False, database=Depends(get_db), _=Depends(admin_only)):
    return reconcile_all(database, dry_run=dry_run)


@app.get("/audit")
def list_audit(
    action: Optional[str] = None,
    targetId: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    database=Depends(get_db),
    _=Depends(admin_only),
):
    return audit.list_actions(database, action, targetId, limit)


# Database diagnostics
@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if DATABASE_URL else "❌ Not Set",
        "database_name": DATABASE_NAME,
        "connection_status": "Not Connected",
        "collections": [],
    }
    if db is None:
        return response
    try:
        response["collections"] = db.list_collection_names()[:10]
        response["database"] = "✅ Available"
        response["connection_status"] = "Connected"
    except Exception as e:
        logger.exception("Database diagnostics failed")
        response["database"] = f"⚠️  Error: {str(e)[:80]}"
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
