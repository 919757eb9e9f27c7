"""
Delivery booking and lifecycle.

A booking turns one or more of a client's allocated trucks into deliveries,
each with a license-qualified driver and, when one is free, a helper. The
lifecycle runs pending -> in-progress -> awaiting-confirmation -> completed,
and a delivery can be cancelled until its cargo is delivered. The truck,
driver and helper of a delivery are only released once it reaches completed
or cancelled.
"""
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from bson import ObjectId
from pymongo import ReturnDocument

from allocations import active_allocation_for_truck, client_allocations
from availability import (
    PERSONNEL_COLLECTIONS,
    available_personnel,
    driver_can_operate,
    open_deliveries,
    truck_is_bookable,
)
from config import BOOKING_LEAD_HOURS, BUSINESS_TIMEZONE, TRUCK_COOLDOWN_HOURS
from database import DELIVERIES, TRUCKS, find_by_id, serialize, touch, utcnow
from errors import BadRequestError, ForbiddenError, NotFoundError
from fleet import idle_status_fields, record_completed_trip
from payments import can_client_book, cancel_payment
from pricing import calculate_delivery_cost, distribute_cargo, estimate_route
from statuses import (
    AWAITING_CONFIRMATION,
    CANCELLED,
    COMPLETED,
    IN_PROGRESS,
    PAYMENT_PENDING,
    PENDING,
    PERSON_ACTIVE,
    PERSON_INACTIVE,
    PERSON_ON_DELIVERY,
    PERSON_STATUS_FIELDS,
    check_transition,
    delivery_status,
    is_terminal,
    normalize_delivery_status,
    personnel_status,
    read_field,
)

logger = logging.getLogger(__name__)

# statuses a driver may report on their own deliveries
DRIVER_REPORTABLE = (IN_PROGRESS, AWAITING_CONFIRMATION)

_TIMESTAMP_FIELDS = {
    IN_PROGRESS: "startedAt",
    AWAITING_CONFIRMATION: "deliveredAt",
    COMPLETED: "completedAt",
    CANCELLED: "cancelledAt",
}


def get_delivery(db, delivery_id: str) -> dict:
    delivery = find_by_id(db, DELIVERIES, delivery_id)
    if not delivery:
        raise NotFoundError("Delivery not found")
    return delivery


def list_deliveries(db, status=None, client_id=None, driver_id=None, helper_id=None):
    q = {}
    if client_id:
        q["clientId"] = client_id
    if driver_id:
        q["driverId"] = driver_id
    if helper_id:
        q["helperId"] = helper_id
    wanted = normalize_delivery_status(status) if status else None
    out = []
    for d in db[DELIVERIES].find(q).sort("deliveryDate", -1):
        current = delivery_status(d)
        if wanted and current != wanted:
            continue
        item = serialize(d)
        item["deliveryStatus"] = current
        out.append(item)
    return out


def deliveries_for_person(db, user: dict):
    kind = user.get("role")
    person = db[PERSONNEL_COLLECTIONS[kind]].find_one({"userId": str(user["_id"])})
    if not person:
        raise NotFoundError(f"{kind.capitalize()} profile not found")
    return list_deliveries(db, **{f"{kind}_id": str(person["_id"])})


# Booking

def booking_datetime(day: date, at: time) -> datetime:
    """Naive UTC datetime for a requested date and time.

    Times carrying no UTC offset are wall-clock times in BUSINESS_TIMEZONE.
    """
    when = datetime.combine(day, at)
    if when.tzinfo is None:
        when = when.replace(tzinfo=ZoneInfo(BUSINESS_TIMEZONE))
    return when.astimezone(timezone.utc).replace(tzinfo=None)


def business_date(when: datetime) -> str:
    """Calendar day of a stored (naive UTC) datetime in BUSINESS_TIMEZONE."""
    return when.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(BUSINESS_TIMEZONE)).date().isoformat()


def _cooldown_conflict(db, truck_id: str, when: datetime, exclude_id: Optional[str] = None) -> bool:
    window = timedelta(hours=TRUCK_COOLDOWN_HOURS)
    for d in open_deliveries(db, truckId=truck_id):
        if str(d["_id"]) == exclude_id:
            continue
        other = d.get("deliveryDate")
        if isinstance(other, datetime) and abs(other - when) < window:
            return True
    return False


def _pick_driver(drivers: list, truck_type: str):
    for i, driver in enumerate(drivers):
        if driver_can_operate(driver, truck_type):
            return drivers.pop(i)
    return None


def _claim_person(db, kind: str, person: dict, delivery_id: str) -> bool:
    """Put a driver or helper on a delivery unless their status moved since we read it."""
    field = PERSON_STATUS_FIELDS[kind]
    claimed = db[PERSONNEL_COLLECTIONS[kind]].find_one_and_update(
        {"_id": person["_id"], field: person.get(field)},
        {"$set": touch({field: PERSON_ON_DELIVERY, "currentDeliveryId": delivery_id})},
    )
    return claimed is not None


def _unclaim_person(db, kind: str, person: dict, delivery_id: str):
    field = PERSON_STATUS_FIELDS[kind]
    db[PERSONNEL_COLLECTIONS[kind]].update_one(
        {"_id": person["_id"], "currentDeliveryId": delivery_id},
        {"$set": touch({field: person.get(field) or PERSON_ACTIVE, "currentDeliveryId": None})},
    )


def _check_truck(db, client_id: str, truck_id: str, when: datetime, exclude_id: Optional[str] = None):
    """Returns (truck, None) when the truck may be booked, else (None, reason)."""
    truck = find_by_id(db, TRUCKS, truck_id)
    if not truck:
        return None, "Truck does not exist"
    allocation = active_allocation_for_truck(db, truck_id)
    if not allocation or allocation.get("clientId") != client_id:
        return None, "Truck is not allocated to this client"
    if not truck_is_bookable(truck):
        return None, "Truck is under maintenance"
    if float(truck.get("truckCapacity") or 0) <= 0:
        return None, "Truck has no cargo capacity"
    if _cooldown_conflict(db, truck_id, when, exclude_id):
        return None, f"Truck already has a delivery within {TRUCK_COOLDOWN_HOURS} hours of this time"
    return truck, None


def book_delivery(db, client: dict, request, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    client_id = str(client["_id"])
    truck_ids = request.truck_ids()
    if not truck_ids:
        raise BadRequestError("No trucks selected for booking")

    if not can_client_book(db, client_id, now):
        logger.warning("Booking refused for client %s: overdue payments", client_id)
        raise ForbiddenError("You have overdue payments. Please settle them before booking.")

    when = booking_datetime(request.deliveryDate, request.deliveryTime)
    if when < now + timedelta(hours=BOOKING_LEAD_HOURS):
        raise BadRequestError(f"Deliveries must be booked at least {BOOKING_LEAD_HOURS} hours in advance")

    drivers = available_personnel(db, "driver", raw=True)
    if not drivers:
        raise BadRequestError("No drivers available")
    helpers = available_personnel(db, "helper", raw=True)

    pickup = request.pickupCoordinates.model_dump() if request.pickupCoordinates else None
    dropoff = request.dropoffCoordinates.model_dump() if request.dropoffCoordinates else None
    distance, duration = estimate_route(pickup, dropoff, request.deliveryDistance, request.estimatedDuration)

    failed, bookable = [], []
    for truck_id in truck_ids:
        truck, reason = _check_truck(db, client_id, truck_id, when)
        if reason:
            failed.append({"truckId": truck_id, "reason": reason})
        else:
            bookable.append(truck)

    capacities = [(str(t["_id"]), float(t["truckCapacity"])) for t in bookable]
    distribution, unassigned = distribute_cargo(capacities, request.weight)

    created = []
    for truck in sorted(bookable, key=lambda t: float(t["truckCapacity"]), reverse=True):
        truck_id = str(truck["_id"])
        cargo = distribution.get(truck_id, 0)
        if cargo <= 0:
            failed.append({"truckId": truck_id, "reason": "Cargo already covered by larger trucks"})
            continue

        driver = _pick_driver(drivers, truck.get("truckType"))
        if driver is None:
            failed.append({"truckId": truck_id, "reason": "No driver licensed for this truck type is available"})
            continue

        delivery_id = ObjectId()
        if not _claim_person(db, "driver", driver, str(delivery_id)):
            failed.append({"truckId": truck_id, "reason": "Driver was assigned to another delivery"})
            continue
        helper = helpers.pop(0) if helpers else None
        if helper is not None and not _claim_person(db, "helper", helper, str(delivery_id)):
            helper = None

        try:
            doc = _insert_delivery(db, delivery_id, client, truck, driver, helper, request,
                                   cargo=cargo, when=when, route=(pickup, dropoff, distance, duration), now=now)
        except Exception:
            logger.exception("Booking truck %s failed, releasing its driver and helper", truck_id)
            _unclaim_person(db, "driver", driver, str(delivery_id))
            if helper is not None:
                _unclaim_person(db, "helper", helper, str(delivery_id))
            raise
        db[TRUCKS].update_one(
            {"_id": truck["_id"]},
            {"$set": touch({"currentDeliveryId": str(delivery_id), "activeDelivery": True, "availabilityStatus": "busy"})},
        )
        logger.info("Booked delivery %s: truck %s driver %s helper %s for client %s",
                    delivery_id, truck.get("truckPlate"), doc["driverName"], doc["helperName"], client_id)
        created.append(serialize(doc))

    for f in failed:
        logger.warning("Truck %s not booked for client %s: %s", f["truckId"], client_id, f["reason"])

    if not created:
        raise BadRequestError({"message": "No trucks could be booked", "failedBookings": failed})

    return {
        "success": True,
        "message": f"{len(created)} deliveries booked",
        "deliveries": created,
        "failedBookings": failed,
        "totalCapacity": sum(c for _, c in capacities),
        "unassignedWeight": unassigned,
    }


def _insert_delivery(db, delivery_id, client, truck, driver, helper, request, cargo, when, route, now) -> dict:
    pickup, dropoff, distance, duration = route
    cost = calculate_delivery_cost(db, truck.get("truckType"), distance, cargo)
    doc = {
        "_id": delivery_id,
        "clientId": str(client["_id"]),
        "clientName": client.get("clientName"),
        "truckId": str(truck["_id"]),
        "truckPlate": truck.get("truckPlate"),
        "truckType": truck.get("truckType"),
        "truckCapacity": truck.get("truckCapacity"),
        "driverId": str(driver["_id"]),
        "driverName": driver.get("driverName"),
        "driverStatus": "assigned",
        "helperId": str(helper["_id"]) if helper else None,
        "helperName": helper.get("helperName") if helper else None,
        "helperStatus": "assigned" if helper else "awaiting_helper",
        "deliveryStatus": PENDING,
        "pickupLocation": request.pickupLocation,
        "pickupCoordinates": pickup,
        "dropoffLocation": request.dropoffLocation,
        "dropoffCoordinates": dropoff,
        "cargoWeight": cargo,
        "totalCargoWeight": request.weight,
        "deliveryDate": when,
        "deliveryDateString": business_date(when),
        "deliveryDistance": distance,
        "estimatedDuration": duration,
        "deliveryRate": cost["totalCost"],
        "deliveryBaseRate": cost["baseRate"],
        "deliveryRatePerKm": cost["ratePerKm"],
        "paymentStatus": PAYMENT_PENDING,
        "pickupContactPerson": request.pickupContactPerson,
        "pickupContactNumber": request.pickupContactNumber,
        "dropoffContactPerson": request.dropoffContactPerson,
        "dropoffContactNumber": request.dropoffContactNumber,
        "created_at": now,
        "updated_at": now,
    }
    db[DELIVERIES].insert_one(doc)
    return doc


# Lifecycle

def _release_person(db, kind: str, person_id: Optional[str], delivery_id: str):
    if not person_id:
        return
    coll = PERSONNEL_COLLECTIONS[kind]
    person = find_by_id(db, coll, person_id)
    if not person:
        logger.warning("Delivery %s points at missing %s %s", delivery_id, kind, person_id)
        return
    others = [d for d in open_deliveries(db, **{f"{kind}Id": person_id}) if str(d["_id"]) != delivery_id]
    field = PERSON_STATUS_FIELDS[kind]
    if others:
        db[coll].update_one({"_id": person["_id"]}, {"$set": touch({"currentDeliveryId": str(others[0]["_id"])})})
        return
    update = {"currentDeliveryId": None}
    if personnel_status(person, kind) != PERSON_INACTIVE:
        update[field] = PERSON_ACTIVE
    db[coll].update_one({"_id": person["_id"]}, {"$set": touch(update)})
    logger.info("Released %s %s from delivery %s", kind, person_id, delivery_id)


def release_resources(db, delivery: dict):
    delivery_id = str(delivery["_id"])
    truck_id = delivery.get("truckId")
    truck = find_by_id(db, TRUCKS, truck_id) if truck_id else None
    if truck:
        others = [d for d in open_deliveries(db, truckId=truck_id) if str(d["_id"]) != delivery_id]
        if others:
            update = {"currentDeliveryId": str(others[0]["_id"]), "activeDelivery": True}
        else:
            update = idle_status_fields(db, truck_id)
        db[TRUCKS].update_one({"_id": truck["_id"]}, {"$set": touch(update)})
    elif truck_id:
        logger.warning("Delivery %s points at missing truck %s", delivery_id, truck_id)
    _release_person(db, "driver", delivery.get("driverId"), delivery_id)
    _release_person(db, "helper", delivery.get("helperId"), delivery_id)


def _transition(db, delivery: dict, new: str, extra: Optional[dict] = None) -> dict:
    current = delivery_status(delivery)
    check_transition(current, new)
    now = utcnow()
    update = {"deliveryStatus": new, "updated_at": now, _TIMESTAMP_FIELDS[new]: now}
    update.update(extra or {})
    field = "deliveryStatus" if delivery.get("deliveryStatus") else "DeliveryStatus"
    updated = db[DELIVERIES].find_one_and_update(
        {"_id": delivery["_id"], field: delivery.get(field)},
        {"$set": update, "$unset": {"DeliveryStatus": ""}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise BadRequestError("Delivery status changed meanwhile, reload and try again")
    logger.info("Delivery %s: %s -> %s", delivery["_id"], current, new)

    if new == COMPLETED and updated.get("truckId"):
        record_completed_trip(db, updated["truckId"], updated.get("deliveryDistance") or 0)
    if new == CANCELLED:
        cancel_payment(db, str(updated["_id"]))
    if is_terminal(new):
        release_resources(db, updated)
    return serialize(db[DELIVERIES].find_one({"_id": updated["_id"]}))


def update_delivery_status(db, delivery_id: str, status: str, actor: dict, reason: Optional[str] = None) -> dict:
    delivery = get_delivery(db, delivery_id)
    new = normalize_delivery_status(status)
    if actor.get("role") == "driver":
        driver = db[PERSONNEL_COLLECTIONS["driver"]].find_one({"userId": str(actor["_id"])})
        if not driver or str(driver["_id"]) != delivery.get("driverId"):
            raise ForbiddenError("This delivery is not assigned to you")
        if new not in DRIVER_REPORTABLE:
            raise ForbiddenError(f"Drivers cannot mark a delivery {new}")
    extra = {}
    if new == CANCELLED:
        extra = {"cancelledBy": actor.get("role"), "cancellationReason": reason}
    return _transition(db, delivery, new, extra)


def _client_delivery(db, client: dict, delivery_id: str) -> dict:
    delivery = get_delivery(db, delivery_id)
    if delivery.get("clientId") != str(client["_id"]):
        raise ForbiddenError("This delivery belongs to another client")
    return delivery


def confirm_delivery(db, client: dict, delivery_id: str) -> dict:
    delivery = _client_delivery(db, client, delivery_id)
    if delivery_status(delivery) != AWAITING_CONFIRMATION:
        raise BadRequestError("Delivery is not awaiting confirmation")
    return _transition(db, delivery, COMPLETED, {"clientConfirmation": True, "clientConfirmedAt": utcnow()})


def cancel_delivery(db, client: dict, delivery_id: str, reason: Optional[str] = None) -> dict:
    delivery = _client_delivery(db, client, delivery_id)
    if delivery_status(delivery) != PENDING:
        raise BadRequestError("Only pending deliveries can be cancelled")
    return _transition(db, delivery, CANCELLED, {"cancelledBy": "client", "cancellationReason": reason})


def _update_pending(db, delivery: dict, update: dict) -> dict:
    field = "deliveryStatus" if delivery.get("deliveryStatus") else "DeliveryStatus"
    updated = db[DELIVERIES].find_one_and_update(
        {"_id": delivery["_id"], field: delivery.get(field)},
        {"$set": touch(update)},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise BadRequestError("Delivery status changed meanwhile, reload and try again")
    return serialize(updated)


def reschedule_delivery(db, client: dict, delivery_id: str, request, now: Optional[datetime] = None) -> dict:
    """Move a pending delivery to another date and time, keeping its truck and crew."""
    now = now or utcnow()
    delivery = _client_delivery(db, client, delivery_id)
    if delivery_status(delivery) != PENDING:
        raise BadRequestError("Only pending deliveries can be rescheduled")
    when = booking_datetime(request.deliveryDate, request.deliveryTime)
    if when < now + timedelta(hours=BOOKING_LEAD_HOURS):
        raise BadRequestError(f"Deliveries must be booked at least {BOOKING_LEAD_HOURS} hours in advance")
    _, reason = _check_truck(db, str(client["_id"]), delivery.get("truckId"), when, exclude_id=str(delivery["_id"]))
    if reason:
        raise BadRequestError(reason)
    updated = _update_pending(db, delivery, {
        "deliveryDate": when,
        "deliveryDateString": business_date(when),
        "previousDeliveryDate": delivery.get("deliveryDate"),
        "rescheduledAt": now,
    })
    logger.info("Delivery %s rescheduled from %s to %s", delivery_id, delivery.get("deliveryDate"), when)
    return updated


def change_route(db, client: dict, delivery_id: str, request) -> dict:
    """New pickup and dropoff for a pending delivery; distance and price are recomputed."""
    delivery = _client_delivery(db, client, delivery_id)
    if delivery_status(delivery) != PENDING:
        raise BadRequestError("Only pending deliveries can change route")
    pickup = request.pickupCoordinates.model_dump() if request.pickupCoordinates else None
    dropoff = request.dropoffCoordinates.model_dump() if request.dropoffCoordinates else None
    distance, duration = estimate_route(pickup, dropoff, request.deliveryDistance, request.estimatedDuration)
    cost = calculate_delivery_cost(db, delivery.get("truckType"), distance, float(delivery.get("cargoWeight") or 0))
    updated = _update_pending(db, delivery, {
        "pickupLocation": request.pickupLocation,
        "pickupCoordinates": pickup,
        "dropoffLocation": request.dropoffLocation,
        "dropoffCoordinates": dropoff,
        "deliveryDistance": distance,
        "estimatedDuration": duration,
        "deliveryRate": cost["totalCost"],
        "deliveryBaseRate": cost["baseRate"],
        "deliveryRatePerKm": cost["ratePerKm"],
        "routeChangedAt": utcnow(),
    })
    logger.info("Delivery %s route changed, %.1f km, rate %s", delivery_id, distance, cost["totalCost"])
    return updated


# Availability calendar

def _booked_dates(db, truck_id: str):
    dates = set()
    for d in open_deliveries(db, truckId=truck_id):
        day = d.get("deliveryDateString")
        if not day and isinstance(d.get("deliveryDate"), datetime):
            day = business_date(d["deliveryDate"])
        if day:
            dates.add(day)
    return sorted(dates)


def available_trucks_for_date(db, client_id: str, day: date):
    wanted = day.isoformat()
    trucks = []
    for allocation in client_allocations(db, client_id):
        truck = find_by_id(db, TRUCKS, allocation["truckId"])
        if not truck or not truck_is_bookable(truck):
            continue
        if wanted in _booked_dates(db, allocation["truckId"]):
            continue
        trucks.append(serialize(truck))
    return {"date": wanted, "availableTrucks": trucks}


def booked_dates_for_truck(db, client_id: str, truck_id: str):
    allocation = active_allocation_for_truck(db, truck_id)
    if not allocation or allocation.get("clientId") != client_id:
        raise ForbiddenError("Truck is not allocated to this client")
    truck = find_by_id(db, TRUCKS, truck_id)
    return {
        "truckId": truck_id,
        "truckPlate": read_field(truck, "truckPlate"),
        "bookedDates": _booked_dates(db, truck_id),
    }
