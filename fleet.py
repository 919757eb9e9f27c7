"""Truck records and the status fields that follow allocations and deliveries."""
import logging

from pymongo import ReturnDocument

from availability import open_deliveries
from database import ALLOCATIONS, TRUCKS, create_document, find_by_id, serialize, touch, utcnow
from errors import BadRequestError, NotFoundError
from statuses import (
    ALLOCATION_ACTIVE,
    TRUCK_ALLOCATED,
    TRUCK_AVAILABLE,
    TRUCK_MAINTENANCE,
    truck_status,
)

logger = logging.getLogger(__name__)


def get_truck(db, truck_id: str) -> dict:
    truck = find_by_id(db, TRUCKS, truck_id)
    if not truck:
        raise NotFoundError("Truck not found")
    return truck


def create_truck(db, payload) -> str:
    data = payload.model_dump()
    if db[TRUCKS].find_one({"truckPlate": data["truckPlate"]}):
        raise BadRequestError("Truck plate already registered")
    data.update({
        "truckStatus": TRUCK_AVAILABLE,
        "allocationStatus": TRUCK_AVAILABLE,
        "availabilityStatus": "free",
        "operationalStatus": "active",
        "currentClientId": None,
        "currentAllocationId": None,
        "currentDeliveryId": None,
        "activeDelivery": False,
        "totalAllocations": 0,
        "totalKilometers": 0,
        "totalCompletedDeliveries": 0,
        "averageKmPerDelivery": 0,
    })
    truck_id = create_document(db, TRUCKS, data)
    logger.info("Registered truck %s (%s)", data["truckPlate"], truck_id)
    return truck_id


def update_truck(db, truck_id: str, payload) -> dict:
    truck = get_truck(db, truck_id)
    data = payload.model_dump(exclude_none=True)
    if data:
        db[TRUCKS].update_one({"_id": truck["_id"]}, {"$set": touch(data)})
    return serialize(db[TRUCKS].find_one({"_id": truck["_id"]}))


def set_truck_maintenance(db, truck_id: str, status: str) -> dict:
    truck = get_truck(db, truck_id)
    current = truck_status(truck)
    if status == TRUCK_MAINTENANCE:
        if current == TRUCK_ALLOCATED or db[ALLOCATIONS].find_one({"truckId": truck_id, "status": ALLOCATION_ACTIVE}):
            raise BadRequestError("Return the truck's allocation before sending it to maintenance")
        if open_deliveries(db, truckId=truck_id):
            raise BadRequestError("Truck has an active delivery")
        update = {"truckStatus": TRUCK_MAINTENANCE, "operationalStatus": TRUCK_MAINTENANCE, "availabilityStatus": "busy"}
    else:
        if current != TRUCK_MAINTENANCE:
            raise BadRequestError(f"Truck is {current}, not in maintenance")
        update = {"truckStatus": TRUCK_AVAILABLE, "operationalStatus": "active", "availabilityStatus": "free"}
    updated = db[TRUCKS].find_one_and_update(
        {"_id": truck["_id"]}, {"$set": touch(update)}, return_document=ReturnDocument.AFTER
    )
    logger.info("Truck %s status %s -> %s", truck.get("truckPlate"), current, update["truckStatus"])
    return serialize(updated)


def delete_truck(db, truck_id: str):
    truck = get_truck(db, truck_id)
    if db[ALLOCATIONS].find_one({"truckId": truck_id, "status": ALLOCATION_ACTIVE}):
        raise BadRequestError("Truck is allocated to a client")
    if open_deliveries(db, truckId=truck_id):
        raise BadRequestError("Truck has an active delivery")
    db[TRUCKS].delete_one({"_id": truck["_id"]})
    logger.info("Deleted truck %s", truck.get("truckPlate"))


def claim_for_allocation(db, truck: dict, client_id: str, allocation_id: str):
    """Move an available truck to allocated; None if someone else got there first."""
    now = utcnow()
    # guard on whichever spelling of the status field the document carries
    field = "truckStatus" if truck.get("truckStatus") else "TruckStatus"
    return db[TRUCKS].find_one_and_update(
        {"_id": truck["_id"], field: truck.get(field)},
        {
            "$set": {
                "truckStatus": TRUCK_ALLOCATED,
                "allocationStatus": TRUCK_ALLOCATED,
                "currentClientId": client_id,
                "currentAllocationId": allocation_id,
                "lastAllocationChange": now,
                "updated_at": now,
            },
            "$inc": {"totalAllocations": 1},
            "$unset": {"TruckStatus": "", "AllocationStatus": ""},
        },
        return_document=ReturnDocument.AFTER,
    )


def release_from_allocation(db, truck_id: str):
    now = utcnow()
    truck = find_by_id(db, TRUCKS, truck_id)
    if not truck:
        logger.warning("Allocation pointed at missing truck %s", truck_id)
        return
    update = {
        "allocationStatus": TRUCK_AVAILABLE,
        "currentClientId": None,
        "currentAllocationId": None,
        "lastAllocationChange": now,
        "updated_at": now,
    }
    if truck_status(truck) != TRUCK_MAINTENANCE:
        update.update({"truckStatus": TRUCK_AVAILABLE, "availabilityStatus": "free"})
    db[TRUCKS].update_one({"_id": truck["_id"]}, {"$set": update})


def idle_status_fields(db, truck_id: str) -> dict:
    """Status a truck settles into once it has no delivery in flight."""
    allocated = db[ALLOCATIONS].find_one({"truckId": truck_id, "status": ALLOCATION_ACTIVE}) is not None
    status = TRUCK_ALLOCATED if allocated else TRUCK_AVAILABLE
    return {
        "truckStatus": status,
        "allocationStatus": status,
        "availabilityStatus": "free",
        "activeDelivery": False,
        "currentDeliveryId": None,
    }


def record_completed_trip(db, truck_id: str, distance_km: float):
    truck = find_by_id(db, TRUCKS, truck_id)
    if not truck:
        return
    total_km = round(float(truck.get("totalKilometers") or 0) + float(distance_km or 0), 2)
    trips = int(truck.get("totalCompletedDeliveries") or 0) + 1
    db[TRUCKS].update_one(
        {"_id": truck["_id"]},
        {"$set": touch({
            "totalKilometers": total_km,
            "totalCompletedDeliveries": trips,
            "averageKmPerDelivery": round(total_km / trips, 2),
        })},
    )
