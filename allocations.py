"""
Client <-> truck allocations.

An active allocation makes a client the party allowed to book a truck. A
truck carries at most one active allocation, and its truckStatus mirrors it
(allocated while one exists, available otherwise).
"""
import logging

from pymongo.errors import DuplicateKeyError

from availability import open_deliveries, truck_is_allocatable
from database import ALLOCATIONS, CLIENTS, TRUCKS, find_by_id, serialize, utcnow
from errors import BadRequestError, NotFoundError
from fleet import claim_for_allocation, release_from_allocation
from statuses import ALLOCATION_ACTIVE, ALLOCATION_RETURNED, truck_status

logger = logging.getLogger(__name__)


def active_allocation_for_truck(db, truck_id: str):
    return db[ALLOCATIONS].find_one({"truckId": truck_id, "status": ALLOCATION_ACTIVE})


def client_allocations(db, client_id: str):
    return list(db[ALLOCATIONS].find({"clientId": client_id, "status": ALLOCATION_ACTIVE}))


def list_allocations(db, status=None, client_id=None, truck_id=None):
    q = {}
    if status:
        q["status"] = status
    if client_id:
        q["clientId"] = client_id
    if truck_id:
        q["truckId"] = truck_id
    return [serialize(a) for a in db[ALLOCATIONS].find(q).sort("allocationDate", -1)]


def client_trucks(db, client_id: str):
    trucks = []
    for allocation in client_allocations(db, client_id):
        truck = find_by_id(db, TRUCKS, allocation["truckId"])
        if not truck:
            logger.warning("Allocation %s points at missing truck %s", allocation["_id"], allocation["truckId"])
            continue
        out = serialize(truck)
        out["allocationId"] = str(allocation["_id"])
        out["allocationDate"] = allocation.get("allocationDate")
        trucks.append(out)
    return trucks


def _allocate_one(db, client_id: str, truck_id: str):
    """Returns (allocation_id, None) on success or (None, reason)."""
    truck = find_by_id(db, TRUCKS, truck_id)
    if not truck:
        return None, "Truck does not exist"

    existing = active_allocation_for_truck(db, truck_id)
    if existing:
        if existing.get("clientId") == client_id:
            return None, "Truck is already allocated to this client"
        return None, "Truck is already allocated to another client"

    if not truck_is_allocatable(truck):
        return None, f"Truck is not available (status: {truck_status(truck)})"

    now = utcnow()
    try:
        result = db[ALLOCATIONS].insert_one({
            "clientId": client_id,
            "truckId": truck_id,
            "allocationDate": now,
            "status": ALLOCATION_ACTIVE,
            "created_at": now,
            "updated_at": now,
        })
    except DuplicateKeyError:
        return None, "Truck is already allocated to another client"
    allocation_id = str(result.inserted_id)

    if claim_for_allocation(db, truck, client_id, allocation_id) is None:
        # lost a race with another allocation or a maintenance change
        db[ALLOCATIONS].delete_one({"_id": result.inserted_id})
        return None, "Truck is no longer available"
    return allocation_id, None


def allocate_trucks(db, client_id: str, truck_ids):
    client = find_by_id(db, CLIENTS, client_id)
    if not client:
        raise NotFoundError("Client not found")

    successful, failed = [], []
    for truck_id in dict.fromkeys(truck_ids):
        allocation_id, reason = _allocate_one(db, client_id, truck_id)
        if reason:
            logger.warning("Allocation of truck %s to client %s refused: %s", truck_id, client_id, reason)
            failed.append({"truckId": truck_id, "reason": reason})
        else:
            logger.info("Allocated truck %s to client %s (%s)", truck_id, client_id, allocation_id)
            successful.append({"truckId": truck_id, "allocationId": allocation_id})

    if not successful:
        raise BadRequestError({"message": "No trucks were allocated", "failedAllocations": failed})

    return {
        "message": "Trucks allocated successfully",
        "successfulAllocations": successful,
        "failedAllocations": failed,
    }


def _end_allocation(db, allocation: dict):
    truck_id = allocation["truckId"]
    if open_deliveries(db, truckId=truck_id, clientId=allocation.get("clientId")):
        raise BadRequestError("Truck has an active delivery for this client")
    now = utcnow()
    db[ALLOCATIONS].update_one(
        {"_id": allocation["_id"]},
        {"$set": {"status": ALLOCATION_RETURNED, "returnedAt": now, "updated_at": now}},
    )
    release_from_allocation(db, truck_id)
    logger.info("Truck %s returned from client %s", truck_id, allocation.get("clientId"))
    allocation.update({"status": ALLOCATION_RETURNED, "returnedAt": now})
    return serialize(allocation)


def deallocate_truck(db, client_id: str, truck_id: str):
    allocation = db[ALLOCATIONS].find_one(
        {"clientId": client_id, "truckId": truck_id, "status": ALLOCATION_ACTIVE}
    )
    if not allocation:
        raise NotFoundError("Truck allocation not found")
    return _end_allocation(db, allocation)


def return_allocation(db, allocation_id: str):
    allocation = find_by_id(db, ALLOCATIONS, allocation_id)
    if not allocation:
        raise NotFoundError("Allocation not found")
    if allocation.get("status") != ALLOCATION_ACTIVE:
        raise BadRequestError("Allocation is not active")
    return _end_allocation(db, allocation)
