"""Who and what can be allocated or booked right now."""
from database import DELIVERIES, DRIVERS, HELPERS, TRUCKS, serialize
from statuses import (
    ACTIVE_DELIVERY_STATUSES,
    PERSON_ACTIVE,
    TRUCK_AVAILABLE,
    TRUCK_MAINTENANCE,
    delivery_status,
    personnel_status,
    read_field,
    truck_status,
)

# Class C licences only cover the light vehicles
SMALL_TRUCK_TYPES = ("mini truck", "4 wheeler")

PERSONNEL_COLLECTIONS = {
    "driver": DRIVERS,
    "helper": HELPERS,
}


def _in_maintenance(truck: dict) -> bool:
    operational = (read_field(truck, "operationalStatus") or "").lower()
    return truck_status(truck) == TRUCK_MAINTENANCE or operational == TRUCK_MAINTENANCE


def truck_is_allocatable(truck: dict) -> bool:
    return truck_status(truck) == TRUCK_AVAILABLE and not _in_maintenance(truck)


def truck_is_bookable(truck: dict) -> bool:
    return not _in_maintenance(truck)


def personnel_is_available(person: dict, kind: str) -> bool:
    return personnel_status(person, kind) == PERSON_ACTIVE


def driver_can_operate(driver: dict, truck_type: str) -> bool:
    if (truck_type or "").strip().lower() in SMALL_TRUCK_TYPES:
        return True
    return (driver.get("licenseType") or "").strip().lower() == "class ce"


def available_trucks(db):
    return [serialize(t) for t in db[TRUCKS].find() if truck_is_allocatable(t)]


def available_personnel(db, kind: str, raw: bool = False):
    people = [p for p in db[PERSONNEL_COLLECTIONS[kind]].find() if personnel_is_available(p, kind)]
    return people if raw else [serialize(p) for p in people]


def open_deliveries(db, **match):
    """Non-terminal deliveries matching e.g. truckId=..., driverId=..."""
    return [d for d in db[DELIVERIES].find(match) if delivery_status(d) in ACTIVE_DELIVERY_STATUSES]
