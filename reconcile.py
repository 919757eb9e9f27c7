"""
Repair drifted status fields.

Multi-document writes are not transactional, so a crash or a race can leave
trucks, personnel, allocations and payments disagreeing with each other.
Each step below re-establishes one rule and returns how many documents it
fixed (or would fix, with dry_run). Run it over HTTP as an admin or from the
command line:

    python reconcile.py --dry-run
"""
import argparse
import logging
import sys
from collections import defaultdict
from datetime import datetime

from availability import PERSONNEL_COLLECTIONS, open_deliveries
from config import LOG_LEVEL
from database import ALLOCATIONS, DELIVERIES, DRIVERS, HELPERS, TRUCKS, find_by_id, touch, utcnow
from fleet import idle_status_fields
from statuses import (
    ALLOCATION_ACTIVE,
    ALLOCATION_RETURNED,
    CANCELLED,
    LEGACY_FIELDS,
    PAYMENT_CANCELLED,
    PAYMENT_PAID,
    PERSON_ACTIVE,
    PERSON_ON_DELIVERY,
    PERSON_STATUS_FIELDS,
    TRUCK_ALLOCATED,
    TRUCK_AVAILABLE,
    TRUCK_MAINTENANCE,
    delivery_status,
    is_terminal,
    legacy_name,
    personnel_status,
    truck_status,
)

logger = logging.getLogger(__name__)

_PERSON_KINDS = {DRIVERS: "driver", HELPERS: "helper"}


def _apply(db, collection: str, doc: dict, update: dict, dry_run: bool):
    if not dry_run:
        db[collection].update_one({"_id": doc["_id"]}, update)


def _canonical_value(collection: str, field: str, doc: dict, value):
    if collection == DELIVERIES and field == "deliveryStatus":
        return delivery_status(doc)
    if collection in _PERSON_KINDS and field == PERSON_STATUS_FIELDS[_PERSON_KINDS[collection]]:
        return personnel_status(doc, _PERSON_KINDS[collection])
    return value.strip().lower() if isinstance(value, str) else value


def normalize_legacy_fields(db, dry_run: bool = False) -> int:
    fixed = 0
    for collection, fields in LEGACY_FIELDS.items():
        for doc in db[collection].find():
            to_set, to_unset = {}, {}
            for field in fields:
                legacy = legacy_name(field)
                value = doc.get(field)
                if value in (None, ""):
                    value = doc.get(legacy)
                if legacy in doc:
                    to_unset[legacy] = ""
                if value in (None, ""):
                    continue
                canonical = _canonical_value(collection, field, doc, value)
                if canonical != doc.get(field):
                    to_set[field] = canonical
            if not to_set and not to_unset:
                continue
            update = {"$set": touch(to_set)}
            if to_unset:
                update["$unset"] = to_unset
            _apply(db, collection, doc, update, dry_run)
            logger.info("Normalized %s %s: set %s, dropped %s", collection, doc["_id"], to_set, list(to_unset))
            fixed += 1
    return fixed


def dedupe_active_allocations(db, dry_run: bool = False) -> int:
    by_truck = defaultdict(list)
    for allocation in db[ALLOCATIONS].find({"status": ALLOCATION_ACTIVE}):
        by_truck[allocation.get("truckId")].append(allocation)
    fixed = 0
    for truck_id, allocations in by_truck.items():
        if len(allocations) < 2:
            continue
        allocations.sort(key=lambda a: a.get("allocationDate") or datetime.min, reverse=True)
        for stale in allocations[1:]:
            now = utcnow()
            _apply(db, ALLOCATIONS, stale, {"$set": {
                "status": ALLOCATION_RETURNED,
                "returnedAt": now,
                "reconciledAt": now,
                "updated_at": now,
            }}, dry_run)
            logger.info("Truck %s: returned duplicate allocation %s (kept %s)", truck_id, stale["_id"], allocations[0]["_id"])
            fixed += 1
    return fixed


def sync_truck_allocation_status(db, dry_run: bool = False) -> int:
    fixed = 0
    for truck in db[TRUCKS].find():
        truck_id = str(truck["_id"])
        allocation = db[ALLOCATIONS].find_one({"truckId": truck_id, "status": ALLOCATION_ACTIVE})
        status = truck_status(truck)
        if allocation:
            wanted = {
                "truckStatus": TRUCK_ALLOCATED,
                "allocationStatus": TRUCK_ALLOCATED,
                "currentClientId": allocation.get("clientId"),
                "currentAllocationId": str(allocation["_id"]),
            }
        elif status == TRUCK_ALLOCATED or truck.get("currentAllocationId"):
            wanted = {
                "allocationStatus": TRUCK_AVAILABLE,
                "currentClientId": None,
                "currentAllocationId": None,
            }
            if status != TRUCK_MAINTENANCE:
                wanted["truckStatus"] = TRUCK_AVAILABLE
        else:
            continue
        if all(truck.get(k) == v for k, v in wanted.items()):
            continue
        _apply(db, TRUCKS, truck, {"$set": touch(wanted)}, dry_run)
        logger.info("Truck %s: status %s -> %s", truck.get("truckPlate"), status, wanted.get("truckStatus", status))
        fixed += 1
    return fixed


def release_stuck_trucks(db, dry_run: bool = False) -> int:
    fixed = 0
    for truck in db[TRUCKS].find({"$or": [{"activeDelivery": True}, {"currentDeliveryId": {"$nin": [None, ""]}}]}):
        truck_id = str(truck["_id"])
        delivery = find_by_id(db, DELIVERIES, truck.get("currentDeliveryId"))
        if delivery and not is_terminal(delivery_status(delivery)):
            continue
        others = open_deliveries(db, truckId=truck_id)
        if others:
            update = {"currentDeliveryId": str(others[0]["_id"]), "activeDelivery": True}
        else:
            update = idle_status_fields(db, truck_id)
            if truck_status(truck) == TRUCK_MAINTENANCE:
                update.pop("truckStatus")
                update.pop("allocationStatus")
        _apply(db, TRUCKS, truck, {"$set": touch(update)}, dry_run)
        logger.info("Truck %s released from stale delivery %s", truck.get("truckPlate"), truck.get("currentDeliveryId"))
        fixed += 1
    return fixed


def release_stuck_personnel(db, dry_run: bool = False) -> int:
    fixed = 0
    for kind, collection in PERSONNEL_COLLECTIONS.items():
        field = PERSON_STATUS_FIELDS[kind]
        for person in db[collection].find():
            if personnel_status(person, kind) != PERSON_ON_DELIVERY:
                continue
            if open_deliveries(db, **{f"{kind}Id": str(person["_id"])}):
                continue
            _apply(db, collection, person, {"$set": touch({field: PERSON_ACTIVE, "currentDeliveryId": None})}, dry_run)
            logger.info("%s %s back to active", kind.capitalize(), person["_id"])
            fixed += 1
    return fixed


def cancel_payments_of_cancelled_deliveries(db, dry_run: bool = False) -> int:
    fixed = 0
    for delivery in db[DELIVERIES].find({"paymentStatus": {"$nin": [PAYMENT_CANCELLED, PAYMENT_PAID]}}):
        if delivery_status(delivery) != CANCELLED:
            continue
        _apply(db, DELIVERIES, delivery, {"$set": touch({"paymentStatus": PAYMENT_CANCELLED})}, dry_run)
        logger.info("Cancelled payment of cancelled delivery %s", delivery["_id"])
        fixed += 1
    return fixed


STEPS = (
    normalize_legacy_fields,
    dedupe_active_allocations,
    sync_truck_allocation_status,
    release_stuck_trucks,
    release_stuck_personnel,
    cancel_payments_of_cancelled_deliveries,
)


def reconcile_all(db, dry_run: bool = False) -> dict:
    report = {"dryRun": dry_run, "fixed": {}}
    for step in STEPS:
        report["fixed"][step.__name__] = step(db, dry_run=dry_run)
    report["total"] = sum(report["fixed"].values())
    logger.info("Reconciliation %s: %s", "dry run" if dry_run else "done", report["fixed"])
    return report


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Repair drifted FleetDesk status fields")
    parser.add_argument("--dry-run", action="store_true", help="report what would change without writing")
    args = parser.parse_args()

    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    from database import db

    if db is None:
        logger.error("DATABASE_URL is not set")
        sys.exit(1)
    result = reconcile_all(db, dry_run=args.dry_run)
    for name, count in result["fixed"].items():
        print(f"{name}: {count}")
    print(f"total: {result['total']}")
