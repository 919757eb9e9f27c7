from datetime import datetime

import reconcile
from database import ALLOCATIONS, DELIVERIES, DRIVERS, HELPERS, TRUCKS, find_by_id


def test_normalize_legacy_fields(db):
    truck_id = db[TRUCKS].insert_one({"truckPlate": "OLD-1", "TruckStatus": "Allocated", "OperationalStatus": "Active"}).inserted_id
    driver_id = db[DRIVERS].insert_one({"driverName": "Ben", "DriverStatus": "Available"}).inserted_id
    delivery_id = db[DELIVERIES].insert_one({"DeliveryStatus": "Delivered"}).inserted_id

    assert reconcile.normalize_legacy_fields(db) == 3

    truck = db[TRUCKS].find_one({"_id": truck_id})
    assert truck["truckStatus"] == "allocated"
    assert truck["operationalStatus"] == "active"
    assert "TruckStatus" not in truck and "OperationalStatus" not in truck
    assert db[DRIVERS].find_one({"_id": driver_id})["driverStatus"] == "active"
    assert db[DELIVERIES].find_one({"_id": delivery_id})["deliveryStatus"] == "awaiting-confirmation"

    assert reconcile.normalize_legacy_fields(db) == 0


def test_dry_run_changes_nothing(db):
    db[TRUCKS].insert_one({"truckPlate": "OLD-1", "TruckStatus": "Available"})
    report = reconcile.reconcile_all(db, dry_run=True)
    assert report["fixed"]["normalize_legacy_fields"] == 1
    assert "TruckStatus" in db[TRUCKS].find_one()


def test_duplicate_allocations_keep_latest(db):
    db[ALLOCATIONS].insert_many([
        {"truckId": "t1", "clientId": "a", "status": "active", "allocationDate": datetime(2024, 1, 1)},
        {"truckId": "t1", "clientId": "b", "status": "active", "allocationDate": datetime(2024, 3, 1)},
    ])
    assert reconcile.dedupe_active_allocations(db) == 1
    active = list(db[ALLOCATIONS].find({"status": "active"}))
    assert [a["clientId"] for a in active] == ["b"]


def test_truck_status_follows_allocation(db):
    allocated = db[TRUCKS].insert_one({"truckPlate": "A", "truckStatus": "available"}).inserted_id
    orphan = db[TRUCKS].insert_one({"truckPlate": "B", "truckStatus": "allocated", "currentClientId": "x"}).inserted_id
    db[ALLOCATIONS].insert_one({"truckId": str(allocated), "clientId": "c1", "status": "active"})

    assert reconcile.sync_truck_allocation_status(db) == 2
    assert db[TRUCKS].find_one({"_id": allocated})["currentClientId"] == "c1"
    assert db[TRUCKS].find_one({"_id": allocated})["truckStatus"] == "allocated"
    assert db[TRUCKS].find_one({"_id": orphan})["truckStatus"] == "available"
    assert db[TRUCKS].find_one({"_id": orphan})["currentClientId"] is None


def test_stuck_truck_and_personnel_are_released(db):
    delivery_id = str(db[DELIVERIES].insert_one({"deliveryStatus": "completed", "driverId": "d"}).inserted_id)
    truck_id = db[TRUCKS].insert_one({
        "truckPlate": "A", "truckStatus": "available", "activeDelivery": True, "currentDeliveryId": delivery_id,
    }).inserted_id
    driver_id = db[DRIVERS].insert_one({"driverStatus": "on-delivery", "currentDeliveryId": delivery_id}).inserted_id
    helper_id = db[HELPERS].insert_one({"helperStatus": "on-delivery"}).inserted_id

    assert reconcile.release_stuck_trucks(db) == 1
    assert reconcile.release_stuck_personnel(db) == 2
    truck = db[TRUCKS].find_one({"_id": truck_id})
    assert truck["activeDelivery"] is False
    assert truck["currentDeliveryId"] is None
    assert db[DRIVERS].find_one({"_id": driver_id})["driverStatus"] == "active"
    assert db[HELPERS].find_one({"_id": helper_id})["helperStatus"] == "active"


def test_busy_personnel_are_left_alone(db):
    driver_id = db[DRIVERS].insert_one({"driverStatus": "on-delivery"}).inserted_id
    db[DELIVERIES].insert_one({"deliveryStatus": "in-progress", "driverId": str(driver_id)})
    assert reconcile.release_stuck_personnel(db) == 0


def test_cancelled_delivery_payments(db):
    cancelled = db[DELIVERIES].insert_one({"deliveryStatus": "cancelled", "paymentStatus": "pending"}).inserted_id
    paid = db[DELIVERIES].insert_one({"deliveryStatus": "cancelled", "paymentStatus": "paid"}).inserted_id
    assert reconcile.cancel_payments_of_cancelled_deliveries(db) == 1
    assert find_by_id(db, DELIVERIES, str(cancelled))["paymentStatus"] == "cancelled"
    assert find_by_id(db, DELIVERIES, str(paid))["paymentStatus"] == "paid"


def test_reconcile_all_reports_every_step(db):
    report = reconcile.reconcile_all(db)
    assert set(report["fixed"]) == {step.__name__ for step in reconcile.STEPS}
    assert report["total"] == 0
