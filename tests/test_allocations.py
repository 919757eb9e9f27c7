import pytest
from pymongo.errors import DuplicateKeyError
from fastapi import HTTPException

import allocations
import fleet
from database import ALLOCATIONS, TRUCKS, ensure_indexes, find_by_id, utcnow
from statuses import TRUCK_ALLOCATED, TRUCK_AVAILABLE, TRUCK_MAINTENANCE


def test_allocating_moves_truck_to_allocated(db, make_client, make_truck):
    client_id = make_client()
    truck_id = make_truck()
    result = allocations.allocate_trucks(db, client_id, [truck_id])

    assert len(result["successfulAllocations"]) == 1
    truck = find_by_id(db, TRUCKS, truck_id)
    assert truck["truckStatus"] == TRUCK_ALLOCATED
    assert truck["currentClientId"] == client_id
    assert truck["totalAllocations"] == 1
    assert allocations.active_allocation_for_truck(db, truck_id)["clientId"] == client_id


def test_truck_cannot_be_allocated_twice(db, make_client, make_truck):
    first, second = make_client(), make_client()
    truck_id = make_truck()
    allocations.allocate_trucks(db, first, [truck_id])

    with pytest.raises(HTTPException) as exc:
        allocations.allocate_trucks(db, second, [truck_id])
    assert exc.value.status_code == 400
    assert exc.value.detail["failedAllocations"][0]["reason"] == "Truck is already allocated to another client"
    assert db[ALLOCATIONS].count_documents({"truckId": truck_id, "status": "active"}) == 1


def test_partial_allocation_reports_failures(db, make_client, make_truck):
    client_id = make_client()
    good = make_truck()
    result = allocations.allocate_trucks(db, client_id, [good, "000000000000000000000000"])
    assert [a["truckId"] for a in result["successfulAllocations"]] == [good]
    assert result["failedAllocations"][0]["reason"] == "Truck does not exist"


def test_truck_in_maintenance_is_not_allocatable(db, make_client, make_truck):
    client_id = make_client()
    truck_id = make_truck()
    fleet.set_truck_maintenance(db, truck_id, TRUCK_MAINTENANCE)
    with pytest.raises(HTTPException):
        allocations.allocate_trucks(db, client_id, [truck_id])


def test_legacy_status_field_is_claimed_and_cleaned(db, make_client):
    client_id = make_client()
    truck_id = str(db[TRUCKS].insert_one({"truckPlate": "OLD-1", "truckCapacity": 4, "TruckStatus": "Available"}).inserted_id)
    allocations.allocate_trucks(db, client_id, [truck_id])
    truck = find_by_id(db, TRUCKS, truck_id)
    assert truck["truckStatus"] == TRUCK_ALLOCATED
    assert "TruckStatus" not in truck


def test_unknown_client(db, make_truck):
    with pytest.raises(HTTPException) as exc:
        allocations.allocate_trucks(db, "000000000000000000000000", [make_truck()])
    assert exc.value.status_code == 404


def test_deallocate_frees_truck(db, allocated_truck):
    client_id, truck_id = allocated_truck
    allocation = allocations.deallocate_truck(db, client_id, truck_id)
    assert allocation["status"] == "returned"
    truck = find_by_id(db, TRUCKS, truck_id)
    assert truck["truckStatus"] == TRUCK_AVAILABLE
    assert truck["currentClientId"] is None
    assert allocations.client_trucks(db, client_id) == []


def test_deallocate_without_allocation(db, make_client, make_truck):
    with pytest.raises(HTTPException) as exc:
        allocations.deallocate_truck(db, make_client(), make_truck())
    assert exc.value.status_code == 404


def test_return_allocation_twice(db, allocated_truck):
    _, truck_id = allocated_truck
    allocation_id = str(allocations.active_allocation_for_truck(db, truck_id)["_id"])
    allocations.return_allocation(db, allocation_id)
    with pytest.raises(HTTPException) as exc:
        allocations.return_allocation(db, allocation_id)
    assert exc.value.detail == "Allocation is not active"


def test_maintenance_requires_returned_allocation(db, allocated_truck):
    _, truck_id = allocated_truck
    with pytest.raises(HTTPException) as exc:
        fleet.set_truck_maintenance(db, truck_id, TRUCK_MAINTENANCE)
    assert exc.value.status_code == 400


def test_client_trucks_lists_allocation_date(db, allocated_truck):
    client_id, truck_id = allocated_truck
    trucks = allocations.client_trucks(db, client_id)
    assert [t["id"] for t in trucks] == [truck_id]
    assert trucks[0]["allocationDate"] is not None


def test_index_allows_one_active_allocation_per_truck(db, make_client, make_truck):
    ensure_indexes(db)
    client_id = make_client()
    truck_id = make_truck()
    allocations.allocate_trucks(db, client_id, [truck_id])

    with pytest.raises(DuplicateKeyError):
        db[ALLOCATIONS].insert_one({"clientId": make_client(), "truckId": truck_id, "status": "active",
                                    "allocationDate": utcnow()})
    assert db[ALLOCATIONS].count_documents({"truckId": truck_id}) == 1


def test_duplicate_key_on_insert_is_reported(db, make_client, make_truck, monkeypatch):
    ensure_indexes(db)
    first, second = make_client(), make_client()
    truck_id = make_truck()
    allocations.allocate_trucks(db, first, [truck_id])
    # a concurrent request read no allocation before the first one was written
    monkeypatch.setattr(allocations, "active_allocation_for_truck", lambda db, truck_id: None)
    monkeypatch.setattr(allocations, "truck_is_allocatable", lambda truck: True)

    with pytest.raises(HTTPException) as exc:
        allocations.allocate_trucks(db, second, [truck_id])
    assert exc.value.detail["failedAllocations"] == [
        {"truckId": truck_id, "reason": "Truck is already allocated to another client"}
    ]
    assert db[ALLOCATIONS].count_documents({"truckId": truck_id}) == 1


def test_lost_race_removes_the_new_allocation(db, make_client, make_truck, monkeypatch):
    client_id = make_client()
    truck_id = make_truck()

    def allocatable_then_taken(truck):
        # maintenance starts between the read and the claim
        db[TRUCKS].update_one({"_id": truck["_id"]}, {"$set": {"truckStatus": TRUCK_MAINTENANCE}})
        return True

    monkeypatch.setattr(allocations, "truck_is_allocatable", allocatable_then_taken)
    with pytest.raises(HTTPException) as exc:
        allocations.allocate_trucks(db, client_id, [truck_id])
    assert exc.value.detail["failedAllocations"] == [
        {"truckId": truck_id, "reason": "Truck is no longer available"}
    ]
    assert db[ALLOCATIONS].count_documents({}) == 0
    assert find_by_id(db, TRUCKS, truck_id)["truckStatus"] == TRUCK_MAINTENANCE
