from datetime import date, datetime, time, timedelta, timezone

import pytest
from fastapi import HTTPException

import allocations
import deliveries
from conftest import booking, client_doc
from schemas import RescheduleRequest, RouteChangeRequest
from database import DELIVERIES, DRIVERS, HELPERS, TRUCKS, find_by_id
from statuses import (
    AWAITING_CONFIRMATION,
    CANCELLED,
    COMPLETED,
    IN_PROGRESS,
    PAYMENT_CANCELLED,
    PAYMENT_PAID,
    PENDING,
    TRUCK_ALLOCATED,
    TRUCK_AVAILABLE,
)

ADMIN = {"_id": "admin", "role": "admin"}


@pytest.fixture
def booked(db, allocated_truck, make_driver, make_helper):
    client_id, truck_id = allocated_truck
    driver_id = make_driver()
    helper_id = make_helper()
    result = deliveries.book_delivery(db, client_doc(db, client_id), booking([truck_id]))
    delivery = result["deliveries"][0]
    return {"client_id": client_id, "truck_id": truck_id, "driver_id": driver_id,
            "helper_id": helper_id, "delivery_id": delivery["id"], "result": result}


def test_booking_assigns_driver_helper_and_truck(db, booked):
    delivery = find_by_id(db, DELIVERIES, booked["delivery_id"])
    assert delivery["deliveryStatus"] == PENDING
    assert delivery["paymentStatus"] == "pending"
    assert delivery["driverId"] == booked["driver_id"]
    assert delivery["helperId"] == booked["helper_id"]
    assert delivery["cargoWeight"] == 3
    assert delivery["deliveryDateString"] == (date.today() + timedelta(days=3)).isoformat()

    assert find_by_id(db, DRIVERS, booked["driver_id"])["driverStatus"] == "on-delivery"
    assert find_by_id(db, HELPERS, booked["helper_id"])["helperStatus"] == "on-delivery"
    truck = find_by_id(db, TRUCKS, booked["truck_id"])
    assert truck["currentDeliveryId"] == booked["delivery_id"]
    assert truck["activeDelivery"] is True
    assert truck["truckStatus"] == TRUCK_ALLOCATED


def test_booking_without_helper_waits_for_one(db, allocated_truck, make_driver):
    client_id, truck_id = allocated_truck
    make_driver()
    result = deliveries.book_delivery(db, client_doc(db, client_id), booking([truck_id]))
    assert result["deliveries"][0]["helperStatus"] == "awaiting_helper"
    assert result["deliveries"][0]["helperId"] is None


def test_booking_needs_lead_time(db, allocated_truck, make_driver):
    client_id, truck_id = allocated_truck
    make_driver()
    with pytest.raises(HTTPException) as exc:
        deliveries.book_delivery(db, client_doc(db, client_id), booking([truck_id], days_ahead=0))
    assert exc.value.status_code == 400


def test_booking_without_drivers(db, allocated_truck):
    client_id, truck_id = allocated_truck
    with pytest.raises(HTTPException) as exc:
        deliveries.book_delivery(db, client_doc(db, client_id), booking([truck_id]))
    assert exc.value.detail == "No drivers available"


def test_booking_requires_selected_trucks(db, make_client, make_driver):
    make_driver()
    with pytest.raises(HTTPException) as exc:
        deliveries.book_delivery(db, client_doc(db, make_client()), booking([]))
    assert exc.value.detail == "No trucks selected for booking"


def test_cannot_book_truck_of_another_client(db, allocated_truck, make_client, make_driver):
    _, truck_id = allocated_truck
    make_driver()
    with pytest.raises(HTTPException) as exc:
        deliveries.book_delivery(db, client_doc(db, make_client()), booking([truck_id]))
    assert exc.value.detail["failedBookings"][0]["reason"] == "Truck is not allocated to this client"


def test_class_c_driver_cannot_take_large_truck(db, make_client, make_truck, make_driver):
    client_id = make_client()
    truck_id = make_truck(capacity=10, truck_type="10 wheeler")
    allocations.allocate_trucks(db, client_id, [truck_id])
    make_driver("class c")
    with pytest.raises(HTTPException):
        deliveries.book_delivery(db, client_doc(db, client_id), booking([truck_id]))

    ce_driver = make_driver("class ce")
    result = deliveries.book_delivery(db, client_doc(db, client_id), booking([truck_id]))
    assert result["deliveries"][0]["driverId"] == ce_driver


def test_cargo_is_split_largest_truck_first(db, make_client, make_truck, make_driver):
    client_id = make_client()
    small = make_truck(capacity=3)
    large = make_truck(capacity=5)
    allocations.allocate_trucks(db, client_id, [small, large])
    make_driver()
    make_driver()
    result = deliveries.book_delivery(db, client_doc(db, client_id), booking([small, large], weight=7))
    cargo = {d["truckId"]: d["cargoWeight"] for d in result["deliveries"]}
    assert cargo == {large: 5, small: 2}
    assert result["totalCapacity"] == 8
    assert result["unassignedWeight"] == 0


def test_truck_cooldown(db, booked, make_driver):
    make_driver()
    with pytest.raises(HTTPException) as exc:
        deliveries.book_delivery(db, client_doc(db, booked["client_id"]), booking([booked["truck_id"]]))
    assert "within 12 hours" in exc.value.detail["failedBookings"][0]["reason"]

    result = deliveries.book_delivery(
        db, client_doc(db, booked["client_id"]), booking([booked["truck_id"]], days_ahead=5)
    )
    assert len(result["deliveries"]) == 1


def test_overdue_client_cannot_book(db, allocated_truck, make_driver):
    client_id, truck_id = allocated_truck
    make_driver()
    db[DELIVERIES].insert_one({
        "clientId": client_id,
        "deliveryStatus": COMPLETED,
        "deliveryDate": deliveries.utcnow() - timedelta(days=45),
        "deliveryRate": 1200,
        "paymentStatus": "pending",
    })
    with pytest.raises(HTTPException) as exc:
        deliveries.book_delivery(db, client_doc(db, client_id), booking([truck_id]))
    assert exc.value.status_code == 403


def test_full_lifecycle_releases_resources(db, booked):
    delivery_id = booked["delivery_id"]
    deliveries.update_delivery_status(db, delivery_id, "started", ADMIN)
    after = deliveries.update_delivery_status(db, delivery_id, "delivered", ADMIN)
    assert after["deliveryStatus"] == AWAITING_CONFIRMATION
    # still held while waiting for the client
    assert find_by_id(db, DRIVERS, booked["driver_id"])["driverStatus"] == "on-delivery"

    done = deliveries.confirm_delivery(db, client_doc(db, booked["client_id"]), delivery_id)
    assert done["deliveryStatus"] == COMPLETED
    assert done["clientConfirmation"] is True

    driver = find_by_id(db, DRIVERS, booked["driver_id"])
    assert driver["driverStatus"] == "active"
    assert driver["currentDeliveryId"] is None
    assert find_by_id(db, HELPERS, booked["helper_id"])["helperStatus"] == "active"
    truck = find_by_id(db, TRUCKS, booked["truck_id"])
    assert truck["truckStatus"] == TRUCK_ALLOCATED
    assert truck["activeDelivery"] is False
    assert truck["totalCompletedDeliveries"] == 1


def test_confirm_requires_awaiting_confirmation(db, booked):
    with pytest.raises(HTTPException) as exc:
        deliveries.confirm_delivery(db, client_doc(db, booked["client_id"]), booked["delivery_id"])
    assert exc.value.status_code == 400


def test_other_client_cannot_touch_delivery(db, booked, make_client):
    stranger = client_doc(db, make_client())
    with pytest.raises(HTTPException) as exc:
        deliveries.cancel_delivery(db, stranger, booked["delivery_id"])
    assert exc.value.status_code == 403


def test_client_cancel_releases_and_cancels_payment(db, booked):
    cancelled = deliveries.cancel_delivery(db, client_doc(db, booked["client_id"]), booked["delivery_id"], "changed plans")
    assert cancelled["deliveryStatus"] == CANCELLED
    assert cancelled["paymentStatus"] == PAYMENT_CANCELLED
    assert cancelled["cancelledBy"] == "client"
    assert find_by_id(db, DRIVERS, booked["driver_id"])["driverStatus"] == "active"


def test_client_cannot_cancel_started_delivery(db, booked):
    deliveries.update_delivery_status(db, booked["delivery_id"], IN_PROGRESS, ADMIN)
    with pytest.raises(HTTPException) as exc:
        deliveries.cancel_delivery(db, client_doc(db, booked["client_id"]), booked["delivery_id"])
    assert exc.value.detail == "Only pending deliveries can be cancelled"


def test_paid_payment_survives_cancellation(db, booked):
    deliveries.update_delivery_status(db, booked["delivery_id"], IN_PROGRESS, ADMIN)
    db[DELIVERIES].update_one({"_id": find_by_id(db, DELIVERIES, booked["delivery_id"])["_id"]},
                              {"$set": {"paymentStatus": PAYMENT_PAID}})
    cancelled = deliveries.update_delivery_status(db, booked["delivery_id"], CANCELLED, ADMIN, "truck broke down")
    assert cancelled["paymentStatus"] == PAYMENT_PAID


def test_released_truck_without_allocation_becomes_available(db, booked):
    deliveries.update_delivery_status(db, booked["delivery_id"], IN_PROGRESS, ADMIN)
    allocation = allocations.active_allocation_for_truck(db, booked["truck_id"])
    # simulate drift: allocation ended behind the delivery's back
    db["allocations"].update_one({"_id": allocation["_id"]}, {"$set": {"status": "returned"}})
    deliveries.update_delivery_status(db, booked["delivery_id"], COMPLETED, ADMIN)
    assert find_by_id(db, TRUCKS, booked["truck_id"])["truckStatus"] == TRUCK_AVAILABLE


def test_terminal_status_cannot_change(db, booked):
    deliveries.update_delivery_status(db, booked["delivery_id"], CANCELLED, ADMIN)
    with pytest.raises(HTTPException) as exc:
        deliveries.update_delivery_status(db, booked["delivery_id"], IN_PROGRESS, ADMIN)
    assert exc.value.status_code == 400


def test_driver_updates_only_own_delivery(db, booked, make_driver):
    driver = find_by_id(db, DRIVERS, booked["driver_id"])
    own = {"_id": driver["userId"], "role": "driver"}
    assert deliveries.update_delivery_status(db, booked["delivery_id"], "picked-up", own)["deliveryStatus"] == IN_PROGRESS

    with pytest.raises(HTTPException) as exc:
        deliveries.update_delivery_status(db, booked["delivery_id"], COMPLETED, own)
    assert exc.value.status_code == 403

    other = find_by_id(db, DRIVERS, make_driver())
    with pytest.raises(HTTPException) as exc:
        deliveries.update_delivery_status(db, booked["delivery_id"], "delivered", {"_id": other["userId"], "role": "driver"})
    assert exc.value.status_code == 403


def test_deallocation_blocked_by_open_delivery(db, booked):
    with pytest.raises(HTTPException) as exc:
        allocations.deallocate_truck(db, booked["client_id"], booked["truck_id"])
    assert exc.value.status_code == 400


def test_availability_calendar(db, booked):
    booked_day = date.today() + timedelta(days=3)
    dates = deliveries.booked_dates_for_truck(db, booked["client_id"], booked["truck_id"])
    assert dates["bookedDates"] == [booked_day.isoformat()]

    assert deliveries.available_trucks_for_date(db, booked["client_id"], booked_day)["availableTrucks"] == []
    free = deliveries.available_trucks_for_date(db, booked["client_id"], booked_day + timedelta(days=1))
    assert [t["id"] for t in free["availableTrucks"]] == [booked["truck_id"]]


def test_calendar_of_foreign_truck_is_forbidden(db, booked, make_client):
    with pytest.raises(HTTPException) as exc:
        deliveries.booked_dates_for_truck(db, make_client(), booked["truck_id"])
    assert exc.value.status_code == 403


def test_list_deliveries_filters(db, booked):
    assert len(deliveries.list_deliveries(db, status="pending")) == 1
    assert deliveries.list_deliveries(db, status="completed") == []
    assert len(deliveries.list_deliveries(db, driver_id=booked["driver_id"])) == 1
    assert len(deliveries.list_deliveries(db, client_id=booked["client_id"])) == 1


def test_booking_times_are_read_in_business_timezone(monkeypatch):
    monkeypatch.setattr(deliveries, "BUSINESS_TIMEZONE", "Asia/Manila")
    assert deliveries.booking_datetime(date(2024, 6, 1), time(9, 0)) == datetime(2024, 6, 1, 1, 0)
    manila = timezone(timedelta(hours=8))
    assert deliveries.booking_datetime(date(2024, 6, 1), time(9, 0, tzinfo=manila)) == datetime(2024, 6, 1, 1, 0)
    assert deliveries.booking_datetime(date(2024, 6, 1), time(9, 0, tzinfo=timezone.utc)) == datetime(2024, 6, 1, 9, 0)
    # 20:00 UTC is already the next morning in Manila
    assert deliveries.business_date(datetime(2024, 6, 1, 20, 0)) == "2024-06-02"


def test_booking_with_offset_time(db, allocated_truck, make_driver):
    client_id, truck_id = allocated_truck
    make_driver()
    at = time(9, 0, tzinfo=timezone(timedelta(hours=8)))
    result = deliveries.book_delivery(db, client_doc(db, client_id), booking([truck_id], deliveryTime=at))
    assert len(result["deliveries"]) == 1


def test_lost_driver_claim_is_reported(db, allocated_truck, make_driver, make_helper, monkeypatch):
    client_id, truck_id = allocated_truck
    make_driver()
    helper_id = make_helper()
    pick = deliveries._pick_driver

    def pick_then_lose(drivers, truck_type):
        driver = pick(drivers, truck_type)
        # another booking takes the driver between the read and the claim
        db[DRIVERS].update_one({"_id": driver["_id"]}, {"$set": {"driverStatus": "inactive"}})
        return driver

    monkeypatch.setattr(deliveries, "_pick_driver", pick_then_lose)
    with pytest.raises(HTTPException) as exc:
        deliveries.book_delivery(db, client_doc(db, client_id), booking([truck_id]))
    assert exc.value.detail["failedBookings"] == [
        {"truckId": truck_id, "reason": "Driver was assigned to another delivery"}
    ]
    assert find_by_id(db, HELPERS, helper_id)["helperStatus"] == "active"
    assert db[DELIVERIES].count_documents({}) == 0


def test_failed_insert_releases_claimed_crew(db, allocated_truck, make_driver, make_helper, monkeypatch):
    client_id, truck_id = allocated_truck
    driver_id = make_driver()
    helper_id = make_helper()

    def broken_pricing(*args, **kwargs):
        raise RuntimeError("rate lookup failed")

    monkeypatch.setattr(deliveries, "calculate_delivery_cost", broken_pricing)
    with pytest.raises(RuntimeError):
        deliveries.book_delivery(db, client_doc(db, client_id), booking([truck_id]))

    driver = find_by_id(db, DRIVERS, driver_id)
    assert driver["driverStatus"] == "active"
    assert driver["currentDeliveryId"] is None
    helper = find_by_id(db, HELPERS, helper_id)
    assert helper["helperStatus"] == "active"
    assert helper["currentDeliveryId"] is None
    assert db[DELIVERIES].count_documents({}) == 0
    assert find_by_id(db, TRUCKS, truck_id).get("activeDelivery") is not True


def reschedule(days_ahead, at=time(9, 0)):
    return RescheduleRequest(deliveryDate=date.today() + timedelta(days=days_ahead), deliveryTime=at)


def test_reschedule_pending_delivery(db, booked):
    client = client_doc(db, booked["client_id"])
    before = find_by_id(db, DELIVERIES, booked["delivery_id"])
    moved = deliveries.reschedule_delivery(db, client, booked["delivery_id"], reschedule(6))
    assert moved["deliveryDateString"] == (date.today() + timedelta(days=6)).isoformat()
    assert moved["previousDeliveryDate"] == before["deliveryDate"]
    assert moved["driverId"] == booked["driver_id"]

    # moving within its own cooldown window does not clash with itself
    later = deliveries.reschedule_delivery(db, client, booked["delivery_id"], reschedule(6, time(11, 0)))
    assert later["deliveryDate"] - moved["deliveryDate"] == timedelta(hours=2)


def test_reschedule_checks_lead_time_and_cooldown(db, booked, make_driver):
    client = client_doc(db, booked["client_id"])
    with pytest.raises(HTTPException) as exc:
        deliveries.reschedule_delivery(db, client, booked["delivery_id"], reschedule(0))
    assert "24 hours in advance" in exc.value.detail

    make_driver()
    deliveries.book_delivery(db, client, booking([booked["truck_id"]], days_ahead=5))
    with pytest.raises(HTTPException) as exc:
        deliveries.reschedule_delivery(db, client, booked["delivery_id"], reschedule(5, time(14, 0)))
    assert "within 12 hours" in exc.value.detail


def test_started_delivery_cannot_be_rescheduled(db, booked):
    deliveries.update_delivery_status(db, booked["delivery_id"], IN_PROGRESS, ADMIN)
    with pytest.raises(HTTPException) as exc:
        deliveries.reschedule_delivery(db, client_doc(db, booked["client_id"]), booked["delivery_id"], reschedule(6))
    assert exc.value.detail == "Only pending deliveries can be rescheduled"


def new_route():
    return RouteChangeRequest(
        pickupLocation="Warehouse 9, Taguig City",
        dropoffLocation="Harbor Center, Tondo",
        deliveryDistance=40,
        estimatedDuration=90,
    )


def test_change_route_recomputes_cost(db, booked):
    changed = deliveries.change_route(db, client_doc(db, booked["client_id"]), booked["delivery_id"], new_route())
    assert changed["pickupLocation"] == "Warehouse 9, Taguig City"
    assert changed["pickupCoordinates"] is None
    assert changed["deliveryDistance"] == 40
    assert changed["estimatedDuration"] == 90
    # no rate configured: 2 per km plus 10 per tonne of cargo
    assert changed["deliveryRate"] == 40 * 2 + 3 * 10


def test_change_route_only_while_pending(db, booked):
    deliveries.update_delivery_status(db, booked["delivery_id"], IN_PROGRESS, ADMIN)
    with pytest.raises(HTTPException) as exc:
        deliveries.change_route(db, client_doc(db, booked["client_id"]), booked["delivery_id"], new_route())
    assert exc.value.detail == "Only pending deliveries can change route"
