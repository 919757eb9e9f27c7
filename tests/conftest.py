from datetime import date, time, timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

import allocations
import fleet
import personnel
from database import CLIENTS, USERS, find_by_id, get_db
from main import app
from schemas import BookingRequest, ClientCreate, DriverCreate, HelperCreate, TruckCreate
from security import token_for_user


@pytest.fixture
def db():
    return mongomock.MongoClient().fleetdesk_test


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


def headers_for(db, user_id):
    user = find_by_id(db, USERS, user_id)
    return {"Authorization": f"Bearer {token_for_user(user)}"}


@pytest.fixture
def admin_headers(db):
    user_id = personnel.create_account(db, "admin", "admin123", "admin")
    return headers_for(db, user_id)


@pytest.fixture
def make_truck(db):
    counter = {"n": 0}

    def _make(capacity=5, truck_type="mini truck"):
        counter["n"] += 1
        payload = TruckCreate(truckPlate=f"ABC-{counter['n']:03d}", truckType=truck_type, truckCapacity=capacity)
        return fleet.create_truck(db, payload)

    return _make


@pytest.fixture
def make_client(db):
    counter = {"n": 0}

    def _make(name="Acme Hauling"):
        counter["n"] += 1
        payload = ClientCreate(clientName=name, username=f"client{counter['n']}", password="secret123")
        return personnel.create_client(db, payload)

    return _make


@pytest.fixture
def make_driver(db):
    counter = {"n": 0}

    def _make(license_type="class c"):
        counter["n"] += 1
        payload = DriverCreate(
            driverName=f"Driver {counter['n']}",
            licenseType=license_type,
            username=f"driver{counter['n']}",
            password="secret123",
        )
        return personnel.create_driver(db, payload)

    return _make


@pytest.fixture
def make_helper(db):
    counter = {"n": 0}

    def _make():
        counter["n"] += 1
        payload = HelperCreate(helperName=f"Helper {counter['n']}", username=f"helper{counter['n']}", password="secret123")
        return personnel.create_helper(db, payload)

    return _make


@pytest.fixture
def allocated_truck(db, make_client, make_truck):
    """A client with one 5 t mini truck allocated to it."""
    client_id = make_client()
    truck_id = make_truck()
    allocations.allocate_trucks(db, client_id, [truck_id])
    return client_id, truck_id


def client_doc(db, client_id):
    return find_by_id(db, CLIENTS, client_id)


def booking(truck_ids, weight=3, days_ahead=3, **overrides):
    data = {
        "selectedTrucks": truck_ids,
        "pickupLocation": "Warehouse 7, Pasig City",
        "pickupCoordinates": {"lat": 14.5764, "lng": 121.0851},
        "dropoffLocation": "Port Area, Manila",
        "dropoffCoordinates": {"lat": 14.5869, "lng": 120.9675},
        "weight": weight,
        "deliveryDate": date.today() + timedelta(days=days_ahead),
        "deliveryTime": time(9, 0),
        "pickupContactNumber": "09171234567",
        "dropoffContactNumber": "09181234567",
    }
    data.update(overrides)
    return BookingRequest(**data)
