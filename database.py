"""
Database helpers for FleetDesk

Each collection holds plain documents; references between documents are
stored as string ids (truckId, clientId, driverId, helperId, userId).
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException
from pymongo import ASCENDING, MongoClient

from config import DATABASE_NAME, DATABASE_URL

logger = logging.getLogger(__name__)

USERS = "users"
CLIENTS = "clients"
TRUCKS = "trucks"
DRIVERS = "drivers"
HELPERS = "helpers"
ALLOCATIONS = "allocations"
DELIVERIES = "deliveries"
VEHICLE_RATES = "vehicle_rates"
AUDIT_LOGS = "audit_logs"

_client = None
db = None

if DATABASE_URL:
    try:
        _client = MongoClient(DATABASE_URL)
        db = _client[DATABASE_NAME]
    except Exception:
        logger.exception("Could not connect to %s", DATABASE_NAME)
        db = None


def utcnow() -> datetime:
    # pymongo hands back naive UTC datetimes, so everything stays naive
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_db():
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=400, detail="Invalid id")


def find_by_id(database, collection: str, id_str: str) -> Optional[dict]:
    """Look up a document by its string id; malformed ids simply don't match."""
    if not id_str or not ObjectId.is_valid(id_str):
        return None
    return database[collection].find_one({"_id": ObjectId(id_str)})


def serialize(doc):
    if doc is None:
        return None
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    d.pop("password", None)
    return d


def create_document(database, collection_name: str, data) -> str:
    payload = data.model_dump() if hasattr(data, "model_dump") else dict(data)
    now = utcnow()
    payload["created_at"] = now
    payload["updated_at"] = now
    result = database[collection_name].insert_one(payload)
    return str(result.inserted_id)


def get_documents(database, collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None):
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return [serialize(d) for d in cursor]


def touch(update: dict) -> dict:
    """Add updated_at to a $set payload."""
    return {**update, "updated_at": utcnow()}


def ensure_indexes(database):
    database[USERS].create_index([("username", ASCENDING)], unique=True)
    database[TRUCKS].create_index([("truckPlate", ASCENDING)], unique=True)
    database[ALLOCATIONS].create_index(
        [("truckId", ASCENDING)],
        unique=True,
        partialFilterExpression={"status": "active"},
        name="one_active_allocation_per_truck",
    )
    database[ALLOCATIONS].create_index([("clientId", ASCENDING), ("status", ASCENDING)])
    database[DELIVERIES].create_index([("truckId", ASCENDING), ("deliveryStatus", ASCENDING)])
    database[DELIVERIES].create_index([("clientId", ASCENDING)])
    database[VEHICLE_RATES].create_index([("vehicleType", ASCENDING)], unique=True)
    database[AUDIT_LOGS].create_index([("created_at", ASCENDING)])
