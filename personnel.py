"""
Back-office accounts, drivers, helpers and clients.

Every profile is backed by a login in the users collection; the profile
points at it through userId and the two are created and deleted together.
"""
import logging

from pymongo.errors import DuplicateKeyError

from availability import PERSONNEL_COLLECTIONS, open_deliveries
from database import ALLOCATIONS, CLIENTS, USERS, create_document, find_by_id, oid, serialize, touch
from errors import BadRequestError, NotFoundError
from security import get_password_hash, verify_password
from statuses import (
    ALLOCATION_ACTIVE,
    PERSON_ACTIVE,
    PERSON_INACTIVE,
    PERSON_ON_DELIVERY,
    PERSON_STATUS_FIELDS,
    personnel_status,
)

logger = logging.getLogger(__name__)

KIND_LABELS = {"driver": "Driver", "helper": "Helper"}


def create_account(db, username: str, password: str, role: str, status: str = "active") -> str:
    if db[USERS].find_one({"username": username}):
        raise BadRequestError("Username already exists")
    try:
        user_id = create_document(db, USERS, {
            "username": username,
            "password": get_password_hash(password),
            "role": role,
            "status": status,
        })
    except DuplicateKeyError:
        raise BadRequestError("Username already exists")
    logger.info("Created %s account %s", role, username)
    return user_id


# Back-office accounts

BACK_OFFICE_ROLES = ("admin", "staff")


def list_users(db, role=None):
    q = {"role": role} if role else {}
    return [serialize(u) for u in db[USERS].find(q).sort("username", 1)]


def get_user(db, user_id: str) -> dict:
    user = find_by_id(db, USERS, user_id)
    if not user:
        raise NotFoundError("User not found")
    return user


def create_user(db, payload) -> str:
    return create_account(db, payload.username, payload.password, payload.role)


def _other_active_admins(db, user: dict) -> int:
    return db[USERS].count_documents({"role": "admin", "status": "active", "_id": {"$ne": user["_id"]}})


def update_user(db, user_id: str, payload) -> dict:
    user = get_user(db, user_id)
    if user.get("role") not in BACK_OFFICE_ROLES:
        raise BadRequestError("Driver, helper and client accounts are managed through their profiles")
    data = payload.model_dump(exclude_none=True)
    losing_admin = user.get("role") == "admin" and (
        data.get("role", "admin") != "admin" or data.get("status", "active") != "active"
    )
    if losing_admin and not _other_active_admins(db, user):
        raise BadRequestError("Cannot demote or deactivate the last active admin")
    if "password" in data:
        data["password"] = get_password_hash(data["password"])
    if data:
        db[USERS].update_one({"_id": user["_id"]}, {"$set": touch(data)})
        logger.info("Updated account %s: %s", user["username"], sorted(k for k in data if k != "password"))
    return serialize(db[USERS].find_one({"_id": user["_id"]}))


def delete_user(db, user_id: str, actor: dict):
    user = get_user(db, user_id)
    if user.get("role") not in BACK_OFFICE_ROLES:
        raise BadRequestError("Driver, helper and client accounts are managed through their profiles")
    if user["_id"] == actor.get("_id"):
        raise BadRequestError("You cannot delete your own account")
    if user.get("role") == "admin" and not _other_active_admins(db, user):
        raise BadRequestError("Cannot delete the last active admin")
    db[USERS].delete_one({"_id": user["_id"]})
    logger.info("Deleted %s account %s", user.get("role"), user["username"])


def _create_profile(db, collection: str, role: str, payload, extra: dict) -> str:
    data = payload.model_dump(mode="json")
    username = data.pop("username")
    password = data.pop("password")
    user_id = create_account(db, username, password, role)
    data.update(extra)
    data.update({"userId": user_id, "username": username})
    return create_document(db, collection, data)


def create_driver(db, payload) -> str:
    return _create_profile(db, PERSONNEL_COLLECTIONS["driver"], "driver", payload, {
        "driverStatus": PERSON_ACTIVE,
        "currentDeliveryId": None,
    })


def create_helper(db, payload) -> str:
    return _create_profile(db, PERSONNEL_COLLECTIONS["helper"], "helper", payload, {
        "helperStatus": PERSON_ACTIVE,
        "currentDeliveryId": None,
    })


def create_client(db, payload) -> str:
    return _create_profile(db, CLIENTS, "client", payload, {"clientStatus": "active"})


def get_personnel(db, kind: str, person_id: str) -> dict:
    person = find_by_id(db, PERSONNEL_COLLECTIONS[kind], person_id)
    if not person:
        raise NotFoundError(f"{KIND_LABELS[kind]} not found")
    return person


def update_personnel(db, kind: str, person_id: str, payload) -> dict:
    person = get_personnel(db, kind, person_id)
    data = payload.model_dump(mode="json", exclude_none=True)
    field = PERSON_STATUS_FIELDS[kind]
    new_status = data.get(field)
    if new_status == PERSON_ON_DELIVERY:
        raise BadRequestError("on-delivery is set by bookings, not by hand")
    if new_status == PERSON_INACTIVE and personnel_status(person, kind) == PERSON_ON_DELIVERY:
        raise BadRequestError(f"{KIND_LABELS[kind]} is on a delivery")
    if new_status == PERSON_ACTIVE and personnel_status(person, kind) == PERSON_ON_DELIVERY:
        # stays on-delivery until the delivery ends
        data.pop(field)
    coll = PERSONNEL_COLLECTIONS[kind]
    if data:
        db[coll].update_one({"_id": person["_id"]}, {"$set": touch(data)})
        if field in data and person.get("userId"):
            db[USERS].update_one(
                {"_id": oid(person["userId"])},
                {"$set": touch({"status": "inactive" if data[field] == PERSON_INACTIVE else "active"})},
            )
    return serialize(db[coll].find_one({"_id": person["_id"]}))


def _delete_user(db, user_id):
    if user_id:
        db[USERS].delete_one({"_id": oid(user_id)})


def delete_personnel(db, kind: str, person_id: str):
    person = get_personnel(db, kind, person_id)
    if personnel_status(person, kind) == PERSON_ON_DELIVERY or open_deliveries(db, **{f"{kind}Id": person_id}):
        raise BadRequestError(f"{KIND_LABELS[kind]} is on a delivery")
    db[PERSONNEL_COLLECTIONS[kind]].delete_one({"_id": person["_id"]})
    _delete_user(db, person.get("userId"))
    logger.info("Deleted %s %s", kind, person_id)


def get_client(db, client_id: str) -> dict:
    client = find_by_id(db, CLIENTS, client_id)
    if not client:
        raise NotFoundError("Client not found")
    return client


def update_client(db, client_id: str, payload) -> dict:
    client = get_client(db, client_id)
    data = payload.model_dump(mode="json", exclude_none=True)
    if data:
        db[CLIENTS].update_one({"_id": client["_id"]}, {"$set": touch(data)})
        if "clientStatus" in data and client.get("userId"):
            db[USERS].update_one({"_id": oid(client["userId"])}, {"$set": touch({"status": data["clientStatus"]})})
    return serialize(db[CLIENTS].find_one({"_id": client["_id"]}))


def delete_client(db, client_id: str):
    client = get_client(db, client_id)
    if db[ALLOCATIONS].find_one({"clientId": client_id, "status": ALLOCATION_ACTIVE}):
        raise BadRequestError("Client still has allocated trucks")
    if open_deliveries(db, clientId=client_id):
        raise BadRequestError("Client has active deliveries")
    db[CLIENTS].delete_one({"_id": client["_id"]})
    _delete_user(db, client.get("userId"))
    logger.info("Deleted client %s", client_id)


def update_client_profile(db, client: dict, payload) -> dict:
    """Contact details a client may edit on their own profile."""
    data = payload.model_dump(mode="json", exclude_none=True)
    if data:
        db[CLIENTS].update_one({"_id": client["_id"]}, {"$set": touch(data)})
    return serialize(db[CLIENTS].find_one({"_id": client["_id"]}))


def change_password(db, user: dict, current_password: str, new_password: str):
    if not verify_password(current_password, user.get("password", "")):
        logger.warning("Password change refused for %s: wrong current password", user.get("username"))
        raise BadRequestError("Current password is incorrect")
    db[USERS].update_one({"_id": user["_id"]}, {"$set": touch({"password": get_password_hash(new_password)})})
    logger.info("Password changed for %s", user.get("username"))
