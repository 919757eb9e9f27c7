"""
Payment state of deliveries.

There is no separate payments collection: each delivery carries its own
paymentStatus and the amount owed is its deliveryRate. Overdue is derived
from the due date when a summary is built and is never written back.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from pymongo import ReturnDocument

from config import PAYMENT_DUE_DAYS
from database import DELIVERIES, find_by_id, touch, utcnow
from errors import BadRequestError, NotFoundError
from statuses import (
    CANCELLED,
    PAYMENT_CANCELLED,
    PAYMENT_OVERDUE,
    PAYMENT_PAID,
    PAYMENT_PENDING,
    PAYMENT_PENDING_VERIFICATION,
    delivery_status,
)

logger = logging.getLogger(__name__)


def _as_datetime(value) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None


def payment_status(delivery: dict, now: datetime) -> str:
    stored = (delivery.get("paymentStatus") or PAYMENT_PENDING).lower()
    if stored in (PAYMENT_PAID, PAYMENT_PENDING_VERIFICATION, PAYMENT_CANCELLED):
        return stored
    due = due_date(delivery)
    if due and due < now:
        return PAYMENT_OVERDUE
    return PAYMENT_PENDING


def due_date(delivery: dict) -> Optional[datetime]:
    delivered_on = _as_datetime(delivery.get("deliveryDate")) or _as_datetime(delivery.get("created_at"))
    if not delivered_on:
        return None
    return delivered_on + timedelta(days=PAYMENT_DUE_DAYS)


def client_payment_summary(db, client_id: str, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    payments = []
    totals = {"totalAmount": 0.0, "paidAmount": 0.0, "pendingAmount": 0.0, "overdueAmount": 0.0}
    for delivery in db[DELIVERIES].find({"clientId": client_id}).sort("deliveryDate", -1):
        if delivery_status(delivery) == CANCELLED:
            continue
        status = payment_status(delivery, now)
        if status == PAYMENT_CANCELLED:
            continue
        amount = float(delivery.get("deliveryRate") or 0)
        totals["totalAmount"] += amount
        if status == PAYMENT_PAID:
            totals["paidAmount"] += amount
        elif status == PAYMENT_OVERDUE:
            totals["overdueAmount"] += amount
        else:
            totals["pendingAmount"] += amount
        payments.append({
            "deliveryId": str(delivery["_id"]),
            "truckPlate": delivery.get("truckPlate"),
            "deliveryDate": delivery.get("deliveryDate"),
            "dueDate": due_date(delivery),
            "amount": amount,
            "status": status,
        })
    overdue = [p for p in payments if p["status"] == PAYMENT_OVERDUE]
    return {
        "clientId": client_id,
        "payments": payments,
        "summary": {
            **{k: round(v, 2) for k, v in totals.items()},
            "overdueCount": len(overdue),
        },
        "canBookTrucks": not overdue,
    }


def can_client_book(db, client_id: str, now: Optional[datetime] = None) -> bool:
    return client_payment_summary(db, client_id, now)["canBookTrucks"]


def mark_payment(db, delivery_id: str, status: str) -> dict:
    delivery = find_by_id(db, DELIVERIES, delivery_id)
    if not delivery:
        raise NotFoundError("Delivery not found")
    if delivery_status(delivery) == CANCELLED or delivery.get("paymentStatus") == PAYMENT_CANCELLED:
        raise BadRequestError("Cannot update payment of a cancelled delivery")
    update = {"paymentStatus": status}
    if status == PAYMENT_PAID:
        update["paidAt"] = utcnow()
    db[DELIVERIES].update_one({"_id": delivery["_id"]}, {"$set": touch(update)})
    logger.info("Payment for delivery %s marked %s", delivery_id, status)
    return {"success": True, "deliveryId": delivery_id, "paymentStatus": status}


def cancel_payment(db, delivery_id: str) -> dict:
    delivery = find_by_id(db, DELIVERIES, delivery_id)
    if not delivery:
        raise NotFoundError("Delivery not found")
    updated = db[DELIVERIES].find_one_and_update(
        {"_id": delivery["_id"], "paymentStatus": {"$ne": PAYMENT_PAID}},
        {"$set": touch({"paymentStatus": PAYMENT_CANCELLED, "paymentCancelledAt": utcnow()})},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        logger.warning("Payment for delivery %s is already paid, left untouched", delivery_id)
        return {"success": False, "deliveryId": delivery_id, "paymentStatus": PAYMENT_PAID,
                "message": "Payment already received"}
    logger.info("Payment for delivery %s cancelled", delivery_id)
    return {"success": True, "deliveryId": delivery_id, "paymentStatus": PAYMENT_CANCELLED}
