"""Counts for the admin dashboard."""
from database import ALLOCATIONS, CLIENTS, DELIVERIES, DRIVERS, HELPERS, TRUCKS
from statuses import (
    ACTIVE_DELIVERY_STATUSES,
    ALLOCATION_ACTIVE,
    COMPLETED,
    PAYMENT_PAID,
    delivery_status,
    legacy_name,
)


def _group_by(db, collection: str, field: str):
    # legacy documents only carry the TitleCase spelling
    legacy = legacy_name(field)
    return list(db[collection].aggregate([
        {"$group": {"_id": {"$toLower": {"$ifNull": [f"${field}", f"${legacy}"]}}, "count": {"$sum": 1}}},
        {"$sort": {"_id": 1}},
    ]))


def fleet_stats(db):
    return {
        "total": db[TRUCKS].count_documents({}),
        "byStatus": _group_by(db, TRUCKS, "truckStatus"),
        "byType": list(db[TRUCKS].aggregate([
            {"$group": {"_id": "$truckType", "count": {"$sum": 1}}},
            {"$sort": {"_id": 1}},
        ])),
    }


def delivery_stats(db):
    by_status = {}
    revenue = 0.0
    for d in db[DELIVERIES].find({}, {"deliveryStatus": 1, "DeliveryStatus": 1, "status": 1,
                                      "deliveryRate": 1, "paymentStatus": 1}):
        status = delivery_status(d)
        by_status[status] = by_status.get(status, 0) + 1
        if d.get("paymentStatus") == PAYMENT_PAID:
            revenue += float(d.get("deliveryRate") or 0)
    return {
        "total": sum(by_status.values()),
        "byStatus": [{"_id": k, "count": v} for k, v in sorted(by_status.items())],
        "paidRevenue": round(revenue, 2),
    }


def dashboard(db):
    deliveries = delivery_stats(db)
    counts = {row["_id"]: row["count"] for row in deliveries["byStatus"]}
    return {
        "trucks": db[TRUCKS].count_documents({}),
        "drivers": db[DRIVERS].count_documents({}),
        "helpers": db[HELPERS].count_documents({}),
        "clients": db[CLIENTS].count_documents({}),
        "activeAllocations": db[ALLOCATIONS].count_documents({"status": ALLOCATION_ACTIVE}),
        "activeDeliveries": sum(counts.get(s, 0) for s in ACTIVE_DELIVERY_STATUSES),
        "completedDeliveries": counts.get(COMPLETED, 0),
        "paidRevenue": deliveries["paidRevenue"],
    }
