import logging
import math
from typing import Optional

from database import VEHICLE_RATES, serialize, touch, utcnow

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371
AVERAGE_SPEED_KMH = 60


def haversine_km(a: dict, b: dict) -> float:
    d_lat = math.radians(b["lat"] - a["lat"])
    d_lng = math.radians(b["lng"] - a["lng"])
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(a["lat"])) * math.cos(math.radians(b["lat"])) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def estimate_route(pickup: Optional[dict], dropoff: Optional[dict],
                   distance: Optional[float] = None, duration: Optional[float] = None):
    """Distance in km and duration in minutes.

    Values measured by the caller's routing win; otherwise fall back to the
    great-circle distance at an average road speed.
    """
    if distance and duration:
        return round(distance), round(duration)
    if pickup and dropoff:
        km = round(haversine_km(pickup, dropoff))
    else:
        km = round(distance or 0)
    return km, round(km * 60 / AVERAGE_SPEED_KMH)


def calculate_delivery_cost(db, vehicle_type: str, distance: float, cargo_weight: float = 0):
    rate = db[VEHICLE_RATES].find_one({"vehicleType": (vehicle_type or "").lower()})
    if not rate:
        logger.warning("No rate configured for %r, using fallback pricing", vehicle_type)
        return {
            "vehicleType": vehicle_type,
            "baseRate": 0,
            "ratePerKm": 0,
            "totalCost": round(distance * 2 + cargo_weight * 10),
        }
    base_rate = float(rate.get("baseRate") or 0)
    per_km = float(rate.get("ratePerKm") or 0)
    return {
        "vehicleType": vehicle_type,
        "baseRate": base_rate,
        "ratePerKm": per_km,
        "totalCost": round(base_rate + per_km * distance),
    }


def distribute_cargo(trucks, weight: float):
    """Greedy split of the cargo, largest truck first.

    `trucks` is a list of (truck_id, capacity). Returns the per-truck
    assignment and whatever weight did not fit.
    """
    remaining = weight
    distribution = {}
    for truck_id, capacity in sorted(trucks, key=lambda t: t[1], reverse=True):
        assigned = min(remaining, capacity)
        distribution[truck_id] = assigned
        remaining -= assigned
    return distribution, max(remaining, 0)


def list_rates(db):
    return [serialize(r) for r in db[VEHICLE_RATES].find().sort("vehicleType", 1)]


def upsert_rate(db, payload) -> dict:
    data = payload.model_dump()
    data["vehicleType"] = data["vehicleType"].strip().lower()
    db[VEHICLE_RATES].update_one(
        {"vehicleType": data["vehicleType"]},
        {"$set": touch(data), "$setOnInsert": {"created_at": utcnow()}},
        upsert=True,
    )
    return serialize(db[VEHICLE_RATES].find_one({"vehicleType": data["vehicleType"]}))
