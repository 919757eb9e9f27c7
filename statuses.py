"""
Status vocabulary shared by trucks, personnel, allocations and deliveries.

Older documents spell status fields in TitleCase (TruckStatus, DriverStatus,
...) and use inconsistent casing for the values. Readers here accept both;
writers elsewhere only ever use the canonical camelCase field.
"""
from errors import BadRequestError

# Trucks
TRUCK_AVAILABLE = "available"
TRUCK_ALLOCATED = "allocated"
TRUCK_MAINTENANCE = "maintenance"
TRUCK_STATUSES = (TRUCK_AVAILABLE, TRUCK_ALLOCATED, TRUCK_MAINTENANCE)

# Drivers and helpers
PERSON_ACTIVE = "active"
PERSON_ON_DELIVERY = "on-delivery"
PERSON_INACTIVE = "inactive"
PERSON_STATUSES = (PERSON_ACTIVE, PERSON_ON_DELIVERY, PERSON_INACTIVE)

# Allocations
ALLOCATION_ACTIVE = "active"
ALLOCATION_RETURNED = "returned"

# Deliveries
PENDING = "pending"
IN_PROGRESS = "in-progress"
AWAITING_CONFIRMATION = "awaiting-confirmation"
COMPLETED = "completed"
CANCELLED = "cancelled"
DELIVERY_STATUSES = (PENDING, IN_PROGRESS, AWAITING_CONFIRMATION, COMPLETED, CANCELLED)
ACTIVE_DELIVERY_STATUSES = (PENDING, IN_PROGRESS, AWAITING_CONFIRMATION)
TERMINAL_DELIVERY_STATUSES = (COMPLETED, CANCELLED)

# Payments (stored on the delivery)
PAYMENT_PENDING = "pending"
PAYMENT_PENDING_VERIFICATION = "pending_verification"
PAYMENT_PAID = "paid"
PAYMENT_CANCELLED = "cancelled"
PAYMENT_OVERDUE = "overdue"  # computed, never stored

DELIVERY_TRANSITIONS = {
    PENDING: (IN_PROGRESS, CANCELLED),
    IN_PROGRESS: (AWAITING_CONFIRMATION, COMPLETED, CANCELLED),
    AWAITING_CONFIRMATION: (COMPLETED,),
    COMPLETED: (),
    CANCELLED: (),
}

_DELIVERY_ALIASES = {
    "started": IN_PROGRESS,
    "picked-up": IN_PROGRESS,
    "picked_up": IN_PROGRESS,
    "in_progress": IN_PROGRESS,
    "in progress": IN_PROGRESS,
    "delivered": AWAITING_CONFIRMATION,
    "awaiting_confirmation": AWAITING_CONFIRMATION,
}

# kind -> status field on the person document
PERSON_STATUS_FIELDS = {
    "driver": "driverStatus",
    "helper": "helperStatus",
}

LEGACY_FIELDS = {
    "trucks": ("truckStatus", "availabilityStatus", "operationalStatus", "allocationStatus"),
    "drivers": ("driverStatus",),
    "helpers": ("helperStatus",),
    "deliveries": ("deliveryStatus",),
}


def legacy_name(field: str) -> str:
    return field[:1].upper() + field[1:]


def read_field(doc: dict, field: str, default=None):
    """Canonical field first, then its TitleCase spelling."""
    if not doc:
        return default
    value = doc.get(field)
    if value in (None, ""):
        value = doc.get(legacy_name(field))
    return default if value in (None, "") else value


def _lower(value):
    return value.strip().lower() if isinstance(value, str) else value


def truck_status(truck: dict) -> str:
    return _lower(read_field(truck, "truckStatus", TRUCK_AVAILABLE))


def personnel_status(person: dict, kind: str) -> str:
    status = _lower(read_field(person, PERSON_STATUS_FIELDS[kind]) or person.get("status") or PERSON_ACTIVE)
    # "available" was written by an old migration and means the same thing
    if status == "available":
        return PERSON_ACTIVE
    if status in ("on delivery", "on_delivery"):
        return PERSON_ON_DELIVERY
    return status


def delivery_status(delivery: dict) -> str:
    raw = _lower(read_field(delivery, "deliveryStatus") or delivery.get("status") or PENDING)
    return _DELIVERY_ALIASES.get(raw, raw)


def normalize_delivery_status(value: str) -> str:
    status = _lower(value or "")
    status = _DELIVERY_ALIASES.get(status, status)
    if status not in DELIVERY_STATUSES:
        raise BadRequestError(f"Unknown delivery status: {value}")
    return status


def check_transition(current: str, new: str):
    if new not in DELIVERY_TRANSITIONS.get(current, ()):
        raise BadRequestError(f"Cannot change delivery status from {current} to {new}")


def is_terminal(status: str) -> bool:
    return status in TERMINAL_DELIVERY_STATUSES
