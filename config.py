"""
Runtime settings for the FleetDesk API.

Everything comes from the environment; defaults are for local development.
"""
import os

# Security
SECRET_KEY = os.getenv("SECRET_KEY", "supersecret")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24)))

# Database
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "fleetdesk")

# Default admin account created on startup
ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin123")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Booking rules
BOOKING_LEAD_HOURS = int(os.getenv("BOOKING_LEAD_HOURS", "24"))
TRUCK_COOLDOWN_HOURS = int(os.getenv("TRUCK_COOLDOWN_HOURS", "12"))
PAYMENT_DUE_DAYS = int(os.getenv("PAYMENT_DUE_DAYS", "30"))

PORT = int(os.getenv("PORT", "8000"))

# Booking dates and times without an offset are read in this zone
BUSINESS_TIMEZONE = os.getenv("BUSINESS_TIMEZONE", "Asia/Manila")
