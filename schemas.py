"""
Request and response schemas for FleetDesk

Create models map onto MongoDB collections (trucks, drivers, helpers,
clients, vehicle_rates); the rest are request bodies for actions.
"""
from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List, Literal
from datetime import date, time

Role = Literal["admin", "staff", "client", "driver", "helper"]
LicenseType = Literal["class c", "class ce"]


# Auth
class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class UserOut(BaseModel):
    id: str
    username: str
    role: Role
    status: str = "active"


# Back-office accounts (admins and staff)
class UserCreate(BaseModel):
    username: str = Field(..., min_length=3)
    password: str = Field(..., min_length=6)
    role: Literal["admin", "staff"] = "staff"


class UserUpdate(BaseModel):
    role: Optional[Literal["admin", "staff"]] = None
    status: Optional[Literal["active", "inactive"]] = None
    password: Optional[str] = Field(None, min_length=6)


class PasswordChange(BaseModel):
    currentPassword: str = Field(..., min_length=1)
    newPassword: str = Field(..., min_length=6)


# Trucks
class TruckCreate(BaseModel):
    truckPlate: str = Field(..., min_length=1)
    truckType: str = "mini truck"
    truckCapacity: float = Field(..., gt=0, description="Capacity in tonnes")
    truckBrand: Optional[str] = None
    modelYear: Optional[int] = None


class TruckUpdate(BaseModel):
    truckType: Optional[str] = None
    truckCapacity: Optional[float] = Field(None, gt=0)
    truckBrand: Optional[str] = None
    modelYear: Optional[int] = None


class TruckStatusPatch(BaseModel):
    status: Literal["available", "maintenance"]


# Drivers and helpers
class DriverCreate(BaseModel):
    driverName: str = Field(..., min_length=1)
    driverNumber: Optional[str] = None
    driverAddress: Optional[str] = None
    licenseType: LicenseType = "class c"
    licenseNumber: Optional[str] = None
    licenseExpiryDate: Optional[date] = None
    username: str = Field(..., min_length=3)
    password: str = Field(..., min_length=6)


class DriverUpdate(BaseModel):
    driverName: Optional[str] = None
    driverNumber: Optional[str] = None
    driverAddress: Optional[str] = None
    licenseType: Optional[LicenseType] = None
    licenseNumber: Optional[str] = None
    licenseExpiryDate: Optional[date] = None
    driverStatus: Optional[Literal["active", "inactive"]] = None


class HelperCreate(BaseModel):
    helperName: str = Field(..., min_length=1)
    helperNumber: Optional[str] = None
    helperAddress: Optional[str] = None
    helperLevel: Literal["basic", "standard"] = "basic"
    username: str = Field(..., min_length=3)
    password: str = Field(..., min_length=6)


class HelperUpdate(BaseModel):
    helperName: Optional[str] = None
    helperNumber: Optional[str] = None
    helperAddress: Optional[str] = None
    helperLevel: Optional[Literal["basic", "standard"]] = None
    helperStatus: Optional[Literal["active", "inactive"]] = None


# Clients
class ClientCreate(BaseModel):
    clientName: str = Field(..., min_length=1)
    clientEmail: Optional[EmailStr] = None
    clientNumber: Optional[str] = None
    clientAddress: Optional[str] = None
    username: str = Field(..., min_length=3)
    password: str = Field(..., min_length=6)


class ClientUpdate(BaseModel):
    clientName: Optional[str] = None
    clientEmail: Optional[EmailStr] = None
    clientNumber: Optional[str] = None
    clientAddress: Optional[str] = None
    clientStatus: Optional[Literal["active", "inactive"]] = None


class ClientProfileUpdate(BaseModel):
    clientName: Optional[str] = Field(None, min_length=1)
    clientEmail: Optional[EmailStr] = None
    clientNumber: Optional[str] = None
    clientAddress: Optional[str] = None


# Allocations
class AllocateTrucksRequest(BaseModel):
    truckIds: List[str] = Field(..., min_length=1)


# Deliveries
class Coordinates(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class BookingRequest(BaseModel):
    selectedTrucks: List[str] = []
    selectedTruckId: Optional[str] = None
    pickupLocation: str = Field(..., min_length=5)
    pickupCoordinates: Optional[Coordinates] = None
    dropoffLocation: str = Field(..., min_length=5)
    dropoffCoordinates: Optional[Coordinates] = None
    weight: float = Field(..., gt=0, description="Total cargo weight in tonnes")
    deliveryDate: date
    deliveryTime: time
    deliveryDistance: Optional[float] = Field(None, ge=0)
    estimatedDuration: Optional[float] = Field(None, ge=0)
    pickupContactPerson: Optional[str] = None
    pickupContactNumber: str = Field(..., min_length=1)
    dropoffContactPerson: Optional[str] = None
    dropoffContactNumber: str = Field(..., min_length=1)

    def truck_ids(self) -> List[str]:
        if self.selectedTrucks:
            return list(dict.fromkeys(self.selectedTrucks))
        return [self.selectedTruckId] if self.selectedTruckId else []


class DeliveryStatusPatch(BaseModel):
    status: str = Field(..., min_length=1)
    reason: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class RescheduleRequest(BaseModel):
    deliveryDate: date
    deliveryTime: time


class RouteChangeRequest(BaseModel):
    pickupLocation: str = Field(..., min_length=5)
    pickupCoordinates: Optional[Coordinates] = None
    dropoffLocation: str = Field(..., min_length=5)
    dropoffCoordinates: Optional[Coordinates] = None
    deliveryDistance: Optional[float] = Field(None, ge=0)
    estimatedDuration: Optional[float] = Field(None, ge=0)


# Payments
class PaymentStatusPatch(BaseModel):
    status: Literal["paid", "pending_verification"]


class VehicleRate(BaseModel):
    vehicleType: str = Field(..., min_length=1)
    baseRate: float = Field(..., ge=0)
    ratePerKm: float = Field(..., ge=0)
