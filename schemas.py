"""
Database Schemas for the Waste Collection Platform

Each document model corresponds to a MongoDB collection (lowercase snake name,
e.g. BulkRequest -> "bulk_request"). Request bodies accept camelCase keys as
sent by the web dashboard as well as snake_case.
"""
from datetime import date as date_cls, datetime, time, timezone
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, EmailStr, Field, ValidationInfo, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

import errors

Role = Literal["resident", "business", "collector"]
WasteType = Literal["biodegradable", "non-biodegradable", "recyclable"]
RequestStatus = Literal["pending", "accepted", "rejected", "completed", "cancelled"]
ExpenseCategory = Literal["collection", "disposal", "recycling", "other"]
VehicleType = Literal["truck", "van", "bike", "cycle"]
DayOfWeek = Literal["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

REQUEST_STATUSES = ("pending", "accepted", "rejected", "completed", "cancelled")
WASTE_TYPES = ("biodegradable", "non-biodegradable", "recyclable")

HH_MM = r"^([01]\d|2[0-3]):[0-5]\d$"


def day_start(d: date_cls) -> datetime:
    """Midnight UTC of a calendar day; BSON has no date-only type."""
    return datetime.combine(d, time.min, tzinfo=timezone.utc)


M = TypeVar("M", bound=BaseModel)


def validate_payload(model: Type[M], data: Any) -> M:
    """Coerce a mapping into `model`, raising the service ValidationError."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        fields = sorted({str(e["loc"][-1]) for e in exc.errors() if e["loc"]})
        raise errors.ValidationError("Invalid or missing fields", fields=fields)


# ------------------ Shared pieces ------------------

class GeoPoint(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)

    def to_geojson(self) -> Dict[str, Any]:
        return {"type": "Point", "coordinates": [self.lng, self.lat]}


def empty_point() -> Dict[str, Any]:
    return {"type": "Point", "coordinates": [0.0, 0.0]}


class Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ------------------ Collections ------------------

class Account(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Unique, stored lower-cased")
    password_hash: str = Field(..., description="BCrypt hash")
    phone: str
    role: Role
    location: Dict[str, Any] = Field(default_factory=empty_point, description="GeoJSON point [lng, lat]")


class WasteRequest(BaseModel):
    """A regular collection request owned by a resident or a business."""
    owner_id: str
    owner_role: Role
    kind: Literal["regular", "bulk"] = "regular"
    date: datetime
    time: str
    waste_type: WasteType
    address: str
    status: RequestStatus = "pending"
    collector_id: Optional[str] = None
    completed_at: Optional[datetime] = None
    earnings: float = 0
    rating: Optional[int] = None


class BulkRequest(WasteRequest):
    """A bulk collection request; always owned by a business."""
    kind: Literal["regular", "bulk"] = "bulk"
    quantity: int = Field(..., ge=1)
    description: Optional[str] = None


class ScheduledPickup(BaseModel):
    owner_id: str
    frequency: Literal["weekly", "monthly"]
    day_of_week: Optional[DayOfWeek] = None
    day_of_month: Optional[int] = Field(None, ge=1, le=31)
    time: str
    waste_type: WasteType
    address: str
    start_date: datetime
    is_active: bool = True


class Expense(BaseModel):
    owner_id: str
    request_id: str
    amount: float = Field(..., ge=0)
    category: ExpenseCategory
    date: datetime
    description: Optional[str] = None


class WorkingHours(Body):
    start: str = Field(..., pattern=HH_MM)
    end: str = Field(..., pattern=HH_MM)


class ServiceArea(Body):
    radius: float = Field(10, ge=1, le=50, description="Kilometres")
    preferred_zones: List[str] = []


class NotificationPreferences(Body):
    new_requests: bool = True
    route_updates: bool = True
    earnings_updates: bool = True
    maintenance_reminders: bool = True


class Performance(BaseModel):
    total_collections: int = 0
    total_earnings: float = 0
    on_time_collections: int = 0
    rating_total: float = 0
    rating_count: int = 0
    customer_satisfaction: float = 0
    efficiency_score: float = 0


class CollectorProfile(BaseModel):
    account_id: str
    vehicle_type: VehicleType
    vehicle_number: str
    working_hours: WorkingHours
    service_area: ServiceArea = Field(default_factory=ServiceArea)
    notification_preferences: NotificationPreferences = Field(default_factory=NotificationPreferences)
    current_location: Dict[str, Any] = Field(default_factory=empty_point)
    performance: Performance = Field(default_factory=Performance)
    is_active: bool = True


class WasteTip(BaseModel):
    category: WasteType
    content: str


# ------------------ Request bodies ------------------

class RegisterRequest(Body):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: str = Field(..., min_length=1)
    role: Role
    location: Optional[GeoPoint] = None


class LoginRequest(Body):
    email: EmailStr
    password: str


class RequestCreate(Body):
    date: date_cls
    time: str = Field(..., min_length=1)
    waste_type: WasteType
    address: str = Field(..., min_length=1)

    @field_validator("date")
    @classmethod
    def not_in_past(cls, v: date_cls) -> date_cls:
        if v < datetime.now(timezone.utc).date():
            raise ValueError("date must be today or later")
        return v


class BulkRequestCreate(RequestCreate):
    quantity: int = Field(..., ge=1)
    description: Optional[str] = None


class StatusUpdate(Body):
    status: RequestStatus
    earnings: Optional[float] = Field(None, ge=0)


class RatingRequest(Body):
    rating: int = Field(..., ge=1, le=5)


class ScheduledPickupCreate(Body):
    frequency: Literal["weekly", "monthly"]
    day_of_week: Optional[DayOfWeek] = Field(None, validate_default=True)
    day_of_month: Optional[int] = Field(None, ge=1, le=31, validate_default=True)
    time: str = Field(..., min_length=1)
    waste_type: WasteType
    address: str = Field(..., min_length=1)
    start_date: date_cls

    @field_validator("day_of_week")
    @classmethod
    def weekly_needs_weekday(cls, v, info: ValidationInfo):
        frequency = info.data.get("frequency")
        if frequency == "weekly" and v is None:
            raise ValueError("day_of_week is required for weekly pickups")
        if frequency == "monthly" and v is not None:
            raise ValueError("day_of_week is not allowed for monthly pickups")
        return v

    @field_validator("day_of_month")
    @classmethod
    def monthly_needs_day(cls, v, info: ValidationInfo):
        frequency = info.data.get("frequency")
        if frequency == "monthly" and v is None:
            raise ValueError("day_of_month is required for monthly pickups")
        if frequency == "weekly" and v is not None:
            raise ValueError("day_of_month is not allowed for weekly pickups")
        return v


class ActiveToggle(Body):
    is_active: bool


class ExpenseCreate(Body):
    request_id: str
    amount: float = Field(..., ge=0)
    category: ExpenseCategory
    date: Optional[date_cls] = None
    description: Optional[str] = None


class ExpenseUpdate(Body):
    amount: Optional[float] = Field(None, ge=0)
    category: Optional[ExpenseCategory] = None
    date: Optional[date_cls] = None
    description: Optional[str] = None


class CollectorProfileCreate(Body):
    vehicle_type: VehicleType
    vehicle_number: str = Field(..., min_length=1)
    working_hours: WorkingHours
    service_area: ServiceArea = Field(default_factory=ServiceArea)
    notification_preferences: NotificationPreferences = Field(default_factory=NotificationPreferences)


class CollectorProfileUpdate(Body):
    vehicle_type: Optional[VehicleType] = None
    vehicle_number: Optional[str] = Field(None, min_length=1)
    working_hours: Optional[WorkingHours] = None
    service_area: Optional[ServiceArea] = None
    notification_preferences: Optional[NotificationPreferences] = None


class LocationUpdate(Body):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class WasteTipCreate(Body):
    category: WasteType
    content: str = Field(..., min_length=1)
