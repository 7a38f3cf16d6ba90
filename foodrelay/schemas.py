# foodrelay/schemas.py
import json
from datetime import datetime, timezone
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from foodrelay.services.units import parse_quantity

# --------------------------
# Shared value types
# --------------------------
Role = Literal["donor", "ngo", "volunteer", "admin"]
Storage = Literal["cold", "dry", "frozen"]
Tier = Literal["rookie", "hero", "champion"]
Vehicle = Literal["bicycle", "scooter", "car", "van"]

def _aware(v: datetime) -> datetime:
    return v if v.tzinfo else v.replace(tzinfo=timezone.utc)

def _maybe_json(v: Any) -> Any:
    # multipart form submissions send nested fields as JSON text
    if isinstance(v, str):
        try:
            return json.loads(v)
        except ValueError:
            raise ValueError("expected a JSON value")
    return v

def _lnglat(v: Any) -> List[float]:
    v = _maybe_json(v)
    if isinstance(v, dict):
        if "coordinates" in v:
            v = v["coordinates"]
        elif "lat" in v and "lng" in v:
            v = [v["lng"], v["lat"]]
    if not isinstance(v, (list, tuple)) or len(v) != 2:
        raise ValueError("coordinates must be [lng, lat]")
    lng, lat = float(v[0]), float(v[1])
    if not (-180.0 <= lng <= 180.0 and -90.0 <= lat <= 90.0):
        raise ValueError("coordinates out of range")
    return [lng, lat]

class Quantity(BaseModel):
    text: str
    magnitude: float
    unit: str

    @classmethod
    def parse(cls, text: str) -> "Quantity":
        magnitude, unit = parse_quantity(text)
        return cls(text=text.strip(), magnitude=magnitude, unit=unit)

class PickupWindow(BaseModel):
    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _tz(cls, v: datetime) -> datetime:
        return _aware(v)

# --------------------------
# Donations
# --------------------------
class DonationIn(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    food_type: str
    quantity: str = Field(..., min_length=1)
    expiry_date: datetime
    perishability: Literal["high", "medium", "low"]
    food_category: Optional[Literal["cooked", "raw", "packaged"]] = None
    storage_req: Optional[Storage] = None
    pickup_window: PickupWindow
    pickup_address: str = ""
    coordinates: List[float]
    allergens: List[str] = []
    dietary_tags: List[str] = []
    photos: List[str] = []

    @field_validator("expiry_date")
    @classmethod
    def _expiry_tz(cls, v: datetime) -> datetime:
        return _aware(v)

    @field_validator("pickup_window", "allergens", "dietary_tags", mode="before")
    @classmethod
    def _json_fields(cls, v: Any) -> Any:
        return _maybe_json(v)

    @field_validator("coordinates", mode="before")
    @classmethod
    def _coords(cls, v: Any) -> List[float]:
        return _lnglat(v)

    def parsed_quantity(self) -> Quantity:
        return Quantity.parse(self.quantity)

class RejectIn(BaseModel):
    reason: str = Field(..., min_length=1)

class CompleteIn(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = None

class DeliveryStatusIn(BaseModel):
    status: str

class PhotoEvidenceIn(BaseModel):
    photo_url: str = Field(..., min_length=1)
    notes: Optional[str] = None

class FailMissionIn(BaseModel):
    reason: str = "Volunteer could not complete the mission"

# --------------------------
# Users (profiles are owned by the user document)
# --------------------------
class NgoProfile(BaseModel):
    daily_capacity: int = 0
    storage_facilities: List[Storage] = []
    is_urgent_need: bool = False

class VolunteerProfile(BaseModel):
    tier: Tier = "rookie"
    vehicle_type: Optional[Vehicle] = None
    max_weight: Optional[float] = None

# partial updates: omitted fields keep their stored value
class NgoProfileIn(BaseModel):
    daily_capacity: Optional[int] = Field(None, ge=0)
    storage_facilities: Optional[List[Storage]] = None
    is_urgent_need: Optional[bool] = None

class VolunteerProfileIn(BaseModel):
    vehicle_type: Optional[Vehicle] = None
    max_weight: Optional[float] = Field(None, gt=0)

class UserIn(BaseModel):
    name: str
    email: EmailStr
    role: Role
    status: Literal["active", "pending", "deactivated", "rejected"] = "pending"
    organization: Optional[str] = None
    address: Optional[str] = None
    coordinates: Optional[List[float]] = None
    ngo_profile: Optional[NgoProfile] = None
    volunteer_profile: Optional[VolunteerProfile] = None
    is_online: bool = False

    @field_validator("coordinates", mode="before")
    @classmethod
    def _coords(cls, v: Any) -> Optional[List[float]]:
        return None if v is None else _lnglat(v)

class LocationIn(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)

class OnlineIn(BaseModel):
    is_online: bool

# --------------------------
# Routing
# --------------------------
StopType = Literal["pickup", "dropoff", "diversion"]

class RouteStop(BaseModel):
    id: str
    type: StopType
    coordinates: List[float] = Field(..., description="[lng, lat]")
    priority: Optional[int] = Field(None, ge=1, le=10)
    after: Optional[str] = None          # id of a stop that must be visited first
    donation_id: Optional[str] = None
    eta: Optional[int] = None            # minutes from the previous stop
    distance: Optional[float] = None     # meters from the previous stop

class RoutePlan(BaseModel):
    path: List[RouteStop]
    estimated_total_time: int            # minutes
    diversion_suggested: bool = False
    waypoints: List[dict] = []
