from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from .config import TITLE_MAX_LENGTH


class PinType(str, Enum):
    ROAD_CRASH = "Road Crash"
    FIRE = "Fire"
    MEDICAL_EMERGENCY = "Medical Emergency"
    FLOODING = "Flooding"
    VOLCANIC_ACTIVITY = "Volcanic Activity"
    LANDSLIDE = "Landslide"
    EARTHQUAKE = "Earthquake"
    CIVIL_DISTURBANCE = "Civil Disturbance"
    ARMED_CONFLICT = "Armed Conflict"
    INFECTIOUS_DISEASE = "Infectious Disease"
    EVACUATION_CENTERS = "Evacuation Centers"
    HEALTH_FACILITIES = "Health Facilities"
    POLICE_STATIONS = "Police Stations"
    FIRE_STATIONS = "Fire Stations"
    GOVERNMENT_OFFICES = "Government Offices"


class PinCategory(str, Enum):
    ACCIDENT = "accident"
    FACILITY = "facility"


HAZARD_TYPES = (
    PinType.ROAD_CRASH,
    PinType.FIRE,
    PinType.MEDICAL_EMERGENCY,
    PinType.FLOODING,
    PinType.VOLCANIC_ACTIVITY,
    PinType.LANDSLIDE,
    PinType.EARTHQUAKE,
    PinType.CIVIL_DISTURBANCE,
    PinType.ARMED_CONFLICT,
    PinType.INFECTIOUS_DISEASE,
)

FACILITY_TYPES = (
    PinType.EVACUATION_CENTERS,
    PinType.HEALTH_FACILITIES,
    PinType.POLICE_STATIONS,
    PinType.FIRE_STATIONS,
    PinType.GOVERNMENT_OFFICES,
)


def pin_category(pin_type) -> PinCategory:
    """Category is always derived from the type, never trusted from storage."""
    value = pin_type.value if isinstance(pin_type, PinType) else pin_type
    if value in {t.value for t in FACILITY_TYPES}:
        return PinCategory.FACILITY
    return PinCategory.ACCIDENT


def generate_search_terms(title: str, location_name: str, pin_type: str) -> list[str]:
    terms: dict[str, None] = {}
    for text in (title or "", location_name or ""):
        for word in text.lower().split():
            if len(word) > 2:
                terms[word] = None
    terms[str(pin_type).lower()] = None
    return list(terms)


class PinCreate(BaseModel):
    type: Optional[PinType] = None
    title: Optional[str] = Field(None, max_length=TITLE_MAX_LENGTH)
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location_name: Optional[str] = Field(None, alias="locationName")
    report_id: Optional[str] = Field(None, alias="reportId")

    model_config = ConfigDict(populate_by_name=True)


class PinUpdate(BaseModel):
    type: Optional[PinType] = None
    title: Optional[str] = Field(None, max_length=TITLE_MAX_LENGTH)
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location_name: Optional[str] = Field(None, alias="locationName")
    report_id: Optional[str] = Field(None, alias="reportId")

    model_config = ConfigDict(populate_by_name=True)


class PinRead(BaseModel):
    id: str
    type: str
    category: PinCategory
    title: str
    latitude: float
    longitude: float
    location_name: str = Field(serialization_alias="locationName")
    report_id: Optional[str] = Field(None, serialization_alias="reportId")
    created_at: datetime = Field(serialization_alias="createdAt")
    updated_at: datetime = Field(serialization_alias="updatedAt")
    created_by: str = Field(serialization_alias="createdBy")
    created_by_name: str = Field(serialization_alias="createdByName")

    model_config = ConfigDict(from_attributes=True)


class PinFilters(BaseModel):
    types: list[str] = Field(default_factory=list)
    categories: list[PinCategory] = Field(default_factory=list)
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    report_id: Optional[str] = None
    search_query: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class Operator(BaseModel):
    id: str = "unknown"
    name: str = "Unknown Admin"


class Suggestion(BaseModel):
    label: str
    text: str
    longitude: float
    latitude: float


class RouteResult(BaseModel):
    geometry: dict[str, Any]
    duration_label: str
    total_minutes: int
    distance_km: float
