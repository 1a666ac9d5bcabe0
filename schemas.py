"""
Pydantic models shared by the trip engine, the tool dispatcher and the HTTP API.

Fields are snake_case in Python and camelCase on the wire
(``model_dump(mode="json", by_alias=True)``).
"""
import math
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from errors import InvalidCoordinate


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


# ============================================================================
# GEO
# ============================================================================

class Coordinate(CamelModel):
    """Immutable WGS84 point. Out-of-range values raise InvalidCoordinate."""
    model_config = ConfigDict(frozen=True)

    latitude: float
    longitude: float

    @model_validator(mode="after")
    def _check_range(self):
        lat, lng = self.latitude, self.longitude
        if not (math.isfinite(lat) and math.isfinite(lng)):
            raise InvalidCoordinate(
                "Coordinates must be finite numbers",
                context={"latitude": lat, "longitude": lng},
            )
        if not -90.0 <= lat <= 90.0:
            raise InvalidCoordinate(f"Latitude {lat} out of range [-90, 90]", context={"latitude": lat})
        if not -180.0 <= lng <= 180.0:
            raise InvalidCoordinate(f"Longitude {lng} out of range [-180, 180]", context={"longitude": lng})
        return self

    def as_param(self) -> str:
        """Format as 'lat,lng' for the Google Maps web services."""
        return f"{self.latitude},{self.longitude}"


class Location(CamelModel):
    name: str
    coordinates: Coordinate
    place_id: Optional[str] = None


# ============================================================================
# PRICING
# ============================================================================

class VehicleTier(str, Enum):
    MOTO = "moto"
    ECONOMY = "economy"
    COMFORT = "comfort"
    PREMIUM = "premium"
    XL = "xl"


class PriceBreakdown(CamelModel):
    base_fare: float
    distance_fare: float
    time_fare: float
    surge_multiplier: Optional[float] = None


class PriceQuote(CamelModel):
    vehicle_type: VehicleTier
    estimated_price: float
    currency: str
    breakdown: PriceBreakdown


# ============================================================================
# ROUTING / QUOTING
# ============================================================================

class RoutePreferences(CamelModel):
    avoid_tolls: bool = False
    avoid_highways: bool = False


class RouteMeasurement(CamelModel):
    """Distance/duration of a trip as measured by the provider or the fallback."""
    distance_meters: int
    duration_seconds: int
    polyline: Optional[str] = None
    used_fallback: bool = False
    warning: Optional[str] = None


class Eta(CamelModel):
    arrival_timestamp: str
    human_duration: str


class TripEstimate(CamelModel):
    """Phase 1 output: indicative prices for every tier."""
    distance_meters: int
    duration_seconds: int
    human_duration: str
    pricing_options: List[PriceQuote]
    used_fallback: bool = False
    warning: Optional[str] = None


class RouteResult(CamelModel):
    """Phase 2 output: committed route, selected-tier price and ETA."""
    distance_meters: int
    duration_seconds: int
    polyline: Optional[str] = None
    path: List[List[float]] = Field(default_factory=list)
    vehicle_type: VehicleTier
    quote: PriceQuote
    eta: Eta
    used_fallback: bool = False
    warning: Optional[str] = None


# ============================================================================
# TRIP STATE
# ============================================================================

class TripStatus(str, Enum):
    DRAFT = "draft"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class TripState(CamelModel):
    origin: Optional[Location] = None
    destination: Optional[Location] = None
    waypoints: List[Location] = Field(default_factory=list)
    status: TripStatus = TripStatus.DRAFT


# ============================================================================
# PREFERENCES
# ============================================================================

class UserPreferences(RoutePreferences):
    preferred_vehicle_type: VehicleTier = VehicleTier.ECONOMY


class SavedLocation(CamelModel):
    name: str
    coordinates: Coordinate
    last_used: Optional[str] = None


class TripHistoryEntry(CamelModel):
    origin: str
    destination: str
    date: str
    price: float
    currency: str
    vehicle_type: VehicleTier


# ============================================================================
# MICRO-ADJUST
# ============================================================================

class AdjustmentResult(CamelModel):
    coordinate: Coordinate
    method: Literal["trigonometry", "street-based"]
    confidence: float = Field(ge=0.0, le=1.0)
    direction: str
    low_confidence: bool = False


# ============================================================================
# PLACE SEARCH / DISAMBIGUATION
# ============================================================================

class GeocodingCandidate(CamelModel):
    name: str
    address: str
    coordinates: Coordinate
    place_id: Optional[str] = None
    confidence: float = Field(ge=0.0, le=1.0)

    def to_location(self) -> Location:
        return Location(name=self.name, coordinates=self.coordinates, place_id=self.place_id)


class DisambiguationOption(CamelModel):
    id: str
    label: str
    description: Optional[str] = None


class DisambiguationRequest(CamelModel):
    question: str
    options: List[DisambiguationOption]
    context: Optional[str] = None


class DisambiguationResponse(CamelModel):
    selected_option_id: Optional[str] = None
    pending: bool = False


class PlaceResolution(CamelModel):
    status: Literal["resolved", "pending"]
    location: Optional[Location] = None
    request: Optional[DisambiguationRequest] = None
    prompt: Optional[str] = None
    candidates: List[GeocodingCandidate] = Field(default_factory=list)
