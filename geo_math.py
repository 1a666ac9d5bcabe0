"""
Geo math for trip planning: great-circle distance, bearing-based point
projection, a crude duration estimate and relative-move adjustment.

None of this is a routing engine. The duration model assumes a flat average
urban speed and is only used when no directions provider answers.
"""
import logging
import math
from typing import Optional, Tuple

from errors import InvalidAdjustment, InvalidCoordinate
from schemas import AdjustmentResult, Coordinate

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371000.0
AVERAGE_URBAN_SPEED_KMH = 30.0
DIAGONAL_FACTOR = math.cos(math.radians(45))  # ~0.7071

# Longitude offsets diverge near the poles
MAX_PROJECTION_LATITUDE = 89.9

# Relative moves
DEFAULT_ADJUST_METERS = 10.0
METERS_PER_STREET = 150.0

CARDINAL_DIRECTIONS = (
    "north", "south", "east", "west",
    "northeast", "northwest", "southeast", "southwest",
)

_DIRECTION_VECTORS = {
    "north": (1.0, 0.0),
    "south": (-1.0, 0.0),
    "east": (0.0, 1.0),
    "west": (0.0, -1.0),
    "northeast": (DIAGONAL_FACTOR, DIAGONAL_FACTOR),
    "northwest": (DIAGONAL_FACTOR, -DIAGONAL_FACTOR),
    "southeast": (-DIAGONAL_FACTOR, DIAGONAL_FACTOR),
    "southwest": (-DIAGONAL_FACTOR, -DIAGONAL_FACTOR),
}

# Relative tokens are mapped as if the user faces north
_RELATIVE_DIRECTIONS = {
    "forward": "north",
    "front": "north",
    "backward": "south",
    "back": "south",
    "right": "east",
    "left": "west",
}

# Substring hints for free text, checked in order
_DIRECTION_HINTS = (
    ("derecha", "east"),
    ("right", "east"),
    ("izquierda", "west"),
    ("left", "west"),
    ("adelante", "north"),
    ("frente", "north"),
    ("forward", "north"),
    ("ahead", "north"),
    ("atrás", "south"),
    ("atras", "south"),
    ("back", "south"),
    ("behind", "south"),
)


def distance(a: Coordinate, b: Coordinate) -> float:
    """
    Great-circle distance between two points using the Haversine formula.

    Returns:
        Distance in meters (0.0 for identical points)
    """
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    dlat = lat2 - lat1
    dlon = math.radians(b.longitude - a.longitude)

    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return EARTH_RADIUS_M * c


def path_distance(points) -> float:
    """Sum of consecutive leg distances, in the given visiting order."""
    total = 0.0
    for prev, nxt in zip(points, points[1:]):
        total += distance(prev, nxt)
    return total


def estimate_duration(distance_meters: float) -> float:
    """Seconds needed to cover ``distance_meters`` at the assumed average urban speed."""
    speed_ms = AVERAGE_URBAN_SPEED_KMH * 1000 / 3600
    return distance_meters / speed_ms


def project(anchor: Coordinate, direction: str, meters: float) -> Coordinate:
    """
    Move ``anchor`` ``meters`` along one of the 8 cardinal/intercardinal directions.

    Small-distance approximation: offsets are converted to degrees on a sphere,
    diagonals split the move with a 45 degree decomposition. The result is
    rounded to 6 decimals (~0.1 m).

    Raises:
        InvalidCoordinate: anchor within 0.1 degree of a pole
        ValueError: unknown direction
    """
    if direction not in _DIRECTION_VECTORS:
        raise ValueError(f"Unknown direction: {direction}")
    if abs(anchor.latitude) > MAX_PROJECTION_LATITUDE:
        raise InvalidCoordinate(
            f"Latitude {anchor.latitude} is too close to a pole for projection",
            context={"latitude": anchor.latitude},
        )

    lat_offset = meters / EARTH_RADIUS_M * (180 / math.pi)
    lon_offset = meters / (EARTH_RADIUS_M * math.cos(math.radians(anchor.latitude))) * (180 / math.pi)

    lat_sign, lon_sign = _DIRECTION_VECTORS[direction]
    new_lat = anchor.latitude + lat_offset * lat_sign
    new_lon = anchor.longitude + lon_offset * lon_sign

    # Keep longitude in [-180, 180] when crossing the antimeridian
    if new_lon > 180.0:
        new_lon -= 360.0
    elif new_lon < -180.0:
        new_lon += 360.0

    return Coordinate(latitude=round(new_lat, 6), longitude=round(new_lon, 6))


def normalize_direction(direction: Optional[str], hint: Optional[str] = None) -> Tuple[str, bool]:
    """
    Map a cardinal, relative or free-text direction to one of the 8 cardinal directions.

    Args:
        direction: "north".."southwest" or "forward"/"backward"/"left"/"right" (and aliases)
        hint: free text such as "a la derecha" or "just behind the bank"

    Returns:
        (direction, confident). Unrecognized input yields ("north", False) so the
        caller can ask for clarification instead of trusting the default.
    """
    token = (direction or "").strip().lower()
    if token in CARDINAL_DIRECTIONS:
        return token, True
    if token in _RELATIVE_DIRECTIONS:
        return _RELATIVE_DIRECTIONS[token], True

    for text in (hint, direction):
        if not text:
            continue
        lower = text.lower()
        for needle, mapped in _DIRECTION_HINTS:
            if needle in lower:
                return mapped, True

    logger.info(f"Could not interpret direction {direction!r} (hint {hint!r}); defaulting to north")
    return "north", False


def _adjust_number(value, field: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidAdjustment(f"{field} must be a number", context={field: value})
    return value


def micro_adjust(
    anchor: Coordinate,
    direction: Optional[str],
    distance_meters: Optional[float] = None,
    relative_hint: Optional[str] = None,
    streets: Optional[int] = None,
    landmark: Optional[str] = None,
) -> AdjustmentResult:
    """
    Apply a relative move ("10 meters to the right", "two blocks ahead") to an anchor point.

    Street-based moves assume ~150 m per street. Confidence drops when the
    distance is defaulted, when a landmark is involved, and sharply when the
    direction could not be interpreted.
    """
    cardinal, confident = normalize_direction(direction, relative_hint)

    if streets is not None:
        streets = _adjust_number(streets, "streets")
        if not math.isfinite(streets) or streets < 1 or streets != int(streets):
            raise InvalidAdjustment("streets must be a whole number of at least 1", context={"streets": streets})
        meters = int(streets) * METERS_PER_STREET
        method = "street-based"
        confidence = 0.7
    else:
        if distance_meters is not None:
            distance_meters = _adjust_number(distance_meters, "distance")
        if distance_meters is not None and (not math.isfinite(distance_meters) or distance_meters < 0):
            raise InvalidAdjustment(
                "distance must be a non-negative number of meters",
                context={"distance": distance_meters},
            )
        meters = distance_meters if distance_meters is not None else DEFAULT_ADJUST_METERS
        method = "trigonometry"
        confidence = 0.9 if distance_meters is not None else 0.7

    if landmark:
        confidence = min(confidence, 0.6)
    if not confident:
        confidence = min(confidence, 0.3)

    return AdjustmentResult(
        coordinate=project(anchor, cardinal, meters),
        method=method,
        confidence=confidence,
        direction=cardinal,
        low_confidence=not confident,
    )
