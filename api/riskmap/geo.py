import logging
import math
from typing import NamedTuple, Optional, Sequence

from .config import DEFAULT_CENTER

logger = logging.getLogger(__name__)


class LatLng(NamedTuple):
    lat: float
    lng: float


def is_valid_position(lat: Optional[float], lng: Optional[float]) -> bool:
    if lat is None or lng is None:
        return False
    if math.isnan(lat) or math.isnan(lng):
        return False
    return -90 <= lat <= 90 and -180 <= lng <= 180


def parse_coordinates(value: Optional[str]) -> tuple[float, float]:
    """Parse a "lat,lng" string into a [lng, lat] pair.

    Input typed in "lng,lat" order is detected by the first component being
    out of latitude range and swapped back. Anything unparseable or out of
    range falls back to the default center.
    """
    if not value:
        return DEFAULT_CENTER
    parts = value.split(",")
    if len(parts) != 2:
        logger.warning("Invalid coordinates: %r", value)
        return DEFAULT_CENTER
    try:
        first, second = (float(p.strip()) for p in parts)
    except ValueError:
        logger.warning("Invalid coordinates: %r", value)
        return DEFAULT_CENTER

    lat, lng = first, second
    if abs(first) > 90 and abs(second) <= 90:
        lat, lng = second, first
    if not is_valid_position(lat, lng):
        logger.warning("Coordinates out of range: %r", value)
        return DEFAULT_CENTER
    return (lng, lat)


def format_duration(total_minutes: int) -> str:
    hours, minutes = divmod(total_minutes, 60)
    if hours > 0:
        return f"{hours}h {minutes}m" if minutes > 0 else f"{hours}h"
    return f"{minutes}m"


def meters_to_km(meters: float) -> float:
    return round(meters / 1000, 1)


def line_bounds(coordinates: Sequence[Sequence[float]]) -> tuple[tuple[float, float], tuple[float, float]]:
    """Southwest and northeast corners of a [lng, lat] line."""
    lngs = [c[0] for c in coordinates]
    lats = [c[1] for c in coordinates]
    return (min(lngs), min(lats)), (max(lngs), max(lats))
