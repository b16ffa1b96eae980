"""
Derived metrics over coordinate pairs: great-circle distance, speed
inference and geofence containment.
"""
import math
from typing import Optional

from src.agent.models import LastKnownLocation
from src.agent.time_utils import elapsed_seconds

EARTH_RADIUS_KM = 6371.0

# Speed inference bounds
MAX_INFERENCE_GAP_SECONDS = 120.0
MAX_PLAUSIBLE_SPEED_KMH = 200.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Distance between two points along the Earth's surface.

    Args:
        lat1: Latitude of the first point (degrees)
        lon1: Longitude of the first point (degrees)
        lat2: Latitude of the second point (degrees)
        lon2: Longitude of the second point (degrees)

    Returns:
        Distance in kilometers using a mean Earth radius of 6371 km
    """
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)

    a = (math.sin(d_lat / 2) ** 2 +
         math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) *
         math.sin(d_lon / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def infer_speed(
    native_speed: Optional[float],
    lat: float,
    lon: float,
    now_millis: int,
    previous: Optional[LastKnownLocation],
) -> float:
    """
    Speed for a new reading, in m/s.

    The receiver's own speed wins when it reports one (>= 0). Otherwise the
    speed is derived from the previous accepted position, but only when that
    position is recent (0 < gap < 120 s) and the implied speed is plausible
    (< 200 km/h); anything else is reported as 0.

    Args:
        native_speed: Speed reported by the GPS, or None
        lat: Latitude of the new reading
        lon: Longitude of the new reading
        now_millis: Capture time of the new reading
        previous: Last known location, if any

    Returns:
        Speed in meters per second, never negative
    """
    if native_speed is not None and native_speed >= 0:
        return float(native_speed)

    if previous is None:
        return 0.0

    gap_seconds = elapsed_seconds(previous.timestamp, now_millis)
    if not 0 < gap_seconds < MAX_INFERENCE_GAP_SECONDS:
        return 0.0

    distance_km = haversine_km(previous.latitude, previous.longitude, lat, lon)
    speed_kmh = distance_km / gap_seconds * 3600
    if speed_kmh >= MAX_PLAUSIBLE_SPEED_KMH:
        # GPS jump / multipath artifact
        return 0.0

    return speed_kmh / 3.6


class Geofence:
    """Circular zone around a fixed center."""

    def __init__(self, center_lat: float, center_lng: float, radius_km: float):
        self.center_lat = center_lat
        self.center_lng = center_lng
        self.radius_km = radius_km

    def distance_km(self, lat: float, lon: float) -> float:
        return haversine_km(lat, lon, self.center_lat, self.center_lng)

    def contains(self, lat: float, lon: float) -> bool:
        return self.distance_km(lat, lon) <= self.radius_km
