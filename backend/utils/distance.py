"""
Distance calculation utilities for nearby-resource lookups.
"""
import math
from functools import lru_cache
from typing import Dict, List

EARTH_RADIUS_KM = 6371.0
EARTH_RADIUS_MILES = 3958.8


@lru_cache(maxsize=10000)
def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float, unit: str = 'km') -> float:
    """
    Great circle distance between two points using the Haversine formula.

    Memoized, since resource lookups repeat the same coordinate pairs.

    Args:
        lat1, lon1: First point in decimal degrees
        lat2, lon2: Second point in decimal degrees
        unit: 'km' (default) or 'miles'

    Returns:
        Distance in the requested unit

    Examples:
        >>> round(haversine_distance(40.7128, -74.0060, 42.3601, -71.0589))
        306
        >>> haversine_distance(37.7749, -122.4194, 37.7749, -122.4194)
        0.0

    Note:
        Does NOT validate coordinates - caller is responsible for validation
    """
    radius = EARTH_RADIUS_MILES if unit == 'miles' else EARTH_RADIUS_KM

    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    dlat = lat2_rad - lat1_rad
    dlon = math.radians(lon2 - lon1)

    a = (math.sin(dlat / 2) ** 2 +
         math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return radius * c


def within_radius(records: List[Dict], lat: float, lon: float, radius_km: float) -> List[Dict]:
    """
    Records within radius_km of a point, nearest first, with distance_km attached.

    Records without numeric latitude/longitude are skipped.
    """
    nearby = []
    for record in records:
        try:
            record_lat = float(record['latitude'])
            record_lon = float(record['longitude'])
        except (KeyError, TypeError, ValueError):
            continue

        distance = haversine_distance(float(lat), float(lon), record_lat, record_lon)
        if distance <= radius_km:
            nearby.append({**record, 'distance_km': round(distance, 3)})

    nearby.sort(key=lambda r: r['distance_km'])
    return nearby
