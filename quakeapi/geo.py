# quakeapi/geo.py
"""Great-circle distance and radius filtering over stored quakes."""
from __future__ import annotations

import math
from typing import Dict, Iterable, List

# Earth's radius in kilometers
EARTH_RADIUS_KM = 6371.0


def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine distance in kilometers between two WGS84 points."""
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lon = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_lat / 2) ** 2
        + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(delta_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def filter_nearby(quakes: Iterable[Dict], lat: float, lng: float, radius_km: float) -> List[Dict]:
    """
    Copies of the quakes within radius_km of (lat, lng), each with a
    `distance` key rounded to 0.1 km, closest first. The radius is inclusive
    and compared against the rounded distance.
    """
    nearby = []
    for q in quakes:
        distance = round(calculate_distance(lat, lng, q["latitude"], q["longitude"]), 1)
        if distance <= radius_km:
            nearby.append({**q, "distance": distance})
    nearby.sort(key=lambda q: q["distance"])
    return nearby
