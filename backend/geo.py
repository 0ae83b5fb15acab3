"""Toronto Safety Backend — Geometry helpers"""

import math

EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE_LAT = 111.32


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (math.sin(dlat / 2) ** 2 +
         math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) *
         math.sin(dlon / 2) ** 2)
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def bounding_envelope(lat: float, lng: float, radius_km: float) -> dict:
    """Square envelope of half-width ``radius_km`` around a point, in WGS84 degrees.

    Flat-earth approximation, only meant as an inclusive pre-filter; exact
    filtering is done afterwards with ``haversine_km``. Not usable near the poles.
    """
    d_lat = radius_km / KM_PER_DEGREE_LAT
    d_lng = radius_km / (KM_PER_DEGREE_LAT * math.cos(math.radians(lat)))
    return {
        "xmin": lng - d_lng,
        "ymin": lat - d_lat,
        "xmax": lng + d_lng,
        "ymax": lat + d_lat,
        "spatialReference": {"wkid": 4326},
    }
