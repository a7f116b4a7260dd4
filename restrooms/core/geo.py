"""
Great-circle distance and search-box helpers.

All distances are statute miles.
"""

import math
from dataclasses import dataclass


EARTH_RADIUS_MILES = 3959.0
EARTH_RADIUS_KM = 6371.0
MILES_PER_DEGREE_LATITUDE = 69.0
KM_PER_MILE = 1.609344


def haversine_miles(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Haversine distance in miles, rounded to 2 decimals."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return round(EARTH_RADIUS_MILES * c, 2)


def miles_to_km(miles: float) -> float:
    return miles * KM_PER_MILE


def km_to_miles(km: float) -> float:
    return km / KM_PER_MILE


@dataclass(frozen=True)
class BoundingBox:
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    def contains(self, lat: float, lng: float) -> bool:
        return self.min_lat <= lat <= self.max_lat and self.min_lng <= lng <= self.max_lng


def bounding_box(lat: float, lng: float, radius_miles: float) -> BoundingBox:
    """
    Coarse prefilter box around a point.

    Latitude spans radius/69 degrees. Longitude degrees shrink towards the
    poles, so the longitude span is widened by 1/cos(lat); near the poles
    the box covers every longitude.
    """
    lat_delta = radius_miles / MILES_PER_DEGREE_LATITUDE
    cos_lat = math.cos(math.radians(lat))
    if cos_lat < 1e-6:
        lng_delta = 180.0
    else:
        lng_delta = min(180.0, lat_delta / cos_lat)
    return BoundingBox(
        min_lat=lat - lat_delta,
        max_lat=lat + lat_delta,
        min_lng=lng - lng_delta,
        max_lng=lng + lng_delta,
    )
