"""
Great-circle distance and grid bucketing.

Everything that needs a distance (fare, matching score, ETA, radius
fallback) goes through `haversine_km` so the fast and durable query paths
agree on what "within R km" means.
"""
import math
from typing import NamedTuple

from pydantic import BaseModel

EARTH_RADIUS_KM = 6371.0


class Coordinates(BaseModel):
    lat: float
    lng: float

    def is_valid(self) -> bool:
        return (
            math.isfinite(self.lat)
            and math.isfinite(self.lng)
            and -90 <= self.lat <= 90
            and -180 <= self.lng <= 180
        )


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in km between two lat/lng points."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lng2 - lng1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def distance_between(a: Coordinates, b: Coordinates) -> float:
    return haversine_km(a.lat, a.lng, b.lat, b.lng)


class BoundingBox(NamedTuple):
    lat_min: float
    lat_max: float
    # One (min, max) span, or two when the circle crosses the antimeridian.
    lng_ranges: list[tuple[float, float]]


def bounding_box(lat: float, lng: float, radius_km: float) -> BoundingBox:
    """
    Box enclosing the circle, as a latitude span plus longitude spans that a
    point must fall in any of. Near +/-180 the longitude span wraps and is
    split in two; when the circle covers a pole every longitude qualifies.

    Only a SQL prefilter; results still go through `haversine_km`.
    """
    angular = radius_km / EARTH_RADIUS_KM
    dlat = math.degrees(angular)
    lat_min = max(-90.0, lat - dlat)
    lat_max = min(90.0, lat + dlat)
    every_lng = [(-180.0, 180.0)]

    cos_lat = math.cos(math.radians(lat))
    if lat_min <= -90.0 or lat_max >= 90.0 or math.sin(angular) >= cos_lat:
        return BoundingBox(lat_min, lat_max, every_lng)
    dlng = math.degrees(math.asin(math.sin(angular) / cos_lat))
    if dlng >= 180.0:
        return BoundingBox(lat_min, lat_max, every_lng)

    lng_min, lng_max = lng - dlng, lng + dlng
    if lng_min < -180.0:
        return BoundingBox(lat_min, lat_max, [(lng_min + 360.0, 180.0), (-180.0, lng_max)])
    if lng_max > 180.0:
        return BoundingBox(lat_min, lat_max, [(lng_min, 180.0), (-180.0, lng_max - 360.0)])
    return BoundingBox(lat_min, lat_max, [(lng_min, lng_max)])


def grid_cell(lat: float, lng: float, size_deg: float = 0.1) -> tuple[float, float]:
    """South-west corner of the grid cell containing the point."""
    # round() absorbs float noise such as 37.7 / 0.1 == 376.99999999999994
    cell_lat = math.floor(round(lat / size_deg, 9)) * size_deg
    cell_lng = math.floor(round(lng / size_deg, 9)) * size_deg
    return round(cell_lat, 6), round(cell_lng, 6)


def grid_cell_key(lat: float, lng: float, size_deg: float = 0.1) -> str:
    cell_lat, cell_lng = grid_cell(lat, lng, size_deg)
    return f"{cell_lat:.4f},{cell_lng:.4f}"
