import logging
import math
from typing import List, Optional

from sqlalchemy import select

from mgnrega.models.district import District
from mgnrega.services.redis_client import cache_get, cache_set

logger = logging.getLogger("mgnrega.geolocation")

EARTH_RADIUS_KM = 6371.0
CACHE_TTL = 86400  # 24 hours


class InvalidCoordinates(ValueError):
    pass


def validate_coordinates(lat, lon):
    try:
        lat, lon = float(lat), float(lon)
    except (TypeError, ValueError):
        raise InvalidCoordinates("Invalid coordinates") from None
    if not (math.isfinite(lat) and math.isfinite(lon)):
        raise InvalidCoordinates("Invalid coordinates")
    if not (-90 <= lat <= 90 and -180 <= lon <= 180):
        raise InvalidCoordinates("Coordinates out of range")
    return lat, lon


def haversine_km(lat1, lon1, lat2, lon2):
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def geoloc_cache_key(lat, lon):
    # + 0.0 folds -0.0 into 0.0
    return f"geoloc:{round(lat, 2) + 0.0}:{round(lon, 2) + 0.0}"


class GeolocationService:
    """Map a coordinate to districts by great-circle distance to their centroids."""

    def __init__(self, session, cache=None, ttl: int = CACHE_TTL):
        self.session = session
        self.cache = cache
        self.ttl = ttl

    def _located_districts(self) -> List[District]:
        return self.session.scalars(
            select(District).where(District.centroid_lat.isnot(None), District.centroid_lon.isnot(None))
        ).all()

    def _with_distances(self, lat, lon):
        return [
            (haversine_km(lat, lon, d.centroid_lat, d.centroid_lon), d)
            for d in self._located_districts()
        ]

    def find_nearest_district(self, lat, lon) -> Optional[dict]:
        lat, lon = validate_coordinates(lat, lon)

        cache_key = geoloc_cache_key(lat, lon)
        if (cached := cache_get(self.cache, cache_key)) is not None:
            return cached

        candidates = self._with_distances(lat, lon)
        if not candidates:
            logger.info("No districts with centroids; nothing near %s,%s", lat, lon)
            return None

        _, nearest = min(candidates, key=lambda pair: pair[0])
        district = nearest.to_dict()
        cache_set(self.cache, cache_key, district, self.ttl)
        return district

    def find_nearby_districts(self, lat, lon, radius_km: float = 50) -> List[dict]:
        lat, lon = validate_coordinates(lat, lon)
        nearby = sorted(
            ((dist, d) for dist, d in self._with_distances(lat, lon) if dist <= radius_km),
            key=lambda pair: pair[0],
        )
        return [{**d.to_dict(), "distance_km": round(dist, 2)} for dist, d in nearby]
