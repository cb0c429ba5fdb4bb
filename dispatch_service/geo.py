import math
from dataclasses import dataclass

from sqlalchemy import or_, select

from .locks import held_provider_ids
from .models import Provider, utcnow

EARTH_RADIUS_KM = 6371.0


def norm(s: str) -> str:
    return (s or "").strip().lower()


def haversine(lat1, lon1, lat2, lon2):
    """Great-circle distance in km."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)

    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(d_lon / 2) ** 2
    )

    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def km_to_deg_lat(km: float) -> float:
    return km / 111.0


def km_to_deg_lon(km: float, lat: float) -> float:
    # avoid division by zero near poles
    c = math.cos(math.radians(lat))
    if abs(c) < 0.01:
        c = 0.01
    return km / (111.0 * c)


def bounding_box(lat: float, lon: float, radius_km: float) -> tuple[float, float, float, float]:
    """
    Conservative (lat_min, lat_max, lon_min, lon_max) around a circle.
    Slightly padded so the haversine pass is the only real filter.
    """
    padded = radius_km * 1.01
    d_lat = km_to_deg_lat(padded)
    d_lon = km_to_deg_lon(padded, lat)
    return lat - d_lat, lat + d_lat, lon - d_lon, lon + d_lon


def longitude_ranges(lon_min: float, lon_max: float) -> list[tuple[float, float]]:
    """
    Split a longitude span that crosses the antimeridian into ranges
    inside [-180, 180].
    """
    if lon_max - lon_min >= 360:
        return [(-180.0, 180.0)]
    if lon_min < -180:
        return [(lon_min + 360, 180.0), (-180.0, lon_max)]
    if lon_max > 180:
        return [(lon_min, 180.0), (-180.0, lon_max - 360)]
    return [(lon_min, lon_max)]


@dataclass(frozen=True)
class GeoPoint:
    longitude: float
    latitude: float


@dataclass(frozen=True)
class ServiceLocation:
    longitude: float
    latitude: float
    address: str

    @property
    def point(self) -> GeoPoint:
        return GeoPoint(longitude=self.longitude, latitude=self.latitude)


@dataclass(frozen=True)
class ProviderCandidate:
    provider_id: str
    email: str
    hourly_rate: float
    distance_km: float
    latitude: float
    longitude: float
    is_verified: bool


class GeoIndex:
    """
    Nearest-provider lookup over the providers table.

    A bounding box narrows the rows in SQL, then haversine gives the
    exact distance and the ordering. Results reflect the last location a
    provider reported; callers must not treat "available" here as a claim.
    """

    def __init__(self, clock=utcnow):
        self.clock = clock

    async def find_candidates(
        self,
        session,
        point: GeoPoint,
        max_distance_m: float,
        service_tag: str | None = None,
        require_available: bool = True,
        require_verified: bool = True,
        limit: int = 1,
    ) -> list[ProviderCandidate]:
        radius_km = max_distance_m / 1000.0
        lat_min, lat_max, lon_min, lon_max = bounding_box(point.latitude, point.longitude, radius_km)

        stmt = select(Provider).where(
            Provider.latitude.is_not(None),
            Provider.longitude.is_not(None),
            Provider.latitude.between(lat_min, lat_max),
            or_(*[Provider.longitude.between(lo, hi) for lo, hi in longitude_ranges(lon_min, lon_max)]),
        )
        if require_verified:
            stmt = stmt.where(Provider.is_verified.is_(True))
        if require_available:
            stmt = stmt.where(
                Provider.is_available.is_(True),
                Provider.provider_id.not_in(held_provider_ids(self.clock())),
            )

        result = await session.execute(stmt)
        wanted = norm(service_tag) if service_tag else None

        candidates = []
        for provider in result.scalars():
            if wanted and wanted not in {norm(s) for s in (provider.services or [])}:
                continue

            distance = haversine(point.latitude, point.longitude, provider.latitude, provider.longitude)
            if distance > radius_km:
                continue

            candidates.append(
                ProviderCandidate(
                    provider_id=provider.provider_id,
                    email=provider.email,
                    hourly_rate=provider.hourly_rate,
                    distance_km=distance,
                    latitude=provider.latitude,
                    longitude=provider.longitude,
                    is_verified=provider.is_verified,
                )
            )

        candidates.sort(key=lambda c: (c.distance_km, c.provider_id))
        return candidates[:limit]
