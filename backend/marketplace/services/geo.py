import math
import os
from typing import Optional

from marketplace.models import ServiceArea

EARTH_RADIUS_KM = 6371.0


def _radius_from_env() -> float:
    raw = os.getenv("GEO_DEFAULT_RADIUS_KM", "10")
    try:
        value = float(raw)
    except ValueError:
        return 10.0
    return value if value > 0 else 10.0


DEFAULT_SEARCH_RADIUS_KM = _radius_from_env()

# Listings without a service area are offered everywhere unless this is switched off.
INCLUDE_UNBOUNDED_LISTINGS = os.getenv("GEO_INCLUDE_UNBOUNDED_LISTINGS", "true").lower() in {"1", "true", "yes"}


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def distance_to_area_km(lat: float, lng: float, service_area: Optional[ServiceArea]) -> Optional[float]:
    if service_area is None:
        return None
    return haversine_km(lat, lng, service_area.center.lat, service_area.center.lng)


def matches_location(
    lat: float,
    lng: float,
    service_area: Optional[ServiceArea],
    radius_km: Optional[float] = None,
    *,
    include_unbounded: Optional[bool] = None,
) -> bool:
    """Decide whether a listing with ``service_area`` is offered to a searcher at (lat, lng).

    The searcher and the listing each bound the match; the tighter of the two radii wins.
    """
    if service_area is None:
        return INCLUDE_UNBOUNDED_LISTINGS if include_unbounded is None else include_unbounded
    searcher_radius = DEFAULT_SEARCH_RADIUS_KM if radius_km is None else radius_km
    distance = haversine_km(lat, lng, service_area.center.lat, service_area.center.lng)
    return distance <= min(service_area.radius, searcher_radius)
