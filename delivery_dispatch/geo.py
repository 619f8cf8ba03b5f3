import math
from typing import Callable, Sequence, Tuple, TypeVar
from urllib.parse import urlencode


T = TypeVar("T")
LatLng = Tuple[float, float]

GOOGLE_MAPS_DIR_URL = "https://www.google.com/maps/dir/"


def haversine_km(a: LatLng, b: LatLng) -> float:
    lat1, lon1 = a
    lat2, lon2 = b
    R = 6371.0
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dl = math.radians(lon2 - lon1)

    x = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dl / 2) ** 2
    return 2 * R * math.asin(math.sqrt(x))


def nearest(point: LatLng, candidates: Sequence[T], loc: Callable[[T], LatLng]) -> T:
    """Candidate closest to ``point``; the first one wins on ties.

    ``candidates`` must not be empty.
    """
    best = candidates[0]
    best_d = haversine_km(point, loc(best))
    for c in candidates[1:]:
        d = haversine_km(point, loc(c))
        if d < best_d:
            best, best_d = c, d
    return best


def _fmt(p: LatLng) -> str:
    return f"{p[0]},{p[1]}"


def build_maps_url(origin: LatLng, stops: Sequence[LatLng]) -> str:
    """Directions link: origin, then every stop in visiting order (last one is the destination)."""
    if not stops:
        return ""

    params = {
        "api": "1",
        "origin": _fmt(origin),
        "destination": _fmt(stops[-1]),
    }
    waypoints = "|".join(_fmt(p) for p in stops[:-1])
    if waypoints:
        params["waypoints"] = waypoints
    return f"{GOOGLE_MAPS_DIR_URL}?{urlencode(params)}"
