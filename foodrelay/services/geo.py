# foodrelay/services/geo.py
from math import asin, cos, radians, sin, sqrt
from typing import Any, Dict, Optional, Sequence, Tuple

EARTH_RADIUS_M = 6371000.0

LngLat = Tuple[float, float]

def haversine_m(a: Sequence[float], b: Sequence[float]) -> float:
    """a, b: [lng, lat] pairs; returns meters."""
    lng1, lat1 = float(a[0]), float(a[1])
    lng2, lat2 = float(b[0]), float(b[1])
    dlat = radians(lat2 - lat1)
    dlng = radians(lng2 - lng1)
    h = sin(dlat / 2) ** 2 + cos(radians(lat1)) * cos(radians(lat2)) * sin(dlng / 2) ** 2
    return 2 * EARTH_RADIUS_M * asin(sqrt(h))

def point(lng: float, lat: float) -> Dict[str, Any]:
    return {"type": "Point", "coordinates": [float(lng), float(lat)]}

def coords_of(geo: Optional[dict], allow_origin: bool = False) -> Optional[LngLat]:
    """[lng, lat] out of a GeoJSON point, or None when missing/degenerate (0,0)."""
    if not isinstance(geo, dict):
        return None
    c = geo.get("coordinates")
    if not isinstance(c, (list, tuple)) or len(c) != 2:
        return None
    try:
        lng, lat = float(c[0]), float(c[1])
    except (TypeError, ValueError):
        return None
    if not allow_origin and lng == 0.0 and lat == 0.0:
        return None
    return (lng, lat)

def get_path(doc: dict, path: str) -> Any:
    cur: Any = doc
    for part in path.split("."):
        if not isinstance(cur, dict):
            return None
        cur = cur.get(part)
    return cur

def volunteer_position(user: dict) -> Optional[LngLat]:
    """Last reported courier position; the registered address never stands in for it."""
    return coords_of(get_path(user, "volunteer_profile.current_location"))
