# foodrelay/services/routing.py
import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import httpx

from foodrelay.core.errors import ExternalProviderError
from foodrelay.schemas import RouteStop, RoutePlan
from foodrelay.services.geo import haversine_m

logger = logging.getLogger(__name__)

DISTANCE_MATRIX_URL = "https://maps.googleapis.com/maps/api/distancematrix/json"
TRAFFIC_DELAY_WEIGHT = 1.5


@dataclass(frozen=True)
class Leg:
    distance_m: float
    duration_s: float
    cost: float


class DistanceProvider:
    """Travel cost between two [lng, lat] points."""

    async def leg(self, origin: Sequence[float], dest: Sequence[float]) -> Leg:
        raise NotImplementedError


class GeometricDistanceProvider(DistanceProvider):
    """Straight-line fallback at a constant speed; cost is the distance."""

    def __init__(self, speed_mps: float = 13.0):
        self.speed_mps = speed_mps

    async def leg(self, origin, dest) -> Leg:
        dist = haversine_m(origin, dest)
        return Leg(distance_m=dist, duration_s=dist / self.speed_mps, cost=dist)


class GoogleDistanceProvider(DistanceProvider):
    """Google Distance Matrix with live traffic. Cost = distance + 1.5 x traffic delay."""

    def __init__(self, api_key: str, timeout_s: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        self.timeout_s = timeout_s
        self._client = client

    async def _get(self, params: dict) -> dict:
        if self._client is not None:
            r = await self._client.get(DISTANCE_MATRIX_URL, params=params, timeout=self.timeout_s)
            r.raise_for_status()
            return r.json()
        async with httpx.AsyncClient(timeout=self.timeout_s) as c:
            r = await c.get(DISTANCE_MATRIX_URL, params=params)
            r.raise_for_status()
            return r.json()

    async def leg(self, origin, dest) -> Leg:
        params = {
            "origins": f"{origin[1]},{origin[0]}",
            "destinations": f"{dest[1]},{dest[0]}",
            "departure_time": "now",
            "key": self.api_key,
        }
        try:
            data = await self._get(params)
        except httpx.HTTPError as e:
            raise ExternalProviderError(f"Distance provider unavailable: {e}")

        try:
            el = data["rows"][0]["elements"][0]
        except (KeyError, IndexError, TypeError):
            raise ExternalProviderError(f"Distance provider returned {data.get('status', 'no rows')}")
        if el.get("status") != "OK":
            raise ExternalProviderError(f"Distance provider element status {el.get('status')}")

        dist = float(el["distance"]["value"])
        base = float(el["duration"]["value"])
        traffic = float((el.get("duration_in_traffic") or el["duration"])["value"])
        delay = max(0.0, traffic - base)
        return Leg(distance_m=dist, duration_s=traffic, cost=dist + delay * TRAFFIC_DELAY_WEIGHT)


def make_distance_provider(settings) -> DistanceProvider:
    if settings.google_maps_api_key:
        logger.info("using Google distance matrix provider")
        return GoogleDistanceProvider(settings.google_maps_api_key, timeout_s=settings.distance_timeout_s)
    logger.info("no maps key configured, using straight-line distance provider")
    return GeometricDistanceProvider(settings.fallback_speed_mps)


def priority_weight(priority: Optional[int]) -> float:
    return (11 - priority) * 0.1 if priority else 1.0


async def optimize_route(provider: DistanceProvider, start: Sequence[float], stops: List[RouteStop]) -> RoutePlan:
    """
    Greedy nearest-next ordering with priority weighting.

    Each round prices every eligible stop from the current position in parallel;
    a stop whose lookup fails sits out that round. If every lookup fails the
    path stops where it is.
    """
    current = list(start)
    remaining = list(stops)
    visited: set = set()
    path: List[RouteStop] = []
    total_s = 0.0

    while remaining:
        eligible = [s for s in remaining if not s.after or s.after in visited
                    or all(o.id != s.after for o in remaining)]
        if not eligible:
            break

        results = await asyncio.gather(
            *(provider.leg(current, s.coordinates) for s in eligible), return_exceptions=True
        )
        best = None
        for stop, res in zip(eligible, results):
            if isinstance(res, BaseException):
                logger.warning("distance lookup failed for stop %s: %s", stop.id, res)
                continue
            weighted = res.cost * priority_weight(stop.priority)
            if best is None or weighted < best[0]:
                best = (weighted, stop, res)
        if best is None:
            logger.warning("all distance lookups failed, halting route with %d stop(s)", len(path))
            break

        _, stop, leg = best
        path.append(stop.model_copy(update={"eta": round(leg.duration_s / 60), "distance": round(leg.distance_m, 1)}))
        visited.add(stop.id)
        remaining.remove(stop)
        current = list(stop.coordinates)
        total_s += leg.duration_s

    return RoutePlan(
        path=path,
        estimated_total_time=round(total_s / 60),
        diversion_suggested=bool(path) and path[0].type == "diversion",
        waypoints=[{"lng": s.coordinates[0], "lat": s.coordinates[1]} for s in path],
    )
