# foodrelay/services/matching.py
import logging
from datetime import datetime, time, timedelta, timezone
from typing import Dict, List, Optional, Set

from foodrelay.core.config import settings
from foodrelay.core.errors import (
    AuthorizationError, InvalidTransitionError, LocationUnavailableError, NotFoundError, ValidationError,
)
from foodrelay.core.states import CLAIM_IN_FLIGHT, COURIER_ACTIVE, DeliveryStatus, DonationStatus, LifecycleState
from foodrelay.db import DONATIONS, USERS
from foodrelay.schemas import RouteStop
from foodrelay.services.geo import coords_of, get_path, volunteer_position
from foodrelay.services.routing import DistanceProvider, optimize_route
from foodrelay.services.scoring import ngo_score, vehicle_bonus, volunteer_score
from foodrelay.services.urgency import classify

logger = logging.getLogger(__name__)

VOLUNTEER_LOCATION = "volunteer_profile.current_location"

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

def _km(x: float) -> float:
    return x * 1000.0

def _day_bounds(now: datetime):
    start = datetime.combine(now.date(), time.min, tzinfo=now.tzinfo)
    return start, start + timedelta(days=1)

def estimated_load(donation: dict) -> float:
    return float((donation.get("quantity") or {}).get("magnitude") or 0.0)

def _public_user(doc: dict) -> dict:
    return {
        "id": doc["_id"],
        "name": doc.get("name"),
        "organization": doc.get("organization"),
        "email": doc.get("email"),
        "distance": round(float(doc.get("distance", 0.0)), 1),
        "ngo_profile": doc.get("ngo_profile"),
        "volunteer_profile": {
            k: v for k, v in (doc.get("volunteer_profile") or {}).items() if k != "current_location"
        } or None,
        "stats": doc.get("stats"),
    }

async def _get_donation(store, donation_id: str) -> dict:
    donation = await store.find_one(DONATIONS, {"_id": donation_id})
    if not donation:
        raise NotFoundError("Donation not found")
    return donation

# --------------------------------------------------
# Unmet need
# --------------------------------------------------
async def unmet_need(store, ngo: dict, now: Optional[datetime] = None) -> int:
    """dailyCapacity minus today's claims that are not yet delivered, floored at 0."""
    now = now or _utcnow()
    capacity = get_path(ngo, "ngo_profile.daily_capacity") or 0
    start, end = _day_bounds(now)
    claimed = await store.count(DONATIONS, {
        "claimed_by": ngo["_id"],
        "status": DonationStatus.ASSIGNED.value,
        "delivery_status": {"$in": [s.value for s in CLAIM_IN_FLIGHT]},
        "claimed_at": {"$gte": start, "$lt": end},
    })
    return max(0, capacity - claimed)

# --------------------------------------------------
# Ranked candidate lists
# --------------------------------------------------
async def find_best_ngos_for_donation(store, donation_id: str, now: Optional[datetime] = None) -> List[dict]:
    now = now or _utcnow()
    donation = await _get_donation(store, donation_id)
    query: Dict[str, object] = {"role": "ngo", "status": "active"}
    if donation.get("storage_req"):
        query["ngo_profile.storage_facilities"] = donation["storage_req"]

    ngos = await store.near(USERS, "geo", donation["geo"]["coordinates"], _km(settings.ngo_radius_km), query)
    urgency = classify(donation["expiry_date"], now).as_dict()

    scored = []
    for ngo in ngos:
        need = await unmet_need(store, ngo, now)
        score = ngo_score(donation, ngo, ngo["distance"], need, now)
        scored.append({**_public_user(ngo), "unmet_need": need, "suitability_score": score,
                       "match_percentage": score, "urgency": urgency})
    # stable: equal scores keep distance order
    scored.sort(key=lambda x: x["suitability_score"], reverse=True)
    return scored

async def find_best_donations_for_ngo(store, ngo_id: str, now: Optional[datetime] = None) -> List[dict]:
    now = now or _utcnow()
    ngo = await store.find_one(USERS, {"_id": ngo_id, "role": "ngo"})
    if not ngo:
        raise NotFoundError("NGO not found")
    origin = coords_of(ngo.get("geo"), allow_origin=True)
    if origin is None:
        raise ValidationError("NGO coordinates not set")

    facilities = get_path(ngo, "ngo_profile.storage_facilities") or []
    query = {
        "status": DonationStatus.ACTIVE.value,
        "$or": [{"storage_req": None}, {"storage_req": {"$in": list(facilities)}}],
    }
    donations = await store.near(DONATIONS, "geo", origin, _km(settings.ngo_radius_km), query)
    need = await unmet_need(store, ngo, now)

    scored = []
    for d in donations:
        score = ngo_score(d, ngo, d["distance"], need, now)
        scored.append({**d, "suitability_score": score, "match_percentage": score,
                       "urgency": classify(d["expiry_date"], now).as_dict()})
    scored.sort(key=lambda x: x["suitability_score"], reverse=True)
    return scored

async def busy_volunteer_ids(store) -> Set[str]:
    on_mission = await store.find(DONATIONS, {
        "status": DonationStatus.ASSIGNED.value,
        "volunteer": {"$exists": True},
        "delivery_status": {"$in": [s.value for s in COURIER_ACTIVE]},
    })
    return {d["volunteer"] for d in on_mission if d.get("volunteer")}

async def find_suitable_volunteers(store, donation: dict, radius_km: Optional[float] = None,
                                   now: Optional[datetime] = None, limit: Optional[int] = None) -> List[dict]:
    now = now or _utcnow()
    radius_km = radius_km or settings.volunteer_radius_km
    busy = await busy_volunteer_ids(store)
    query = {"role": "volunteer", "status": "active", "is_online": True, "_id": {"$nin": sorted(busy)}}
    candidates = await store.near(USERS, VOLUNTEER_LOCATION, donation["geo"]["coordinates"], _km(radius_km), query)

    load = estimated_load(donation)
    scored = []
    for vol in candidates:
        score = volunteer_score(vol, vol["distance"], donation, now) + vehicle_bonus(vol, load)
        scored.append({**_public_user(vol), "suitability_score": round(score, 2),
                       "current_task_count": vol.get("current_task_count", 0)})
    scored.sort(key=lambda x: x["suitability_score"], reverse=True)
    return scored[: (limit or settings.max_volunteer_candidates)]

async def find_available_missions(store, volunteer_id: str, now: Optional[datetime] = None) -> List[dict]:
    """Claimed donations still waiting for a courier, nearest first."""
    now = now or _utcnow()
    vol = await store.find_one(USERS, {"_id": volunteer_id, "role": "volunteer"})
    if not vol:
        raise NotFoundError("Volunteer not found")
    origin = volunteer_position(vol)
    if origin is None:
        raise LocationUnavailableError()
    query = {
        "status": DonationStatus.ASSIGNED.value,
        "delivery_status": DeliveryStatus.IDLE.value,
        "volunteer": {"$exists": False},
    }
    missions = await store.near(DONATIONS, "geo", origin, _km(settings.volunteer_radius_km), query)
    for m in missions:
        m["urgency"] = classify(m["expiry_date"], now).as_dict()
    return missions

# --------------------------------------------------
# Active route with diversion advice
# --------------------------------------------------
async def find_diversion(store, origin, exclude_id: str, now: datetime) -> Optional[dict]:
    """Most urgent unclaimed, near-expiry donation around the courier."""
    query = {
        "_id": {"$ne": exclude_id},
        "status": DonationStatus.ACTIVE.value,
        "expiry_date": {"$gt": now, "$lt": now + timedelta(hours=3)},
    }
    nearby = await store.near(DONATIONS, "geo", origin, _km(settings.diversion_radius_km), query)
    if not nearby:
        return None
    return min(nearby, key=lambda d: d["expiry_date"])

async def plan_active_route(store, provider: DistanceProvider, donation_id: str, volunteer_id: str,
                            now: Optional[datetime] = None) -> dict:
    now = now or _utcnow()
    donation = await _get_donation(store, donation_id)
    if donation.get("volunteer") != volunteer_id:
        raise AuthorizationError("Not authorized: you are not the assigned volunteer")
    in_progress = (donation.get("status") == DonationStatus.ASSIGNED.value
                   and donation.get("delivery_status") in {s.value for s in COURIER_ACTIVE})
    if not in_progress:
        raise InvalidTransitionError("No route for a mission that is not in progress",
                                     LifecycleState.of(donation).as_dict())

    vol = await store.find_one(USERS, {"_id": volunteer_id})
    origin = volunteer_position(vol or {})
    if origin is None:
        raise LocationUnavailableError()

    stops: List[RouteStop] = []
    picked = donation.get("delivery_status") in {
        DeliveryStatus.PICKED_UP.value, DeliveryStatus.IN_TRANSIT.value, DeliveryStatus.ARRIVED_AT_DELIVERY.value,
    }
    if not picked:
        stops.append(RouteStop(id="pickup", type="pickup", coordinates=list(donation["geo"]["coordinates"]),
                               donation_id=donation["_id"]))

    ngo = await store.find_one(USERS, {"_id": donation.get("claimed_by")}) if donation.get("claimed_by") else None
    drop = coords_of((ngo or {}).get("geo"), allow_origin=True)
    if drop is not None:
        stops.append(RouteStop(id="dropoff", type="dropoff", coordinates=list(drop),
                               after=None if picked else "pickup", donation_id=donation["_id"]))

    diversion = await find_diversion(store, origin, donation["_id"], now)
    if diversion is not None:
        stops.append(RouteStop(id=f"diversion:{diversion['_id']}", type="diversion",
                               coordinates=list(diversion["geo"]["coordinates"]), priority=10,
                               donation_id=diversion["_id"]))

    plan = await optimize_route(provider, origin, stops)
    if plan.diversion_suggested:
        logger.info("diversion suggested for volunteer %s on donation %s", volunteer_id, donation_id)
    return plan.model_dump()
