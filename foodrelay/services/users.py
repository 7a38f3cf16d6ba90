# foodrelay/services/users.py
from datetime import datetime, timezone
from typing import Optional

from foodrelay.core.errors import NotFoundError, ValidationError
from foodrelay.core.security import Actor
from foodrelay.db import USERS
from foodrelay.schemas import NgoProfile, NgoProfileIn, UserIn, VolunteerProfileIn
from foodrelay.services.geo import point

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

async def create_user(store, data: UserIn, now: Optional[datetime] = None) -> dict:
    """Persist a user record; credentials belong to the auth service."""
    now = now or _utcnow()
    if data.role in ("donor", "ngo") and not data.organization:
        raise ValidationError("Organization is required for donors and NGOs")
    if await store.find_one(USERS, {"email": data.email}):
        raise ValidationError("User already exists")

    doc = data.model_dump(exclude={"coordinates", "ngo_profile", "volunteer_profile"})
    doc["created_at"] = now
    doc["stats"] = {"trust_score": 5.0, "total_ratings": 0, "completed_donations": 0, "cancelled_donations": 0}
    if data.coordinates:
        doc["geo"] = point(*data.coordinates)
    if data.role == "ngo":
        doc["ngo_profile"] = (data.ngo_profile or NgoProfile()).model_dump()
    if data.role == "volunteer":
        profile = data.volunteer_profile.model_dump() if data.volunteer_profile else {"tier": "rookie"}
        if data.coordinates:
            profile["current_location"] = point(*data.coordinates)
            profile["last_location_update"] = now
        doc["volunteer_profile"] = profile
        doc["current_task_count"] = 0
    return await store.insert(USERS, doc)

async def update_location(store, actor: Actor, lat: float, lng: float, now: Optional[datetime] = None) -> dict:
    """Volunteer heartbeat; the stall detector reads last_location_update."""
    now = now or _utcnow()
    geo = point(lng, lat)
    updated = await store.update_one(
        USERS,
        {"_id": actor.id, "role": "volunteer"},
        {"$set": {"geo": geo, "volunteer_profile.current_location": geo,
                  "volunteer_profile.last_location_update": now}},
    )
    if not updated:
        raise NotFoundError("Volunteer not found")
    return updated

async def set_online(store, actor: Actor, is_online: bool) -> dict:
    updated = await store.update_one(USERS, {"_id": actor.id, "role": "volunteer"}, {"$set": {"is_online": is_online}})
    if not updated:
        raise NotFoundError("Volunteer not found")
    return updated

async def _update_profile(store, actor: Actor, role: str, field: str, changes: dict, missing: str) -> dict:
    query = {"_id": actor.id, "role": role}
    if not changes:
        user = await store.find_one(USERS, query)
    else:
        user = await store.update_one(USERS, query, {"$set": {f"{field}.{k}": v for k, v in changes.items()}})
    if not user:
        raise NotFoundError(missing)
    return user

async def update_ngo_profile(store, actor: Actor, data: NgoProfileIn) -> dict:
    """Capacity, storage and the urgent-need flag feed NGO matching directly."""
    changes = data.model_dump(exclude_none=True)
    user = await _update_profile(store, actor, "ngo", "ngo_profile", changes,
                                 "NGO profile not found or user is not an NGO")
    return user["ngo_profile"]

async def update_volunteer_profile(store, actor: Actor, data: VolunteerProfileIn) -> dict:
    changes = data.model_dump(exclude_none=True)
    user = await _update_profile(store, actor, "volunteer", "volunteer_profile", changes,
                                 "User not found or not a volunteer")
    return {k: v for k, v in user["volunteer_profile"].items() if k != "current_location"}
