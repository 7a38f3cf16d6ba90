# foodrelay/routers/volunteers.py
from fastapi import APIRouter, Depends

from foodrelay.core.security import Actor, require_role
from foodrelay.deps import get_store
from foodrelay.schemas import LocationIn, OnlineIn, VolunteerProfileIn
from foodrelay.services import stats, users

router = APIRouter(prefix="/api/volunteers", tags=["volunteers"])

@router.patch("/me/location")
async def heartbeat(body: LocationIn, actor: Actor = Depends(require_role("volunteer")), store=Depends(get_store)):
    user = await users.update_location(store, actor, body.lat, body.lng)
    return {"ok": True, "last_location_update": user["volunteer_profile"]["last_location_update"]}

@router.patch("/me/status")
async def set_status(body: OnlineIn, actor: Actor = Depends(require_role("volunteer")), store=Depends(get_store)):
    user = await users.set_online(store, actor, body.is_online)
    return {"ok": True, "is_online": user["is_online"]}

@router.get("/me/stats")
async def my_stats(actor: Actor = Depends(require_role("volunteer")), store=Depends(get_store)):
    return await stats.volunteer_performance(store, actor.id)

@router.patch("/me/profile")
async def update_profile(body: VolunteerProfileIn, actor: Actor = Depends(require_role("volunteer")),
                         store=Depends(get_store)):
    profile = await users.update_volunteer_profile(store, actor, body)
    return {"message": "Volunteer profile updated successfully", "volunteer_profile": profile}
