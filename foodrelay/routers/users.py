# foodrelay/routers/users.py
from fastapi import APIRouter, Depends

from foodrelay.core.security import Actor, require_role
from foodrelay.deps import get_store
from foodrelay.schemas import NgoProfileIn
from foodrelay.services import users

router = APIRouter(prefix="/api/users", tags=["users"])

@router.patch("/me/ngo-profile")
async def update_ngo_profile(body: NgoProfileIn, actor: Actor = Depends(require_role("ngo")),
                             store=Depends(get_store)):
    profile = await users.update_ngo_profile(store, actor, body)
    return {"message": "NGO profile updated successfully", "ngo_profile": profile}
