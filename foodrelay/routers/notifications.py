# foodrelay/routers/notifications.py
from fastapi import APIRouter, Depends

from foodrelay.core.errors import NotFoundError
from foodrelay.core.security import Actor, get_actor
from foodrelay.deps import get_store
from foodrelay.services import notifications

router = APIRouter(prefix="/api/notifications", tags=["notifications"])

def _serialize(doc: dict) -> dict:
    out = dict(doc)
    out["id"] = str(out.pop("_id"))
    return out

@router.get("")
async def my_notifications(unread: bool = False, actor: Actor = Depends(get_actor), store=Depends(get_store)):
    return [_serialize(n) for n in await notifications.list_for(store, actor.id, unread_only=unread)]

@router.patch("/{notification_id}/read")
async def mark_read(notification_id: str, actor: Actor = Depends(get_actor), store=Depends(get_store)):
    doc = await notifications.mark_read(store, notification_id, actor.id)
    if not doc:
        raise NotFoundError("Notification not found")
    return _serialize(doc)
