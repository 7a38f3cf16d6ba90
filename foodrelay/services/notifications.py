# foodrelay/services/notifications.py
import logging
from datetime import datetime, timezone
from typing import List, Optional

from foodrelay.db import NOTIFICATIONS, USERS

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = {
    "donation_created", "donation_cancelled", "donation_completed", "donation_assigned",
    "donation_rejected", "donation_expired", "volunteer_accepted", "donation_picked_up",
    "donation_delivered", "mission_reassigned", "mission_dispatch", "general",
}

async def notify(store, recipient_id: Optional[str], message: str, type_: str,
                 related_donation: Optional[str] = None, priority: str = "normal",
                 now: Optional[datetime] = None) -> Optional[dict]:
    """Record a notification; no-op (None) when the recipient does not resolve."""
    if type_ not in NOTIFICATION_TYPES:
        raise ValueError(f"Unknown notification type {type_!r}")
    if not recipient_id or not await store.find_one(USERS, {"_id": recipient_id}):
        logger.info("notification dropped, unknown recipient %s (%s)", recipient_id, type_)
        return None
    doc = {
        "recipient": recipient_id,
        "message": message,
        "type": type_,
        "related_donation": related_donation,
        "priority": priority,
        "is_read": False,
        "created_at": now or datetime.now(timezone.utc),
    }
    saved = await store.insert(NOTIFICATIONS, doc)
    logger.info("[notification] to=%s type=%s msg=%s", recipient_id, type_, message)
    return saved

async def list_for(store, recipient_id: str, unread_only: bool = False) -> List[dict]:
    query = {"recipient": recipient_id}
    if unread_only:
        query["is_read"] = False
    return await store.find(NOTIFICATIONS, query, sort=[("created_at", -1)])

async def mark_read(store, notification_id: str, recipient_id: str) -> Optional[dict]:
    return await store.update_one(
        NOTIFICATIONS,
        {"_id": notification_id, "recipient": recipient_id},
        {"$set": {"is_read": True}},
    )
