# foodrelay/services/lifecycle.py
"""
Donation lifecycle.

Every write to a donation goes through one conditional update whose filter
carries the precondition (status, delivery status, assigned courier). When
the filter matches nothing the document is re-read only to report why.
Role is checked first, then ownership or assignment, then the transition.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from foodrelay.core.config import settings
from foodrelay.core.errors import (
    AuthorizationError, InvalidTransitionError, NotAvailableError, NotFoundError, ValidationError,
)
from foodrelay.core.security import Actor, ensure_role
from foodrelay.core.states import (
    CANCELLABLE, COURIER_ACTIVE, DELIVER_FROM, PICKUP_FROM, REJECTABLE, STATUS_UPDATE_TARGETS,
    DeliveryStatus, DonationStatus, LifecycleState, assigned, sources_for,
)
from foodrelay.db import DONATIONS, USERS
from foodrelay.schemas import DonationIn
from foodrelay.services.geo import point
from foodrelay.services.notifications import notify

logger = logging.getLogger(__name__)

NOT_ASSIGNED = "Not authorized: you are not the assigned volunteer"

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

async def get_donation(store, donation_id: str) -> dict:
    donation = await store.find_one(DONATIONS, {"_id": donation_id})
    if not donation:
        raise NotFoundError("Donation not found")
    return donation

def _state(doc: dict) -> dict:
    return LifecycleState.of(doc).as_dict()

def _merge(*updates: dict) -> dict:
    out: dict = {}
    for u in updates:
        for op, fields in u.items():
            out.setdefault(op, {}).update(fields)
    return out

async def _rejected(store, donation_id: str, message: str, exc=InvalidTransitionError):
    current = await get_donation(store, donation_id)
    return exc(message, _state(current))

def _require_courier(donation: dict, actor: Actor) -> None:
    if not donation.get("volunteer") or (donation["volunteer"] != actor.id and actor.role != "admin"):
        raise AuthorizationError(NOT_ASSIGNED)

# --------------------------------------------------
# Volunteer / donor stat bookkeeping
# --------------------------------------------------
def _holds_courier(doc: dict) -> bool:
    """True while the assigned courier still counts this mission as open."""
    return bool(doc.get("volunteer")) and doc.get("delivery_status") in {s.value for s in COURIER_ACTIVE}

async def _release_courier(store, volunteer_id: Optional[str]) -> None:
    if not volunteer_id:
        return
    await store.update_one(
        USERS,
        {"_id": volunteer_id, "current_task_count": {"$gt": 0}},
        {"$inc": {"current_task_count": -1}},
    )

async def _apply_rating(store, donor_id: str, rating: int, attempts: int = 5) -> Optional[dict]:
    """Running average of donor ratings, guarded on the rating count."""
    for _ in range(attempts):
        donor = await store.find_one(USERS, {"_id": donor_id})
        if not donor:
            return None
        stats = donor.get("stats") or {}
        raw_count = stats.get("total_ratings")
        count = raw_count or 0
        old = stats.get("trust_score", 5.0) if count else 0.0
        new = (old * count + rating) / (count + 1)
        updated = await store.update_one(
            USERS,
            {"_id": donor_id, "stats.total_ratings": raw_count},
            {"$set": {"stats.trust_score": round(new, 2), "stats.total_ratings": count + 1}},
        )
        if updated:
            return updated
    logger.warning("gave up updating trust score for donor %s after %d attempts", donor_id, attempts)
    return None

# --------------------------------------------------
# Creation
# --------------------------------------------------
async def create_donation(store, actor: Actor, data: DonationIn, now: Optional[datetime] = None) -> dict:
    ensure_role(actor, ["donor"])
    now = now or _utcnow()
    margin = timedelta(hours=settings.min_safety_margin_h)

    if data.expiry_date - now <= margin:
        raise ValidationError(
            f"Food items must be valid for at least {settings.min_safety_margin_h:g} hours before expiry for safety."
        )
    if data.pickup_window.start >= data.pickup_window.end:
        raise ValidationError("Pickup window must start before it ends.")
    if data.pickup_window.end >= data.expiry_date:
        raise ValidationError("Pickup window must end before the food expires.")

    doc = {
        "title": data.title,
        "description": data.description,
        "food_type": data.food_type,
        "quantity": data.parsed_quantity().model_dump(),
        "expiry_date": data.expiry_date,
        "perishability": data.perishability,
        "food_category": data.food_category,
        "storage_req": data.storage_req,
        "pickup_window": data.pickup_window.model_dump(),
        "pickup_address": data.pickup_address,
        "geo": point(*data.coordinates),
        "allergens": data.allergens,
        "dietary_tags": data.dietary_tags,
        "photos": data.photos,
        "donor": actor.id,
        "status": DonationStatus.ACTIVE.value,
        "created_at": now,
        "updated_at": now,
    }
    saved = await store.insert(DONATIONS, doc)

    query = {"role": "ngo", "status": "active"}
    ngos = await store.near(USERS, "geo", saved["geo"]["coordinates"], settings.ngo_radius_km * 1000.0, query)
    for ngo in ngos:
        await notify(store, ngo["_id"], f"New donation available: {data.title}", "donation_created",
                     related_donation=saved["_id"], now=now)
    logger.info("donation %s created by %s, %d ngo(s) notified", saved["_id"], actor.id, len(ngos))
    return saved

# --------------------------------------------------
# Claim / accept (single-winner)
# --------------------------------------------------
async def claim(store, donation_id: str, actor: Actor, now: Optional[datetime] = None) -> dict:
    ensure_role(actor, ["ngo"])
    now = now or _utcnow()
    await get_donation(store, donation_id)

    updated = await store.update_one(
        DONATIONS,
        {"_id": donation_id, "status": DonationStatus.ACTIVE.value},
        _merge(assigned(DeliveryStatus.IDLE).as_update(),
               {"$set": {"claimed_by": actor.id, "claimed_at": now, "updated_at": now}}),
    )
    if not updated:
        raise await _rejected(store, donation_id, "Donation is no longer available", NotAvailableError)

    await notify(store, updated["donor"], f"Your donation '{updated['title']}' was claimed",
                 "donation_assigned", related_donation=donation_id, now=now)
    return updated

async def accept_mission(store, donation_id: str, actor: Actor, now: Optional[datetime] = None) -> dict:
    ensure_role(actor, ["volunteer"])
    now = now or _utcnow()
    await get_donation(store, donation_id)

    updated = await store.update_one(
        DONATIONS,
        {
            "_id": donation_id,
            "status": DonationStatus.ASSIGNED.value,
            "delivery_status": DeliveryStatus.IDLE.value,
            "volunteer": {"$exists": False},
        },
        _merge(assigned(DeliveryStatus.PENDING_PICKUP).as_update(),
               {"$set": {"volunteer": actor.id, "accepted_at": now, "updated_at": now},
                "$unset": {"dispatched_to": "", "dispatched_at": ""}}),
    )
    if not updated:
        raise await _rejected(store, donation_id, "Mission is no longer available", NotAvailableError)

    await store.update_one(
        USERS, {"_id": actor.id},
        {"$inc": {"current_task_count": 1}, "$set": {"volunteer_profile.last_mission_date": now}},
    )
    for recipient in (updated.get("claimed_by"), updated["donor"]):
        await notify(store, recipient, f"A volunteer accepted the delivery of '{updated['title']}'",
                     "volunteer_accepted", related_donation=donation_id, now=now)
    return updated

# --------------------------------------------------
# Courier progress
# --------------------------------------------------
async def update_delivery_status(store, donation_id: str, actor: Actor, target: str,
                                 now: Optional[datetime] = None) -> dict:
    ensure_role(actor, ["volunteer"])
    now = now or _utcnow()
    donation = await get_donation(store, donation_id)
    _require_courier(donation, actor)

    try:
        dst = DeliveryStatus(target)
    except ValueError:
        raise InvalidTransitionError(f"Unknown delivery status '{target}'", _state(donation))
    if dst not in STATUS_UPDATE_TARGETS:
        raise InvalidTransitionError(
            f"Delivery status '{dst.value}' can only be set through its dedicated action", _state(donation)
        )

    updated = await store.update_one(
        DONATIONS,
        {"_id": donation_id, "status": DonationStatus.ASSIGNED.value,
         "volunteer": donation["volunteer"], "delivery_status": {"$in": sources_for(dst)}},
        _merge(assigned(dst).as_update(), {"$set": {"updated_at": now}}),
    )
    if not updated:
        raise await _rejected(store, donation_id, f"Cannot move delivery to '{dst.value}' from the current state")
    return updated

async def confirm_pickup(store, donation_id: str, actor: Actor, photo_url: str, notes: Optional[str] = None,
                         now: Optional[datetime] = None) -> dict:
    ensure_role(actor, ["volunteer"])
    now = now or _utcnow()
    donation = await get_donation(store, donation_id)
    _require_courier(donation, actor)

    updated = await store.update_one(
        DONATIONS,
        {"_id": donation_id, "status": DonationStatus.ASSIGNED.value, "volunteer": donation["volunteer"],
         "delivery_status": {"$in": [s.value for s in PICKUP_FROM]}},
        _merge(assigned(DeliveryStatus.PICKED_UP).as_update(),
               {"$set": {"pickup_photo": photo_url, "pickup_notes": notes, "picked_up_at": now, "updated_at": now}}),
    )
    if not updated:
        raise await _rejected(store, donation_id, "Donation cannot be picked up in its current state")

    for recipient in (updated["donor"], updated.get("claimed_by")):
        await notify(store, recipient, f"'{updated['title']}' has been picked up", "donation_picked_up",
                     related_donation=donation_id, now=now)
    return updated

async def confirm_delivery(store, donation_id: str, actor: Actor, photo_url: str, notes: Optional[str] = None,
                           now: Optional[datetime] = None) -> dict:
    ensure_role(actor, ["volunteer"])
    now = now or _utcnow()
    donation = await get_donation(store, donation_id)
    _require_courier(donation, actor)

    updated = await store.update_one(
        DONATIONS,
        {"_id": donation_id, "status": DonationStatus.ASSIGNED.value, "volunteer": donation["volunteer"],
         "delivery_status": {"$in": [s.value for s in DELIVER_FROM]}},
        _merge(assigned(DeliveryStatus.DELIVERED).as_update(),
               {"$set": {"delivery_photo": photo_url, "delivery_notes": notes, "delivered_at": now,
                         "updated_at": now}}),
    )
    if not updated:
        raise await _rejected(store, donation_id, "Donation cannot be delivered in its current state")

    await _release_courier(store, updated["volunteer"])
    for recipient in (updated.get("claimed_by"), updated["donor"]):
        await notify(store, recipient, f"'{updated['title']}' has been delivered", "donation_delivered",
                     related_donation=donation_id, now=now)
    return updated

async def record_eta(store, donation_id: str, actor: Actor, minutes: int, now: Optional[datetime] = None) -> dict:
    """Commit the courier's route ETA; the stall detector holds them to it."""
    now = now or _utcnow()
    eta = now + timedelta(minutes=minutes)
    updated = await store.update_one(
        DONATIONS,
        {"_id": donation_id, "status": DonationStatus.ASSIGNED.value, "volunteer": actor.id},
        {"$set": {"estimated_arrival_at": eta, "updated_at": now}},
    )
    if not updated:
        raise await _rejected(store, donation_id, "No active mission to commit an ETA for")
    return updated

# --------------------------------------------------
# Terminal transitions
# --------------------------------------------------
async def complete(store, donation_id: str, actor: Actor, rating: Optional[int] = None,
                   comment: Optional[str] = None, now: Optional[datetime] = None) -> dict:
    ensure_role(actor, ["ngo"])
    now = now or _utcnow()
    donation = await get_donation(store, donation_id)
    if donation.get("claimed_by") != actor.id and actor.role != "admin":
        raise AuthorizationError("Not authorized: only the claiming NGO can complete this donation")

    feedback = {"rating": rating, "comment": comment, "by": actor.id, "at": now} if (rating or comment) else None
    updated = await store.update_one(
        DONATIONS,
        {"_id": donation_id, "status": DonationStatus.ASSIGNED.value,
         "delivery_status": DeliveryStatus.DELIVERED.value},
        _merge(LifecycleState(DonationStatus.COMPLETED).as_update(),
               {"$set": {"feedback": feedback, "completed_at": now, "updated_at": now}}),
    )
    if not updated:
        raise await _rejected(store, donation_id, "Donation must be delivered before it can be completed")

    if rating:
        await _apply_rating(store, updated["donor"], rating)
    await store.update_one(USERS, {"_id": updated["donor"]}, {"$inc": {"stats.completed_donations": 1}})
    if updated.get("volunteer"):
        await store.update_one(USERS, {"_id": updated["volunteer"]}, {"$inc": {"stats.completed_donations": 1}})

    await notify(store, updated["donor"], f"Your donation '{updated['title']}' was completed",
                 "donation_completed", related_donation=donation_id, now=now)
    return updated

async def cancel(store, donation_id: str, actor: Actor, now: Optional[datetime] = None) -> dict:
    ensure_role(actor, ["donor"])
    now = now or _utcnow()
    donation = await get_donation(store, donation_id)
    if donation["donor"] != actor.id and actor.role != "admin":
        raise AuthorizationError("Not authorized to cancel this donation")

    updated = await store.update_one(
        DONATIONS,
        {"_id": donation_id, "status": {"$in": [s.value for s in CANCELLABLE]},
         "volunteer": donation.get("volunteer"), "delivery_status": donation.get("delivery_status")},
        _merge(LifecycleState(DonationStatus.CANCELLED).as_update(),
               {"$set": {"cancelled_at": now, "updated_at": now}}),
    )
    if not updated:
        raise await _rejected(store, donation_id,
                              f"Cannot cancel donation when it is in status: {donation['status']}")

    if _holds_courier(donation):
        await _release_courier(store, donation["volunteer"])
    await store.update_one(USERS, {"_id": updated["donor"]}, {"$inc": {"stats.cancelled_donations": 1}})
    msg = f"Donation '{updated['title']}' was cancelled"
    await notify(store, updated["donor"], msg, "donation_cancelled", related_donation=donation_id, now=now)
    for recipient in (updated.get("claimed_by"), updated.get("volunteer")):
        if recipient:
            await notify(store, recipient, msg, "donation_cancelled", related_donation=donation_id, now=now)
    return updated

async def reject(store, donation_id: str, actor: Actor, reason: str, now: Optional[datetime] = None) -> dict:
    ensure_role(actor, ["ngo"])
    now = now or _utcnow()
    donation = await get_donation(store, donation_id)
    claimant = donation.get("claimed_by")
    if claimant and claimant != actor.id and actor.role != "admin":
        raise AuthorizationError("Not authorized: donation is claimed by another NGO")

    updated = await store.update_one(
        DONATIONS,
        {"_id": donation_id, "status": {"$in": [s.value for s in REJECTABLE]}, "claimed_by": claimant,
         "volunteer": donation.get("volunteer"), "delivery_status": donation.get("delivery_status")},
        _merge(LifecycleState(DonationStatus.REJECTED).as_update(),
               {"$set": {"rejection_reason": reason, "rejected_by": actor.id, "updated_at": now}}),
    )
    if not updated:
        raise await _rejected(store, donation_id,
                              f"Cannot reject donation when it is in status: {donation['status']}")

    if _holds_courier(donation):
        await _release_courier(store, donation["volunteer"])
    await notify(store, updated["donor"], f"Your donation '{updated['title']}' was rejected: {reason}",
                 "donation_rejected", related_donation=donation_id, now=now)
    if updated.get("volunteer"):
        await notify(store, updated["volunteer"], f"Mission for '{updated['title']}' was called off",
                     "donation_rejected", related_donation=donation_id, now=now)
    return updated

# --------------------------------------------------
# Supervisor-driven transitions
# --------------------------------------------------
async def reassign_mission(store, donation_id: str, reason: str, now: Optional[datetime] = None,
                           expected_volunteer: Optional[str] = None) -> Optional[dict]:
    """
    Drop the courier from an in-flight mission. The donation stays with its
    NGO, courier-less and idle. Returns None when the mission already moved on.
    """
    now = now or _utcnow()
    query: dict = {"_id": donation_id, "status": DonationStatus.ASSIGNED.value,
                   "delivery_status": {"$ne": DeliveryStatus.DELIVERED.value}}
    query["volunteer"] = expected_volunteer if expected_volunteer else {"$exists": True}

    before = await store.find_one(DONATIONS, query)
    if not before:
        return None
    updated = await store.update_one(
        DONATIONS,
        {**query, "volunteer": before["volunteer"]},
        _merge(assigned(DeliveryStatus.IDLE).as_update(),
               {"$set": {"last_reassigned_at": now, "reassign_reason": reason, "updated_at": now},
                "$unset": {"volunteer": "", "estimated_arrival_at": "", "dispatched_to": "", "dispatched_at": ""}}),
    )
    if not updated:
        return None

    volunteer_id = before["volunteer"]
    await _release_courier(store, volunteer_id)
    logger.warning("mission %s reassigned away from %s: %s", donation_id, volunteer_id, reason)
    if updated.get("claimed_by"):
        await notify(store, updated["claimed_by"],
                     f"Courier for '{updated['title']}' was unassigned ({reason}); finding a new volunteer",
                     "mission_reassigned", related_donation=donation_id, now=now)
    await notify(store, volunteer_id, f"You were unassigned from '{updated['title']}' ({reason})",
                 "mission_reassigned", related_donation=donation_id, now=now)
    return updated

async def fail_mission(store, donation_id: str, actor: Actor, reason: str, now: Optional[datetime] = None) -> dict:
    ensure_role(actor, ["volunteer"])
    now = now or _utcnow()
    donation = await get_donation(store, donation_id)
    _require_courier(donation, actor)

    updated = await reassign_mission(store, donation_id, reason, now=now, expected_volunteer=donation["volunteer"])
    if not updated:
        raise await _rejected(store, donation_id, "Mission can no longer be abandoned")
    await store.update_one(USERS, {"_id": donation["volunteer"]}, {"$inc": {"stats.cancelled_donations": 1}})
    return updated

async def expire(store, donation_id: str, now: Optional[datetime] = None) -> Optional[dict]:
    now = now or _utcnow()
    updated = await store.update_one(
        DONATIONS,
        {"_id": donation_id, "status": DonationStatus.ACTIVE.value, "expiry_date": {"$lt": now}},
        _merge(LifecycleState(DonationStatus.EXPIRED).as_update(), {"$set": {"expired_at": now, "updated_at": now}}),
    )
    if updated:
        await notify(store, updated["donor"], f"Your donation '{updated['title']}' expired before it was claimed",
                     "donation_expired", related_donation=donation_id, now=now)
    return updated

async def record_dispatch(store, donation_id: str, volunteer_ids: List[str],
                          now: Optional[datetime] = None) -> Optional[dict]:
    """Escalation bookkeeping; only while the claim still has no courier."""
    now = now or _utcnow()
    return await store.update_one(
        DONATIONS,
        {"_id": donation_id, "status": DonationStatus.ASSIGNED.value,
         "delivery_status": DeliveryStatus.IDLE.value, "volunteer": {"$exists": False}},
        {"$set": {"dispatched_to": volunteer_ids, "dispatched_at": now, "updated_at": now}},
    )
