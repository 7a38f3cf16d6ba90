# tests/test_lifecycle.py
from datetime import timedelta

import pytest

from conftest import BASE, actor, make_donation, make_user, north
from foodrelay.core.errors import (
    AuthorizationError, InvalidTransitionError, NotAvailableError, NotFoundError, ValidationError,
)
from foodrelay.db import NOTIFICATIONS, USERS
from foodrelay.schemas import DonationIn
from foodrelay.services import lifecycle

pytestmark = pytest.mark.anyio

def _body(now, expiry_h=12, window_end_h=2, **kw):
    data = dict(
        title="Rice trays", food_type="cooked", quantity="50 kg", perishability="high",
        expiry_date=now + timedelta(hours=expiry_h),
        pickup_window={"start": now + timedelta(hours=1), "end": now + timedelta(hours=window_end_h)},
        coordinates=list(BASE),
    )
    data.update(kw)
    return DonationIn(**data)

@pytest.fixture
async def cast(store, now):
    donor = await make_user(store, "donor")
    ngo = await make_user(store, "ngo", coords=north(2), ngo_profile={"daily_capacity": 10})
    vol = await make_user(store, "volunteer", coords=north(1), now=now, is_online=True)
    return donor, ngo, vol

async def _fresh(store, uid):
    return await store.find_one(USERS, {"_id": uid})

async def test_creation_requires_two_hour_margin(store, now, cast):
    donor, _, _ = cast
    with pytest.raises(ValidationError, match="at least 2 hours"):
        await lifecycle.create_donation(store, actor(donor), _body(now, expiry_h=1, window_end_h=0.5), now=now)

async def test_pickup_window_must_end_before_expiry(store, now, cast):
    donor, _, _ = cast
    with pytest.raises(ValidationError, match="before the food expires"):
        await lifecycle.create_donation(store, actor(donor), _body(now, expiry_h=5, window_end_h=6), now=now)

async def test_creation_stores_parsed_fields_and_notifies_nearby_ngos(store, now, cast):
    donor, ngo, _ = cast
    await make_user(store, "ngo", coords=north(40))
    d = await lifecycle.create_donation(store, actor(donor), _body(now), now=now)
    assert d["status"] == "active"
    assert d["quantity"] == {"text": "50 kg", "magnitude": 50.0, "unit": "kg"}
    assert d["geo"]["coordinates"] == list(BASE)

    notes = await store.find(NOTIFICATIONS, {"related_donation": d["_id"]})
    assert [n["recipient"] for n in notes] == [ngo["_id"]]
    assert notes[0]["type"] == "donation_created"

async def test_only_donors_create(store, now, cast):
    _, ngo, _ = cast
    with pytest.raises(AuthorizationError):
        await lifecycle.create_donation(store, actor(ngo), _body(now), now=now)

async def test_full_lifecycle_updates_trust_score(store, now, cast):
    donor, ngo, vol = cast
    await store.update_one(USERS, {"_id": donor["_id"]},
                           {"$set": {"stats.trust_score": 4.0, "stats.total_ratings": 1}})

    d = await lifecycle.create_donation(store, actor(donor), _body(now), now=now)
    d = await lifecycle.claim(store, d["_id"], actor(ngo), now=now)
    assert (d["status"], d["delivery_status"]) == ("assigned", "idle")

    d = await lifecycle.accept_mission(store, d["_id"], actor(vol), now=now)
    assert d["delivery_status"] == "pending_pickup"
    assert (await _fresh(store, vol["_id"]))["current_task_count"] == 1

    d = await lifecycle.update_delivery_status(store, d["_id"], actor(vol), "heading_to_pickup", now=now)
    d = await lifecycle.confirm_pickup(store, d["_id"], actor(vol), "https://img/p.jpg", now=now)
    assert d["delivery_status"] == "picked_up"
    assert d["picked_up_at"] == now

    d = await lifecycle.update_delivery_status(store, d["_id"], actor(vol), "in_transit", now=now)
    d = await lifecycle.confirm_delivery(store, d["_id"], actor(vol), "https://img/d.jpg", "left at gate", now=now)
    assert (d["status"], d["delivery_status"]) == ("assigned", "delivered")
    assert d["delivery_notes"] == "left at gate"
    assert (await _fresh(store, vol["_id"]))["current_task_count"] == 0

    d = await lifecycle.complete(store, d["_id"], actor(ngo), rating=5, comment="great", now=now)
    assert d["status"] == "completed"
    assert "delivery_status" not in d

    stats = (await _fresh(store, donor["_id"]))["stats"]
    assert stats["trust_score"] == 4.5
    assert stats["total_ratings"] == 2
    assert stats["completed_donations"] == 1
    assert (await _fresh(store, vol["_id"]))["stats"]["completed_donations"] == 1

    with pytest.raises(InvalidTransitionError):
        await lifecycle.cancel(store, d["_id"], actor(donor), now=now)

async def _claimed_and_accepted(store, now, cast):
    donor, ngo, vol = cast
    d = await make_donation(store, donor, now)
    await lifecycle.claim(store, d["_id"], actor(ngo), now=now)
    return await lifecycle.accept_mission(store, d["_id"], actor(vol), now=now)

async def test_deliver_without_assigned_volunteer_is_unauthorized(store, now, cast):
    donor, ngo, vol = cast
    d = await make_donation(store, donor, now)
    with pytest.raises(AuthorizationError):
        await lifecycle.confirm_delivery(store, d["_id"], actor(vol), "https://img/d.jpg", now=now)
    await lifecycle.claim(store, d["_id"], actor(ngo), now=now)
    with pytest.raises(AuthorizationError):
        await lifecycle.confirm_pickup(store, d["_id"], actor(vol), "https://img/p.jpg", now=now)

async def test_other_volunteer_is_unauthorized(store, now, cast):
    d = await _claimed_and_accepted(store, now, cast)
    other = await make_user(store, "volunteer", coords=north(1), now=now)
    with pytest.raises(AuthorizationError):
        await lifecycle.update_delivery_status(store, d["_id"], actor(other), "at_pickup", now=now)

async def test_delivered_is_reserved_for_deliver_action(store, now, cast):
    d = await _claimed_and_accepted(store, now, cast)
    vol = cast[2]
    with pytest.raises(InvalidTransitionError) as exc:
        await lifecycle.update_delivery_status(store, d["_id"], actor(vol), "delivered", now=now)
    assert not isinstance(exc.value, AuthorizationError)
    assert exc.value.current["delivery_status"] == "pending_pickup"

async def test_delivery_status_cannot_jump_ahead(store, now, cast):
    d = await _claimed_and_accepted(store, now, cast)
    vol = cast[2]
    with pytest.raises(InvalidTransitionError):
        await lifecycle.update_delivery_status(store, d["_id"], actor(vol), "arrived_at_delivery", now=now)
    with pytest.raises(InvalidTransitionError):
        await lifecycle.update_delivery_status(store, d["_id"], actor(vol), "on-the-way", now=now)

async def test_deliver_before_pickup_is_invalid(store, now, cast):
    d = await _claimed_and_accepted(store, now, cast)
    with pytest.raises(InvalidTransitionError):
        await lifecycle.confirm_delivery(store, d["_id"], actor(cast[2]), "https://img/d.jpg", now=now)

async def test_complete_requires_delivery_and_claimant(store, now, cast):
    donor, ngo, vol = cast
    d = await _claimed_and_accepted(store, now, cast)
    with pytest.raises(InvalidTransitionError):
        await lifecycle.complete(store, d["_id"], actor(ngo), now=now)
    other_ngo = await make_user(store, "ngo", coords=north(3))
    with pytest.raises(AuthorizationError):
        await lifecycle.complete(store, d["_id"], actor(other_ngo), now=now)

async def test_cancel_by_owner_only_and_frees_courier(store, now, cast):
    donor, ngo, vol = cast
    d = await _claimed_and_accepted(store, now, cast)
    intruder = await make_user(store, "donor")
    with pytest.raises(AuthorizationError):
        await lifecycle.cancel(store, d["_id"], actor(intruder), now=now)

    d = await lifecycle.cancel(store, d["_id"], actor(donor), now=now)
    assert d["status"] == "cancelled"
    assert "delivery_status" not in d
    assert (await _fresh(store, vol["_id"]))["current_task_count"] == 0
    assert (await _fresh(store, donor["_id"]))["stats"]["cancelled_donations"] == 1

    with pytest.raises(NotAvailableError):
        await lifecycle.claim(store, d["_id"], actor(ngo), now=now)

async def _deliver(store, now, vol, d):
    await lifecycle.confirm_pickup(store, d["_id"], actor(vol), "https://img/p.jpg", now=now)
    return await lifecycle.confirm_delivery(store, d["_id"], actor(vol), "https://img/d.jpg", now=now)

async def test_cancel_after_delivery_keeps_other_mission_counted(store, now, cast):
    donor, _, vol = cast
    first = await _claimed_and_accepted(store, now, cast)
    await _claimed_and_accepted(store, now, cast)
    assert (await _fresh(store, vol["_id"]))["current_task_count"] == 2

    first = await _deliver(store, now, vol, first)
    assert first["delivery_status"] == "delivered"
    assert (await _fresh(store, vol["_id"]))["current_task_count"] == 1

    d = await lifecycle.cancel(store, first["_id"], actor(donor), now=now)
    assert d["status"] == "cancelled"
    assert (await _fresh(store, vol["_id"]))["current_task_count"] == 1

async def test_reject_after_delivery_keeps_other_mission_counted(store, now, cast):
    _, ngo, vol = cast
    first = await _claimed_and_accepted(store, now, cast)
    await _claimed_and_accepted(store, now, cast)
    await _deliver(store, now, vol, first)

    d = await lifecycle.reject(store, first["_id"], actor(ngo), "Spoiled on arrival", now=now)
    assert d["status"] == "rejected"
    assert (await _fresh(store, vol["_id"]))["current_task_count"] == 1

async def test_reject_in_flight_mission_frees_courier(store, now, cast):
    _, ngo, vol = cast
    d = await _claimed_and_accepted(store, now, cast)
    await lifecycle.reject(store, d["_id"], actor(ngo), "Closed early", now=now)
    assert (await _fresh(store, vol["_id"]))["current_task_count"] == 0

async def test_reject_records_reason_and_is_terminal(store, now, cast):
    donor, ngo, _ = cast
    d = await make_donation(store, donor, now)
    d = await lifecycle.reject(store, d["_id"], actor(ngo), "No cold storage today", now=now)
    assert d["status"] == "rejected"
    assert d["rejection_reason"] == "No cold storage today"
    with pytest.raises(InvalidTransitionError):
        await lifecycle.reject(store, d["_id"], actor(ngo), "again", now=now)

async def test_reject_by_non_claimant_is_unauthorized(store, now, cast):
    donor, ngo, _ = cast
    d = await make_donation(store, donor, now)
    await lifecycle.claim(store, d["_id"], actor(ngo), now=now)
    other = await make_user(store, "ngo", coords=north(3))
    with pytest.raises(AuthorizationError):
        await lifecycle.reject(store, d["_id"], actor(other), "not mine", now=now)

async def test_fail_mission_returns_donation_to_pool(store, now, cast):
    donor, ngo, vol = cast
    d = await _claimed_and_accepted(store, now, cast)
    d = await lifecycle.fail_mission(store, d["_id"], actor(vol), "flat tyre", now=now)
    assert (d["status"], d["delivery_status"]) == ("assigned", "idle")
    assert "volunteer" not in d
    assert d["claimed_by"] == ngo["_id"]
    fresh = await _fresh(store, vol["_id"])
    assert fresh["current_task_count"] == 0
    assert fresh["stats"]["cancelled_donations"] == 1

    again = await lifecycle.accept_mission(store, d["_id"], actor(vol), now=now)
    assert again["volunteer"] == vol["_id"]

async def test_unknown_donation(store, now, cast):
    with pytest.raises(NotFoundError):
        await lifecycle.claim(store, "000000000000000000000000", actor(cast[1]), now=now)

async def test_expire_only_touches_overdue_active(store, now, cast):
    donor = cast[0]
    fresh = await make_donation(store, donor, now, hours_to_expiry=3)
    overdue = await make_donation(store, donor, now, hours_to_expiry=-1)
    assert await lifecycle.expire(store, fresh["_id"], now=now) is None
    d = await lifecycle.expire(store, overdue["_id"], now=now)
    assert d["status"] == "expired"
    assert await lifecycle.expire(store, overdue["_id"], now=now) is None
