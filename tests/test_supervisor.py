# tests/test_supervisor.py
from datetime import timedelta

import httpx
import pytest

from conftest import make_donation, make_user, north
from foodrelay.core.config import settings
from foodrelay.core.errors import SchedulerTaskError
from foodrelay.db import DONATIONS, NOTIFICATIONS, USERS
from foodrelay.services.supervisor import Supervisor

pytestmark = pytest.mark.anyio

def supervisor(store, now, **overrides):
    return Supervisor(store, settings.model_copy(update=overrides), clock=lambda: now)

async def _in_flight(store, now, heartbeat_age_min, eta=None):
    donor = await make_user(store, "donor")
    ngo = await make_user(store, "ngo", coords=north(3))
    vol = await make_user(store, "volunteer", coords=north(1), now=now - timedelta(minutes=heartbeat_age_min),
                          is_online=True)
    await store.update_one(USERS, {"_id": vol["_id"]}, {"$set": {"current_task_count": 1}})
    fields = {"status": "assigned", "delivery_status": "pending_pickup", "claimed_by": ngo["_id"],
              "claimed_at": now - timedelta(hours=1), "volunteer": vol["_id"]}
    if eta is not None:
        fields["estimated_arrival_at"] = eta
    d = await make_donation(store, donor, now, hours_to_expiry=5, **fields)
    return ngo, vol, d

async def test_stale_heartbeat_triggers_reassignment(store, now):
    ngo, vol, d = await _in_flight(store, now, heartbeat_age_min=20, eta=now + timedelta(minutes=30))
    result = await supervisor(store, now).run_once("stall_detector")
    assert result == {"stall_detector": [d["_id"]]}

    updated = await store.find_one(DONATIONS, {"_id": d["_id"]})
    assert updated["status"] == "assigned"
    assert updated["delivery_status"] == "idle"
    assert "volunteer" not in updated
    assert "estimated_arrival_at" not in updated
    assert updated["reassign_reason"] == "heartbeat timeout"
    assert (await store.find_one(USERS, {"_id": vol["_id"]}))["current_task_count"] == 0

    notes = await store.find(NOTIFICATIONS, {"type": "mission_reassigned"})
    assert {n["recipient"] for n in notes} == {ngo["_id"], vol["_id"]}

async def test_overdue_eta_triggers_reassignment(store, now):
    _, _, d = await _in_flight(store, now, heartbeat_age_min=2, eta=now - timedelta(minutes=25))
    await supervisor(store, now).run_once("stall_detector")
    updated = await store.find_one(DONATIONS, {"_id": d["_id"]})
    assert updated["reassign_reason"] == "ETA violation"

async def test_healthy_mission_is_left_alone(store, now):
    _, vol, d = await _in_flight(store, now, heartbeat_age_min=5, eta=now - timedelta(minutes=10))
    result = await supervisor(store, now).run_once("stall_detector")
    assert result == {"stall_detector": []}
    assert (await store.find_one(DONATIONS, {"_id": d["_id"]}))["volunteer"] == vol["_id"]

async def test_expiry_watchdog(store, now):
    donor = await make_user(store, "donor")
    stale = await make_donation(store, donor, now, hours_to_expiry=-0.5)
    live = await make_donation(store, donor, now, hours_to_expiry=4)
    claimed = await make_donation(store, donor, now, hours_to_expiry=-1, status="assigned", delivery_status="idle")

    result = await supervisor(store, now).run_once("expiry_watchdog")
    assert result["expiry_watchdog"] == [stale["_id"]]
    assert (await store.find_one(DONATIONS, {"_id": live["_id"]}))["status"] == "active"
    assert (await store.find_one(DONATIONS, {"_id": claimed["_id"]}))["status"] == "assigned"
    note = await store.find_one(NOTIFICATIONS, {"type": "donation_expired"})
    assert note["recipient"] == donor["_id"]

async def test_escalation_widens_search_and_dispatches_top_three(store, now):
    donor = await make_user(store, "donor")
    ngo = await make_user(store, "ngo", coords=north(1))
    vols = [await make_user(store, "volunteer", coords=north(km), now=now, is_online=True)
            for km in (12, 14, 16, 18)]
    await make_user(store, "volunteer", coords=north(25), now=now, is_online=True)
    waiting = await make_donation(store, donor, now, status="assigned", delivery_status="idle",
                                  claimed_by=ngo["_id"], claimed_at=now - timedelta(minutes=6))
    fresh = await make_donation(store, donor, now, status="assigned", delivery_status="idle",
                                claimed_by=ngo["_id"], claimed_at=now - timedelta(minutes=2))

    sup = supervisor(store, now)
    result = await sup.run_once("escalation")
    expected = [v["_id"] for v in vols[:3]]
    assert result["escalation"] == {waiting["_id"]: expected}

    updated = await store.find_one(DONATIONS, {"_id": waiting["_id"]})
    assert updated["dispatched_to"] == expected
    assert "dispatched_to" not in await store.find_one(DONATIONS, {"_id": fresh["_id"]})

    notes = await store.find(NOTIFICATIONS, {"type": "mission_dispatch"})
    assert sorted(n["recipient"] for n in notes) == sorted(expected)
    assert all(n["priority"] == "high" for n in notes)

    # already dispatched; a second pass does not spam
    assert (await sup.run_once("escalation"))["escalation"] == {}

async def test_failing_job_does_not_stop_the_others(store, now):
    donor = await make_user(store, "donor")
    stale = await make_donation(store, donor, now, hours_to_expiry=-1)
    sup = supervisor(store, now)

    async def boom(_now):
        raise RuntimeError("store unreachable")

    sup.jobs["stall_detector"] = boom
    result = await sup.run_once()
    assert isinstance(result["stall_detector"], SchedulerTaskError)
    assert result["stall_detector"].task == "stall_detector"
    assert result["expiry_watchdog"] == [stale["_id"]]
    assert result["heartbeat"] is None

async def test_heartbeat_pings_public_url(store, now):
    seen = []

    def handler(request):
        seen.append(str(request.url))
        return httpx.Response(200)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        sup = Supervisor(store, settings.model_copy(update={"public_url": "https://relay.example/health"}),
                         clock=lambda: now, http=http)
        assert (await sup.run_once("heartbeat"))["heartbeat"] == 200
    assert seen == ["https://relay.example/health"]

async def test_start_and_stop(store, now):
    sup = supervisor(store, now)
    sup.start()
    assert sup.running
    await sup.stop()
    assert not sup.running
