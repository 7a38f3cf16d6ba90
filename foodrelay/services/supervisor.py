# foodrelay/services/supervisor.py
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional

import httpx

from foodrelay.core.errors import SchedulerTaskError
from foodrelay.core.states import COURIER_ACTIVE, DeliveryStatus, DonationStatus
from foodrelay.db import DONATIONS, USERS
from foodrelay.services import lifecycle
from foodrelay.services.geo import get_path
from foodrelay.services.matching import find_suitable_volunteers
from foodrelay.services.notifications import notify

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Supervisor:
    """
    Periodic background jobs: stall detection, expiry, escalation and the
    liveness ping. Each job runs in its own task; a failing pass is logged
    and the job keeps its schedule. ``run_once`` runs passes inline for tests.
    """

    def __init__(self, store, settings, clock: Clock = _utcnow, http: Optional[httpx.AsyncClient] = None):
        self.store = store
        self.settings = settings
        self.clock = clock
        self.http = http
        self._tasks: List[asyncio.Task] = []
        self.jobs: Dict[str, Callable[[datetime], Awaitable[object]]] = {
            "stall_detector": self.check_stalled_missions,
            "expiry_watchdog": self.expire_donations,
            "escalation": self.escalate_unaccepted,
            "heartbeat": self.ping,
        }
        self.intervals: Dict[str, float] = {
            "stall_detector": settings.stall_interval_min * 60,
            "expiry_watchdog": settings.expiry_interval_min * 60,
            "escalation": settings.escalation_interval_min * 60,
            "heartbeat": settings.heartbeat_interval_min * 60,
        }

    # ---------- lifecycle ----------
    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._loop(name), name=f"supervisor:{name}") for name in self.jobs
        ]
        logger.info("supervisor started with %d jobs", len(self._tasks))

    async def stop(self) -> None:
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("supervisor stopped")

    async def _loop(self, name: str) -> None:
        interval = self.intervals[name]
        while True:
            await asyncio.sleep(interval)
            await self._run_job(name)

    async def _run_job(self, name: str):
        try:
            return await self.jobs[name](self.clock())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            err = SchedulerTaskError(name, e)
            logger.exception(err.message)
            return err

    async def run_once(self, *names: str) -> Dict[str, object]:
        """One pass of the named jobs (all when none given), in order."""
        return {name: await self._run_job(name) for name in (names or tuple(self.jobs))}

    # ---------- jobs ----------
    def stall_reason(self, donation: dict, volunteer: Optional[dict], now: datetime) -> Optional[str]:
        timeout = timedelta(minutes=self.settings.heartbeat_timeout_min)
        last_seen = get_path(volunteer or {}, "volunteer_profile.last_location_update") or donation.get("accepted_at")
        if last_seen is None or now - last_seen > timeout:
            return "heartbeat timeout"
        eta = donation.get("estimated_arrival_at")
        if eta is not None and now - eta > timedelta(minutes=self.settings.eta_grace_min):
            return "ETA violation"
        return None

    async def check_stalled_missions(self, now: datetime) -> List[str]:
        in_flight = await self.store.find(DONATIONS, {
            "status": DonationStatus.ASSIGNED.value,
            "volunteer": {"$exists": True},
            "delivery_status": {"$in": [s.value for s in COURIER_ACTIVE]},
        })
        reassigned = []
        for d in in_flight:
            vol = await self.store.find_one(USERS, {"_id": d["volunteer"]})
            reason = self.stall_reason(d, vol, now)
            if not reason:
                continue
            if await lifecycle.reassign_mission(self.store, d["_id"], reason, now=now, expected_volunteer=d["volunteer"]):
                reassigned.append(d["_id"])
        if reassigned:
            logger.info("stall detector reassigned %d mission(s)", len(reassigned))
        return reassigned

    async def expire_donations(self, now: datetime) -> List[str]:
        stale = await self.store.find(DONATIONS, {"status": DonationStatus.ACTIVE.value, "expiry_date": {"$lt": now}})
        expired = []
        for d in stale:
            if await lifecycle.expire(self.store, d["_id"], now=now):
                expired.append(d["_id"])
        if expired:
            logger.info("expiry watchdog expired %d donation(s)", len(expired))
        return expired

    async def escalate_unaccepted(self, now: datetime) -> Dict[str, List[str]]:
        cutoff = now - timedelta(minutes=self.settings.escalation_claim_age_min)
        waiting = await self.store.find(DONATIONS, {
            "status": DonationStatus.ASSIGNED.value,
            "delivery_status": DeliveryStatus.IDLE.value,
            "volunteer": {"$exists": False},
            "claimed_at": {"$lt": cutoff},
            "dispatched_at": {"$exists": False},
        })
        dispatched: Dict[str, List[str]] = {}
        for d in waiting:
            ranked = await find_suitable_volunteers(
                self.store, d, radius_km=self.settings.escalation_radius_km, now=now,
                limit=self.settings.escalation_top_n,
            )
            ids = [v["id"] for v in ranked]
            if not ids:
                logger.info("escalation found no volunteers for donation %s", d["_id"])
                continue
            if not await lifecycle.record_dispatch(self.store, d["_id"], ids, now=now):
                continue
            for vid in ids:
                await notify(self.store, vid, f"Urgent: '{d['title']}' needs a courier near you",
                             "mission_dispatch", related_donation=d["_id"], priority="high", now=now)
            dispatched[d["_id"]] = ids
        return dispatched

    async def ping(self, now: datetime) -> Optional[int]:
        url = self.settings.public_url
        if not url:
            logger.debug("no public url configured, skipping heartbeat ping")
            return None
        if self.http is not None:
            r = await self.http.get(url)
        else:
            async with httpx.AsyncClient(timeout=10.0) as c:
                r = await c.get(url)
        if r.status_code == 200:
            logger.info("heartbeat ping ok")
        else:
            logger.warning("heartbeat ping returned %s", r.status_code)
        return r.status_code
