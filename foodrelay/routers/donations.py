# foodrelay/routers/donations.py
from typing import Optional

from fastapi import APIRouter, Depends, Query

from foodrelay.core.security import Actor, get_actor, require_role
from foodrelay.db import DONATIONS
from foodrelay.deps import get_distance_provider, get_store
from foodrelay.schemas import (
    CompleteIn, DeliveryStatusIn, DonationIn, FailMissionIn, PhotoEvidenceIn, RejectIn,
)
from foodrelay.services import lifecycle, matching, stats

router = APIRouter(prefix="/api/donations", tags=["donations"])

def _serialize(doc: dict) -> dict:
    out = dict(doc)
    out["id"] = str(out.pop("_id"))
    return out

# ---------- create / list ----------
@router.post("", status_code=201)
async def create_donation(body: DonationIn, actor: Actor = Depends(require_role("donor")), store=Depends(get_store)):
    return _serialize(await lifecycle.create_donation(store, actor, body))

@router.get("/mine")
async def my_donations(actor: Actor = Depends(require_role("donor")), store=Depends(get_store)):
    docs = await store.find(DONATIONS, {"donor": actor.id}, sort=[("created_at", -1)])
    return [_serialize(d) for d in docs]

@router.get("/claimed")
async def claimed_donations(actor: Actor = Depends(require_role("ngo")), store=Depends(get_store)):
    docs = await store.find(DONATIONS, {"claimed_by": actor.id}, sort=[("claimed_at", -1)])
    return [_serialize(d) for d in docs]

@router.get("/feed")
async def ngo_feed(actor: Actor = Depends(require_role("ngo")), store=Depends(get_store)):
    return [_serialize(d) for d in await matching.find_best_donations_for_ngo(store, actor.id)]

@router.get("/available-missions")
async def available_missions(actor: Actor = Depends(require_role("volunteer")), store=Depends(get_store)):
    return [_serialize(d) for d in await matching.find_available_missions(store, actor.id)]

@router.get("/stats")
async def donor_stats(actor: Actor = Depends(require_role("donor")), store=Depends(get_store)):
    return await stats.donor_stats(store, actor.id)

@router.get("/volunteer/history")
async def volunteer_history(actor: Actor = Depends(require_role("volunteer")), store=Depends(get_store)):
    return [_serialize(d) for d in await stats.volunteer_history(store, actor.id)]

@router.get("/{donation_id}")
async def get_donation(donation_id: str, actor: Actor = Depends(get_actor), store=Depends(get_store)):
    return _serialize(await lifecycle.get_donation(store, donation_id))

# ---------- matching ----------
@router.get("/{donation_id}/ngo-matches")
async def ngo_matches(donation_id: str, actor: Actor = Depends(require_role("donor", "ngo")),
                      store=Depends(get_store)):
    return await matching.find_best_ngos_for_donation(store, donation_id)

@router.get("/{donation_id}/potential-volunteers")
async def potential_volunteers(donation_id: str, radius_km: Optional[float] = Query(None, gt=0, le=100),
                               actor: Actor = Depends(require_role("ngo", "donor")), store=Depends(get_store)):
    donation = await lifecycle.get_donation(store, donation_id)
    return await matching.find_suitable_volunteers(store, donation, radius_km=radius_km)

# ---------- transitions ----------
@router.patch("/{donation_id}/claim")
async def claim(donation_id: str, actor: Actor = Depends(require_role("ngo")), store=Depends(get_store)):
    return _serialize(await lifecycle.claim(store, donation_id, actor))

@router.patch("/{donation_id}/reject")
async def reject(donation_id: str, body: RejectIn, actor: Actor = Depends(require_role("ngo")),
                 store=Depends(get_store)):
    return _serialize(await lifecycle.reject(store, donation_id, actor, body.reason))

@router.patch("/{donation_id}/cancel")
async def cancel(donation_id: str, actor: Actor = Depends(require_role("donor")), store=Depends(get_store)):
    return _serialize(await lifecycle.cancel(store, donation_id, actor))

@router.patch("/{donation_id}/complete")
async def complete(donation_id: str, body: Optional[CompleteIn] = None,
                   actor: Actor = Depends(require_role("ngo")), store=Depends(get_store)):
    body = body or CompleteIn()
    return _serialize(await lifecycle.complete(store, donation_id, actor, body.rating, body.comment))

@router.patch("/{donation_id}/accept-mission")
async def accept_mission(donation_id: str, actor: Actor = Depends(require_role("volunteer")),
                         store=Depends(get_store)):
    return _serialize(await lifecycle.accept_mission(store, donation_id, actor))

@router.patch("/{donation_id}/delivery-status")
async def delivery_status(donation_id: str, body: DeliveryStatusIn,
                          actor: Actor = Depends(require_role("volunteer")), store=Depends(get_store)):
    return _serialize(await lifecycle.update_delivery_status(store, donation_id, actor, body.status))

@router.patch("/{donation_id}/pickup")
async def pickup(donation_id: str, body: PhotoEvidenceIn, actor: Actor = Depends(require_role("volunteer")),
                 store=Depends(get_store)):
    return _serialize(await lifecycle.confirm_pickup(store, donation_id, actor, body.photo_url, body.notes))

@router.patch("/{donation_id}/deliver")
async def deliver(donation_id: str, body: PhotoEvidenceIn, actor: Actor = Depends(require_role("volunteer")),
                  store=Depends(get_store)):
    return _serialize(await lifecycle.confirm_delivery(store, donation_id, actor, body.photo_url, body.notes))

@router.patch("/{donation_id}/fail-mission")
async def fail_mission(donation_id: str, body: Optional[FailMissionIn] = None,
                       actor: Actor = Depends(require_role("volunteer")), store=Depends(get_store)):
    body = body or FailMissionIn()
    return _serialize(await lifecycle.fail_mission(store, donation_id, actor, body.reason))

# ---------- routing ----------
@router.get("/{donation_id}/optimized-route")
async def optimized_route(donation_id: str, actor: Actor = Depends(require_role("volunteer")),
                          store=Depends(get_store), provider=Depends(get_distance_provider)):
    plan = await matching.plan_active_route(store, provider, donation_id, actor.id)
    if plan["path"]:
        await lifecycle.record_eta(store, donation_id, actor, plan["estimated_total_time"])
    return plan
