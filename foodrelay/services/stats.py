# foodrelay/services/stats.py
from typing import List, Optional

from foodrelay.core.errors import NotFoundError
from foodrelay.core.states import DeliveryStatus, DonationStatus
from foodrelay.db import DONATIONS, USERS

async def volunteer_performance(store, volunteer_id: str) -> dict:
    """
    Returns the volunteer's dashboard numbers:
      - deliveries: completed missions
      - reliability: completed / (completed + abandoned) as a percentage
      - impact: summed quantity magnitudes of completed missions
    """
    vol = await store.find_one(USERS, {"_id": volunteer_id, "role": "volunteer"})
    if not vol:
        raise NotFoundError("Volunteer not found")

    stats = vol.get("stats") or {}
    completed = stats.get("completed_donations", 0)
    cancelled = stats.get("cancelled_donations", 0)
    total = completed + cancelled
    reliability = round(completed / total * 100) if total else 100

    done = await store.find(DONATIONS, {"volunteer": volunteer_id, "status": DonationStatus.COMPLETED.value})
    impact = sum((d.get("quantity") or {}).get("magnitude") or 0 for d in done)

    return {
        "deliveries": completed,
        "reliability": reliability,
        "impact": round(impact, 2),
        "tier": (vol.get("volunteer_profile") or {}).get("tier", "rookie"),
        "current_task_count": vol.get("current_task_count", 0),
    }

async def volunteer_history(store, volunteer_id: str, limit: Optional[int] = None) -> List[dict]:
    """Missions the volunteer carried to the drop-off, latest delivery first."""
    query = {
        "volunteer": volunteer_id,
        "$or": [
            {"status": DonationStatus.COMPLETED.value},
            {"delivery_status": DeliveryStatus.DELIVERED.value},
        ],
    }
    return await store.find(DONATIONS, query, sort=[("delivered_at", -1)], limit=limit)

async def donor_stats(store, donor_id: str) -> dict:
    donor = await store.find_one(USERS, {"_id": donor_id, "role": "donor"})
    if not donor:
        raise NotFoundError("Donor not found")

    total = await store.count(DONATIONS, {"donor": donor_id})
    done = await store.find(DONATIONS, {"donor": donor_id, "status": DonationStatus.COMPLETED.value})
    cancelled = await store.count(DONATIONS, {"donor": donor_id, "status": DonationStatus.CANCELLED.value})
    stats = donor.get("stats") or {}
    return {
        "total_donations": total,
        "completed_donations": len(done),
        "cancelled_donations": cancelled,
        "acceptance_rate": round(len(done) / total * 100, 2) if total else 0.0,
        "total_meals_saved": len(done),
        "impact": round(sum((d.get("quantity") or {}).get("magnitude") or 0 for d in done), 2),
        "trust_score": stats.get("trust_score", 5.0),
        "total_ratings": stats.get("total_ratings", 0),
    }
