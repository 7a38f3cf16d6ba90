# foodrelay/services/scoring.py
from datetime import datetime
from typing import Optional

from foodrelay.services.geo import get_path
from foodrelay.services.urgency import classify

# weights
NGO_DISTANCE_W = 0.4
NGO_URGENCY_W = 0.6
URGENT_NEED_BOOST = 1.2
HIGH_LOAD_USAGE = 0.8
HIGH_LOAD_PENALTY = 0.5

VOL_DISTANCE_W = 0.5
VOL_TIER_W = 0.5
TIER_SCORES = {"champion": 100, "hero": 60, "rookie": 20}
EQUITY_BOOST = 30
VEHICLE_BONUS = 20
HEAVY_LOAD = 20.0
LARGE_VEHICLES = {"car", "van"}

def distance_score(distance_m: float) -> float:
    return 100.0 / (max(distance_m, 0.0) / 1000.0 + 1.0)

def ngo_score(donation: dict, ngo: dict, distance_m: float, unmet_need: int, now: datetime) -> float:
    """
    Suitability of ``ngo`` for ``donation`` in [0, 100].
    Critical donations skip the load penalty; the urgent-need flag boosts by 20%.
    """
    urgency = classify(donation["expiry_date"], now)
    base = distance_score(distance_m) * NGO_DISTANCE_W + urgency.score * NGO_URGENCY_W

    if get_path(ngo, "ngo_profile.is_urgent_need"):
        base *= URGENT_NEED_BOOST

    capacity = get_path(ngo, "ngo_profile.daily_capacity") or 0
    if urgency.tier != 1 and capacity > 0:
        usage = (capacity - unmet_need) / capacity
        if usage > HIGH_LOAD_USAGE:
            base *= HIGH_LOAD_PENALTY

    return round(min(base, 100.0), 2)

def had_mission_today(volunteer: dict, now: datetime) -> bool:
    last: Optional[datetime] = get_path(volunteer, "volunteer_profile.last_mission_date")
    if not last:
        return False
    return last.astimezone(now.tzinfo).date() == now.date()

def volunteer_score(volunteer: dict, distance_m: float, donation: dict, now: datetime) -> float:
    """Distance alone for critical rescues; distance + tier, with an equity boost
    for idle volunteers on standard work, otherwise. Not clamped."""
    dscore = distance_score(distance_m)
    urgency = classify(donation["expiry_date"], now)
    if urgency.tier == 1:
        return round(dscore, 2)

    tier = get_path(volunteer, "volunteer_profile.tier")
    score = dscore * VOL_DISTANCE_W + TIER_SCORES.get(tier, TIER_SCORES["rookie"]) * VOL_TIER_W

    if urgency.tier == 3:
        idle = (volunteer.get("current_task_count") or 0) == 0
        if idle or not had_mission_today(volunteer, now):
            score += EQUITY_BOOST

    return round(score, 2)

def vehicle_bonus(volunteer: dict, load: float) -> int:
    """Load is the bare quantity magnitude, whatever its unit."""
    vehicle = get_path(volunteer, "volunteer_profile.vehicle_type")
    if load > HEAVY_LOAD and vehicle in LARGE_VEHICLES:
        return VEHICLE_BONUS
    return 0
