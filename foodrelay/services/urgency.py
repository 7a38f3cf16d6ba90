# foodrelay/services/urgency.py
from dataclasses import asdict, dataclass
from datetime import datetime

CRITICAL_HOURS = 3.0
URGENT_HOURS = 6.0

@dataclass(frozen=True)
class Urgency:
    score: int
    level: str
    tier: int

    def as_dict(self) -> dict:
        return asdict(self)

CRITICAL = Urgency(score=100, level="Critical", tier=1)
URGENT = Urgency(score=60, level="Urgent", tier=2)
STANDARD = Urgency(score=20, level="Standard", tier=3)

def hours_until(expiry: datetime, now: datetime) -> float:
    return (expiry - now).total_seconds() / 3600.0

def classify(expiry: datetime, now: datetime) -> Urgency:
    """Tier 1 under 3h to expiry, tier 2 under 6h, tier 3 otherwise. Already-expired food is critical."""
    hours = hours_until(expiry, now)
    if hours < CRITICAL_HOURS:
        return CRITICAL
    if hours < URGENT_HOURS:
        return URGENT
    return STANDARD
