# foodrelay/core/states.py
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple


class DonationStatus(str, Enum):
    ACTIVE = "active"
    ASSIGNED = "assigned"
    PICKED_UP = "picked_up"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REJECTED = "rejected"


class DeliveryStatus(str, Enum):
    IDLE = "idle"
    PENDING_PICKUP = "pending_pickup"
    HEADING_TO_PICKUP = "heading_to_pickup"
    AT_PICKUP = "at_pickup"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    ARRIVED_AT_DELIVERY = "arrived_at_delivery"
    DELIVERED = "delivered"


TERMINAL: FrozenSet[DonationStatus] = frozenset({
    DonationStatus.COMPLETED, DonationStatus.CANCELLED,
    DonationStatus.EXPIRED, DonationStatus.REJECTED,
})

# a courier is on the road for these
COURIER_ACTIVE: FrozenSet[DeliveryStatus] = frozenset({
    DeliveryStatus.PENDING_PICKUP, DeliveryStatus.HEADING_TO_PICKUP, DeliveryStatus.AT_PICKUP,
    DeliveryStatus.PICKED_UP, DeliveryStatus.IN_TRANSIT, DeliveryStatus.ARRIVED_AT_DELIVERY,
})

# claimed but not yet delivered; counts against an NGO's daily capacity
CLAIM_IN_FLIGHT: FrozenSet[DeliveryStatus] = frozenset({DeliveryStatus.IDLE}) | COURIER_ACTIVE

CANCELLABLE: FrozenSet[DonationStatus] = frozenset({DonationStatus.ACTIVE, DonationStatus.ASSIGNED})
REJECTABLE: FrozenSet[DonationStatus] = CANCELLABLE

# generic delivery-status endpoint: (from, to) pairs; picked_up and delivered
# are reserved for the dedicated pickup/deliver actions
DELIVERY_TRANSITIONS: FrozenSet[Tuple[DeliveryStatus, DeliveryStatus]] = frozenset({
    (DeliveryStatus.PENDING_PICKUP, DeliveryStatus.HEADING_TO_PICKUP),
    (DeliveryStatus.PENDING_PICKUP, DeliveryStatus.AT_PICKUP),
    (DeliveryStatus.HEADING_TO_PICKUP, DeliveryStatus.AT_PICKUP),
    (DeliveryStatus.PICKED_UP, DeliveryStatus.IN_TRANSIT),
    (DeliveryStatus.PICKED_UP, DeliveryStatus.ARRIVED_AT_DELIVERY),
    (DeliveryStatus.IN_TRANSIT, DeliveryStatus.ARRIVED_AT_DELIVERY),
})

STATUS_UPDATE_TARGETS: FrozenSet[DeliveryStatus] = frozenset(dst for _, dst in DELIVERY_TRANSITIONS)

PICKUP_FROM: FrozenSet[DeliveryStatus] = frozenset({
    DeliveryStatus.PENDING_PICKUP, DeliveryStatus.HEADING_TO_PICKUP, DeliveryStatus.AT_PICKUP,
})
DELIVER_FROM: FrozenSet[DeliveryStatus] = frozenset({
    DeliveryStatus.PICKED_UP, DeliveryStatus.IN_TRANSIT, DeliveryStatus.ARRIVED_AT_DELIVERY,
})


def sources_for(dst: DeliveryStatus) -> list:
    return [s.value for s, d in DELIVERY_TRANSITIONS if d == dst]


@dataclass(frozen=True)
class LifecycleState:
    """
    Donation lifecycle as a tagged variant: ``delivery`` exists only while
    ``status`` is ASSIGNED, and is always present then.
    """
    status: DonationStatus
    delivery: Optional[DeliveryStatus] = None

    def __post_init__(self):
        if self.status is DonationStatus.ASSIGNED and self.delivery is None:
            object.__setattr__(self, "delivery", DeliveryStatus.IDLE)
        elif self.status is not DonationStatus.ASSIGNED and self.delivery is not None:
            raise ValueError(f"delivery status {self.delivery.value} is only valid while assigned")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    @classmethod
    def of(cls, doc: dict) -> "LifecycleState":
        status = DonationStatus(doc.get("status", DonationStatus.ACTIVE.value))
        raw = doc.get("delivery_status")
        delivery = DeliveryStatus(raw) if (raw and status is DonationStatus.ASSIGNED) else None
        return cls(status, delivery)

    def as_update(self) -> Dict[str, dict]:
        """$set/$unset fragment that writes both fields together."""
        if self.delivery is None:
            return {"$set": {"status": self.status.value}, "$unset": {"delivery_status": ""}}
        return {"$set": {"status": self.status.value, "delivery_status": self.delivery.value}}

    def as_dict(self) -> dict:
        return {
            "status": self.status.value,
            "delivery_status": self.delivery.value if self.delivery else None,
        }


def assigned(delivery: DeliveryStatus) -> LifecycleState:
    return LifecycleState(DonationStatus.ASSIGNED, delivery)
