"""
Domain records as the stores hand them out. The stores are the only place
that mutates them; everything else treats them as read-only snapshots.
"""
from __future__ import annotations
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, Optional, TypedDict


class EventStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"


class WaitingListStatus(str, Enum):
    WAITING = "waiting"
    OFFERED = "offered"
    PURCHASED = "purchased"
    EXPIRED = "expired"


class TicketStatus(str, Enum):
    VALID = "valid"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Event:
    id: str
    owner_id: str
    name: str
    description: str
    price: float
    total_tickets: int
    status: str
    created_at: float

    @property
    def is_cancelled(self) -> bool:
        return self.status == EventStatus.CANCELLED.value

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class WaitingListEntry:
    id: str
    event_id: str
    user_id: str
    status: str
    offer_expires_at: Optional[float]
    created_at: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Ticket:
    id: str
    event_id: str
    user_id: str
    waiting_list_id: Optional[str]
    payment_intent_id: Optional[str]
    amount: int  # minor units
    status: str
    purchased_at: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# carried in the processor's session metadata; keys are the wire format
class CheckoutMetadata(TypedDict):
    eventId: str
    userId: str
    waitingListId: str
