"""Store interface.

The store owns Event / WaitingListEntry / Ticket state. Every method is a
single atomic call; callers never stitch several of them into a
read-modify-write.
"""
from __future__ import annotations
from abc import ABC, abstractmethod
from typing import List, Optional

from ..domain import Event, Ticket, WaitingListEntry


class TicketStore(ABC):

    # ---- users / connect accounts
    @abstractmethod
    async def get_connect_account_id(self, owner_id: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set_connect_account_id(
        self, owner_id: str, account_id: str
    ) -> None:
        """Upsert; calling it twice with the same values is a no-op."""
        ...

    # ---- events
    @abstractmethod
    async def create_event(
        self, owner_id: str, name: str, description: str, price: float,
        total_tickets: int, now: float,
    ) -> Event: ...

    @abstractmethod
    async def get_event(self, event_id: str) -> Optional[Event]: ...

    @abstractmethod
    async def cancel_event(self, event_id: str) -> bool:
        """
        Cancel the event and expire its open entries. Refuses, returning
        False and changing nothing, while any ticket is still valid.
        """
        ...

    # ---- waiting list
    @abstractmethod
    async def join_waiting_list(
        self, event_id: str, user_id: str, now: float
    ) -> WaitingListEntry:
        """
        Queue the user and advance the queue in the same transaction, so the
        returned entry may already be offered.
        """
        ...

    @abstractmethod
    async def get_offer_for_user(
        self, event_id: str, user_id: str
    ) -> Optional[WaitingListEntry]:
        """The user's most recent entry for the event, in any state."""
        ...

    @abstractmethod
    async def release_offer(
        self, event_id: str, waiting_list_id: str, now: float
    ) -> None: ...

    @abstractmethod
    async def expire_offers(self, now: float) -> int:
        """Expire lapsed offers, re-offer freed tickets; returns #expired."""
        ...

    # ---- tickets
    @abstractmethod
    async def get_valid_tickets(self, event_id: str) -> List[Ticket]: ...

    @abstractmethod
    async def get_ticket_for_user(
        self, event_id: str, user_id: str
    ) -> Optional[Ticket]: ...

    @abstractmethod
    async def get_ticket_by_payment_intent(
        self, payment_intent_id: str
    ) -> Optional[Ticket]: ...

    @abstractmethod
    async def set_ticket_status(self, ticket_id: str, status: str) -> None: ...

    @abstractmethod
    async def commit_purchase(
        self, event_id: str, user_id: str, waiting_list_id: str,
        payment_ref: str, amount: int, now: float,
    ) -> Ticket:
        """
        offered -> purchased plus ticket issuance, atomically. Replaying the
        same (waiting_list_id, payment_ref) returns the ticket issued the
        first time instead of creating another.
        """
        ...
