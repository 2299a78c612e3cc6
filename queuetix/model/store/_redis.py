from __future__ import annotations
import uuid
from typing import Dict, List, Optional

import redis.asyncio as redis
from redis.asyncio.client import Pipeline

from ...errors import (
    AlreadyQueuedError, DuplicatePaymentError, EventCancelledError,
    EventNotFoundError, OfferNotActiveError,
)
from ..domain import (
    Event, EventStatus, Ticket, TicketStatus, WaitingListEntry,
    WaitingListStatus,
)
from .base import TicketStore as _TicketStore


# ---- keys
def k_user(uid: str) -> str: return f"user:{uid}"
def k_event(eid: str) -> str: return f"event:{eid}"
def k_waiting(eid: str) -> str: return f"event:{eid}:waiting"
def k_offered(eid: str) -> str: return f"event:{eid}:offered"
def k_valid(eid: str) -> str: return f"event:{eid}:valid"
def k_entry(wl: str) -> str: return f"wl:{wl}"
def k_active(eid: str, uid: str) -> str: return f"wl:active:{eid}:{uid}"
def k_history(eid: str, uid: str) -> str: return f"wl:history:{eid}:{uid}"
def k_ticket(tid: str) -> str: return f"ticket:{tid}"
def k_ticket_of_entry(wl: str) -> str: return f"ticket:wl:{wl}"
def k_ticket_of_pi(pi: str) -> str: return f"ticket:pi:{pi}"
def k_user_tickets(eid: str, uid: str) -> str: return f"tickets:{eid}:{uid}"


DEADLINES = "wl:deadlines"  # offered entry id -> offer_expires_at


def _event(h: Dict[str, str]) -> Event:
    return Event(
        id=h["id"],
        owner_id=h["owner_id"],
        name=h["name"],
        description=h.get("description", ""),
        price=float(h["price"]),
        total_tickets=int(h["total_tickets"]),
        status=h["status"],
        created_at=float(h["created_at"]),
    )


def _entry(h: Dict[str, str]) -> WaitingListEntry:
    expires = h.get("offer_expires_at") or None
    return WaitingListEntry(
        id=h["id"],
        event_id=h["event_id"],
        user_id=h["user_id"],
        status=h["status"],
        offer_expires_at=None if expires is None else float(expires),
        created_at=float(h["created_at"]),
    )


def _ticket(h: Dict[str, str]) -> Ticket:
    return Ticket(
        id=h["id"],
        event_id=h["event_id"],
        user_id=h["user_id"],
        waiting_list_id=h.get("waiting_list_id") or None,
        payment_intent_id=h.get("payment_intent_id") or None,
        amount=int(h["amount"]),
        status=h["status"],
        purchased_at=float(h["purchased_at"]),
    )


def _flat(d: Dict[str, object]) -> Dict[str, str]:
    # hash values must be strings for decode_responses=True
    return {k: "" if v is None else str(v) for k, v in d.items()}


class TicketStore(_TicketStore):
    """
    Every mutation is one WATCH/MULTI transaction over the keys it reads, so
    a concurrent writer forces a retry instead of a lost update.
    """

    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def _transact(self, fn, *keys: str):
        return await self.r.transaction(
            fn, *keys, value_from_callable=True
        )

    def _queue_keys(self, event_id: str) -> List[str]:
        return [
            k_event(event_id), k_waiting(event_id), k_offered(event_id),
            k_valid(event_id),
        ]

    # ---- users / connect accounts
    async def get_connect_account_id(self, owner_id: str) -> Optional[str]:
        return await self.r.hget(k_user(owner_id), "connect_account_id")

    async def set_connect_account_id(
        self, owner_id: str, account_id: str
    ) -> None:
        await self.r.hset(
            k_user(owner_id), mapping={"connect_account_id": account_id}
        )

    # ---- events
    async def create_event(
        self, owner_id: str, name: str, description: str, price: float,
        total_tickets: int, now: float,
    ) -> Event:
        ev = Event(
            id=uuid.uuid4().hex,
            owner_id=owner_id,
            name=name,
            description=description,
            price=float(price),
            total_tickets=int(total_tickets),
            status=EventStatus.ACTIVE.value,
            created_at=now,
        )
        await self.r.hset(k_event(ev.id), mapping=_flat(ev.to_dict()))
        return ev

    async def get_event(self, event_id: str) -> Optional[Event]:
        h = await self.r.hgetall(k_event(event_id))
        return _event(h) if h else None

    async def cancel_event(self, event_id: str) -> bool:
        async def tx(pipe: Pipeline):
            if not await pipe.exists(k_event(event_id)):
                return False
            # a purchase that lands meanwhile touches the watched valid set
            if await pipe.scard(k_valid(event_id)):
                return False
            waiting = await pipe.zrange(k_waiting(event_id), 0, -1)
            offered = await pipe.smembers(k_offered(event_id))
            open_ids = list(waiting) + list(offered)
            users = [
                await pipe.hget(k_entry(wl), "user_id") for wl in open_ids
            ]

            pipe.multi()
            pipe.hset(
                k_event(event_id), "status", EventStatus.CANCELLED.value
            )
            for wl, uid in zip(open_ids, users):
                pipe.hset(k_entry(wl), mapping={
                    "status": WaitingListStatus.EXPIRED.value,
                    "offer_expires_at": "",
                })
                if uid:
                    pipe.delete(k_active(event_id, uid))
            if offered:
                pipe.zrem(DEADLINES, *offered)
            pipe.delete(k_waiting(event_id), k_offered(event_id))
            return True

        return await self._transact(tx, *self._queue_keys(event_id))

    # ---- waiting list
    async def _plan_offers(
        self, pipe: Pipeline, event_id: str, *, freed: int = 0,
        newcomer: Optional[str] = None,
    ) -> List[str]:
        """Read phase of a queue advance; returns entry ids to offer."""
        ev = await pipe.hgetall(k_event(event_id))
        if not ev or ev["status"] != EventStatus.ACTIVE.value:
            return []
        taken = (
            await pipe.scard(k_valid(event_id))
            + await pipe.scard(k_offered(event_id))
            - freed
        )
        available = int(ev["total_tickets"]) - taken
        if available <= 0:
            return []
        ids = list(await pipe.zrange(k_waiting(event_id), 0, available - 1))
        if newcomer is not None and len(ids) < available:
            ids.append(newcomer)
        return ids

    def _write_offers(
        self, pipe: Pipeline, event_id: str, ids: List[str], now: float
    ) -> None:
        expires = now + self.ttl
        for wl in ids:
            pipe.hset(k_entry(wl), mapping={
                "status": WaitingListStatus.OFFERED.value,
                "offer_expires_at": str(expires),
            })
            pipe.zrem(k_waiting(event_id), wl)
            pipe.sadd(k_offered(event_id), wl)
            pipe.zadd(DEADLINES, {wl: expires})

    async def join_waiting_list(
        self, event_id: str, user_id: str, now: float
    ) -> WaitingListEntry:
        wl_id = uuid.uuid4().hex

        async def tx(pipe: Pipeline):
            ev = await pipe.hgetall(k_event(event_id))
            if not ev:
                raise EventNotFoundError(event_id)
            if ev["status"] != EventStatus.ACTIVE.value:
                raise EventCancelledError(event_id)
            if await pipe.exists(k_active(event_id, user_id)):
                raise AlreadyQueuedError(event_id)
            to_offer = await self._plan_offers(
                pipe, event_id, newcomer=wl_id
            )

            pipe.multi()
            pipe.hset(k_entry(wl_id), mapping=_flat({
                "id": wl_id,
                "event_id": event_id,
                "user_id": user_id,
                "status": WaitingListStatus.WAITING.value,
                "offer_expires_at": None,
                "created_at": now,
            }))
            pipe.zadd(k_waiting(event_id), {wl_id: now})
            pipe.set(k_active(event_id, user_id), wl_id)
            pipe.zadd(k_history(event_id, user_id), {wl_id: now})
            self._write_offers(pipe, event_id, to_offer, now)

        await self._transact(
            tx, k_active(event_id, user_id), *self._queue_keys(event_id)
        )
        return _entry(await self.r.hgetall(k_entry(wl_id)))

    async def get_offer_for_user(
        self, event_id: str, user_id: str
    ) -> Optional[WaitingListEntry]:
        wl = await self.r.get(k_active(event_id, user_id))
        if wl is None:
            latest = await self.r.zrevrange(k_history(event_id, user_id), 0, 0)
            if not latest:
                return None
            wl = latest[0]
        h = await self.r.hgetall(k_entry(wl))
        return _entry(h) if h else None

    async def _expire_entry(
        self, event_id: str, wl: str, now: float,
        only_if_due: bool = False,
    ) -> bool:
        async def tx(pipe: Pipeline):
            h = await pipe.hgetall(k_entry(wl))
            if (not h or h["event_id"] != event_id
                    or h["status"] != WaitingListStatus.OFFERED.value):
                return False
            if only_if_due and float(h["offer_expires_at"] or 0) >= now:
                return False
            to_offer = await self._plan_offers(pipe, event_id, freed=1)

            pipe.multi()
            pipe.hset(k_entry(wl), mapping={
                "status": WaitingListStatus.EXPIRED.value,
                "offer_expires_at": "",
            })
            pipe.delete(k_active(event_id, h["user_id"]))
            pipe.srem(k_offered(event_id), wl)
            pipe.zrem(DEADLINES, wl)
            self._write_offers(pipe, event_id, to_offer, now)
            return True

        return await self._transact(
            tx, k_entry(wl), *self._queue_keys(event_id)
        )

    async def release_offer(
        self, event_id: str, waiting_list_id: str, now: float
    ) -> None:
        await self._expire_entry(event_id, waiting_list_id, now)

    async def expire_offers(self, now: float) -> int:
        due = await self.r.zrangebyscore(DEADLINES, "-inf", f"({now}")
        n = 0
        for wl in due:
            event_id = await self.r.hget(k_entry(wl), "event_id")
            if event_id is None:
                await self.r.zrem(DEADLINES, wl)
                continue
            if await self._expire_entry(event_id, wl, now, only_if_due=True):
                n += 1
        return n

    # ---- tickets
    async def _tickets(self, ids) -> List[Ticket]:
        pipe = self.r.pipeline()
        for tid in ids:
            pipe.hgetall(k_ticket(tid))
        rows = await pipe.execute()
        return [_ticket(h) for h in rows if h]

    async def get_valid_tickets(self, event_id: str) -> List[Ticket]:
        ids = await self.r.smembers(k_valid(event_id))
        tickets = await self._tickets(ids)
        return sorted(tickets, key=lambda t: (t.purchased_at, t.id))

    async def get_ticket_for_user(
        self, event_id: str, user_id: str
    ) -> Optional[Ticket]:
        ids = await self.r.zrevrange(k_user_tickets(event_id, user_id), 0, 0)
        tickets = await self._tickets(ids)
        return tickets[0] if tickets else None

    async def get_ticket_by_payment_intent(
        self, payment_intent_id: str
    ) -> Optional[Ticket]:
        tid = await self.r.get(k_ticket_of_pi(payment_intent_id))
        if tid is None:
            return None
        h = await self.r.hgetall(k_ticket(tid))
        return _ticket(h) if h else None

    async def set_ticket_status(self, ticket_id: str, status: str) -> None:
        async def tx(pipe: Pipeline):
            h = await pipe.hgetall(k_ticket(ticket_id))
            # tickets only ever leave 'valid'
            if not h or h["status"] != TicketStatus.VALID.value:
                return
            pipe.multi()
            pipe.hset(k_ticket(ticket_id), "status", status)
            if status != TicketStatus.VALID.value:
                pipe.srem(k_valid(h["event_id"]), ticket_id)

        await self._transact(tx, k_ticket(ticket_id))

    async def commit_purchase(
        self, event_id: str, user_id: str, waiting_list_id: str,
        payment_ref: str, amount: int, now: float,
    ) -> Ticket:
        wl = waiting_list_id
        ticket = Ticket(
            id=uuid.uuid4().hex,
            event_id=event_id,
            user_id=user_id,
            waiting_list_id=wl,
            payment_intent_id=payment_ref,
            amount=int(amount),
            status=TicketStatus.VALID.value,
            purchased_at=now,
        )

        async def tx(pipe: Pipeline):
            existing = await pipe.get(k_ticket_of_entry(wl))
            if existing is not None:
                h = await pipe.hgetall(k_ticket(existing))
                if h.get("payment_intent_id") == payment_ref:
                    return _ticket(h)
                raise DuplicatePaymentError(wl)

            h = await pipe.hgetall(k_entry(wl))
            if (not h or h["event_id"] != event_id
                    or h["user_id"] != user_id
                    or h["status"] != WaitingListStatus.OFFERED.value):
                raise OfferNotActiveError(wl, h.get("status") if h else None)

            pipe.multi()
            pipe.hset(k_entry(wl), mapping={
                "status": WaitingListStatus.PURCHASED.value,
                "offer_expires_at": "",
            })
            pipe.srem(k_offered(event_id), wl)
            pipe.zrem(DEADLINES, wl)
            pipe.hset(k_ticket(ticket.id), mapping=_flat(ticket.to_dict()))
            pipe.sadd(k_valid(event_id), ticket.id)
            pipe.set(k_ticket_of_entry(wl), ticket.id)
            pipe.set(k_ticket_of_pi(payment_ref), ticket.id)
            pipe.zadd(k_user_tickets(event_id, user_id), {ticket.id: now})
            return ticket

        return await self._transact(
            tx, k_ticket_of_entry(wl), k_entry(wl), k_offered(event_id),
            k_valid(event_id),
        )
