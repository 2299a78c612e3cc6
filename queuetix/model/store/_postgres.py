from __future__ import annotations
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, List, Mapping, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncConnection, AsyncSession, async_sessionmaker,
)

from ...errors import (
    AlreadyQueuedError, DuplicatePaymentError, EventCancelledError,
    EventNotFoundError, OfferNotActiveError,
)
from ...infra.sql import Gated
from ..domain import (
    Event, EventStatus, Ticket, TicketStatus, WaitingListEntry,
    WaitingListStatus,
)
from .base import TicketStore as _TicketStore


# ------------------------------------------------------------------------------
# DDL (idempotent); runs unchanged on PostgreSQL and SQLite
# ------------------------------------------------------------------------------
SQL_CREATE_USERS = r"""
CREATE TABLE IF NOT EXISTS users (
  id                  TEXT PRIMARY KEY,
  connect_account_id  TEXT
);
"""

SQL_CREATE_EVENTS = r"""
-- queue_seq is bumped by every queue advance; the UPDATE row-locks the
-- event so concurrent joins for one event hand out offers one at a time
CREATE TABLE IF NOT EXISTS events (
  id             TEXT PRIMARY KEY,
  owner_id       TEXT NOT NULL,
  name           TEXT NOT NULL,
  description    TEXT NOT NULL,
  price          DOUBLE PRECISION NOT NULL CHECK (price >= 0),
  total_tickets  INTEGER NOT NULL CHECK (total_tickets >= 0),
  status         TEXT NOT NULL DEFAULT 'active',
  queue_seq      INTEGER NOT NULL DEFAULT 0,
  created_at     DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_WAITING_LIST = r"""
CREATE TABLE IF NOT EXISTS waiting_list (
  id                TEXT PRIMARY KEY,
  event_id          TEXT NOT NULL REFERENCES events(id),
  user_id           TEXT NOT NULL,
  status            TEXT NOT NULL,
  offer_expires_at  DOUBLE PRECISION,
  created_at        DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_WL_ONE_ACTIVE_IDX = r"""
-- at most one waiting/offered/purchased entry per (event, user)
CREATE UNIQUE INDEX IF NOT EXISTS waiting_list_one_active_idx
  ON waiting_list (event_id, user_id)
  WHERE status IN ('waiting', 'offered', 'purchased');
"""

SQL_CREATE_WL_QUEUE_IDX = r"""
CREATE INDEX IF NOT EXISTS waiting_list_queue_idx
  ON waiting_list (event_id, status, created_at);
"""

SQL_CREATE_TICKETS = r"""
-- both UNIQUE columns make a replayed completion unable to issue twice
CREATE TABLE IF NOT EXISTS tickets (
  id                 TEXT PRIMARY KEY,
  event_id           TEXT NOT NULL REFERENCES events(id),
  user_id            TEXT NOT NULL,
  waiting_list_id    TEXT UNIQUE,
  payment_intent_id  TEXT UNIQUE,
  amount             INTEGER NOT NULL,
  status             TEXT NOT NULL,
  purchased_at       DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_TICKETS_EVENT_IDX = r"""
CREATE INDEX IF NOT EXISTS tickets_event_status_idx
  ON tickets (event_id, status);
"""


async def create_schema(db_or_conn: AsyncSession | AsyncConnection):
    exec_ = db_or_conn.execute
    await exec_(text(SQL_CREATE_USERS))
    await exec_(text(SQL_CREATE_EVENTS))
    await exec_(text(SQL_CREATE_WAITING_LIST))
    await exec_(text(SQL_CREATE_WL_ONE_ACTIVE_IDX))
    await exec_(text(SQL_CREATE_WL_QUEUE_IDX))
    await exec_(text(SQL_CREATE_TICKETS))
    await exec_(text(SQL_CREATE_TICKETS_EVENT_IDX))


EVENT_COLS = (
    "id, owner_id, name, description, price, total_tickets, status, "
    "created_at"
)
ENTRY_COLS = "id, event_id, user_id, status, offer_expires_at, created_at"
TICKET_COLS = (
    "id, event_id, user_id, waiting_list_id, payment_intent_id, amount, "
    "status, purchased_at"
)


def _event(row: Mapping[str, Any]) -> Event:
    return Event(
        id=row["id"],
        owner_id=row["owner_id"],
        name=row["name"],
        description=row["description"],
        price=float(row["price"]),
        total_tickets=int(row["total_tickets"]),
        status=row["status"],
        created_at=float(row["created_at"]),
    )


def _entry(row: Mapping[str, Any]) -> WaitingListEntry:
    expires = row["offer_expires_at"]
    return WaitingListEntry(
        id=row["id"],
        event_id=row["event_id"],
        user_id=row["user_id"],
        status=row["status"],
        offer_expires_at=None if expires is None else float(expires),
        created_at=float(row["created_at"]),
    )


def _ticket(row: Mapping[str, Any]) -> Ticket:
    return Ticket(
        id=row["id"],
        event_id=row["event_id"],
        user_id=row["user_id"],
        waiting_list_id=row["waiting_list_id"],
        payment_intent_id=row["payment_intent_id"],
        amount=int(row["amount"]),
        status=row["status"],
        purchased_at=float(row["purchased_at"]),
    )


class TicketStore(_TicketStore):
    """
    One short transaction per call, each on its own session so concurrent
    callers (the refund fan-out) never share a connection.
    """

    def __init__(
        self, *, sessions: async_sessionmaker, ttl_seconds: int,
        gated: Gated,
    ) -> None:
        self.sessions = sessions
        self.ttl = ttl_seconds
        self.gated = gated

    @asynccontextmanager
    async def _tx(self) -> AsyncIterator[AsyncSession]:
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    yield db

    # ---- users / connect accounts
    async def get_connect_account_id(self, owner_id: str) -> Optional[str]:
        async with self._tx() as db:
            return (await db.execute(text("""
              SELECT connect_account_id FROM users WHERE id=:id
            """), {"id": owner_id})).scalar_one_or_none()

    async def set_connect_account_id(
        self, owner_id: str, account_id: str
    ) -> None:
        async with self._tx() as db:
            await db.execute(text("""
              INSERT INTO users(id, connect_account_id)
              VALUES (:id, :acct)
              ON CONFLICT (id) DO UPDATE
              SET connect_account_id=EXCLUDED.connect_account_id
            """), {"id": owner_id, "acct": account_id})

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
        async with self._tx() as db:
            await db.execute(text(f"""
              INSERT INTO events({EVENT_COLS})
              VALUES (:id, :owner_id, :name, :description, :price,
                      :total_tickets, :status, :created_at)
            """), ev.to_dict())
        return ev

    async def get_event(self, event_id: str) -> Optional[Event]:
        async with self._tx() as db:
            row = (await db.execute(text(f"""
              SELECT {EVENT_COLS} FROM events WHERE id=:id
            """), {"id": event_id})).mappings().first()
        return _event(row) if row else None

    async def _lock_event(self, db: AsyncSession, event_id: str):
        # row lock; cancellation and purchases of one event run one at a time
        return (await db.execute(text("""
          UPDATE events SET queue_seq = queue_seq + 1
          WHERE id=:id
          RETURNING total_tickets, status
        """), {"id": event_id})).mappings().first()

    async def cancel_event(self, event_id: str) -> bool:
        async with self._tx() as db:
            if await self._lock_event(db, event_id) is None:
                return False
            still_valid = (await db.execute(text("""
              SELECT COUNT(*) FROM tickets
              WHERE event_id=:id AND status=:valid
            """), {
                "id": event_id, "valid": TicketStatus.VALID.value,
            })).scalar_one()
            if still_valid:
                return False

            await db.execute(text("""
              UPDATE events SET status=:cancelled WHERE id=:id
            """), {"id": event_id, "cancelled": EventStatus.CANCELLED.value})
            # nobody can buy into a cancelled event any more
            await db.execute(text("""
              UPDATE waiting_list
              SET status=:expired, offer_expires_at=NULL
              WHERE event_id=:id AND status IN (:waiting, :offered)
            """), {
                "id": event_id,
                "expired": WaitingListStatus.EXPIRED.value,
                "waiting": WaitingListStatus.WAITING.value,
                "offered": WaitingListStatus.OFFERED.value,
            })
        return True

    # ---- waiting list
    async def _advance_queue(
        self, db: AsyncSession, event_id: str, now: float
    ) -> int:
        """Hand out offers while tickets are left. Runs inside a tx."""
        ev = await self._lock_event(db, event_id)
        if ev is None or ev["status"] != EventStatus.ACTIVE.value:
            return 0

        taken = (await db.execute(text("""
          SELECT
            (SELECT COUNT(*) FROM tickets
              WHERE event_id=:id AND status=:valid)
          + (SELECT COUNT(*) FROM waiting_list
              WHERE event_id=:id AND status=:offered)
        """), {
            "id": event_id,
            "valid": TicketStatus.VALID.value,
            "offered": WaitingListStatus.OFFERED.value,
        })).scalar_one()
        available = int(ev["total_tickets"]) - int(taken)
        if available <= 0:
            return 0

        ids = (await db.execute(text("""
          SELECT id FROM waiting_list
          WHERE event_id=:id AND status=:waiting
          ORDER BY created_at, id
          LIMIT :lim
        """), {
            "id": event_id,
            "waiting": WaitingListStatus.WAITING.value,
            "lim": available,
        })).scalars().all()
        for wl_id in ids:
            await db.execute(text("""
              UPDATE waiting_list SET status=:offered, offer_expires_at=:exp
              WHERE id=:wl AND status=:waiting
            """), {
                "wl": wl_id,
                "offered": WaitingListStatus.OFFERED.value,
                "waiting": WaitingListStatus.WAITING.value,
                "exp": now + self.ttl,
            })
        return len(ids)

    async def join_waiting_list(
        self, event_id: str, user_id: str, now: float
    ) -> WaitingListEntry:
        wl_id = uuid.uuid4().hex
        try:
            async with self._tx() as db:
                status = (await db.execute(text("""
                  SELECT status FROM events WHERE id=:id
                """), {"id": event_id})).scalar_one_or_none()
                if status is None:
                    raise EventNotFoundError(event_id)
                if status != EventStatus.ACTIVE.value:
                    raise EventCancelledError(event_id)

                await db.execute(text(f"""
                  INSERT INTO waiting_list({ENTRY_COLS})
                  VALUES (:id, :event_id, :user_id, :status, NULL,
                          :created_at)
                """), {
                    "id": wl_id,
                    "event_id": event_id,
                    "user_id": user_id,
                    "status": WaitingListStatus.WAITING.value,
                    "created_at": now,
                })
                await self._advance_queue(db, event_id, now)
                row = (await db.execute(text(f"""
                  SELECT {ENTRY_COLS} FROM waiting_list WHERE id=:id
                """), {"id": wl_id})).mappings().one()
        except IntegrityError:
            # the one-active-entry index fired
            raise AlreadyQueuedError(event_id) from None
        return _entry(row)

    async def get_offer_for_user(
        self, event_id: str, user_id: str
    ) -> Optional[WaitingListEntry]:
        async with self._tx() as db:
            row = (await db.execute(text(f"""
              SELECT {ENTRY_COLS} FROM waiting_list
              WHERE event_id=:e AND user_id=:u
              ORDER BY
                CASE WHEN status=:expired THEN 1 ELSE 0 END,
                created_at DESC
              LIMIT 1
            """), {
                "e": event_id,
                "u": user_id,
                "expired": WaitingListStatus.EXPIRED.value,
            })).mappings().first()
        return _entry(row) if row else None

    async def release_offer(
        self, event_id: str, waiting_list_id: str, now: float
    ) -> None:
        async with self._tx() as db:
            row = (await db.execute(text("""
              UPDATE waiting_list
              SET status=:expired, offer_expires_at=NULL
              WHERE id=:wl AND event_id=:e AND status=:offered
              RETURNING id
            """), {
                "wl": waiting_list_id,
                "e": event_id,
                "expired": WaitingListStatus.EXPIRED.value,
                "offered": WaitingListStatus.OFFERED.value,
            })).first()
            if row is not None:
                await self._advance_queue(db, event_id, now)

    async def expire_offers(self, now: float) -> int:
        async with self._tx() as db:
            event_ids = (await db.execute(text("""
              UPDATE waiting_list
              SET status=:expired, offer_expires_at=NULL
              WHERE status=:offered AND offer_expires_at < :now
              RETURNING event_id
            """), {
                "now": now,
                "expired": WaitingListStatus.EXPIRED.value,
                "offered": WaitingListStatus.OFFERED.value,
            })).scalars().all()
            for event_id in sorted(set(event_ids)):
                await self._advance_queue(db, event_id, now)
        return len(event_ids)

    # ---- tickets
    async def get_valid_tickets(self, event_id: str) -> List[Ticket]:
        async with self._tx() as db:
            rows = (await db.execute(text(f"""
              SELECT {TICKET_COLS} FROM tickets
              WHERE event_id=:e AND status=:valid
              ORDER BY purchased_at, id
            """), {
                "e": event_id, "valid": TicketStatus.VALID.value,
            })).mappings().all()
        return [_ticket(r) for r in rows]

    async def get_ticket_for_user(
        self, event_id: str, user_id: str
    ) -> Optional[Ticket]:
        async with self._tx() as db:
            row = (await db.execute(text(f"""
              SELECT {TICKET_COLS} FROM tickets
              WHERE event_id=:e AND user_id=:u
              ORDER BY purchased_at DESC
              LIMIT 1
            """), {"e": event_id, "u": user_id})).mappings().first()
        return _ticket(row) if row else None

    async def get_ticket_by_payment_intent(
        self, payment_intent_id: str
    ) -> Optional[Ticket]:
        async with self._tx() as db:
            row = (await db.execute(text(f"""
              SELECT {TICKET_COLS} FROM tickets
              WHERE payment_intent_id=:pi
            """), {"pi": payment_intent_id})).mappings().first()
        return _ticket(row) if row else None

    async def set_ticket_status(self, ticket_id: str, status: str) -> None:
        # tickets only ever leave 'valid'; refunded stays refunded
        async with self._tx() as db:
            await db.execute(text("""
              UPDATE tickets SET status=:s
              WHERE id=:id AND status=:valid
            """), {
                "id": ticket_id,
                "s": status,
                "valid": TicketStatus.VALID.value,
            })

    async def _ticket_for_entry(
        self, db: AsyncSession, waiting_list_id: str
    ) -> Optional[Mapping[str, Any]]:
        return (await db.execute(text(f"""
          SELECT {TICKET_COLS} FROM tickets WHERE waiting_list_id=:wl
        """), {"wl": waiting_list_id})).mappings().first()

    async def commit_purchase(
        self, event_id: str, user_id: str, waiting_list_id: str,
        payment_ref: str, amount: int, now: float,
    ) -> Ticket:
        try:
            async with self._tx() as db:
                return await self._commit_purchase(
                    db, event_id, user_id, waiting_list_id, payment_ref,
                    amount, now,
                )
        except IntegrityError:
            # a concurrent delivery of the same payment won the insert
            async with self._tx() as db:
                row = await self._ticket_for_entry(db, waiting_list_id)
            if row is not None and row["payment_intent_id"] == payment_ref:
                return _ticket(row)
            raise

    async def _commit_purchase(
        self, db: AsyncSession, event_id: str, user_id: str,
        waiting_list_id: str, payment_ref: str, amount: int, now: float,
    ) -> Ticket:
        await self._lock_event(db, event_id)
        won = (await db.execute(text("""
          UPDATE waiting_list SET status=:purchased, offer_expires_at=NULL
          WHERE id=:wl AND event_id=:e AND user_id=:u AND status=:offered
          RETURNING id
        """), {
            "wl": waiting_list_id,
            "e": event_id,
            "u": user_id,
            "purchased": WaitingListStatus.PURCHASED.value,
            "offered": WaitingListStatus.OFFERED.value,
        })).first()

        if won is None:
            row = await self._ticket_for_entry(db, waiting_list_id)
            if row is not None:
                if row["payment_intent_id"] == payment_ref:
                    return _ticket(row)
                raise DuplicatePaymentError(waiting_list_id)
            status = (await db.execute(text("""
              SELECT status FROM waiting_list WHERE id=:wl
            """), {"wl": waiting_list_id})).scalar_one_or_none()
            raise OfferNotActiveError(waiting_list_id, status)

        ticket = Ticket(
            id=uuid.uuid4().hex,
            event_id=event_id,
            user_id=user_id,
            waiting_list_id=waiting_list_id,
            payment_intent_id=payment_ref,
            amount=int(amount),
            status=TicketStatus.VALID.value,
            purchased_at=now,
        )
        await db.execute(text(f"""
          INSERT INTO tickets({TICKET_COLS})
          VALUES (:id, :event_id, :user_id, :waiting_list_id,
                  :payment_intent_id, :amount, :status, :purchased_at)
        """), ticket.to_dict())
        return ticket
