"""
Cancel an event by refunding every valid ticket.

Refunds run concurrently and each one settles on its own: a failure is
recorded, never raised, so one bad ticket cannot stop the rest. The event is
cancelled only if every refund went through; otherwise it stays active and
the whole operation can simply be retried, since already refunded tickets
are no longer 'valid' and are skipped.

The store refuses to cancel while a ticket is still valid, so a purchase
that completes during the fan-out is picked up by another round.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import List, Optional

import anyio

from .errors import (
    CancellationConflictError, ConnectAccountMissingError, EventNotFoundError,
    PartialRefundError,
)
from .model.domain import Ticket, TicketStatus
from .model.store import TicketStore
from .payments import PaymentAdapter

logger = logging.getLogger(__name__)

MAX_SETTLE_ROUNDS = 5


@dataclass
class RefundOutcome:
    ticket_id: str
    ok: bool
    refund_id: Optional[str] = None
    error: Optional[str] = None


def refund_idempotency_key(ticket: Ticket) -> str:
    return f"refund-{ticket.id}"


async def _refund_one(
    store: TicketStore, payments: PaymentAdapter, account_id: str,
    ticket: Ticket,
) -> RefundOutcome:
    if not ticket.payment_intent_id:
        return RefundOutcome(
            ticket.id, ok=False, error="ticket has no payment intent"
        )
    try:
        # a retry after a failed status write replays the same refund
        refund_id = await payments.create_refund(
            account_id, ticket.payment_intent_id,
            idempotency_key=refund_idempotency_key(ticket),
        )
        await store.set_ticket_status(ticket.id, TicketStatus.REFUNDED.value)
    except Exception as e:
        logger.warning("refund of ticket %s failed: %s", ticket.id, e)
        return RefundOutcome(ticket.id, ok=False, error=str(e))
    return RefundOutcome(ticket.id, ok=True, refund_id=refund_id)


async def refund_all(
    store: TicketStore, payments: PaymentAdapter, account_id: str,
    tickets: List[Ticket],
) -> List[RefundOutcome]:
    """Join-all over per-ticket refunds; outcomes keep ticket order."""
    outcomes: List[Optional[RefundOutcome]] = [None] * len(tickets)

    async def run(i: int, ticket: Ticket) -> None:
        outcomes[i] = await _refund_one(store, payments, account_id, ticket)

    async with anyio.create_task_group() as tg:
        for i, ticket in enumerate(tickets):
            tg.start_soon(run, i, ticket)
    return [o for o in outcomes if o is not None]


async def refund_event_tickets(
    store: TicketStore, payments: PaymentAdapter, event_id: str
) -> List[RefundOutcome]:
    event = await store.get_event(event_id)
    if event is None:
        raise EventNotFoundError(event_id)

    account_id = await store.get_connect_account_id(event.owner_id)
    if not account_id:
        raise ConnectAccountMissingError(event.owner_id)

    settled: List[RefundOutcome] = []
    for _ in range(MAX_SETTLE_ROUNDS):
        tickets = await store.get_valid_tickets(event_id)
        outcomes = await refund_all(store, payments, account_id, tickets)
        settled.extend(outcomes)

        failures = [(o.ticket_id, o.error or "") for o in outcomes if not o.ok]
        refunded = [o.ticket_id for o in settled if o.ok]
        if failures:
            logger.error(
                "event %s not cancelled: %d of %d refunds failed",
                event_id, len(failures), len(outcomes),
            )
            raise PartialRefundError.from_outcomes(failures, refunded)

        if await store.cancel_event(event_id):
            logger.info(
                "event %s cancelled, %d tickets refunded",
                event_id, len(refunded),
            )
            return settled
        logger.info(
            "event %s sold tickets during cancellation, refunding again",
            event_id,
        )

    raise CancellationConflictError(event_id)
