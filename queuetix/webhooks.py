from __future__ import annotations
import logging
from typing import Any, Mapping, Optional

from .errors import WebhookPayloadError
from .helpers import now_ts
from .model.domain import Ticket
from .model.store import TicketStore
from .payments import CHECKOUT_COMPLETED, PaymentAdapter, WebhookEvent

logger = logging.getLogger(__name__)

METADATA_KEYS = ("eventId", "userId", "waitingListId")


def verify_event(
    payments: PaymentAdapter, payload: bytes, signature: Optional[str]
) -> WebhookEvent:
    # raises WebhookSignatureError / WebhookPayloadError -> 400
    return payments.verify_webhook(payload, signature)


async def reconcile_completed_session(
    store: TicketStore, session: Mapping[str, Any],
    now: Optional[float] = None,
) -> Ticket:
    """
    Turn a completed checkout session into a ticket.

    The whole offered -> purchased transition is one store call; a
    redelivered event lands on the same waiting-list entry and gets the
    ticket issued the first time.
    """
    metadata = session.get("metadata") or {}
    missing = [k for k in METADATA_KEYS if not metadata.get(k)]
    if missing:
        raise WebhookPayloadError(
            "checkout session metadata missing " + ", ".join(missing)
        )
    payment_intent = session.get("payment_intent")
    if not payment_intent:
        raise WebhookPayloadError("checkout session has no payment_intent")
    if not isinstance(payment_intent, str):
        # expanded object
        payment_intent = payment_intent["id"]

    ticket = await store.commit_purchase(
        event_id=metadata["eventId"],
        user_id=metadata["userId"],
        waiting_list_id=metadata["waitingListId"],
        payment_ref=payment_intent,
        amount=int(session.get("amount_total") or 0),
        now=now_ts() if now is None else now,
    )
    logger.info(
        "ticket %s issued for waiting_list=%s payment=%s",
        ticket.id, metadata["waitingListId"], payment_intent,
    )
    return ticket


async def dispatch_event(
    store: TicketStore, event: WebhookEvent
) -> Optional[Ticket]:
    if event.type == CHECKOUT_COMPLETED:
        return await reconcile_completed_session(store, event.data)
    # acknowledged so the processor stops redelivering
    logger.debug("ignoring webhook event %s (%s)", event.id, event.type)
    return None
