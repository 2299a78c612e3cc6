"""
Buyer- and owner-facing payment actions: connect onboarding for event owners
and checkout session creation for buyers holding an offer.

Nothing here mutates domain state except the connect account reference;
tickets are only issued when the processor reports a completed session
(see webhooks.py).
"""
from __future__ import annotations
import logging
from typing import Dict, Optional

from .errors import (
    ConnectAccountMissingError, EventNotFoundError, NoActiveOfferError,
    OfferExpiredError, OfferWithoutExpiryError,
)
from .helpers import (
    application_fee, checkout_expires_at, now_ts, to_minor_units,
)
from .model.domain import CheckoutMetadata, WaitingListStatus
from .model.store import TicketStore
from .payments import AccountStatus, CheckoutRequest, PaymentAdapter

logger = logging.getLogger(__name__)


# ----------------------------
# Connect accounts (event owners)
# ----------------------------
async def get_or_create_connect_account(
    store: TicketStore, payments: PaymentAdapter, owner_id: str
) -> str:
    existing = await store.get_connect_account_id(owner_id)
    if existing:
        return existing
    account_id = await payments.create_connect_account()
    await store.set_connect_account_id(owner_id, account_id)
    logger.info("created connect account %s for %s", account_id, owner_id)
    return account_id


async def get_connect_account_status(
    payments: PaymentAdapter, account_id: str
) -> AccountStatus:
    if not account_id:
        raise ValueError("No Stripe account ID provided")
    return await payments.retrieve_account(account_id)


async def create_connect_login_link(
    payments: PaymentAdapter, account_id: str
) -> str:
    if not account_id:
        raise ValueError("No Stripe account ID provided")
    return await payments.create_login_link(account_id)


async def create_connect_account_link(
    payments: PaymentAdapter, account_id: str, origin: str
) -> str:
    origin = origin.rstrip("/")
    return await payments.create_account_link(
        account_id,
        refresh_url=f"{origin}/connect/refresh/{account_id}",
        return_url=f"{origin}/connect/return/{account_id}",
    )


# ----------------------------
# Checkout (buyers)
# ----------------------------
async def create_checkout_session(
    store: TicketStore,
    payments: PaymentAdapter,
    *,
    event_id: str,
    user_id: str,
    base_url: str,
    currency: str,
    offer_ttl_seconds: int,
    now: Optional[float] = None,
) -> Dict[str, str]:
    """
    Open a processor checkout session for the caller's current offer.

    Preconditions are checked in a fixed order and each raises its own
    error before the processor is contacted.
    """
    now = now_ts() if now is None else now

    event = await store.get_event(event_id)
    if event is None:
        raise EventNotFoundError(event_id)

    offer = await store.get_offer_for_user(event_id, user_id)
    if offer is None or offer.status != WaitingListStatus.OFFERED.value:
        raise NoActiveOfferError()

    account_id = await store.get_connect_account_id(event.owner_id)
    if not account_id:
        raise ConnectAccountMissingError(event.owner_id)

    if offer.offer_expires_at is None:
        raise OfferWithoutExpiryError()
    if offer.offer_expires_at <= now:
        raise OfferExpiredError()

    unit_amount = to_minor_units(event.price)
    metadata: CheckoutMetadata = {
        "eventId": event.id,
        "userId": user_id,
        "waitingListId": offer.id,
    }
    base_url = base_url.rstrip("/")
    session = await payments.create_checkout_session(CheckoutRequest(
        account_id=account_id,
        name=event.name,
        description=event.description,
        currency=currency,
        unit_amount=unit_amount,
        application_fee_amount=application_fee(unit_amount),
        expires_at=checkout_expires_at(
            now, offer.offer_expires_at, offer_ttl_seconds
        ),
        success_url=(
            f"{base_url}/tickets/purchase-success"
            "?session_id={CHECKOUT_SESSION_ID}"
        ),
        cancel_url=f"{base_url}/event/{event.id}",
        metadata=metadata,
    ))
    logger.info(
        "checkout session %s for event=%s waiting_list=%s",
        session["session_id"], event.id, offer.id,
    )
    return {"sessionId": session["session_id"], "sessionUrl": session["url"]}
