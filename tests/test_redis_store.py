"""Redis store; runs against a scratch database named by QUEUETIX_TEST_REDIS_URL,
which gets flushed."""
import os

import pytest
import redis.asyncio as redis

from queuetix.errors import (
    AlreadyQueuedError, DuplicatePaymentError, OfferNotActiveError,
)
from queuetix.model.domain import TicketStatus, WaitingListStatus
from queuetix.model.store import new_store

from conftest import T0, seed_offer

REDIS_URL = os.environ.get("QUEUETIX_TEST_REDIS_URL")

pytestmark = [
    pytest.mark.anyio,
    pytest.mark.skipif(
        not REDIS_URL, reason="QUEUETIX_TEST_REDIS_URL not set"
    ),
]


@pytest.fixture
async def store(anyio_backend):
    r = redis.from_url(REDIS_URL, decode_responses=True)
    await r.flushdb()
    yield new_store("redis", r=r, ttl_seconds=1800)
    await r.flushdb()
    await r.aclose()


async def test_commit_purchase_is_idempotent(store):
    event, entry = await seed_offer(store)
    first = await store.commit_purchase(
        event.id, "buyer_1", entry.id, "pi_1", 50000, T0 + 5
    )
    again = await store.commit_purchase(
        event.id, "buyer_1", entry.id, "pi_1", 50000, T0 + 6
    )
    assert again == first
    assert len(await store.get_valid_tickets(event.id)) == 1
    with pytest.raises(DuplicatePaymentError):
        await store.commit_purchase(
            event.id, "buyer_1", entry.id, "pi_2", 50000, T0 + 7
        )
    offer = await store.get_offer_for_user(event.id, "buyer_1")
    assert offer.status == WaitingListStatus.PURCHASED.value


async def test_queue_and_expiry(store):
    event, first = await seed_offer(store, total=1)
    second = await store.join_waiting_list(event.id, "buyer_2", T0 + 10)
    assert second.status == WaitingListStatus.WAITING.value
    with pytest.raises(AlreadyQueuedError):
        await store.join_waiting_list(event.id, "buyer_2", T0 + 11)

    assert await store.expire_offers(T0 + 2000) == 1
    promoted = await store.get_offer_for_user(event.id, "buyer_2")
    assert promoted.status == WaitingListStatus.OFFERED.value

    with pytest.raises(OfferNotActiveError):
        await store.commit_purchase(
            event.id, "buyer_1", first.id, "pi_late", 50000, T0 + 2001
        )


async def test_refund_status_and_cancel(store):
    event, entry = await seed_offer(store)
    ticket = await store.commit_purchase(
        event.id, "buyer_1", entry.id, "pi_1", 50000, T0 + 5
    )
    assert await store.cancel_event(event.id) is False
    assert not (await store.get_event(event.id)).is_cancelled
    await store.set_ticket_status(ticket.id, TicketStatus.REFUNDED.value)
    assert await store.get_valid_tickets(event.id) == []

    assert await store.cancel_event(event.id) is True
    assert (await store.get_event(event.id)).is_cancelled
