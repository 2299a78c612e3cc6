import anyio
import pytest

from queuetix.errors import (
    AlreadyQueuedError, DuplicatePaymentError, EventCancelledError,
    EventNotFoundError, OfferNotActiveError,
)
from queuetix.model.domain import TicketStatus, WaitingListStatus

from conftest import T0, seed_offer

pytestmark = pytest.mark.anyio


async def test_event_roundtrip(store):
    event = await store.create_event(
        owner_id="o1", name="Gig", description="", price=12.5,
        total_tickets=3, now=T0,
    )
    got = await store.get_event(event.id)
    assert got == event
    assert not got.is_cancelled
    assert await store.get_event("nope") is None


async def test_connect_account_upsert(store):
    assert await store.get_connect_account_id("o1") is None
    await store.set_connect_account_id("o1", "acct_1")
    await store.set_connect_account_id("o1", "acct_1")
    assert await store.get_connect_account_id("o1") == "acct_1"
    await store.set_connect_account_id("o1", "acct_2")
    assert await store.get_connect_account_id("o1") == "acct_2"


async def test_join_offers_while_tickets_remain(store):
    event, first = await seed_offer(store, total=1)
    assert first.status == WaitingListStatus.OFFERED.value
    assert first.offer_expires_at == T0 + 1800

    second = await store.join_waiting_list(event.id, "buyer_2", T0 + 1)
    assert second.status == WaitingListStatus.WAITING.value
    assert second.offer_expires_at is None


async def test_one_active_entry_per_user(store):
    event, _ = await seed_offer(store)
    with pytest.raises(AlreadyQueuedError):
        await store.join_waiting_list(event.id, "buyer_1", T0 + 1)


async def test_join_unknown_or_cancelled_event(store):
    with pytest.raises(EventNotFoundError):
        await store.join_waiting_list("missing", "buyer_1", T0)

    event, _ = await seed_offer(store)
    await store.cancel_event(event.id)
    with pytest.raises(EventCancelledError):
        await store.join_waiting_list(event.id, "buyer_2", T0 + 1)


async def test_commit_purchase_is_idempotent(store):
    event, entry = await seed_offer(store)

    first = await store.commit_purchase(
        event.id, "buyer_1", entry.id, "pi_1", 50000, T0 + 5
    )
    again = await store.commit_purchase(
        event.id, "buyer_1", entry.id, "pi_1", 50000, T0 + 9
    )

    assert again == first
    assert first.status == TicketStatus.VALID.value
    assert first.amount == 50000
    assert [t.id for t in await store.get_valid_tickets(event.id)] == [
        first.id
    ]
    offer = await store.get_offer_for_user(event.id, "buyer_1")
    assert offer.status == WaitingListStatus.PURCHASED.value
    assert offer.offer_expires_at is None
    assert await store.get_ticket_by_payment_intent("pi_1") == first
    assert await store.get_ticket_for_user(event.id, "buyer_1") == first


async def test_commit_with_other_payment_is_rejected(store):
    event, entry = await seed_offer(store)
    await store.commit_purchase(
        event.id, "buyer_1", entry.id, "pi_1", 50000, T0 + 5
    )
    with pytest.raises(DuplicatePaymentError):
        await store.commit_purchase(
            event.id, "buyer_1", entry.id, "pi_2", 50000, T0 + 6
        )
    assert len(await store.get_valid_tickets(event.id)) == 1


async def test_commit_on_expired_offer_fails(store):
    event, entry = await seed_offer(store)
    assert await store.expire_offers(T0 + 1801) == 1

    with pytest.raises(OfferNotActiveError) as exc:
        await store.commit_purchase(
            event.id, "buyer_1", entry.id, "pi_1", 50000, T0 + 1802
        )
    assert exc.value.status == WaitingListStatus.EXPIRED.value
    assert await store.get_valid_tickets(event.id) == []


async def test_commit_unknown_entry_fails(store):
    event, _ = await seed_offer(store)
    with pytest.raises(OfferNotActiveError):
        await store.commit_purchase(
            event.id, "buyer_1", "no-such-entry", "pi_1", 100, T0
        )


async def test_expire_sweep_advances_queue(store):
    event, first = await seed_offer(store, total=1)
    second = await store.join_waiting_list(event.id, "buyer_2", T0 + 10)

    # nothing due yet
    assert await store.expire_offers(T0 + 100) == 0

    assert await store.expire_offers(T0 + 2000) == 1
    assert (await store.get_offer_for_user(event.id, "buyer_1")).status == \
        WaitingListStatus.EXPIRED.value
    promoted = await store.get_offer_for_user(event.id, "buyer_2")
    assert promoted.id == second.id
    assert promoted.status == WaitingListStatus.OFFERED.value
    assert promoted.offer_expires_at == T0 + 2000 + 1800


async def test_release_offer_hands_ticket_to_next(store):
    event, first = await seed_offer(store, total=1)
    await store.join_waiting_list(event.id, "buyer_2", T0 + 10)

    await store.release_offer(event.id, first.id, T0 + 20)

    assert (await store.get_offer_for_user(event.id, "buyer_1")).status == \
        WaitingListStatus.EXPIRED.value
    assert (await store.get_offer_for_user(event.id, "buyer_2")).status == \
        WaitingListStatus.OFFERED.value

    # releasing again is a no-op
    await store.release_offer(event.id, first.id, T0 + 30)


async def test_rejoin_after_release(store):
    event, first = await seed_offer(store, total=1)
    await store.release_offer(event.id, first.id, T0 + 20)

    again = await store.join_waiting_list(event.id, "buyer_1", T0 + 30)
    assert again.id != first.id
    assert again.status == WaitingListStatus.OFFERED.value
    assert (await store.get_offer_for_user(event.id, "buyer_1")).id == again.id


async def test_sold_tickets_are_not_offered_again(store):
    event, first = await seed_offer(store, total=1)
    await store.commit_purchase(
        event.id, "buyer_1", first.id, "pi_1", 50000, T0 + 5
    )
    late = await store.join_waiting_list(event.id, "buyer_2", T0 + 10)
    assert late.status == WaitingListStatus.WAITING.value


async def test_ticket_status_only_leaves_valid(store):
    event, entry = await seed_offer(store)
    ticket = await store.commit_purchase(
        event.id, "buyer_1", entry.id, "pi_1", 50000, T0 + 5
    )
    await store.set_ticket_status(ticket.id, TicketStatus.REFUNDED.value)
    await store.set_ticket_status(ticket.id, TicketStatus.VALID.value)

    got = await store.get_ticket_for_user(event.id, "buyer_1")
    assert got.status == TicketStatus.REFUNDED.value
    assert await store.get_valid_tickets(event.id) == []


async def test_cancel_event_closes_open_entries(store):
    event, offered = await seed_offer(store, total=1)
    await store.join_waiting_list(event.id, "buyer_2", T0 + 10)

    await store.cancel_event(event.id)

    assert (await store.get_event(event.id)).is_cancelled
    for user in ("buyer_1", "buyer_2"):
        entry = await store.get_offer_for_user(event.id, user)
        assert entry.status == WaitingListStatus.EXPIRED.value


async def test_cancel_refused_while_tickets_are_valid(store):
    event, entry = await seed_offer(store)
    ticket = await store.commit_purchase(
        event.id, "buyer_1", entry.id, "pi_1", 50000, T0 + 5
    )

    assert await store.cancel_event(event.id) is False
    assert not (await store.get_event(event.id)).is_cancelled
    await store.join_waiting_list(event.id, "buyer_2", T0 + 6)

    await store.set_ticket_status(ticket.id, TicketStatus.REFUNDED.value)
    assert await store.cancel_event(event.id) is True
    assert (await store.get_event(event.id)).is_cancelled
    entry_2 = await store.get_offer_for_user(event.id, "buyer_2")
    assert entry_2.status == WaitingListStatus.EXPIRED.value
    assert await store.cancel_event("nope") is False


async def test_concurrent_commits_issue_one_ticket(store):
    event, entry = await seed_offer(store)
    results = []

    async def deliver():
        results.append(await store.commit_purchase(
            event.id, "buyer_1", entry.id, "pi_1", 50000, T0 + 5
        ))

    async with anyio.create_task_group() as tg:
        for _ in range(5):
            tg.start_soon(deliver)

    assert len(results) == 5
    assert len({t.id for t in results}) == 1
    assert [t.id for t in await store.get_valid_tickets(event.id)] == [
        results[0].id
    ]
