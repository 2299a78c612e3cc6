import pytest

from queuetix.errors import (
    CancellationConflictError, ConnectAccountMissingError, EventNotFoundError,
    PartialRefundError,
)
from queuetix.model.domain import Ticket, TicketStatus
from queuetix.refunds import (
    MAX_SETTLE_ROUNDS, refund_all, refund_event_tickets,
)

from conftest import T0, seed_offer

pytestmark = pytest.mark.anyio


async def sold_out_event(store, buyers=3):
    """An event whose buyers each hold a valid ticket paid with pi_<n>."""
    event, first = await seed_offer(store, user="buyer_1", total=buyers)
    tickets = [await store.commit_purchase(
        event.id, "buyer_1", first.id, "pi_1", 50000, T0 + 1
    )]
    for n in range(2, buyers + 1):
        entry = await store.join_waiting_list(event.id, f"buyer_{n}", T0 + n)
        tickets.append(await store.commit_purchase(
            event.id, f"buyer_{n}", entry.id, f"pi_{n}", 50000, T0 + n
        ))
    return event, tickets


async def test_all_refunds_succeed(store, payments):
    event, tickets = await sold_out_event(store)

    outcomes = await refund_event_tickets(store, payments, event.id)

    assert [o.ticket_id for o in outcomes] == [t.id for t in tickets]
    assert all(o.ok and o.refund_id for o in outcomes)
    assert (await store.get_event(event.id)).is_cancelled
    assert await store.get_valid_tickets(event.id) == []
    assert sorted(payments.refunds) == [
        ("acct_owner_1", "pi_1"), ("acct_owner_1", "pi_2"),
        ("acct_owner_1", "pi_3"),
    ]


async def test_one_failure_keeps_event_active(store, payments):
    event, tickets = await sold_out_event(store)
    payments.failing_refunds = {"pi_2"}

    with pytest.raises(PartialRefundError) as exc:
        await refund_event_tickets(store, payments, event.id)

    err = exc.value
    assert [tid for tid, _ in err.failures] == [tickets[1].id]
    assert "charge already disputed" in err.failures[0][1]
    assert sorted(err.refunded) == sorted([tickets[0].id, tickets[2].id])
    assert tickets[1].id in str(err)
    assert str(err).startswith("Failed to refund 1 of 3 tickets")

    assert not (await store.get_event(event.id)).is_cancelled
    assert [t.id for t in await store.get_valid_tickets(event.id)] == [
        tickets[1].id
    ]
    for user in ("buyer_1", "buyer_3"):
        t = await store.get_ticket_for_user(event.id, user)
        assert t.status == TicketStatus.REFUNDED.value


async def test_retry_after_failure_finishes_cancellation(store, payments):
    event, tickets = await sold_out_event(store)
    payments.failing_refunds = {"pi_3"}
    with pytest.raises(PartialRefundError):
        await refund_event_tickets(store, payments, event.id)

    payments.failing_refunds = set()
    outcomes = await refund_event_tickets(store, payments, event.id)

    assert [o.ticket_id for o in outcomes] == [tickets[2].id]
    assert (await store.get_event(event.id)).is_cancelled
    assert len(payments.refunds) == 3


async def test_event_without_tickets_is_cancelled(store, payments):
    event, _ = await seed_offer(store)
    assert await refund_event_tickets(store, payments, event.id) == []
    assert (await store.get_event(event.id)).is_cancelled


async def test_missing_connect_account(store, payments):
    event, _ = await seed_offer(store, connect=None)
    with pytest.raises(ConnectAccountMissingError):
        await refund_event_tickets(store, payments, event.id)
    assert not (await store.get_event(event.id)).is_cancelled


async def test_unknown_event(store, payments):
    with pytest.raises(EventNotFoundError):
        await refund_event_tickets(store, payments, "missing")
    assert payments.refunds == []


async def test_ticket_without_payment_intent(store, payments):
    ticket = Ticket(
        id="t_orphan", event_id="e1", user_id="u1", waiting_list_id=None,
        payment_intent_id=None, amount=100, status="valid", purchased_at=T0,
    )
    [outcome] = await refund_all(store, payments, "acct_1", [ticket])
    assert not outcome.ok
    assert outcome.error == "ticket has no payment intent"
    assert payments.refunds == []


async def test_purchase_during_fan_out_is_refunded(
    store, payments, monkeypatch
):
    event, first = await seed_offer(store, user="buyer_1", total=2)
    await store.commit_purchase(
        event.id, "buyer_1", first.id, "pi_1", 50000, T0 + 1
    )
    second = await store.join_waiting_list(event.id, "buyer_2", T0 + 2)
    real_get_valid = store.get_valid_tickets
    snapshots = []

    async def get_valid_then_sell(event_id):
        tickets = await real_get_valid(event_id)
        snapshots.append(tickets)
        if len(snapshots) == 1:
            # buyer_2's payment completes after the snapshot was taken
            await store.commit_purchase(
                event.id, "buyer_2", second.id, "pi_2", 50000, T0 + 3
            )
        return tickets

    monkeypatch.setattr(store, "get_valid_tickets", get_valid_then_sell)
    outcomes = await refund_event_tickets(store, payments, event.id)

    assert len(snapshots) == 2
    assert len(outcomes) == 2 and all(o.ok for o in outcomes)
    assert (await store.get_event(event.id)).is_cancelled
    assert await real_get_valid(event.id) == []
    assert sorted(payments.refunds) == [
        ("acct_owner_1", "pi_1"), ("acct_owner_1", "pi_2"),
    ]


async def test_endless_sales_give_up_with_conflict(
    store, payments, monkeypatch
):
    event, _ = await sold_out_event(store, buyers=1)
    cancels = []

    async def cancel_loses_race(event_id):
        cancels.append(event_id)
        return False

    monkeypatch.setattr(store, "cancel_event", cancel_loses_race)
    with pytest.raises(CancellationConflictError):
        await refund_event_tickets(store, payments, event.id)

    assert len(cancels) == MAX_SETTLE_ROUNDS
    assert not (await store.get_event(event.id)).is_cancelled
    assert await store.get_valid_tickets(event.id) == []
    assert payments.refunds == [("acct_owner_1", "pi_1")]


async def test_retry_after_status_write_failure_refunds_once(
    store, payments, monkeypatch
):
    event, [ticket] = await sold_out_event(store, buyers=1)
    real_set_status = store.set_ticket_status
    writes = []

    async def set_status_fails_once(ticket_id, status):
        writes.append(ticket_id)
        if len(writes) == 1:
            raise RuntimeError("database is locked")
        await real_set_status(ticket_id, status)

    monkeypatch.setattr(store, "set_ticket_status", set_status_fails_once)
    with pytest.raises(PartialRefundError) as exc:
        await refund_event_tickets(store, payments, event.id)
    assert exc.value.failures == [(ticket.id, "database is locked")]
    assert not (await store.get_event(event.id)).is_cancelled

    [outcome] = await refund_event_tickets(store, payments, event.id)

    assert outcome.ok
    assert payments.refunds == [("acct_owner_1", "pi_1")]
    assert payments.refund_keys == {f"refund-{ticket.id}": outcome.refund_id}
    assert (await store.get_event(event.id)).is_cancelled
