from __future__ import annotations
from typing import List, Optional, Set, Tuple

import pytest
from fastapi.testclient import TestClient

from queuetix.config import Settings
from queuetix.errors import PaymentProcessorError
from queuetix.infra.sql import make_async_engine
from queuetix.model.domain import Event, WaitingListEntry
from queuetix.model.store import TicketStore, create_schema, new_store
from queuetix.payments import CheckoutRequest, MockPay
from queuetix.server import create_app

T0 = 1_700_000_000.0


class RecordingPay(MockPay):
    """MockPay that records checkout requests and can fail chosen refunds."""

    def __init__(self) -> None:
        super().__init__(
            secret="test-secret", public_base_url="http://testserver"
        )
        self.checkout_requests: List[CheckoutRequest] = []
        self.failing_refunds: Set[str] = set()

    async def create_checkout_session(self, req):
        self.checkout_requests.append(req)
        return await super().create_checkout_session(req)

    async def create_refund(
        self, account_id, payment_intent_id, *, idempotency_key=None
    ):
        if payment_intent_id in self.failing_refunds:
            raise PaymentProcessorError(
                f"Failed to refund payment {payment_intent_id}",
                "charge already disputed",
            )
        return await super().create_refund(
            account_id, payment_intent_id, idempotency_key=idempotency_key
        )


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def make_store(tmp_path, anyio_backend):
    engines = []

    async def _make(ttl_seconds: int = 1800) -> TicketStore:
        url = f"sqlite:///{tmp_path}/queuetix-{len(engines)}.db"
        engine, sessions, gated = make_async_engine(url)
        async with engine.begin() as conn:
            await create_schema(conn)
        engines.append(engine)
        return new_store(
            "pg", sessions=sessions, gated=gated, ttl_seconds=ttl_seconds
        )

    yield _make
    for engine in engines:
        await engine.dispose()


@pytest.fixture
async def store(make_store) -> TicketStore:
    return await make_store()


@pytest.fixture
def payments() -> RecordingPay:
    return RecordingPay()


async def seed_offer(
    store: TicketStore,
    *,
    owner: str = "owner_1",
    user: str = "buyer_1",
    price: float = 500.0,
    total: int = 10,
    now: float = T0,
    connect: Optional[str] = "acct_owner_1",
) -> Tuple[Event, WaitingListEntry]:
    """An active event plus one buyer holding an offer for it."""
    if connect:
        await store.set_connect_account_id(owner, connect)
    event = await store.create_event(
        owner_id=owner, name="Arijit Live", description="Stadium show",
        price=price, total_tickets=total, now=now,
    )
    entry = await store.join_waiting_list(event.id, user, now)
    return event, entry


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        store_backend="pg",
        database_url=f"sqlite:///{tmp_path}/app.db",
        payments_backend="mock",
        public_base_url="http://testserver",
        offer_sweep_interval=0,
        session_secret="test-session-secret",
        admin_username="admin",
        admin_password="hunter2",
        log_level="DEBUG",
    )


@pytest.fixture
def client(settings, payments):
    app = create_app(settings, payments=payments)
    with TestClient(app) as c:
        yield c
