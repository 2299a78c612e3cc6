from __future__ import annotations
import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Optional

import httpx
import redis.asyncio as redis
from fastapi import APIRouter, Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import (
    HTMLResponse, ORJSONResponse, PlainTextResponse, RedirectResponse,
    Response,
)
from fastapi.templating import Jinja2Templates
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from .checkout import (
    create_checkout_session, create_connect_account_link,
    create_connect_login_link, get_connect_account_status,
    get_or_create_connect_account,
)
from .config import Settings
from .errors import (
    ConnectAccountMissingError, DomainError, EventNotFoundError,
    NoActiveOfferError, NotAuthenticatedError, NotEventOwnerError,
    PartialRefundError, http_status,
)
from .helpers import ct_equal, now_ts, to_iso
from .infra.sql import make_async_engine
from .model.domain import Event, WaitingListStatus
from .model.store import TicketStore, create_schema, new_store
from .payments import MockPay, PaymentAdapter, new_adapter
from .refunds import refund_event_tickets
from .webhooks import dispatch_event, verify_event

logger = logging.getLogger(__name__)

templates = Jinja2Templates(
    directory=str(Path(__file__).resolve().parent / "templates")
)

router = APIRouter()


# ----------------------------
# Dependencies
# ----------------------------
def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> TicketStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise RuntimeError("ticket store not initialized")
    return store


def get_payments(request: Request) -> PaymentAdapter:
    return request.app.state.payments


def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def current_user(request: Request) -> str:
    user_id = request.session.get("user_id")
    if not user_id:
        raise NotAuthenticatedError()
    return user_id


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise NotAuthenticatedError()


def require_owner_or_admin(request: Request, event: Event) -> None:
    if is_admin(request):
        return
    if current_user(request) != event.owner_id:
        raise NotEventOwnerError(event.id)


async def load_event(store: TicketStore, event_id: str) -> Event:
    event = await store.get_event(event_id)
    if event is None:
        raise EventNotFoundError(event_id)
    return event


def _entry_json(entry) -> dict:
    d = entry.to_dict()
    d["offer_expires_at_iso"] = to_iso(entry.offer_expires_at)
    return d


# ----------------------------
# Auth (identity comes from the session cookie)
# ----------------------------
@router.post("/auth/login")
async def auth_login(payload: dict, request: Request):
    user_id = str(payload.get("userId") or "").strip()
    if not user_id:
        raise HTTPException(400, detail="userId is required")
    request.session["user_id"] = user_id
    return {"userId": user_id}


@router.post("/auth/logout")
async def auth_logout(request: Request):
    request.session.pop("user_id", None)
    return {"ok": True}


@router.post("/admin/login")
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    next: str = Form("/"),
    settings: Settings = Depends(get_settings),
):
    ok_user = ct_equal(username.strip(), settings.admin_username)
    ok_pass = ct_equal(password, settings.admin_password)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        return RedirectResponse(
            url=(next or "/"),
            status_code=HTTP_303_SEE_OTHER
        )
    logger.warning("failed admin login for %r", username.strip())
    return ORJSONResponse(
        {"detail": "Invalid credentials."}, status_code=401
    )


@router.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return RedirectResponse(url="/", status_code=HTTP_303_SEE_OTHER)


# ----------------------------
# Connect accounts (event owners)
# ----------------------------
@router.post("/api/connect/account")
async def api_create_connect_account(
    user_id: str = Depends(current_user),
    store: TicketStore = Depends(get_store),
    payments: PaymentAdapter = Depends(get_payments),
):
    account_id = await get_or_create_connect_account(
        store, payments, user_id
    )
    return {"account": account_id}


@router.get("/api/connect/account")
async def api_get_connect_account(
    user_id: str = Depends(current_user),
    store: TicketStore = Depends(get_store),
):
    return {"account": await store.get_connect_account_id(user_id)}


async def _own_account(store: TicketStore, user_id: str) -> str:
    account_id = await store.get_connect_account_id(user_id)
    if not account_id:
        raise ConnectAccountMissingError(user_id)
    return account_id


@router.get("/api/connect/account/status")
async def api_connect_account_status(
    user_id: str = Depends(current_user),
    store: TicketStore = Depends(get_store),
    payments: PaymentAdapter = Depends(get_payments),
):
    account_id = await _own_account(store, user_id)
    status = await get_connect_account_status(payments, account_id)
    return status.to_dict()


@router.post("/api/connect/account-link")
async def api_connect_account_link(
    user_id: str = Depends(current_user),
    store: TicketStore = Depends(get_store),
    payments: PaymentAdapter = Depends(get_payments),
    settings: Settings = Depends(get_settings),
):
    account_id = await _own_account(store, user_id)
    url = await create_connect_account_link(
        payments, account_id, settings.public_base_url
    )
    return {"url": url}


@router.post("/api/connect/login-link")
async def api_connect_login_link(
    user_id: str = Depends(current_user),
    store: TicketStore = Depends(get_store),
    payments: PaymentAdapter = Depends(get_payments),
):
    account_id = await _own_account(store, user_id)
    return {"url": await create_connect_login_link(payments, account_id)}


# ----------------------------
# Events & waiting list
# ----------------------------
@router.post("/api/events")
async def api_create_event(
    payload: dict,
    user_id: str = Depends(current_user),
    store: TicketStore = Depends(get_store),
):
    name = str(payload.get("name") or "").strip()
    if not name:
        raise HTTPException(400, detail="name is required")
    try:
        price = float(payload.get("price"))
        total = int(payload.get("totalTickets"))
    except (TypeError, ValueError):
        raise HTTPException(
            400, detail="price and totalTickets must be numbers"
        )
    if price < 0 or total < 0:
        raise HTTPException(
            400, detail="price and totalTickets must not be negative"
        )

    event = await store.create_event(
        owner_id=user_id,
        name=name,
        description=str(payload.get("description") or ""),
        price=price,
        total_tickets=total,
        now=now_ts(),
    )
    logger.info("event %s created by %s", event.id, user_id)
    return event.to_dict()


@router.get("/api/events/{event_id}")
async def api_get_event(
    event_id: str, store: TicketStore = Depends(get_store),
):
    return (await load_event(store, event_id)).to_dict()


@router.post("/api/events/{event_id}/waiting-list")
async def api_join_waiting_list(
    event_id: str,
    user_id: str = Depends(current_user),
    store: TicketStore = Depends(get_store),
):
    entry = await store.join_waiting_list(event_id, user_id, now_ts())
    return _entry_json(entry)


@router.get("/api/events/{event_id}/queue-position")
async def api_queue_position(
    event_id: str,
    user_id: str = Depends(current_user),
    store: TicketStore = Depends(get_store),
):
    entry = await store.get_offer_for_user(event_id, user_id)
    if entry is None:
        raise HTTPException(404, detail="not in waiting list")
    return _entry_json(entry)


@router.post("/api/events/{event_id}/release-offer")
async def api_release_offer(
    event_id: str,
    user_id: str = Depends(current_user),
    store: TicketStore = Depends(get_store),
):
    entry = await store.get_offer_for_user(event_id, user_id)
    if entry is None or entry.status != WaitingListStatus.OFFERED.value:
        raise NoActiveOfferError()
    await store.release_offer(event_id, entry.id, now_ts())
    return {"ok": True}


@router.get("/api/events/{event_id}/my-ticket")
async def api_my_ticket(
    event_id: str,
    user_id: str = Depends(current_user),
    store: TicketStore = Depends(get_store),
):
    ticket = await store.get_ticket_for_user(event_id, user_id)
    if ticket is None:
        raise HTTPException(404, detail="ticket not found")
    return ticket.to_dict()


# ----------------------------
# Checkout & cancellation
# ----------------------------
@router.post("/api/events/{event_id}/checkout")
async def api_checkout(
    event_id: str,
    user_id: str = Depends(current_user),
    store: TicketStore = Depends(get_store),
    payments: PaymentAdapter = Depends(get_payments),
    settings: Settings = Depends(get_settings),
):
    return await create_checkout_session(
        store, payments,
        event_id=event_id,
        user_id=user_id,
        base_url=settings.public_base_url,
        currency=settings.currency,
        offer_ttl_seconds=settings.offer_ttl_seconds,
    )


@router.post("/api/events/{event_id}/cancel")
async def api_cancel_event(
    event_id: str,
    request: Request,
    store: TicketStore = Depends(get_store),
    payments: PaymentAdapter = Depends(get_payments),
):
    event = await load_event(store, event_id)
    require_owner_or_admin(request, event)
    outcomes = await refund_event_tickets(store, payments, event_id)
    return {"success": True, "refunded": [o.ticket_id for o in outcomes]}


@router.post("/api/admin/expire-offers")
async def api_admin_expire_offers(
    _: None = Depends(require_admin),
    store: TicketStore = Depends(get_store),
):
    return {"expired": await store.expire_offers(now_ts())}


# ----------------------------
# Webhook endpoint (shared for Mock/Stripe)
# ----------------------------
@router.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    store: TicketStore = Depends(get_store),
    payments: PaymentAdapter = Depends(get_payments),
):
    payload = await request.body()
    signature = request.headers.get(payments.signature_header)

    try:
        event = verify_event(payments, payload, signature)
    except DomainError as e:
        logger.warning("webhook rejected: %s", e)
        return PlainTextResponse(f"Webhook Error: {e}", status_code=400)

    try:
        await dispatch_event(store, event)
    except Exception:
        logger.exception("error processing webhook %s", event.id)
        return PlainTextResponse(
            "Error processing webhook", status_code=500
        )
    return Response(status_code=200)


# ----------------------------
# Success page
# ----------------------------
@router.get("/tickets/purchase-success", response_class=HTMLResponse)
async def purchase_success_page(
    request: Request,
    session_id: Optional[str] = None,
    store: TicketStore = Depends(get_store),
    payments: PaymentAdapter = Depends(get_payments),
):
    ticket = None
    if session_id:
        payment_intent = await payments.get_session_payment_intent(session_id)
        if payment_intent:
            ticket = await store.get_ticket_by_payment_intent(payment_intent)
    return templates.TemplateResponse(
        request,
        "purchase_success.html",
        {
            "session_id": session_id,
            "ticket": ticket,
            "purchased_at": to_iso(ticket.purchased_at) if ticket else None,
        },
    )


# ----------------------------
# MockPay UI
# ----------------------------
def _mockpay(payments: PaymentAdapter) -> MockPay:
    if not isinstance(payments, MockPay):
        raise HTTPException(404, detail="mock payments disabled")
    return payments


@router.get("/mockpay/{session_id}", response_class=HTMLResponse)
async def mockpay_screen(
    request: Request, session_id: str,
    payments: PaymentAdapter = Depends(get_payments),
):
    s = _mockpay(payments).get_session(session_id)
    if not s:
        raise HTTPException(404, "payment session not found")
    return templates.TemplateResponse(request, "mockpay.html", {
        "session_id": session_id,
        "name": s["name"],
        "amount": f"{int(s['amount_total']) / 100:.2f}",
        "currency": s["currency"].upper(),
        "expires_at": to_iso(s["expires_at"]),
    })


@router.post("/mockpay/{session_id}/emit")
async def mockpay_emit(
    session_id: str, request: Request,
    payments: PaymentAdapter = Depends(get_payments),
    settings: Settings = Depends(get_settings),
):
    mock = _mockpay(payments)
    form = await request.form()
    kind = form.get("t")  # succeeded|canceled
    if kind not in {"succeeded", "canceled"}:
        raise HTTPException(400, detail="invalid kind")
    s = mock.get_session(session_id)
    if not s:
        raise HTTPException(404, "payment session not found")

    payload = mock.build_event(session_id, kind)
    client_http: httpx.AsyncClient = request.app.state.http
    try:
        await client_http.post(
            settings.webhook_url,
            content=payload,
            headers={
                mock.signature_header: mock.sign(payload),
                "content-type": "application/json",
            },
        )
    except httpx.HTTPError as e:
        # the buyer can press the button again
        logger.warning("mock webhook delivery failed: %s", e)

    url = s["success_url"] if kind == "succeeded" else s["cancel_url"]
    return RedirectResponse(url=url, status_code=HTTP_303_SEE_OTHER)


# ----------------------------
# App factory
# ----------------------------
async def _sweep_offers(app: FastAPI, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            expired = await app.state.store.expire_offers(now_ts())
        except Exception:
            logger.exception("offer sweep failed")
            continue
        if expired:
            logger.info("offer sweep expired %d offers", expired)


def create_app(
    settings: Optional[Settings] = None,
    payments: Optional[PaymentAdapter] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(
        title="queuetix",
        default_response_class=ORJSONResponse,
    )
    app.add_middleware(SessionMiddleware, secret_key=settings.session_secret)
    app.state.settings = settings
    app.state.payments = payments or new_adapter(settings)
    app.include_router(router)

    @app.exception_handler(DomainError)
    async def _domain_error(request: Request, exc: DomainError):
        body = {"code": exc.code.value, "detail": exc.message}
        if isinstance(exc, PartialRefundError):
            body["failures"] = [
                {"ticketId": tid, "error": err} for tid, err in exc.failures
            ]
            body["refunded"] = exc.refunded
        return ORJSONResponse(body, status_code=http_status(exc))

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _say_hello():
        S = 'Redis' if settings.store_backend == 'redis' else 'SQL'
        logger.info(
            "queuetix starting: store=%s payments=%s offer_ttl=%ss",
            S, settings.payments_backend, settings.offer_ttl_seconds,
        )

    @app.on_event("startup")
    async def _store_start():
        if settings.store_backend == "redis":
            app.state.redis = redis.from_url(
                settings.redis_url,
                decode_responses=True,
                max_connections=settings.redis_max_conn,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )
            app.state.store = new_store(
                "redis", r=app.state.redis,
                ttl_seconds=settings.offer_ttl_seconds,
            )
            return

        engine, SessionAsync, gated = make_async_engine(
            settings.database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            gate_limit=settings.db_gate_limit,
        )
        async with engine.begin() as conn:
            await create_schema(conn)
        app.state.engine = engine
        app.state.store = new_store(
            "pg", sessions=SessionAsync, gated=gated,
            ttl_seconds=settings.offer_ttl_seconds,
        )

    @app.on_event("startup")
    async def _http_client_start():
        app.state.http = httpx.AsyncClient(
            timeout=5.0,
            limits=httpx.Limits(
                max_connections=64, max_keepalive_connections=64
            ),
        )

    @app.on_event("startup")
    async def _sweeper_start():
        app.state.sweeper = None
        if settings.offer_sweep_interval > 0:
            app.state.sweeper = asyncio.create_task(
                _sweep_offers(app, settings.offer_sweep_interval)
            )

    @app.on_event("shutdown")
    async def _sweeper_stop():
        task = getattr(app.state, "sweeper", None)
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            app.state.sweeper = None

    @app.on_event("shutdown")
    async def _http_client_stop():
        http = getattr(app.state, "http", None)
        if http is not None:
            await http.aclose()
            app.state.http = None

    @app.on_event("shutdown")
    async def _store_stop():
        r = getattr(app.state, "redis", None)
        if r is not None:
            await r.aclose()
            app.state.redis = None
        engine = getattr(app.state, "engine", None)
        if engine is not None:
            await engine.dispose()
            app.state.engine = None

    return app
