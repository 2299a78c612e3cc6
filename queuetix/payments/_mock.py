from __future__ import annotations
import base64
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Dict, List, Optional, Tuple

from ..errors import (
    PaymentProcessorError, WebhookPayloadError, WebhookSignatureError,
)
from .base import (
    CHECKOUT_COMPLETED, AccountStatus, CheckoutRequest, CheckoutSession,
    PaymentAdapter, WebhookEvent,
)

CHECKOUT_EXPIRED = "checkout.session.expired"


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    """
    Local stand-in for the processor: sessions live in this process, the
    payment screen is served by /mockpay/{session_id}, and completions are
    posted back to our own webhook signed with HMAC-SHA256 over the body.
    """

    signature_header = "x-mockpay-signature"

    def __init__(self, *, secret: str, public_base_url: str) -> None:
        self.secret = secret
        self.base_url = public_base_url.rstrip("/")
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.refunds: List[Tuple[str, str]] = []  # (account, payment intent)
        self.refund_keys: Dict[str, str] = {}  # idempotency key -> refund id

    # ---- connect
    async def create_connect_account(self) -> str:
        return f"acct_mock_{uuid.uuid4().hex[:16]}"

    async def create_login_link(self, account_id: str) -> str:
        return f"{self.base_url}/mockpay/connect/{account_id}"

    async def retrieve_account(self, account_id: str) -> AccountStatus:
        return AccountStatus(
            is_active=True,
            requires_information=False,
            charges_enabled=True,
            payouts_enabled=True,
            requirements={
                "currently_due": [], "eventually_due": [], "past_due": [],
            },
        )

    async def create_account_link(
        self, account_id: str, refresh_url: str, return_url: str
    ) -> str:
        return return_url

    # ---- checkout
    async def create_checkout_session(
        self, req: CheckoutRequest
    ) -> CheckoutSession:
        sid = f"cs_mock_{uuid.uuid4().hex}"
        self.sessions[sid] = {
            "id": sid,
            "account_id": req.account_id,
            "name": req.name,
            "currency": req.currency,
            "amount_total": req.unit_amount,
            "application_fee_amount": req.application_fee_amount,
            "expires_at": req.expires_at,
            "success_url": req.success_url.replace(
                "{CHECKOUT_SESSION_ID}", sid
            ),
            "cancel_url": req.cancel_url,
            "metadata": dict(req.metadata),
            "payment_intent": f"pi_mock_{uuid.uuid4().hex}",
        }
        return {"session_id": sid, "url": f"{self.base_url}/mockpay/{sid}"}

    def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        return self.sessions.get(session_id)

    async def get_session_payment_intent(
        self, session_id: str
    ) -> Optional[str]:
        s = self.sessions.get(session_id)
        if s is None or not s.get("paid"):
            return None
        return s["payment_intent"]

    # ---- webhooks
    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def build_event(self, session_id: str, kind: str) -> bytes:
        """Serialized webhook body for 'succeeded' or 'canceled'."""
        s = self.sessions[session_id]
        if kind == "succeeded":
            # the mock settles the payment as it emits the completion
            s["paid"] = True
        event_type = CHECKOUT_COMPLETED if kind == "succeeded" \
            else CHECKOUT_EXPIRED
        event = {
            "id": f"evt_{uuid.uuid4().hex}",
            "type": event_type,
            "created": int(time.time()),
            "data": {"object": {
                "id": s["id"],
                "object": "checkout.session",
                "payment_intent": s["payment_intent"],
                "amount_total": s["amount_total"],
                "currency": s["currency"],
                "metadata": s["metadata"],
            }},
        }
        return json.dumps(event).encode()

    def verify_webhook(
        self, payload: bytes, signature: str | None
    ) -> WebhookEvent:
        expected = self.sign(payload)
        if not signature or not hmac.compare_digest(expected, signature):
            raise WebhookSignatureError("Invalid signature")
        try:
            event = json.loads(payload.decode())
            return WebhookEvent(
                id=event["id"],
                type=event["type"],
                data=event["data"]["object"],
            )
        except (ValueError, KeyError, TypeError) as e:
            raise WebhookPayloadError("Invalid JSON") from e

    # ---- refunds
    async def create_refund(
        self, account_id: str, payment_intent_id: str, *,
        idempotency_key: Optional[str] = None,
    ) -> str:
        if idempotency_key in self.refund_keys:
            return self.refund_keys[idempotency_key]
        if not payment_intent_id.startswith("pi_"):
            raise PaymentProcessorError(
                f"Failed to refund payment {payment_intent_id}",
                "No such payment_intent",
            )
        self.refunds.append((account_id, payment_intent_id))
        refund_id = f"re_mock_{uuid.uuid4().hex[:16]}"
        if idempotency_key:
            self.refund_keys[idempotency_key] = refund_id
        return refund_id
