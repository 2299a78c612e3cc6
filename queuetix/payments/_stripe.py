from __future__ import annotations
import functools
import json
import logging
from typing import Any, Callable, Optional

import anyio
import stripe

from ..errors import (
    PaymentProcessorError, WebhookPayloadError, WebhookSignatureError,
)
from .base import (
    AccountStatus, CheckoutRequest, CheckoutSession, PaymentAdapter,
    WebhookEvent,
)

logger = logging.getLogger(__name__)


def _detail(err: stripe.StripeError) -> str:
    return getattr(err, "user_message", None) or str(err)


class StripePay(PaymentAdapter):
    """
    Stripe Connect. Charges are direct charges on the event owner's
    connected account; the platform keeps ``application_fee_amount``.

    The SDK is synchronous, so calls run on a worker thread. The key is
    passed per request instead of through ``stripe.api_key``.
    """

    signature_header = "stripe-signature"

    def __init__(
        self, *, secret_key: str, webhook_secret: str,
        stripe_sdk: Optional[Any] = None,
    ) -> None:
        self.stripe = stripe_sdk or stripe
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    async def _call(
        self, context: str, fn: Callable[..., Any], /, *args, **kwargs
    ) -> Any:
        call = functools.partial(fn, *args, api_key=self.secret_key, **kwargs)
        try:
            return await anyio.to_thread.run_sync(call)
        except stripe.StripeError as e:
            logger.error("%s: %s", context, e)
            raise PaymentProcessorError(context, _detail(e)) from e

    async def create_connect_account(self) -> str:
        account = await self._call(
            "Failed to create Stripe Connect account",
            self.stripe.Account.create,
            type="express",
            capabilities={
                "card_payments": {"requested": True},
                "transfers": {"requested": True},
            },
        )
        return account.id

    async def create_login_link(self, account_id: str) -> str:
        link = await self._call(
            "Failed to create Stripe Connect login link",
            self.stripe.Account.create_login_link,
            account_id,
        )
        return link.url

    async def retrieve_account(self, account_id: str) -> AccountStatus:
        account = await self._call(
            "Failed to fetch Stripe Connect account status",
            self.stripe.Account.retrieve,
            account_id,
        )
        req = account.get("requirements") or {}
        requirements = {
            "currently_due": list(req.get("currently_due") or []),
            "eventually_due": list(req.get("eventually_due") or []),
            "past_due": list(req.get("past_due") or []),
        }
        return AccountStatus(
            is_active=bool(
                account.get("details_submitted")
                and not requirements["currently_due"]
            ),
            requires_information=any(requirements.values()),
            charges_enabled=bool(account.get("charges_enabled")),
            payouts_enabled=bool(account.get("payouts_enabled")),
            requirements=requirements,
        )

    async def create_account_link(
        self, account_id: str, refresh_url: str, return_url: str
    ) -> str:
        link = await self._call(
            "Failed to create Stripe account link",
            self.stripe.AccountLink.create,
            account=account_id,
            refresh_url=refresh_url,
            return_url=return_url,
            type="account_onboarding",
        )
        return link.url

    async def create_checkout_session(
        self, req: CheckoutRequest
    ) -> CheckoutSession:
        session = await self._call(
            "Failed to create checkout session",
            self.stripe.checkout.Session.create,
            payment_method_types=["card"],
            line_items=[{
                "price_data": {
                    "currency": req.currency,
                    "product_data": {
                        "name": req.name,
                        "description": req.description,
                    },
                    "unit_amount": req.unit_amount,
                },
                "quantity": 1,
            }],
            payment_intent_data={
                "application_fee_amount": req.application_fee_amount,
            },
            expires_at=req.expires_at,
            mode="payment",
            success_url=req.success_url,
            cancel_url=req.cancel_url,
            metadata=dict(req.metadata),
            stripe_account=req.account_id,
        )
        return {"session_id": session.id, "url": session.url}

    async def get_session_payment_intent(
        self, session_id: str
    ) -> Optional[str]:
        session = await self._call(
            "Failed to retrieve checkout session",
            self.stripe.checkout.Session.retrieve,
            session_id,
        )
        if session.get("payment_status") != "paid":
            return None
        pi = session.get("payment_intent")
        if pi is not None and not isinstance(pi, str):
            pi = pi["id"]
        return pi

    def verify_webhook(
        self, payload: bytes, signature: str | None
    ) -> WebhookEvent:
        if not signature:
            raise WebhookSignatureError("Missing Stripe signature header")
        try:
            self.stripe.Webhook.construct_event(
                payload, signature, self.webhook_secret
            )
            # same verified body, as plain dicts rather than StripeObjects
            event = json.loads(payload)
            return WebhookEvent(
                id=event["id"],
                type=event["type"],
                data=event["data"]["object"],
            )
        except stripe.SignatureVerificationError as e:
            # never log payload or signature
            raise WebhookSignatureError(str(e) or "Invalid signature") from e
        except (ValueError, KeyError, TypeError) as e:
            raise WebhookPayloadError("Invalid payload") from e

    async def create_refund(
        self, account_id: str, payment_intent_id: str, *,
        idempotency_key: Optional[str] = None,
    ) -> str:
        extra = {}
        if idempotency_key:
            extra["idempotency_key"] = idempotency_key
        refund = await self._call(
            f"Failed to refund payment {payment_intent_id}",
            self.stripe.Refund.create,
            payment_intent=payment_intent_id,
            stripe_account=account_id,
            **extra,
        )
        return refund.id
