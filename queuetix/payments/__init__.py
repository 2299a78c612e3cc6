# payments/__init__.py
from ..config import Settings
from .base import (
    CHECKOUT_COMPLETED, AccountStatus, CheckoutRequest, CheckoutSession,
    PaymentAdapter, WebhookEvent,
)
from ._mock import MockPay
from ._stripe import StripePay


def new_adapter(settings: Settings) -> PaymentAdapter:
    if settings.payments_backend == "mock":
        return MockPay(
            secret=settings.mock_secret,
            public_base_url=settings.public_base_url,
        )
    return StripePay(
        secret_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
    )


__all__ = [
    "PaymentAdapter", "MockPay", "StripePay", "new_adapter",
    "CheckoutRequest", "CheckoutSession", "AccountStatus", "WebhookEvent",
    "CHECKOUT_COMPLETED",
]
