from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, TypedDict

from ..model.domain import CheckoutMetadata


CHECKOUT_COMPLETED = "checkout.session.completed"


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CheckoutSession(TypedDict):
    session_id: str
    url: str


@dataclass(frozen=True)
class CheckoutRequest:
    account_id: str            # connect account the charge lands on
    name: str
    description: str
    currency: str
    unit_amount: int           # minor units
    application_fee_amount: int
    expires_at: int            # epoch seconds
    success_url: str
    cancel_url: str
    metadata: CheckoutMetadata


@dataclass(frozen=True)
class AccountStatus:
    is_active: bool
    requires_information: bool
    charges_enabled: bool
    payouts_enabled: bool
    requirements: Dict[str, List[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isActive": self.is_active,
            "requiresInformation": self.requires_information,
            "requirements": self.requirements,
            "chargesEnabled": self.charges_enabled,
            "payoutsEnabled": self.payouts_enabled,
        }


@dataclass(frozen=True)
class WebhookEvent:
    id: str
    type: str
    data: Mapping[str, Any]    # event.data.object


class PaymentAdapter(ABC):
    # header carrying the webhook signature
    signature_header: str = ""

    @abstractmethod
    async def create_connect_account(self) -> str: ...

    @abstractmethod
    async def create_login_link(self, account_id: str) -> str: ...

    @abstractmethod
    async def retrieve_account(self, account_id: str) -> AccountStatus: ...

    @abstractmethod
    async def create_account_link(
        self, account_id: str, refresh_url: str, return_url: str
    ) -> str: ...

    @abstractmethod
    async def create_checkout_session(
        self, req: CheckoutRequest
    ) -> CheckoutSession: ...

    # payment intent of a completed session, None while unpaid
    @abstractmethod
    async def get_session_payment_intent(
        self, session_id: str
    ) -> Optional[str]: ...

    # raises WebhookSignatureError / WebhookPayloadError
    @abstractmethod
    def verify_webhook(
        self, payload: bytes, signature: str | None
    ) -> WebhookEvent: ...

    # returns the processor's refund id; a repeated idempotency_key
    # returns the first refund instead of issuing another
    @abstractmethod
    async def create_refund(
        self, account_id: str, payment_intent_id: str, *,
        idempotency_key: Optional[str] = None,
    ) -> str: ...
