"""Error taxonomy shared by the checkout, webhook and refund flows."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Tuple


class ErrorCode(Enum):
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
    NOT_EVENT_OWNER = "NOT_EVENT_OWNER"
    EVENT_NOT_FOUND = "EVENT_NOT_FOUND"
    EVENT_CANCELLED = "EVENT_CANCELLED"
    NO_ACTIVE_OFFER = "NO_ACTIVE_OFFER"
    OFFER_WITHOUT_EXPIRY = "OFFER_WITHOUT_EXPIRY"
    OFFER_EXPIRED = "OFFER_EXPIRED"
    OFFER_NOT_ACTIVE = "OFFER_NOT_ACTIVE"
    ALREADY_QUEUED = "ALREADY_QUEUED"
    DUPLICATE_PAYMENT = "DUPLICATE_PAYMENT"
    CONNECT_ACCOUNT_MISSING = "CONNECT_ACCOUNT_MISSING"
    PAYMENT_PROCESSOR = "PAYMENT_PROCESSOR"
    WEBHOOK_SIGNATURE = "WEBHOOK_SIGNATURE"
    WEBHOOK_PAYLOAD = "WEBHOOK_PAYLOAD"
    PARTIAL_REFUND = "PARTIAL_REFUND"
    CANCELLATION_CONFLICT = "CANCELLATION_CONFLICT"


@dataclass(eq=False)
class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    code: ErrorCode
    message: str

    def __str__(self) -> str:
        return self.message


class ConfigError(RuntimeError):
    pass


# ---- authentication
class NotAuthenticatedError(DomainError):
    def __init__(self) -> None:
        super().__init__(ErrorCode.NOT_AUTHENTICATED, "Not authenticated")


class NotEventOwnerError(DomainError):
    def __init__(self, event_id: str) -> None:
        super().__init__(
            ErrorCode.NOT_EVENT_OWNER,
            "Only the event owner or an admin can do this",
        )
        self.event_id = event_id


# ---- preconditions / state
class EventNotFoundError(DomainError):
    def __init__(self, event_id: str) -> None:
        super().__init__(ErrorCode.EVENT_NOT_FOUND, "Event not found")
        self.event_id = event_id


class EventCancelledError(DomainError):
    def __init__(self, event_id: str) -> None:
        super().__init__(ErrorCode.EVENT_CANCELLED, "Event is cancelled")
        self.event_id = event_id


class NoActiveOfferError(DomainError):
    def __init__(self) -> None:
        super().__init__(
            ErrorCode.NO_ACTIVE_OFFER, "No valid ticket offer found"
        )


class OfferWithoutExpiryError(DomainError):
    def __init__(self) -> None:
        super().__init__(
            ErrorCode.OFFER_WITHOUT_EXPIRY,
            "Ticket offer has no expiration date",
        )


class OfferExpiredError(DomainError):
    def __init__(self) -> None:
        super().__init__(ErrorCode.OFFER_EXPIRED, "Ticket offer has expired")


class OfferNotActiveError(DomainError):
    def __init__(self, waiting_list_id: str, status: str | None) -> None:
        super().__init__(
            ErrorCode.OFFER_NOT_ACTIVE,
            f"Waiting list entry {waiting_list_id} is not offered "
            f"(status: {status or 'missing'})",
        )
        self.waiting_list_id = waiting_list_id
        self.status = status


class DuplicatePaymentError(DomainError):
    def __init__(self, waiting_list_id: str) -> None:
        super().__init__(
            ErrorCode.DUPLICATE_PAYMENT,
            f"Waiting list entry {waiting_list_id} was already purchased "
            "with a different payment",
        )
        self.waiting_list_id = waiting_list_id


class AlreadyQueuedError(DomainError):
    def __init__(self, event_id: str) -> None:
        super().__init__(
            ErrorCode.ALREADY_QUEUED,
            "Already in waiting list for this event",
        )
        self.event_id = event_id


class ConnectAccountMissingError(DomainError):
    def __init__(self, owner_id: str) -> None:
        super().__init__(
            ErrorCode.CONNECT_ACCOUNT_MISSING,
            "Stripe Connect ID not found for owner of the event!",
        )
        self.owner_id = owner_id


# ---- upstream
class PaymentProcessorError(DomainError):
    def __init__(self, context: str, detail: str | None = None) -> None:
        msg = context if not detail else f"{context}: {detail}"
        super().__init__(ErrorCode.PAYMENT_PROCESSOR, msg)


# ---- webhook ingress
class WebhookSignatureError(DomainError):
    def __init__(self, reason: str) -> None:
        super().__init__(ErrorCode.WEBHOOK_SIGNATURE, reason)


class WebhookPayloadError(DomainError):
    def __init__(self, reason: str) -> None:
        super().__init__(ErrorCode.WEBHOOK_PAYLOAD, reason)


# ---- refunds
@dataclass(eq=False)
class PartialRefundError(DomainError):
    failures: List[Tuple[str, str]] = field(default_factory=list)
    refunded: List[str] = field(default_factory=list)

    @classmethod
    def from_outcomes(
        cls, failures: List[Tuple[str, str]], refunded: List[str]
    ) -> "PartialRefundError":
        failed_ids = ", ".join(tid for tid, _ in failures)
        return cls(
            code=ErrorCode.PARTIAL_REFUND,
            message=(
                f"Failed to refund {len(failures)} of "
                f"{len(failures) + len(refunded)} tickets: {failed_ids}"
            ),
            failures=list(failures),
            refunded=list(refunded),
        )


class CancellationConflictError(DomainError):
    def __init__(self, event_id: str) -> None:
        super().__init__(
            ErrorCode.CANCELLATION_CONFLICT,
            "Tickets kept selling while the event was being cancelled; "
            "try again",
        )
        self.event_id = event_id


HTTP_STATUS = {
    ErrorCode.NOT_AUTHENTICATED: 401,
    ErrorCode.NOT_EVENT_OWNER: 403,
    ErrorCode.EVENT_NOT_FOUND: 404,
    ErrorCode.EVENT_CANCELLED: 409,
    ErrorCode.NO_ACTIVE_OFFER: 409,
    ErrorCode.OFFER_WITHOUT_EXPIRY: 409,
    ErrorCode.OFFER_EXPIRED: 409,
    ErrorCode.OFFER_NOT_ACTIVE: 409,
    ErrorCode.ALREADY_QUEUED: 409,
    ErrorCode.DUPLICATE_PAYMENT: 409,
    ErrorCode.CONNECT_ACCOUNT_MISSING: 409,
    ErrorCode.PAYMENT_PROCESSOR: 502,
    ErrorCode.WEBHOOK_SIGNATURE: 400,
    ErrorCode.WEBHOOK_PAYLOAD: 400,
    ErrorCode.PARTIAL_REFUND: 502,
    ErrorCode.CANCELLATION_CONFLICT: 409,
}


def http_status(err: DomainError) -> int:
    return HTTP_STATUS.get(err.code, 400)
