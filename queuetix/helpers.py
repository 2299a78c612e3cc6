from __future__ import annotations
import time
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
import hmac
from typing import Optional


# processor limits for checkout session expiry
CHECKOUT_MIN_EXPIRY_SECONDS = 30 * 60
CHECKOUT_MAX_EXPIRY_SECONDS = 24 * 60 * 60

APPLICATION_FEE_RATE = Decimal("0.01")


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def to_minor_units(price: float | Decimal | str) -> int:
    # str() first so 0.1-style floats don't drag binary noise into rounding
    return _round_half_up(Decimal(str(price)) * 100)


def application_fee(amount_minor: int) -> int:
    return _round_half_up(Decimal(amount_minor) * APPLICATION_FEE_RATE)


def checkout_expires_at(
    now: float, offer_expires_at: float, offer_ttl_seconds: int
) -> int:
    """
    Checkout sessions live as long as the offer backing them, but the
    processor refuses windows shorter than 30 minutes or longer than 24h.
    """
    remaining = min(offer_expires_at - now, offer_ttl_seconds)
    window = max(CHECKOUT_MIN_EXPIRY_SECONDS, remaining)
    window = min(window, CHECKOUT_MAX_EXPIRY_SECONDS)
    return int(now + window)
