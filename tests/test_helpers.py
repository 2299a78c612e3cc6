from decimal import Decimal

from queuetix.helpers import (
    CHECKOUT_MAX_EXPIRY_SECONDS, application_fee, checkout_expires_at,
    ct_equal, to_iso, to_minor_units,
)


def test_minor_units_round_half_up():
    assert to_minor_units(500.0) == 50000
    assert to_minor_units(0.1) == 10
    assert to_minor_units(19.995) == 2000
    assert to_minor_units("12.344") == 1234
    assert to_minor_units(Decimal("0.005")) == 1


def test_application_fee_is_one_percent():
    assert application_fee(50000) == 500
    assert application_fee(1050) == 11
    assert application_fee(49) == 0
    assert application_fee(0) == 0


def test_expiry_clamped_to_processor_minimum():
    now = 1000.0
    # 40 minutes left on the offer, 30 minute offer ttl
    assert checkout_expires_at(now, now + 2400, 1800) == int(now + 1800)
    # 10 minutes left still gets the 30 minute minimum
    assert checkout_expires_at(now, now + 600, 1800) == int(now + 1800)


def test_expiry_follows_remaining_offer_time_above_minimum():
    now = 1000.0
    assert checkout_expires_at(now, now + 5400, 7200) == int(now + 5400)


def test_expiry_capped_at_processor_maximum():
    now = 1000.0
    got = checkout_expires_at(now, now + 200_000, 200_000)
    assert got == int(now + CHECKOUT_MAX_EXPIRY_SECONDS)


def test_ct_equal():
    assert ct_equal("admin", "admin")
    assert not ct_equal("admin", "admin ")


def test_to_iso():
    assert to_iso(None) is None
    assert to_iso(0) == "1970-01-01T00:00:00+00:00"
