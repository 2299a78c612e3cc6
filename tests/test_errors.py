from queuetix.errors import (
    ConnectAccountMissingError, ErrorCode, EventNotFoundError,
    NoActiveOfferError, NotAuthenticatedError, PartialRefundError,
    PaymentProcessorError, WebhookSignatureError, http_status,
)


def test_http_status_mapping():
    assert http_status(NotAuthenticatedError()) == 401
    assert http_status(EventNotFoundError("e1")) == 404
    assert http_status(NoActiveOfferError()) == 409
    assert http_status(ConnectAccountMissingError("o1")) == 409
    assert http_status(PaymentProcessorError("boom")) == 502
    assert http_status(WebhookSignatureError("bad")) == 400


def test_processor_error_keeps_context_and_detail():
    err = PaymentProcessorError(
        "Failed to create checkout session", "Invalid currency"
    )
    assert str(err) == "Failed to create checkout session: Invalid currency"
    assert err.code is ErrorCode.PAYMENT_PROCESSOR


def test_partial_refund_names_failed_tickets():
    err = PartialRefundError.from_outcomes(
        [("t2", "card declined")], ["t1", "t3"]
    )
    assert str(err) == "Failed to refund 1 of 3 tickets: t2"
    assert err.failures == [("t2", "card declined")]
    assert err.refunded == ["t1", "t3"]
    assert http_status(err) == 502
