"""
Tests for region routing and the reason-code table.
"""

import pytest

from payments.adapters.regions import (
    currency_for_region,
    processor_for_region,
    resolve_region,
)
from payments.reason_codes import (
    DEFAULT_CUSTOMER_MESSAGE,
    ReasonCode,
    customer_message,
    http_status_for,
)
from payments.state_machines import Processor


class TestResolveRegion:
    @pytest.mark.parametrize(
        "code,expected_region,currency,processor",
        [
            ("NA", "NA", "USD", Processor.STRIPE),
            ("EU", "EU", "EUR", Processor.STRIPE),
            ("GH", "GH", "GHS", Processor.PAYSTACK),
            ("NG", "NG", "NGN", Processor.PAYSTACK),
            ("US", "NA", "USD", Processor.STRIPE),
            ("ca", "NA", "USD", Processor.STRIPE),
            ("KE", "GH", "GHS", Processor.PAYSTACK),
            ("ZA", "GH", "GHS", Processor.PAYSTACK),
            ("EG", "GH", "GHS", Processor.PAYSTACK),
            ("DE", "EU", "EUR", Processor.STRIPE),
            ("JP", "EU", "EUR", Processor.STRIPE),
        ],
    )
    def test_routing(self, code, expected_region, currency, processor):
        region = resolve_region(code)

        assert region.code == expected_region
        assert region.currency == currency
        assert region.processor == processor

    def test_blank_code_falls_back_to_eu(self):
        assert resolve_region("").code == "EU"
        assert resolve_region(None).code == "EU"

    def test_shortcuts(self):
        assert processor_for_region("NG") == Processor.PAYSTACK
        assert currency_for_region("US") == "USD"


class TestReasonCodes:
    @pytest.mark.parametrize(
        "code,status",
        [
            (ReasonCode.PROCESSOR_UNAVAILABLE, 503),
            (ReasonCode.PROCESSOR_TIMEOUT, 503),
            (ReasonCode.PAYMENT_DECLINED, 402),
            (ReasonCode.INSUFFICIENT_FUNDS, 402),
            (ReasonCode.AMOUNT_MISMATCH, 422),
            (ReasonCode.INVALID_STATE, 409),
            (ReasonCode.NO_CAPTURED_PAYMENT, 409),
            (ReasonCode.NOT_FOUND, 404),
            (ReasonCode.PAYMENT_METHOD_REQUIRED, 400),
            (ReasonCode.PAYMENT_METHOD_UNVERIFIED, 402),
        ],
    )
    def test_http_status(self, code, status):
        assert http_status_for(code) == status

    def test_unknown_codes_are_bad_requests(self):
        assert http_status_for(None) == 400
        assert http_status_for("SOMETHING_ELSE") == 400

    def test_every_code_has_a_customer_message(self):
        for code in ReasonCode:
            assert customer_message(code)

    def test_unknown_code_gets_default_message(self):
        assert customer_message("SOMETHING_ELSE") == DEFAULT_CUSTOMER_MESSAGE
