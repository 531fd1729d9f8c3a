"""
Tests for safe cancel: disguised successes, id variant fallback and
payload-reported failures.
"""

from unittest.mock import Mock

import pytest

from core.exceptions import ExchangeAPIError
from core.safe_cancel import classify_cancel_error, is_disguised_success, safe_cancel


def api_error(text):
    return ExchangeAPIError("TEST", f"HTTP 400: {text}", status_code=400, body=text)


class TestClassification:

    @pytest.mark.parametrize("message", [
        "Order cancelled",
        "order has already been CANCELED",
        "EOrder: order already closed",
        "Order does not exist.",
        "order not found",
        "Unknown order sent.",
    ])
    def test_disguised_success(self, message):
        assert is_disguised_success(message)

    @pytest.mark.parametrize("message", [
        "insufficient permissions",
        "rate limit exceeded",
        "success",
        "",
    ])
    def test_real_failures(self, message):
        assert not is_disguised_success(message)

    def test_outcome_text(self):
        assert classify_cancel_error("Unknown order sent.") == (True, "already filled or cancelled")


class TestSafeCancel:

    def test_plain_success(self):
        client = Mock()
        client.cancel_order.return_value = {"status": "CANCELED"}
        outcome = safe_cancel(client, "123", "BINANCE")
        assert outcome.success
        assert outcome.order_id_used == "123"
        client.cancel_order.assert_called_once_with("123")

    def test_already_filled_counts_as_success(self):
        client = Mock()
        client.cancel_order.side_effect = api_error('{"code":-2011,"msg":"Unknown order sent."}')
        outcome = safe_cancel(client, "123", "BINANCE")
        assert outcome.success
        assert outcome.reason == "already filled or cancelled"

    def test_real_failure_reported(self):
        client = Mock()
        client.cancel_order.side_effect = api_error("insufficient permissions")
        outcome = safe_cancel(client, "123", "BINANCE")
        assert not outcome.success
        assert "insufficient permissions" in outcome.error
        assert outcome.attempts == ["123"]

    def test_mexc_variants_tried_until_one_works(self):
        client = Mock()
        client.cancel_order.side_effect = [
            api_error("invalid parameter"),
            {"orderId": "987"},
        ]
        outcome = safe_cancel(client, "C02__987", "MEXC")
        assert outcome.success
        assert outcome.order_id_used == "987"
        assert outcome.attempts == ["C02__987", "987"]

    def test_mexc_all_variants_fail(self):
        client = Mock()
        client.cancel_order.side_effect = api_error("invalid parameter")
        outcome = safe_cancel(client, "C02__98x7", "MEXC")
        assert not outcome.success
        assert outcome.attempts == ["C02__98x7", "98x7", "987"]

    def test_failure_reported_in_payload(self):
        client = Mock()
        client.cancel_order.return_value = {"success": False, "error": "busy"}
        outcome = safe_cancel(client, "55", "KUCOIN")
        assert not outcome.success
        assert outcome.error == "busy"

    def test_payload_failure_with_disguised_text(self):
        client = Mock()
        client.cancel_order.return_value = {"success": False, "error": "order not found"}
        assert safe_cancel(client, "55", "KUCOIN").success

    def test_empty_id(self):
        client = Mock()
        outcome = safe_cancel(client, "", "BINANCE")
        assert not outcome.success
        client.cancel_order.assert_not_called()
