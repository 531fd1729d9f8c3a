"""
Tests for the Kraken connector: request signing, locked-funds accounting,
balance clamping on order placement and QueryOrders parsing.
"""

import base64
import hashlib
import hmac
from datetime import datetime, timezone
from unittest.mock import patch
from urllib.parse import parse_qs

import pytest

from core.exceptions import ExchangeAPIError, InsufficientBalance, OrderNotFound
from core.exchange_base import BTC, USDC
from core.exchange_kraken import KrakenClient
from tests.helpers.http import Router, response

SECRET = base64.b64encode(b"kraken-secret").decode()
TXID = "OABC12-DEF34-GHI567"


def ok(result):
    return response({"error": [], "result": result})


def failed(*errors):
    return response({"error": list(errors)})


def form(call):
    return parse_qs(call[2]["data"])


@pytest.fixture
def client():
    return KrakenClient(api_key="key", secret_key=SECRET, min_interval=0)


def patched(router):
    return patch("core.exchange_base.requests.request", side_effect=router)


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("core.exchange_base.time.sleep"):
        yield


def balances_routes(btc="0.5", usdc="1000.0", open_orders=None):
    return {
        ("POST", "/0/private/Balance"): ok({"XXBT": btc, "USDC": usdc, "ZEUR": "5"}),
        ("POST", "/0/private/OpenOrders"): ok({"open": open_orders or {}}),
    }


class TestSigning:

    def test_signature_matches_reference(self, client):
        path, nonce, postdata = "/0/private/Balance", "1616492376594", "nonce=1616492376594"
        message = path.encode() + hashlib.sha256((nonce + postdata).encode()).digest()
        expected = base64.b64encode(hmac.new(b"kraken-secret", message, hashlib.sha512).digest()).decode()
        assert client.sign(path, nonce, postdata) == expected

    def test_private_call_is_signed_form_post(self, client):
        router = Router(balances_routes())
        with patched(router):
            client.get_detailed_balances()
        method, _, kwargs = router.calls[0]
        assert method == "POST"
        assert kwargs["headers"]["API-Key"] == "key"
        assert "nonce" in form(router.calls[0])

    def test_private_calls_are_not_retried(self, client):
        router = Router({("POST", "/0/private/Balance"): response(status=502, text="bad gateway")})
        with patched(router), pytest.raises(ExchangeAPIError):
            client.get_detailed_balances()
        assert len(router.calls) == 1

    def test_error_envelope_raises(self, client):
        router = Router({("GET", "/0/public/Ticker"): failed("EQuery:Unknown asset pair")})
        with patched(router), pytest.raises(ExchangeAPIError, match="Unknown asset pair"):
            client.get_last_price_btc()


class TestMarketAndAccount:

    def test_last_price_from_ticker(self, client):
        router = Router({("GET", "/0/public/Ticker"): ok({"XBTUSDC": {"c": ["60123.4", "0.01"]}})})
        with patched(router):
            assert client.get_last_price_btc() == pytest.approx(60123.4)
        assert "pair=XBTUSDC" in router.calls[0][1]

    def test_open_orders_reduce_free_balance(self, client):
        open_orders = {
            "O1": {"status": "open", "vol": "0.1", "vol_exec": "0.0",
                   "descr": {"pair": "XBTUSDC", "type": "sell", "price": "70000"}},
            "O2": {"status": "open", "vol": "0.01", "vol_exec": "0.005",
                   "descr": {"pair": "XBTUSDC", "type": "buy", "price": "50000"}},
            "O3": {"status": "open", "vol": "1", "vol_exec": "0",
                   "descr": {"pair": "ETHUSDC", "type": "sell", "price": "3000"}},
        }
        router = Router(balances_routes(open_orders=open_orders))
        with patched(router):
            balances = client.get_detailed_balances()

        assert balances[BTC].total == pytest.approx(0.5)
        assert balances[BTC].locked == pytest.approx(0.1)
        assert balances[BTC].free == pytest.approx(0.4)
        assert balances[USDC].locked == pytest.approx(250.0)
        assert balances[USDC].free == pytest.approx(750.0)


class TestCreateOrder:

    def test_limit_post_only_order(self, client):
        routes = balances_routes()
        routes[("POST", "/0/private/AddOrder")] = ok({"txid": [TXID]})
        router = Router(routes)
        with patched(router):
            result = client.create_order("SELL", "60500.129", "0.01000000")

        assert result == {"orderId": TXID, "status": "created"}
        params = form(router.calls[-1])
        assert params["type"] == ["sell"]
        assert params["ordertype"] == ["limit"]
        assert params["oflags"] == ["post"]
        assert params["price"] == ["60500.12"]
        assert params["volume"] == ["0.01000000"]

    def test_sell_clamped_to_free_btc(self, client):
        routes = balances_routes(btc="0.005")
        routes[("POST", "/0/private/AddOrder")] = ok({"txid": [TXID]})
        router = Router(routes)
        with patched(router):
            client.create_order("SELL", "60500", "0.01")
        assert form(router.calls[-1])["volume"] == ["0.00495000"]

    def test_buy_clamped_to_free_usdc(self, client):
        routes = balances_routes(usdc="300")
        routes[("POST", "/0/private/AddOrder")] = ok({"txid": [TXID]})
        router = Router(routes)
        with patched(router):
            client.create_order("BUY", "60000", "0.01")
        # 300 / 60000 * 0.99
        assert form(router.calls[-1])["volume"] == ["0.00495000"]

    def test_nothing_available_raises(self, client):
        router = Router(balances_routes(btc="0"))
        with patched(router), pytest.raises(InsufficientBalance):
            client.create_order("SELL", "60500", "0.01")
        assert "/0/private/AddOrder" not in router.paths()


class TestOrderLookup:

    def test_query_orders_normalized(self, client):
        router = Router({("POST", "/0/private/QueryOrders"): ok({TXID: {
            "status": "closed", "vol": "0.01", "vol_exec": "0.01", "price": "0",
            "descr": {"price": "60000.0"}, "fee": "0.15", "closetm": 1767232800.5,
        }})})
        with patched(router):
            order = client.get_order_by_id(TXID)

        assert order["orderId"] == TXID
        assert order["price"] == pytest.approx(60000.0)
        assert order["executed"] == pytest.approx(0.01)
        assert client.is_filled(order)
        stamp, ok_ = client.completion_time(order, datetime(2026, 1, 1, tzinfo=timezone.utc))
        assert ok_ and stamp.hour == 2

    def test_retries_with_trades_then_not_found(self, client):
        router = Router({("POST", "/0/private/QueryOrders"): [
            failed("EOrder:Invalid order"),
            failed("EOrder:Invalid order"),
        ]})
        with patched(router), pytest.raises(OrderNotFound):
            client.get_order_by_id(TXID)
        assert form(router.calls[-1])["trades"] == ["true"]

    def test_empty_result_is_not_found(self, client):
        router = Router({("POST", "/0/private/QueryOrders"): ok({})})
        with patched(router), pytest.raises(OrderNotFound):
            client.get_order_by_id(TXID)

    def test_fee_estimated_when_missing(self, client):
        router = Router({("POST", "/0/private/QueryOrders"): ok({TXID: {
            "status": "closed", "vol": "0.01", "vol_exec": "0.01", "price": "60000", "fee": "0",
        }})})
        with patched(router):
            assert client.get_order_fees(TXID) == pytest.approx(1.5)

    def test_normalize_strips_noise(self, client):
        assert client.normalize_order_id(f" {TXID}\n") == TXID
