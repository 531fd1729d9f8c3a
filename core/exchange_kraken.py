"""
cyclebot Core: Exchange Connector (Kraken)

Public endpoints are plain GETs; private endpoints are form POSTs signed
with HMAC-SHA512 over path + SHA256(nonce + postdata). Every response is an
{"error": [...], "result": ...} envelope. Kraken calls BTC "XBT".
"""

import base64
import hashlib
import hmac
import logging
import time
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import urlencode

from core.exceptions import ExchangeAPIError, ExchangeError, OrderNotFound
from core.exchange_base import (
    BTC,
    USDC,
    Balance,
    RestTransport,
    clamp_to_available,
    epoch_to_datetime,
    estimate_fee,
    fee_covering_sell_price,
    maker_price,
    to_float,
    zero_filled,
)
from core.order_ids import clean_order_id

logger = logging.getLogger(__name__)

KRAKEN_BASE = "https://api.kraken.com"
API_VERSION = "0"
PAIR = "XBTUSDC"
TIMEOUT_SECONDS = 30
FILL_THRESHOLD = 0.99

# Kraken asset code -> our asset name
ASSET_NAMES = {
    "XXBT": BTC,
    "XBT": BTC,
    "USDC": USDC,
}

NOT_FOUND_MARKERS = ("Invalid order", "Unknown order")


class KrakenClient:
    """Kraken spot connector for XBTUSDC."""

    name = "KRAKEN"

    def __init__(self, api_key: str, secret_key: str, base_url: Optional[str] = None,
                 fee_rate: float = 0.0025, fee_safety_margin: float = 0.10,
                 max_retries: int = 3, min_interval: float = 0.1):
        self.api_key = api_key
        self.secret_key = secret_key
        self.fee_rate = fee_rate
        self.fee_safety_margin = fee_safety_margin
        self._http = RestTransport(self.name, base_url or KRAKEN_BASE, TIMEOUT_SECONDS,
                                   max_retries=max_retries, min_interval=min_interval)
        logger.info(f"Initialized KrakenClient (base_url={self._http.base_url})")

    # ----- transport -----

    def _unwrap(self, data: Any) -> Any:
        errors = data.get("error") if isinstance(data, dict) else None
        if errors:
            raise ExchangeAPIError(self.name, f"Kraken API error: {', '.join(errors)}",
                                   status_code=200, body=", ".join(errors))
        return data.get("result") if isinstance(data, dict) else data

    def sign(self, path: str, nonce: str, postdata: str) -> str:
        message = path.encode() + hashlib.sha256((nonce + postdata).encode()).digest()
        mac = hmac.new(base64.b64decode(self.secret_key), message, hashlib.sha512)
        return base64.b64encode(mac.digest()).decode()

    def _public(self, method: str, params: Optional[Dict[str, str]] = None) -> Any:
        query = urlencode(params) if params else ""
        return self._unwrap(self._http.request("GET", f"/{API_VERSION}/public/{method}", query=query))

    def _private(self, method: str, params: Optional[Dict[str, str]] = None) -> Any:
        # A nonce is single-use, so private calls are never replayed by the transport
        nonce = str(time.time_ns())
        payload = {"nonce": nonce}
        payload.update(params or {})
        postdata = urlencode(payload)
        path = f"/{API_VERSION}/private/{method}"
        headers = {
            "API-Key": self.api_key,
            "API-Sign": self.sign(path, nonce, postdata),
            "Content-Type": "application/x-www-form-urlencoded",
        }
        return self._unwrap(self._http.request("POST", path, body=postdata, headers=headers, retry=False))

    # ----- market data -----

    def check_connection(self) -> None:
        self._public("Time")
        if self.api_key and self.secret_key:
            self._private("Balance")
        logger.info("Connected to Kraken API")

    def get_last_price_btc(self) -> float:
        result = self._public("Ticker", {"pair": PAIR}) or {}
        for ticker in result.values():
            last = ticker.get("c") or []
            if last:
                price = to_float(last[0])
                if price > 0:
                    return price
        raise ExchangeError(self.name, "BTC price not found in ticker response")

    # ----- account -----

    def _locked_amounts(self) -> Dict[str, float]:
        """Funds held by open XBTUSDC orders: buys hold USDC, sells hold BTC."""
        result = self._private("OpenOrders") or {}
        locked = {BTC: 0.0, USDC: 0.0}
        for order in (result.get("open") or {}).values():
            if order.get("status") != "open":
                continue
            descr = order.get("descr") or {}
            if descr.get("pair") != PAIR:
                continue
            remaining = to_float(order.get("vol")) - to_float(order.get("vol_exec"))
            if descr.get("type") == "buy":
                locked[USDC] += to_float(descr.get("price")) * remaining
            elif descr.get("type") == "sell":
                locked[BTC] += remaining
        return locked

    def get_detailed_balances(self) -> Dict[str, Balance]:
        raw = self._private("Balance") or {}
        locked_by_asset = self._locked_amounts()

        totals: Dict[str, float] = {}
        for code, amount in raw.items():
            asset = ASSET_NAMES.get(code)
            if asset is not None:
                totals[asset] = totals.get(asset, 0.0) + to_float(amount)

        balances: Dict[str, Balance] = {}
        for asset, total in totals.items():
            locked = min(locked_by_asset.get(asset, 0.0), total)
            balances[asset] = Balance(free=max(0.0, total - locked), locked=locked, total=total)
        return zero_filled(balances)

    # ----- orders -----

    @staticmethod
    def format_price(price: float) -> str:
        return f"{int(price * 100) / 100:.2f}"

    def create_order(self, side: str, price: str, quantity: str) -> Dict[str, Any]:
        side = side.upper()
        price_value = to_float(price)
        requested = to_float(quantity)
        volume = clamp_to_available(self.name, side, price_value, requested, self.get_detailed_balances())
        volume_str = quantity if volume == requested else f"{volume:.8f}"

        params = {
            "pair": PAIR,
            "type": side.lower(),
            "ordertype": "limit",
            "price": self.format_price(price_value),
            "volume": volume_str,
            "oflags": "post",
        }
        logger.info(f"Kraken {side} {volume_str} BTC @ {params['price']}")
        result = self._private("AddOrder", params) or {}
        txids = result.get("txid") or []
        if not txids:
            raise ExchangeError(self.name, "no order id returned by AddOrder")
        return {"orderId": txids[0], "status": "created"}

    def create_maker_order(self, side: str, price: float, quantity: str) -> Dict[str, Any]:
        return self.create_order(side, self.format_price(maker_price(side, price)), quantity)

    def _normalize_order(self, txid: str, details: Mapping[str, Any]) -> Dict[str, Any]:
        price = to_float(details.get("price"))
        if price <= 0:
            price = to_float((details.get("descr") or {}).get("price"))
        return {
            "orderId": txid,
            "status": details.get("status", ""),
            "price": price,
            "quantity": to_float(details.get("vol")),
            "executed": to_float(details.get("vol_exec")),
            "closetm": to_float(details.get("closetm")),
            "fee": to_float(details.get("fee")),
        }

    def get_order_by_id(self, order_id: str) -> Dict[str, Any]:
        try:
            result = self._private("QueryOrders", {"txid": order_id})
        except ExchangeAPIError as first_error:
            logger.debug(f"Kraken QueryOrders {order_id} failed ({first_error}), retrying with trades")
            try:
                result = self._private("QueryOrders", {"txid": order_id, "trades": "true"})
            except ExchangeAPIError as e:
                if any(marker in e.body for marker in NOT_FOUND_MARKERS):
                    raise OrderNotFound(self.name, f"order {order_id} not found", original=e)
                raise

        for txid, details in (result or {}).items():
            return self._normalize_order(txid, details)
        raise OrderNotFound(self.name, f"order {order_id} not found")

    def is_filled(self, order: Mapping[str, Any]) -> bool:
        if order.get("status") in ("closed", "filled"):
            return True
        quantity = to_float(order.get("quantity"))
        executed = to_float(order.get("executed"))
        return quantity > 0 and executed >= quantity * FILL_THRESHOLD

    def cancel_order(self, order_id: str) -> Dict[str, Any]:
        self._private("CancelOrder", {"txid": order_id})
        logger.info(f"Kraken order {order_id} cancelled")
        return {"orderId": order_id, "status": "cancelled"}

    # ----- fees -----

    def get_order_fees(self, order_id: str) -> float:
        order = self.get_order_by_id(order_id)
        if order["fee"] > 0:
            return order["fee"]
        if order["price"] > 0 and order["executed"] > 0:
            return estimate_fee(order["price"], order["executed"], self.fee_rate)
        raise ExchangeError(self.name, "cannot estimate order fees")

    def adjust_sell_price_for_fees(self, buy_price: float, quantity: float, buy_order_id: str) -> float:
        try:
            buy_fees = self.get_order_fees(buy_order_id)
        except ExchangeError as e:
            logger.debug(f"Kraken buy fees unavailable for {buy_order_id}: {e}")
            buy_fees = 0.0
        return fee_covering_sell_price(buy_price, quantity, buy_fees,
                                       self.fee_rate, self.fee_safety_margin)

    # ----- normalization -----

    def normalize_order_id(self, order_id: str) -> str:
        return clean_order_id(order_id, self.name)

    def executed_quantity(self, order: Mapping[str, Any]) -> Optional[float]:
        if "executed" not in order:
            return None
        return to_float(order.get("executed"))

    def completion_time(self, order: Mapping[str, Any],
                        created_at: datetime) -> Tuple[Optional[datetime], bool]:
        closed = epoch_to_datetime(order.get("closetm"), "s")
        return closed, closed is not None
