"""
cyclebot Core: Exchange Connector (MEXC)

Binance-compatible REST API with a few quirks:
- order ids carry a "C02__" prefix that some endpoints want and others reject
- filled orders disappear from /api/v3/order, so history is searched first
- errors may arrive as HTTP 200 with a {"code", "msg"} body
"""

import hashlib
import hmac
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from core.exceptions import ExchangeAPIError, ExchangeError, OrderNotFound
from core.exchange_base import (
    BTC,
    USDC,
    Balance,
    RestTransport,
    estimate_fee,
    fee_covering_sell_price,
    maker_price,
    to_float,
    zero_filled,
)
from core.order_ids import MEXC_PREFIX, clean_order_id, first_digit_group, strip_mexc_prefix

logger = logging.getLogger(__name__)

MEXC_BASE = "https://api.mexc.com"
SYMBOL = "BTCUSDC"
TIMEOUT_SECONDS = 15

HISTORY_FILL_THRESHOLD = 0.99
FILL_THRESHOLD = 0.98
STALE_ORDER_HOURS = 24
STALE_PRICE_BAND = 0.10
OK_CODES = (0, 200)


class MexcClient:
    """MEXC spot connector for BTCUSDC."""

    name = "MEXC"

    def __init__(self, api_key: str, secret_key: str, base_url: Optional[str] = None,
                 fee_rate: float = 0.0005, fee_safety_margin: float = 0.05,
                 max_retries: int = 3, min_interval: float = 0.1):
        self.api_key = api_key
        self.secret_key = secret_key
        self.fee_rate = fee_rate
        self.fee_safety_margin = fee_safety_margin
        self._http = RestTransport(self.name, base_url or MEXC_BASE, TIMEOUT_SECONDS,
                                   max_retries=max_retries, min_interval=min_interval)
        logger.info(f"Initialized MexcClient (base_url={self._http.base_url})")

    def _sign(self, query: str) -> str:
        return hmac.new(self.secret_key.encode(), query.encode(), hashlib.sha256).hexdigest()

    def _check_envelope(self, data: Any) -> Any:
        if isinstance(data, dict) and "code" in data and "msg" in data:
            try:
                code = int(data["code"])
            except (TypeError, ValueError):
                code = -1
            if code not in OK_CODES:
                raise ExchangeAPIError(self.name, f"MEXC API error (code {code}): {data['msg']}",
                                       status_code=200, body=str(data))
        return data

    def _public(self, path: str, query: str = "") -> Any:
        return self._check_envelope(self._http.request("GET", path, query=query))

    def _signed(self, method: str, path: str, query: str = "") -> Any:
        timestamp = int(time.time() * 1000)
        stamped = f"{query}&timestamp={timestamp}" if query else f"timestamp={timestamp}"
        signed_query = f"{stamped}&signature={self._sign(stamped)}"
        headers = {"X-MEXC-APIKEY": self.api_key, "Content-Type": "application/json"}
        return self._check_envelope(self._http.request(method, path, query=signed_query, headers=headers))

    def check_connection(self) -> None:
        self._public("/api/v3/ping")
        logger.info("Connected to MEXC API")

    def get_last_price_btc(self) -> float:
        data = self._public("/api/v3/ticker/price", f"symbol={SYMBOL}")
        price = to_float(data.get("price"))
        if price <= 0:
            raise ExchangeError(self.name, f"invalid ticker price: {data!r}")
        return price

    def get_detailed_balances(self) -> Dict[str, Balance]:
        data = self._signed("GET", "/api/v3/account")
        balances: Dict[str, Balance] = {}
        for entry in data.get("balances", []):
            asset = entry.get("asset")
            if asset not in (BTC, USDC):
                continue
            free = to_float(entry.get("free"))
            locked = to_float(entry.get("locked"))
            balances[asset] = Balance(free=free, locked=locked, total=free + locked)
        return zero_filled(balances)

    def create_order(self, side: str, price: str, quantity: str) -> Dict[str, Any]:
        side = side.upper()
        query = (f"symbol={SYMBOL}&side={side}&type=LIMIT&timeInForce=GTC"
                 f"&quantity={quantity}&price={price}")
        logger.info(f"MEXC {side} {quantity} BTC @ {price}")
        return self._signed("POST", "/api/v3/order", query)

    def create_maker_order(self, side: str, price: float, quantity: str) -> Dict[str, Any]:
        return self.create_order(side, f"{maker_price(side, price):.2f}", quantity)

    @staticmethod
    def _matches(candidate: str, *wanted: str) -> bool:
        if not candidate:
            return False
        return any(w and (w in candidate or candidate in w) for w in wanted)

    def _find_in(self, orders: List[Dict[str, Any]], *wanted: str) -> Optional[Dict[str, Any]]:
        for order in orders:
            if self._matches(str(order.get("orderId", "")), *wanted):
                return order
        return None

    def get_order_by_id(self, order_id: str) -> Dict[str, Any]:
        """
        Locate an order by id.

        Order history is searched first (filled orders vanish from the
        single-order endpoint), then /api/v3/order, then open orders when
        the single lookup answers HTTP 400.

        Raises:
            OrderNotFound: when no source knows the order
        """
        normalized = self.normalize_order_id(order_id)
        if not normalized:
            raise OrderNotFound(self.name, f"invalid order id {order_id!r}")
        bare = strip_mexc_prefix(normalized)

        try:
            history = self._signed("GET", "/api/v3/allOrders", f"symbol={SYMBOL}")
        except ExchangeError as e:
            logger.debug(f"MEXC allOrders unavailable: {e}")
            history = []

        found = self._find_in(history if isinstance(history, list) else [], normalized, bare, order_id)
        if found is not None:
            found = dict(found)
            status = found.get("status")
            if status not in ("FILLED", "CANCELED"):
                executed = to_float(found.get("executedQty"))
                orig = to_float(found.get("origQty"))
                if executed > 0 and executed >= orig * HISTORY_FILL_THRESHOLD:
                    logger.debug(f"MEXC order {order_id} executed {executed}/{orig} with status {status}, marking FILLED")
                    found["status"] = "FILLED"
            return found

        try:
            return self._signed("GET", "/api/v3/order", f"symbol={SYMBOL}&orderId={normalized}")
        except ExchangeAPIError as e:
            lookup_error = e

        if lookup_error.status_code == 400:
            try:
                open_orders = self._signed("GET", "/api/v3/openOrders", f"symbol={SYMBOL}")
            except ExchangeError as e:
                logger.debug(f"MEXC openOrders unavailable: {e}")
                open_orders = []
            found = self._find_in(open_orders if isinstance(open_orders, list) else [],
                                  normalized, bare, order_id)
            if found is not None:
                return found

        if lookup_error.status_code is None or lookup_error.status_code >= 500:
            raise lookup_error
        raise OrderNotFound(self.name, f"order {order_id} not found: {lookup_error}",
                            original=lookup_error)

    def is_filled(self, order: Mapping[str, Any]) -> bool:
        status = order.get("status")
        if status == "FILLED":
            return True

        executed = to_float(order.get("executedQty"))
        orig = to_float(order.get("origQty"))
        if executed > 0 and executed >= orig * FILL_THRESHOLD:
            return True

        created_ms = to_float(order.get("time"))
        if created_ms > 0:
            age_hours = (time.time() - created_ms / 1000.0) / 3600.0
            order_price = to_float(order.get("price"))
            if age_hours > STALE_ORDER_HOURS and order_price > 0:
                try:
                    current = self.get_last_price_btc()
                except ExchangeError as e:
                    logger.debug(f"MEXC price unavailable for stale order check: {e}")
                    current = 0.0
                if current > 0 and abs(order_price - current) / current < STALE_PRICE_BAND:
                    logger.info(f"MEXC order {order.get('orderId')} is {age_hours:.1f}h old near market, treating as filled")
                    return True

        if status == "NEW" and order.get("isWorking") is False:
            logger.debug(f"MEXC order {order.get('orderId')} not working, treating as filled")
            return True

        return False

    def _delete(self, order_id: str) -> Dict[str, Any]:
        return self._signed("DELETE", "/api/v3/order", f"symbol={SYMBOL}&orderId={order_id}")

    def cancel_order(self, order_id: str) -> Dict[str, Any]:
        """
        Cancel with the prefixed id, then unprefixed on "Unknown order id",
        then the first digit group of the bare id.
        """
        bare = strip_mexc_prefix(order_id)
        prefixed = MEXC_PREFIX + bare
        try:
            result = self._delete(prefixed)
            logger.info(f"MEXC order {prefixed} cancelled")
            return result
        except ExchangeError as e:
            first_error = e
            logger.debug(f"MEXC cancel {prefixed} failed: {e}")

        if "Unknown order id" in str(first_error):
            try:
                result = self._delete(bare)
                logger.info(f"MEXC order {bare} cancelled (without prefix)")
                return result
            except ExchangeError as e:
                logger.debug(f"MEXC cancel {bare} failed: {e}")

        numeric = first_digit_group(bare)
        if numeric and numeric != bare:
            try:
                result = self._delete(numeric)
                logger.info(f"MEXC order {numeric} cancelled (numeric id)")
                return result
            except ExchangeError as e:
                logger.debug(f"MEXC cancel {numeric} failed: {e}")

        raise first_error

    def get_order_fees(self, order_id: str) -> float:
        bare = strip_mexc_prefix(order_id)
        try:
            trades = self._signed("GET", "/api/v3/myTrades", f"symbol={SYMBOL}&orderId={bare}")
        except ExchangeError as e:
            logger.debug(f"MEXC myTrades unavailable for {order_id}: {e}")
            trades = []

        total = sum(to_float(trade.get("commission")) for trade in trades or []
                    if self._matches(str(trade.get("orderId", "")), bare, order_id))
        if total > 0:
            return total

        order = self.get_order_by_id(order_id)
        price = to_float(order.get("price"))
        executed = to_float(order.get("executedQty"))
        if price > 0 and executed > 0:
            return estimate_fee(price, executed, self.fee_rate)
        raise ExchangeError(self.name, "cannot estimate order fees")

    def adjust_sell_price_for_fees(self, buy_price: float, quantity: float, buy_order_id: str) -> float:
        try:
            buy_fees = self.get_order_fees(buy_order_id)
        except ExchangeError as e:
            logger.debug(f"MEXC buy fees unavailable for {buy_order_id}: {e}")
            buy_fees = 0.0
        return fee_covering_sell_price(buy_price, quantity, buy_fees,
                                       self.fee_rate, self.fee_safety_margin)

    def normalize_order_id(self, order_id: str) -> str:
        return clean_order_id(order_id, self.name)

    def executed_quantity(self, order: Mapping[str, Any]) -> Optional[float]:
        if "executedQty" not in order:
            return None
        return to_float(order.get("executedQty"))

    def completion_time(self, order: Mapping[str, Any],
                        created_at: datetime) -> Tuple[Optional[datetime], bool]:
        # MEXC reports no fill time
        return None, False
