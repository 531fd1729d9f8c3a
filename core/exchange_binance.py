"""
cyclebot Core: Exchange Connector (Binance)

Spot BTC/USDC on Binance with HMAC-SHA256 signed query strings.
"""

import hashlib
import hmac
import logging
import time
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Tuple

from core.exceptions import ExchangeAPIError, ExchangeError, OrderNotFound, OrderRejected
from core.exchange_base import (
    BTC,
    USDC,
    Balance,
    RestTransport,
    SymbolRules,
    epoch_to_datetime,
    estimate_fee,
    fee_covering_sell_price,
    floor_to_increment,
    format_to_increment,
    maker_price,
    to_float,
    zero_filled,
)
from core.order_ids import clean_order_id

logger = logging.getLogger(__name__)

BINANCE_BASE = "https://api.binance.com"
SYMBOL = "BTCUSDC"
TIMEOUT_SECONDS = 10

# An order is treated as filled once this share of it has executed
FILL_THRESHOLD = 0.99


class BinanceClient:
    """
    Binance REST connector for the BTCUSDC pair.

    Supports:
    - Market data (last price, symbol rules)
    - Account data (BTC/USDC balances)
    - Order execution (place, lookup, cancel, fees)
    """

    name = "BINANCE"

    def __init__(self, api_key: str, secret_key: str, base_url: Optional[str] = None,
                 fee_rate: float = 0.001, fee_safety_margin: float = 0.05,
                 max_retries: int = 3, min_interval: float = 0.1):
        self.api_key = api_key
        self.secret_key = secret_key
        self.fee_rate = fee_rate
        self.fee_safety_margin = fee_safety_margin
        self._http = RestTransport(self.name, base_url or BINANCE_BASE, TIMEOUT_SECONDS,
                                   max_retries=max_retries, min_interval=min_interval)
        self._symbol_rules: Dict[str, SymbolRules] = {}
        logger.info(f"Initialized BinanceClient (base_url={self._http.base_url})")

    # ----- transport -----

    def _sign(self, query: str) -> str:
        return hmac.new(self.secret_key.encode(), query.encode(), hashlib.sha256).hexdigest()

    def _public(self, path: str, query: str = "") -> Any:
        return self._http.request("GET", path, query=query)

    def _signed(self, method: str, path: str, query: str = "") -> Any:
        stamped = f"{query}&timestamp={int(time.time() * 1000)}" if query else f"timestamp={int(time.time() * 1000)}"
        signed_query = f"{stamped}&signature={self._sign(stamped)}"
        return self._http.request(method, path, query=signed_query,
                                  headers={"X-MBX-APIKEY": self.api_key})

    # ----- market data -----

    def check_connection(self) -> None:
        self._public("/api/v3/ping")
        logger.info("Connected to Binance API")

    def get_last_price_btc(self) -> float:
        data = self._public("/api/v3/ticker/price", f"symbol={SYMBOL}")
        price = to_float(data.get("price"))
        if price <= 0:
            raise ExchangeError(self.name, f"invalid ticker price: {data!r}")
        return price

    def get_symbol_rules(self, symbol: str = SYMBOL) -> SymbolRules:
        """LOT_SIZE and notional filters for ``symbol``, cached after the first call."""
        if symbol in self._symbol_rules:
            return self._symbol_rules[symbol]

        info = self._public("/api/v3/exchangeInfo", f"symbol={symbol}")
        for entry in info.get("symbols", []):
            if entry.get("symbol") != symbol:
                continue
            rules = SymbolRules()
            for flt in entry.get("filters", []):
                kind = flt.get("filterType")
                if kind == "LOT_SIZE":
                    rules.min_qty = to_float(flt.get("minQty"))
                    rules.max_qty = to_float(flt.get("maxQty"))
                    rules.step_size = str(flt.get("stepSize", rules.step_size))
                elif kind in ("MIN_NOTIONAL", "NOTIONAL"):
                    rules.min_notional = to_float(flt.get("minNotional"))
                elif kind == "PRICE_FILTER":
                    rules.price_increment = str(flt.get("tickSize", rules.price_increment))
            self._symbol_rules[symbol] = rules
            return rules

        raise ExchangeError(self.name, f"symbol {symbol} not found")

    def adjust_quantity(self, quantity: float, symbol: str = SYMBOL) -> str:
        """
        Floor ``quantity`` to the lot step.

        Raises:
            OrderRejected: if the quantity is outside [min_qty, max_qty]
        """
        rules = self.get_symbol_rules(symbol)
        if quantity < rules.min_qty:
            raise OrderRejected(self.name, f"quantity {quantity:.8f} is below minimum allowed {rules.min_qty:.8f}")
        if rules.max_qty > 0 and quantity > rules.max_qty:
            raise OrderRejected(self.name, f"quantity {quantity:.8f} is above maximum allowed {rules.max_qty:.8f}")
        return f"{floor_to_increment(quantity, rules.step_size):f}"

    # ----- account -----

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

    # ----- orders -----

    def create_order(self, side: str, price: str, quantity: str) -> Dict[str, Any]:
        side = side.upper()
        price_value = to_float(price, default=-1.0)
        qty_value = to_float(quantity, default=-1.0)
        if price_value <= 0 or qty_value <= 0:
            raise OrderRejected(self.name, f"invalid price/quantity: {price!r} / {quantity!r}")

        rules = self.get_symbol_rules()
        adjusted = self.adjust_quantity(qty_value)
        price_text = format_to_increment(price_value, rules.price_increment)
        notional = float(price_text) * float(adjusted)
        if notional < rules.min_notional:
            raise OrderRejected(
                self.name,
                f"order value {notional:.2f} USDC is below minimum allowed {rules.min_notional:.2f} USDC",
            )

        query = (f"symbol={SYMBOL}&side={side}&type=LIMIT&timeInForce=GTC"
                 f"&quantity={adjusted}&price={price_text}")
        logger.info(f"Binance {side} {adjusted} BTC @ {price_text}")
        return self._signed("POST", "/api/v3/order", query)

    def create_maker_order(self, side: str, price: float, quantity: str) -> Dict[str, Any]:
        return self.create_order(side, f"{maker_price(side, price):.2f}", quantity)

    def get_order_by_id(self, order_id: str) -> Dict[str, Any]:
        try:
            return self._signed("GET", "/api/v3/order", f"symbol={SYMBOL}&orderId={order_id}")
        except ExchangeAPIError as e:
            # -2013: Order does not exist
            if e.status_code in (400, 404) and ("-2013" in e.body or "does not exist" in e.body):
                raise OrderNotFound(self.name, f"order {order_id} not found", original=e)
            raise

    def is_filled(self, order: Mapping[str, Any]) -> bool:
        if order.get("status") == "FILLED":
            return True
        orig = to_float(order.get("origQty"))
        executed = to_float(order.get("executedQty"))
        return orig > 0 and executed >= orig * FILL_THRESHOLD

    def cancel_order(self, order_id: str) -> Dict[str, Any]:
        result = self._signed("DELETE", "/api/v3/order", f"symbol={SYMBOL}&orderId={order_id}")
        logger.info(f"Binance order {order_id} cancelled")
        return result

    # ----- fees -----

    def get_order_fees(self, order_id: str) -> float:
        """
        Fees paid on an order.

        Order ``commission`` first, then the sum of ``myTrades`` commissions
        for the order, then an estimate at the configured fee rate.
        """
        order = self.get_order_by_id(order_id)
        commission = to_float(order.get("commission"))
        if commission > 0:
            return commission

        try:
            trades = self._signed("GET", "/api/v3/myTrades", f"symbol={SYMBOL}&orderId={order_id}")
        except ExchangeAPIError as e:
            logger.debug(f"Binance myTrades unavailable for {order_id}: {e}")
            trades = []

        total = sum(to_float(trade.get("commission")) for trade in trades
                    if str(trade.get("orderId")) == str(order_id))
        if total > 0:
            return total
        return self._estimate_fees(order)

    def _estimate_fees(self, order: Mapping[str, Any]) -> float:
        price = to_float(order.get("price"))
        executed = to_float(order.get("executedQty"))
        if price > 0 and executed > 0:
            return estimate_fee(price, executed, self.fee_rate)
        raise ExchangeError(self.name, "cannot estimate order fees")

    def adjust_sell_price_for_fees(self, buy_price: float, quantity: float, buy_order_id: str) -> float:
        try:
            buy_fees = self.get_order_fees(buy_order_id)
        except ExchangeError as e:
            logger.debug(f"Binance buy fees unavailable for {buy_order_id}: {e}")
            buy_fees = 0.0
        return fee_covering_sell_price(buy_price, quantity, buy_fees,
                                       self.fee_rate, self.fee_safety_margin)

    # ----- normalization -----

    def normalize_order_id(self, order_id: str) -> str:
        return clean_order_id(order_id, self.name)

    def executed_quantity(self, order: Mapping[str, Any]) -> Optional[float]:
        if "executedQty" not in order:
            return None
        return to_float(order.get("executedQty"))

    def completion_time(self, order: Mapping[str, Any],
                        created_at: datetime) -> Tuple[Optional[datetime], bool]:
        updated = epoch_to_datetime(order.get("updateTime"), "ms")
        return updated, updated is not None
