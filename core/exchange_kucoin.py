"""
cyclebot Core: Exchange Connector (KuCoin)

KuCoin v2 API keys: base64 HMAC-SHA256 request signatures, signed
passphrase, and a {"code": "200000", "data": ...} response envelope.
"""

import base64
import hashlib
import hmac
import json
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

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
    format_to_increment,
    maker_price,
    to_float,
    zero_filled,
)
from core.order_ids import clean_order_id

logger = logging.getLogger(__name__)

KUCOIN_BASE = "https://api.kucoin.com"
SYMBOL = "BTC-USDC"
TIMEOUT_SECONDS = 15
SUCCESS_CODE = "200000"
FILL_THRESHOLD = 0.99


class KucoinClient:
    """
    KuCoin spot connector for BTC-USDC.

    The secret may be configured as "secret:passphrase"; the two parts are
    split on construction when no separate passphrase is given.
    """

    name = "KUCOIN"

    def __init__(self, api_key: str, secret_key: str, passphrase: str = "",
                 base_url: Optional[str] = None, fee_rate: float = 0.001,
                 fee_safety_margin: float = 0.05, max_retries: int = 3,
                 min_interval: float = 0.1):
        if not passphrase and ":" in secret_key:
            secret_key, passphrase = secret_key.split(":", 1)
        self.api_key = api_key
        self.secret_key = secret_key
        self.passphrase = passphrase
        self.fee_rate = fee_rate
        self.fee_safety_margin = fee_safety_margin
        self._http = RestTransport(self.name, base_url or KUCOIN_BASE, TIMEOUT_SECONDS,
                                   max_retries=max_retries, min_interval=min_interval)
        self._symbol_rules: Dict[str, SymbolRules] = {}
        logger.info(f"Initialized KucoinClient (base_url={self._http.base_url})")

    # ----- transport -----

    def _hmac_b64(self, message: str) -> str:
        digest = hmac.new(self.secret_key.encode(), message.encode(), hashlib.sha256).digest()
        return base64.b64encode(digest).decode()

    def _headers(self, method: str, endpoint: str, body: str) -> Dict[str, str]:
        timestamp = str(int(time.time() * 1000))
        return {
            "KC-API-KEY": self.api_key,
            "KC-API-SIGN": self._hmac_b64(timestamp + method + endpoint + body),
            "KC-API-TIMESTAMP": timestamp,
            "KC-API-PASSPHRASE": self._hmac_b64(self.passphrase),
            "KC-API-KEY-VERSION": "2",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, path: str, query: str = "",
                 payload: Optional[Dict[str, Any]] = None) -> Any:
        """Signed request; returns the envelope's ``data``."""
        body = json.dumps(payload) if payload is not None else ""
        endpoint = f"{path}?{query}" if query else path
        data = self._http.request(method, path, query=query, body=body or None,
                                  headers=self._headers(method, endpoint, body))
        code = str(data.get("code", "")) if isinstance(data, dict) else ""
        if code != SUCCESS_CODE:
            message = data.get("msg", "") if isinstance(data, dict) else str(data)
            raise ExchangeAPIError(self.name, f"KuCoin API error: {code} - {message}",
                                   status_code=200, body=json.dumps(data))
        return data.get("data")

    # ----- market data -----

    def check_connection(self) -> None:
        self._request("GET", "/api/v1/timestamp")
        logger.info("Connected to KuCoin API")

    def get_last_price_btc(self) -> float:
        data = self._request("GET", "/api/v1/market/orderbook/level1", f"symbol={SYMBOL}") or {}
        price = to_float(data.get("price"))
        if price <= 0:
            raise ExchangeError(self.name, f"invalid level1 price: {data!r}")
        return price

    def get_symbol_rules(self, symbol: str = SYMBOL) -> SymbolRules:
        if symbol in self._symbol_rules:
            return self._symbol_rules[symbol]

        for entry in self._request("GET", "/api/v1/symbols") or []:
            if entry.get("symbol") != symbol:
                continue
            rules = SymbolRules(
                min_qty=to_float(entry.get("baseMinSize")),
                max_qty=to_float(entry.get("baseMaxSize")),
                step_size=str(entry.get("baseIncrement") or "0.00000001"),
                min_notional=to_float(entry.get("quoteMinSize")),
                price_increment=str(entry.get("priceIncrement") or "0.01"),
            )
            self._symbol_rules[symbol] = rules
            return rules

        raise ExchangeError(self.name, f"symbol {symbol} not found")

    def format_price(self, price: float, symbol: str = SYMBOL) -> str:
        """Floor ``price`` to the pair's price increment."""
        return format_to_increment(price, self.get_symbol_rules(symbol).price_increment)

    # ----- account -----

    def get_detailed_balances(self) -> Dict[str, Balance]:
        balances: Dict[str, Balance] = {}
        for account in self._request("GET", "/api/v1/accounts") or []:
            currency = account.get("currency")
            if currency not in (BTC, USDC) or account.get("type") != "trade":
                continue
            total = to_float(account.get("balance"))
            available = to_float(account.get("available"))
            existing = balances.get(currency, Balance())
            balances[currency] = Balance(
                free=existing.free + available,
                locked=existing.locked + (total - available),
                total=existing.total + total,
            )
        return zero_filled(balances)

    # ----- orders -----

    def create_order(self, side: str, price: str, quantity: str) -> Dict[str, Any]:
        rules = self.get_symbol_rules()
        price_str = self.format_price(to_float(price))
        size_str = format_to_increment(to_float(quantity), rules.step_size)
        size = float(size_str)

        if size <= 0 or size < rules.min_qty:
            raise OrderRejected(self.name, f"size {size_str} is below minimum allowed {rules.min_qty:.8f}")
        if rules.max_qty > 0 and size > rules.max_qty:
            raise OrderRejected(self.name, f"size {size_str} is above maximum allowed {rules.max_qty:.8f}")
        notional = size * float(price_str)
        if notional < rules.min_notional:
            raise OrderRejected(
                self.name,
                f"order value {notional:.2f} USDC is below minimum allowed {rules.min_notional:.2f} USDC",
            )

        payload = {
            "clientOid": f"bot-{time.time_ns()}",
            "side": side.lower(),
            "symbol": SYMBOL,
            "type": "limit",
            "price": price_str,
            "size": size_str,
            "timeInForce": "GTC",
        }
        logger.info(f"KuCoin {side.upper()} {size_str} BTC @ {price_str}")
        return self._request("POST", "/api/v1/orders", payload=payload) or {}

    def create_maker_order(self, side: str, price: float, quantity: str) -> Dict[str, Any]:
        return self.create_order(side, self.format_price(maker_price(side, price)), quantity)

    def _find_in_history(self, order_id: str) -> Dict[str, Any]:
        data = self._request("GET", "/api/v1/orders", "status=done")
        items: List[Dict[str, Any]] = data.get("items", []) if isinstance(data, dict) else (data or [])
        for order in items:
            if order.get("id") == order_id:
                return order
        raise OrderNotFound(self.name, f"order {order_id} not found in history")

    def get_order_by_id(self, order_id: str) -> Dict[str, Any]:
        normalized = self.normalize_order_id(order_id)
        if not normalized:
            raise OrderNotFound(self.name, f"invalid order id {order_id!r}")
        try:
            return self._request("GET", f"/api/v1/orders/{normalized}") or {}
        except ExchangeAPIError as e:
            if e.status_code == 404 or "Order does not exist" in str(e):
                logger.debug(f"KuCoin order {normalized} not active, searching done orders")
                return self._find_in_history(normalized)
            raise

    def is_filled(self, order: Mapping[str, Any]) -> bool:
        if order.get("isActive") is not False:
            return False
        size = to_float(order.get("size"))
        deal_size = to_float(order.get("dealSize"))
        return size > 0 and deal_size >= size * FILL_THRESHOLD

    def cancel_order(self, order_id: str) -> Dict[str, Any]:
        normalized = self.normalize_order_id(order_id)
        if not normalized:
            raise OrderNotFound(self.name, f"invalid order id {order_id!r}")
        result = self._request("DELETE", f"/api/v1/orders/{normalized}") or {}
        logger.info(f"KuCoin order {normalized} cancelled")
        return result

    # ----- fees -----

    def get_order_fees(self, order_id: str) -> float:
        order = self.get_order_by_id(order_id)
        fee = to_float(order.get("fee"))
        if fee > 0:
            return fee
        price = to_float(order.get("price"))
        deal_size = to_float(order.get("dealSize"))
        if price > 0 and deal_size > 0:
            return estimate_fee(price, deal_size, self.fee_rate)
        raise ExchangeError(self.name, "cannot estimate order fees")

    def adjust_sell_price_for_fees(self, buy_price: float, quantity: float, buy_order_id: str) -> float:
        try:
            buy_fees = self.get_order_fees(buy_order_id)
        except ExchangeError as e:
            logger.debug(f"KuCoin buy fees unavailable for {buy_order_id}: {e}")
            buy_fees = 0.0
        return fee_covering_sell_price(buy_price, quantity, buy_fees,
                                       self.fee_rate, self.fee_safety_margin)

    # ----- normalization -----

    def normalize_order_id(self, order_id: str) -> str:
        return clean_order_id(order_id, self.name)

    def executed_quantity(self, order: Mapping[str, Any]) -> Optional[float]:
        if "dealSize" not in order:
            return None
        return to_float(order.get("dealSize"))

    def completion_time(self, order: Mapping[str, Any],
                        created_at: datetime) -> Tuple[Optional[datetime], bool]:
        # createdAt is the placement time; it only helps when it is already past the cycle start
        for key in ("updatedAt", "createdAt"):
            stamp = epoch_to_datetime(order.get(key), "ms")
            if stamp is not None and stamp > created_at:
                return stamp, True
        return None, False
