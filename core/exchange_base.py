"""
cyclebot Core: Exchange client contract and shared HTTP mechanics

Every exchange module (binance, mexc, kucoin, kraken) provides a client
class that satisfies the ExchangeClient protocol. Clients do not inherit
from a common base; they compose a RestTransport for HTTP and use the
helpers below for rounding, balance clamping and fee-aware pricing.
"""

import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_DOWN, InvalidOperation
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple

import requests

from core.exceptions import ExchangeAPIError, InsufficientBalance

logger = logging.getLogger(__name__)

BTC = "BTC"
USDC = "USDC"

# Clamp requested quantity to this share of the available balance
AVAILABLE_BALANCE_TOLERANCE = 0.99

# Maker price bias: buys below, sells above the requested price
MAKER_BUY_FACTOR = 0.998
MAKER_SELL_FACTOR = 1.002


@dataclass
class Balance:
    """Free/locked/total amounts of one asset"""
    free: float = 0.0
    locked: float = 0.0
    total: float = 0.0


@dataclass
class SymbolRules:
    """Trading constraints for BTC/USDC as declared by the exchange"""
    min_qty: float = 0.0
    max_qty: float = 0.0
    step_size: str = "0.00000001"
    min_notional: float = 0.0
    price_increment: str = "0.01"


class ExchangeClient(Protocol):
    """Capability contract shared by all exchange clients."""

    name: str

    def check_connection(self) -> None: ...

    def get_last_price_btc(self) -> float: ...

    def get_detailed_balances(self) -> Dict[str, Balance]: ...

    def create_order(self, side: str, price: str, quantity: str) -> Dict[str, Any]: ...

    def create_maker_order(self, side: str, price: float, quantity: str) -> Dict[str, Any]: ...

    def get_order_by_id(self, order_id: str) -> Dict[str, Any]: ...

    def is_filled(self, order: Mapping[str, Any]) -> bool: ...

    def cancel_order(self, order_id: str) -> Dict[str, Any]: ...

    def get_order_fees(self, order_id: str) -> float: ...

    def adjust_sell_price_for_fees(self, buy_price: float, quantity: float, buy_order_id: str) -> float: ...

    def normalize_order_id(self, order_id: str) -> str: ...

    def executed_quantity(self, order: Mapping[str, Any]) -> Optional[float]: ...

    def completion_time(self, order: Mapping[str, Any],
                        created_at: datetime) -> Tuple[Optional[datetime], bool]: ...


class RestTransport:
    """
    HTTP plumbing shared by the exchange clients.

    Retries 429, 5xx and network errors with exponential backoff plus
    jitter, but only for read-only requests: an order POST/DELETE that timed
    out may have reached the matching engine, so it is sent exactly once.
    Any non-2xx response becomes ExchangeAPIError with the status code and
    body text in its message.
    """

    def __init__(self, exchange: str, base_url: str, timeout: float,
                 max_retries: int = 3, min_interval: float = 0.1):
        self.exchange = exchange
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, int(max_retries))
        self._min_interval = min_interval
        self._last_call: Dict[str, float] = {}

    def _rate_limit(self, endpoint: str):
        """Simple rate limiting"""
        last = self._last_call.get(endpoint, 0)
        elapsed = time.time() - last
        if elapsed < self._min_interval:
            time.sleep(self._min_interval - elapsed)
        self._last_call[endpoint] = time.time()

    def request(self, method: str, path: str, query: str = "",
                body: Optional[str] = None, headers: Optional[Dict[str, str]] = None,
                retry: Optional[bool] = None) -> Any:
        """
        Send one request and return the decoded JSON body.

        ``query`` is appended verbatim so callers can sign the exact string
        that is sent; ``body`` is sent raw for the same reason.
        """
        url = f"{self.base_url}{path}"
        if query:
            url = f"{url}?{query}"
        if retry is None:
            retry = method.upper() == "GET"
        attempts = self.max_retries if retry else 1

        last_exception: Optional[Exception] = None
        for attempt in range(attempts):
            self._rate_limit(path)
            try:
                response = requests.request(
                    method,
                    url,
                    headers=headers,
                    data=body,
                    timeout=self.timeout,
                )
                response.raise_for_status()
                return response.json()

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else None
                text = e.response.text if e.response is not None else ""

                if status_code is not None and 400 <= status_code < 500 and status_code != 429:
                    if status_code == 404:
                        logger.debug(f"{self.exchange} API 404: {path} - {text}")
                    else:
                        logger.warning(f"{self.exchange} API client error: {status_code} - {text}")
                    raise ExchangeAPIError(self.exchange, f"HTTP {status_code}: {text}",
                                           status_code=status_code, body=text, original=e)

                logger.warning(
                    f"{self.exchange} HTTP {status_code} on {path}, attempt {attempt + 1}/{attempts}"
                )
                last_exception = ExchangeAPIError(self.exchange, f"HTTP {status_code}: {text}",
                                                  status_code=status_code, body=text, original=e)

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(f"{self.exchange} network error on {path}: {e}, attempt {attempt + 1}/{attempts}")
                last_exception = ExchangeAPIError(self.exchange, f"network error: {e}", original=e)

            except ValueError as e:
                raise ExchangeAPIError(self.exchange, f"invalid JSON from {path}: {e}", original=e)

            if attempt < attempts - 1:
                backoff = (2 ** attempt) + random.uniform(0, 1)
                logger.info(f"Retrying {self.exchange} {path} in {backoff:.1f}s...")
                time.sleep(backoff)

        logger.error(f"{self.exchange}: {attempts} attempt(s) exhausted for {path}")
        raise last_exception


def to_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def decimals_for(increment: str) -> int:
    """Number of decimals implied by an increment such as '0.00001000'."""
    try:
        normalized = Decimal(str(increment)).normalize()
    except InvalidOperation:
        return 8
    exponent = normalized.as_tuple().exponent
    return max(0, -exponent) if isinstance(exponent, int) else 8


def floor_to_increment(value: float, increment: str) -> Decimal:
    """Round ``value`` down to a multiple of ``increment``."""
    step = Decimal(str(increment))
    if step <= 0:
        return Decimal(str(value))
    dec = Decimal(str(value))
    floored = (dec // step) * step
    return floored.quantize(Decimal(1).scaleb(-decimals_for(increment)), rounding=ROUND_DOWN)


def format_to_increment(value: float, increment: str) -> str:
    return f"{floor_to_increment(value, increment):f}"


def zero_filled(balances: Dict[str, Balance]) -> Dict[str, Balance]:
    """Guarantee BTC and USDC keys exist."""
    for asset in (BTC, USDC):
        balances.setdefault(asset, Balance())
    return balances


def maker_price(side: str, price: float) -> float:
    """Move a price about 0.2% away from the market to rest as a maker order."""
    if side.upper() == "BUY":
        return price * MAKER_BUY_FACTOR
    return price * MAKER_SELL_FACTOR


def clamp_to_available(exchange: str, side: str, price: float, quantity: float,
                       balances: Mapping[str, Balance],
                       tolerance: float = AVAILABLE_BALANCE_TOLERANCE) -> float:
    """
    Re-check the balance backing an order and clamp the quantity.

    SELL is backed by free BTC, BUY by free USDC at ``price``. Quantities
    above available × tolerance are reduced to that amount.

    Raises:
        InsufficientBalance: when nothing is available at all
    """
    side = side.upper()
    if side == "SELL":
        available_qty = balances.get(BTC, Balance()).free
    elif side == "BUY":
        free_usdc = balances.get(USDC, Balance()).free
        available_qty = free_usdc / price if price > 0 else 0.0
    else:
        raise ValueError(f"Unsupported order side: {side} (expected BUY or SELL)")

    if available_qty <= 0:
        raise InsufficientBalance(exchange, f"no free balance for {side} {quantity:.8f} BTC")

    limit = available_qty * tolerance
    if quantity > limit:
        logger.warning(
            f"{exchange}: {side} quantity {quantity:.8f} above available {available_qty:.8f}, "
            f"clamping to {limit:.8f}"
        )
        return limit
    return quantity


def estimate_fee(price: float, quantity: float, fee_rate: float) -> float:
    return max(0.0, price * quantity * fee_rate)


def fee_covering_sell_price(buy_price: float, quantity: float, buy_fees: float,
                            fee_rate: float, safety_margin: float) -> float:
    """
    Minimum sell price that recovers buy and sell fees plus a safety margin.

    Sell fees are estimated on the buy notional. The result is never below
    ``buy_price``.
    """
    if quantity <= 0:
        return buy_price
    if buy_fees <= 0:
        buy_fees = estimate_fee(buy_price, quantity, fee_rate)
    sell_fees = estimate_fee(buy_price, quantity, fee_rate)
    to_cover = (buy_fees + sell_fees) * (1.0 + max(0.0, safety_margin))
    return max(buy_price, buy_price + to_cover / quantity)


def epoch_to_datetime(value: Any, unit: str = "ms") -> Optional[datetime]:
    """Convert an epoch timestamp (ms, s or ns) to an aware UTC datetime."""
    number = to_float(value, default=-1.0)
    if number <= 0:
        return None
    divisor = {"ms": 1000.0, "s": 1.0, "ns": 1e9}[unit]
    return datetime.fromtimestamp(number / divisor, tz=timezone.utc)
