"""
Cycle creation: place a limit buy below market and start tracking it.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from core.cycle import Cycle, CycleStatus
from core.exceptions import ExchangeError, RepositoryUnavailable
from core.exchange_base import USDC, ExchangeClient
from core.order_ids import order_id_from_response, strip_mexc_prefix
from core.safe_cancel import safe_cancel
from infra.metrics import get_metrics
from tools.config_validator import BotConfig

logger = logging.getLogger(__name__)

OVERRIDE_KEYS = ("buy_offset", "sell_offset", "percent")


@dataclass
class CyclePlan:
    """Prices and size derived from the market before placing the buy."""
    price: float
    amount_usdc: float
    quantity: str
    buy_price: float
    sell_price: float


def plan_cycle(free_usdc: float, price: float, percent: float,
               buy_offset: float, sell_offset: float) -> CyclePlan:
    amount = percent * free_usdc / 100.0
    return CyclePlan(
        price=price,
        amount_usdc=amount,
        quantity=f"{amount / price:.6f}",
        buy_price=price - abs(buy_offset),
        sell_price=price + abs(sell_offset),
    )


class CycleCreator:
    """Opens new cycles on the configured exchanges."""

    def __init__(self, cycles, clients: Mapping[str, ExchangeClient], config: BotConfig):
        self.cycles = cycles
        self.clients = dict(clients)
        self.config = config
        self.metrics = get_metrics()

    def create_cycle(self, exchange: str, overrides: Optional[Dict[str, Any]] = None) -> Optional[Cycle]:
        """
        Open one cycle on ``exchange``.

        ``overrides`` may replace buy_offset, sell_offset or percent for
        this call only. Returns the saved cycle, or None when nothing was
        placed (low balance, exchange error, rejected order).

        Raises:
            RepositoryUnavailable: the buy was placed but could not be saved;
                the order has been cancelled again
        """
        name = exchange.upper()
        client = self.clients.get(name)
        if client is None:
            logger.warning(f"{name}: no client configured, cannot create a cycle")
            return None

        settings = self.config.exchange(name)
        params = {key: getattr(settings, key) for key in OVERRIDE_KEYS}
        params.update({k: float(v) for k, v in (overrides or {}).items() if k in OVERRIDE_KEYS and v})

        try:
            client.check_connection()
            free_usdc = client.get_detailed_balances()[USDC].free
            min_free = self.config.reconcile.min_free_usdc
            if free_usdc < min_free:
                logger.warning(f"{name}: free USDC {free_usdc:.2f} below minimum {min_free:.2f}, skipping")
                return None
            price = client.get_last_price_btc()
        except ExchangeError as e:
            logger.error(f"{name}: cannot prepare new cycle: {e}")
            return None

        plan = plan_cycle(free_usdc, price, params["percent"], params["buy_offset"], params["sell_offset"])
        if float(plan.quantity) <= 0:
            logger.warning(f"{name}: computed quantity {plan.quantity} is zero, skipping")
            return None
        logger.info(f"{name}: new cycle {plan.amount_usdc:.2f} USDC = {plan.quantity} BTC, "
                    f"buy {plan.buy_price:.2f}, sell {plan.sell_price:.2f} (market {price:.2f})")

        try:
            response = client.create_order("BUY", f"{plan.buy_price:.2f}", plan.quantity)
        except ExchangeError as e:
            logger.error(f"{name}: buy order failed: {e}")
            self.metrics.record_order(name, "buy", ok=False)
            return None

        order_id = order_id_from_response(response)
        if not order_id:
            logger.error(f"{name}: no order id in buy response {response!r}")
            self.metrics.record_order(name, "buy", ok=False)
            return None
        if name == "MEXC":
            order_id = strip_mexc_prefix(order_id)
        self.metrics.record_order(name, "buy", ok=True)

        cycle = Cycle(
            exchange=name,
            quantity=float(plan.quantity),
            buy_price=plan.buy_price,
            buy_id=order_id,
            sell_price=plan.sell_price,
            status=CycleStatus.BUY.value,
        )
        try:
            self.cycles.save(cycle)
        except RepositoryUnavailable:
            logger.error(f"{name}: cycle not saved, cancelling buy order {order_id}")
            outcome = safe_cancel(client, client.normalize_order_id(order_id), name)
            if not outcome.success:
                logger.error(f"{name}: buy order {order_id} left open on the exchange: {outcome.error}")
            raise

        logger.info(f"{name}: cycle {cycle.id_int} created (buy order {order_id})")
        return cycle

    def create_cycles(self, exchange: Optional[str] = None,
                      overrides: Optional[Dict[str, Any]] = None,
                      deadline: Optional[float] = None) -> List[Cycle]:
        """
        Create one cycle per enabled exchange (or just ``exchange``).

        Exchanges not reached before ``deadline`` (time.monotonic()) are skipped.
        """
        names = [exchange.upper()] if exchange else self.config.enabled_exchanges()
        created = []
        for index, name in enumerate(names):
            if deadline is not None and time.monotonic() >= deadline:
                logger.warning(f"Cycle creation deadline reached, skipping {', '.join(names[index:])}")
                break
            cycle = self.create_cycle(name, overrides)
            if cycle is not None:
                created.append(cycle)
        return created
