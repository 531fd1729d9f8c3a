"""
cyclebot Core: Reconciliation engine

One pass walks every active cycle of every enabled exchange and moves it
forward using what the exchange reports:

    buy  -> sell       buy order filled and the BTC is really there
    buy  -> cancelled  buy too old, price ran away, or order vanished
    sell -> completed  sell order filled
    sell -> (deleted)  accumulation approved, BTC retained

Cycles are processed one at a time. A failure on one cycle is logged and
the pass continues with the next one.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional

from core.accumulation import AccumulationDecision, check_accumulation_conditions
from core.cycle import Accumulation, Cycle, CycleStatus, format_timestamp, utcnow
from core.exceptions import ExchangeError, OrderNotFound, RepositoryUnavailable
from core.exchange_base import BTC, AVAILABLE_BALANCE_TOLERANCE, Balance, ExchangeClient, estimate_fee
from core.order_ids import order_id_from_response
from core.safe_cancel import CancelOutcome, safe_cancel
from infra.metrics import PassStats, get_metrics
from tools.config_validator import BotConfig, ExchangeSettings

logger = logging.getLogger(__name__)

# Used when the exchange gives no usable completion time
ESTIMATED_COMPLETION_OFFSETS: Dict[str, timedelta] = {
    "KUCOIN": timedelta(hours=6),
    "MEXC": timedelta(hours=2),
    "BINANCE": timedelta(hours=4),
    "KRAKEN": timedelta(hours=5),
}
DEFAULT_COMPLETION_OFFSET = timedelta(hours=3)

# MEXC reports FILLED before balances settle
MEXC_BALANCE_RATIO = 0.95
BALANCE_RATIO = AVAILABLE_BALANCE_TOLERANCE
QUANTITY_DRIFT = 0.001
MAKER_SAFETY_FACTOR = 1.001


class CycleOutcome(Enum):
    WAITING = "waiting"
    SELL_PLACED = "sell_placed"
    SELL_PENDING = "sell_pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ACCUMULATED = "accumulated"
    DEFERRED = "deferred"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class ReconcileSummary:
    """Counts for one reconciliation pass"""
    processed: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)
    skipped_exchanges: List[str] = field(default_factory=list)
    timed_out: bool = False

    def record(self, outcome: CycleOutcome) -> None:
        self.processed += 1
        self.outcomes[outcome.value] = self.outcomes.get(outcome.value, 0) + 1

    def count(self, outcome: CycleOutcome) -> int:
        return self.outcomes.get(outcome.value, 0)


def estimated_completion_time(cycle: Cycle) -> datetime:
    offset = ESTIMATED_COMPLETION_OFFSETS.get(cycle.exchange, DEFAULT_COMPLETION_OFFSET)
    return cycle.created_at + offset


class ReconciliationEngine:
    """
    Drives cycles through their state machine.

    Args:
        cycles: CycleRepository
        accumulations: AccumulationRepository
        clients: exchange name -> ExchangeClient
        config: validated BotConfig
        sleep: injectable sleep for the balance re-check wait
        clock: injectable "now"
    """

    def __init__(self, cycles, accumulations, clients: Mapping[str, ExchangeClient],
                 config: BotConfig, sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], datetime] = utcnow):
        self.cycles = cycles
        self.accumulations = accumulations
        self.clients = dict(clients)
        self.config = config
        self.sleep = sleep
        self.clock = clock
        self.metrics = get_metrics()

    # ----- pass -----

    def run(self, exchange: Optional[str] = None, deadline: Optional[float] = None) -> ReconcileSummary:
        """
        Reconcile every active cycle (of one exchange, when given).

        ``deadline`` is a time.monotonic() value; once reached no further
        exchange or cycle is picked up and the summary is marked timed out.
        """
        summary = ReconcileSummary()
        names = [exchange.upper()] if exchange else list(self.clients)
        active = [c for c in self.cycles.find_all(descending=False) if c.is_active()]
        logger.info(f"Reconciliation pass: {len(active)} active cycles")

        for name in names:
            client = self.clients.get(name)
            if client is None:
                logger.warning(f"No client for {name}; skipping its cycles")
                summary.skipped_exchanges.append(name)
                continue
            exchange_cycles = [c for c in active if c.exchange == name]
            if not exchange_cycles:
                continue
            if self._deadline_passed(deadline, summary):
                break
            self._run_exchange(name, client, exchange_cycles, summary, deadline)

        logger.info(f"Reconciliation done: {summary.processed} cycles, outcomes={summary.outcomes}")
        return summary

    def _run_exchange(self, name: str, client: ExchangeClient, cycles: List[Cycle],
                      summary: ReconcileSummary, deadline: Optional[float] = None) -> None:
        started = time.monotonic()
        try:
            price = client.get_last_price_btc()
            balances = client.get_detailed_balances()
        except ExchangeError as e:
            logger.error(f"{name}: cannot read price/balances, skipping this pass: {e}")
            summary.skipped_exchanges.append(name)
            self.metrics.observe_pass(PassStats(name, 0, 0, 1, time.monotonic() - started))
            return

        logger.info(f"{name}: price {price:.2f} USDC, free BTC {balances[BTC].free:.8f}, "
                    f"{len(cycles)} active cycles")
        errors = 0
        transitions = 0
        for cycle in cycles:
            if self._deadline_passed(deadline, summary):
                break
            outcome = self.process_cycle(cycle, client, price, balances)
            summary.record(outcome)
            if outcome == CycleOutcome.ERROR:
                errors += 1
            elif outcome not in (CycleOutcome.WAITING, CycleOutcome.DEFERRED, CycleOutcome.SKIPPED):
                transitions += 1
            if outcome in (CycleOutcome.SELL_PLACED, CycleOutcome.ACCUMULATED):
                balances = self._refresh_balances(client, balances)

        self.metrics.observe_pass(PassStats(name, len(cycles), transitions, errors,
                                            time.monotonic() - started))

    def _refresh_balances(self, client: ExchangeClient,
                          current: Dict[str, Balance]) -> Dict[str, Balance]:
        try:
            return client.get_detailed_balances()
        except ExchangeError as e:
            logger.warning(f"{client.name}: balance refresh failed, keeping previous snapshot: {e}")
            return current

    def process_cycle(self, cycle: Cycle, client: ExchangeClient, price: float,
                      balances: Dict[str, Balance]) -> CycleOutcome:
        """Process one cycle; unexpected failures are contained here."""
        try:
            if cycle.status == CycleStatus.BUY.value:
                return self.process_buy_cycle(cycle, client, price, balances)
            if cycle.status == CycleStatus.SELL.value:
                return self.process_sell_cycle(cycle, client, price, balances)
            return CycleOutcome.SKIPPED
        except RepositoryUnavailable:
            raise
        except Exception as e:
            logger.error(f"Cycle {cycle.id_int} ({cycle.exchange}) failed: {e}", exc_info=True)
            return CycleOutcome.ERROR

    # ----- buy side -----

    def process_buy_cycle(self, cycle: Cycle, client: ExchangeClient, price: float,
                          balances: Dict[str, Balance]) -> CycleOutcome:
        settings = self.config.exchange(cycle.exchange)
        order_id = client.normalize_order_id(cycle.buy_id)

        age = cycle.age_days(self.clock())
        if settings.buy_max_days > 0 and age >= settings.buy_max_days:
            logger.info(f"Cycle {cycle.id_int}: buy order is {age:.1f} days old "
                        f"(max {settings.buy_max_days}), cancelling")
            self._cancel_order(client, order_id, cycle.exchange)
            return self._cancel_cycle(cycle, "buy order expired")

        if not order_id:
            return self._cancel_cycle(cycle, "no buy order id")

        try:
            order = client.get_order_by_id(order_id)
        except OrderNotFound as e:
            logger.warning(f"Cycle {cycle.id_int}: buy order {order_id} not found ({e})")
            return self._cancel_cycle(cycle, "buy order not found")
        except ExchangeError as e:
            logger.warning(f"Cycle {cycle.id_int}: buy order lookup failed, retrying next pass: {e}")
            return CycleOutcome.SKIPPED

        if not client.is_filled(order):
            limit = cycle.buy_price * (1 + settings.buy_max_price_deviation / 100.0)
            if settings.buy_max_price_deviation > 0 and price > limit:
                logger.info(f"Cycle {cycle.id_int}: price {price:.2f} above {limit:.2f} "
                            f"(+{settings.buy_max_price_deviation}%), cancelling buy")
                self._cancel_order(client, order_id, cycle.exchange)
                return self._cancel_cycle(cycle, "price moved away from buy")
            return CycleOutcome.WAITING

        quantity = self._filled_quantity(cycle, client, order)
        balances = self._confirm_btc(cycle, client, quantity, balances)
        if balances is None:
            return CycleOutcome.DEFERRED

        buy_fees = self._order_fees(client, order_id, cycle.buy_price, quantity, settings)
        sell_price = self.target_sell_price(cycle.buy_price, quantity, order_id, price, client, settings)
        sell_quantity = self._sell_quantity(quantity, balances)

        sell_id = self._place_sell(cycle, client, sell_price, sell_quantity)
        cycle.transition_to(CycleStatus.SELL.value)
        self.cycles.update_by_id_int(cycle.id_int, {
            "status": cycle.status,
            "quantity": quantity,
            "sellPrice": sell_price,
            "sellId": sell_id,
            "buyFees": buy_fees,
            "purchaseAmountUSDC": cycle.buy_price * quantity,
        })
        self.metrics.record_transition(cycle.exchange, CycleStatus.BUY.value, CycleStatus.SELL.value)
        if not sell_id:
            logger.warning(f"Cycle {cycle.id_int}: moved to sell without a sell order; will retry placement")
            return CycleOutcome.SELL_PENDING
        logger.info(f"Cycle {cycle.id_int}: buy filled, sell {sell_id} placed at {sell_price:.2f}")
        return CycleOutcome.SELL_PLACED

    def _filled_quantity(self, cycle: Cycle, client: ExchangeClient, order) -> float:
        executed = client.executed_quantity(order)
        if not executed or executed <= 0:
            return cycle.quantity
        drift = abs(executed - cycle.quantity) / cycle.quantity
        if drift > QUANTITY_DRIFT:
            logger.info(f"Cycle {cycle.id_int}: executed {executed:.8f} BTC differs from "
                        f"{cycle.quantity:.8f} ({drift * 100:.2f}%), using executed quantity")
            return executed
        return cycle.quantity

    def _confirm_btc(self, cycle: Cycle, client: ExchangeClient, quantity: float,
                     balances: Dict[str, Balance]) -> Optional[Dict[str, Balance]]:
        """Balances once the bought BTC is visible, or None to defer."""
        if cycle.exchange == "MEXC":
            needed = quantity * MEXC_BALANCE_RATIO
            if balances[BTC].free < needed:
                wait = self.config.reconcile.balance_recheck_seconds
                logger.info(f"Cycle {cycle.id_int}: MEXC reports filled but free BTC "
                            f"{balances[BTC].free:.8f} < {needed:.8f}; rechecking in {wait}s")
                self.sleep(wait)
                balances = self._refresh_balances(client, balances)
        else:
            needed = quantity * BALANCE_RATIO

        if balances[BTC].free < needed:
            logger.warning(f"Cycle {cycle.id_int}: free BTC {balances[BTC].free:.8f} below "
                           f"{needed:.8f}; deferring sell until balances settle")
            return None
        return balances

    @staticmethod
    def _sell_quantity(quantity: float, balances: Dict[str, Balance]) -> float:
        free = balances[BTC].free
        if quantity * BALANCE_RATIO <= free < quantity:
            return free
        return quantity

    def _order_fees(self, client: ExchangeClient, order_id: str, price: float,
                    quantity: float, settings: ExchangeSettings) -> float:
        try:
            return client.get_order_fees(order_id)
        except ExchangeError as e:
            estimate = estimate_fee(price, quantity, settings.fee_rate)
            logger.info(f"{client.name}: real fees unavailable for {order_id} ({e}), "
                        f"estimated {estimate:.6f} USDC")
            return estimate

    def target_sell_price(self, buy_price: float, quantity: float, buy_order_id: str,
                          current_price: float, client: ExchangeClient,
                          settings: ExchangeSettings) -> float:
        """Highest of offset target, maker floor and fee-covering price."""
        standard = buy_price + settings.sell_offset
        maker_floor = current_price * MAKER_SAFETY_FACTOR
        try:
            fee_floor = client.adjust_sell_price_for_fees(buy_price, quantity, buy_order_id)
        except ExchangeError as e:
            logger.warning(f"{client.name}: fee-adjusted sell price unavailable: {e}")
            fee_floor = 0.0
        sell_price = max(standard, maker_floor, fee_floor)
        logger.debug(f"Sell price {sell_price:.2f} (offset {standard:.2f}, maker {maker_floor:.2f}, "
                     f"fees {fee_floor:.2f})")
        return sell_price

    def _place_sell(self, cycle: Cycle, client: ExchangeClient, sell_price: float,
                    quantity: float) -> str:
        """Place the sell; returns its id or "" when placement failed."""
        try:
            response = client.create_order("SELL", f"{sell_price:.2f}", f"{quantity:.8f}")
        except ExchangeError as e:
            logger.error(f"Cycle {cycle.id_int}: sell order placement failed: {e}")
            self.metrics.record_order(cycle.exchange, "sell", ok=False)
            return ""
        sell_id = order_id_from_response(response)
        if not sell_id:
            logger.error(f"Cycle {cycle.id_int}: no order id in sell response {response!r}")
        self.metrics.record_order(cycle.exchange, "sell", ok=bool(sell_id))
        return sell_id

    # ----- sell side -----

    def process_sell_cycle(self, cycle: Cycle, client: ExchangeClient, price: float,
                           balances: Dict[str, Balance]) -> CycleOutcome:
        settings = self.config.exchange(cycle.exchange)

        decision = check_accumulation_conditions(cycle, price, settings, self.cycles, self.accumulations)
        if decision.approve:
            return self._accumulate(cycle, client, price, balances, decision, settings)

        if not cycle.sell_id:
            sell_id = self._recreate_sell(cycle, client, price, balances, settings)
            return CycleOutcome.SELL_PLACED if sell_id else CycleOutcome.DEFERRED

        order_id = client.normalize_order_id(cycle.sell_id)
        try:
            order = client.get_order_by_id(order_id)
        except ExchangeError as e:
            logger.warning(f"Cycle {cycle.id_int}: sell order {order_id} lookup failed: {e}")
            return CycleOutcome.SKIPPED

        if not client.is_filled(order):
            return CycleOutcome.WAITING
        return self._complete(cycle, client, order, order_id, settings)

    def _recreate_sell(self, cycle: Cycle, client: ExchangeClient, price: float,
                       balances: Dict[str, Balance], settings: ExchangeSettings) -> str:
        """Place a sell for a cycle whose earlier placement failed."""
        needed = cycle.quantity * BALANCE_RATIO
        if balances[BTC].free < needed:
            logger.warning(f"Cycle {cycle.id_int}: cannot place sell, free BTC "
                           f"{balances[BTC].free:.8f} < {needed:.8f}")
            return ""

        buy_order_id = client.normalize_order_id(cycle.buy_id)
        sell_price = max(cycle.sell_price,
                         self.target_sell_price(cycle.buy_price, cycle.quantity, buy_order_id,
                                                price, client, settings))
        sell_id = self._place_sell(cycle, client, sell_price, self._sell_quantity(cycle.quantity, balances))
        if sell_id:
            cycle.sell_id = sell_id
            cycle.sell_price = sell_price
            self.cycles.update_by_id_int(cycle.id_int, {"sellId": sell_id, "sellPrice": sell_price})
            logger.info(f"Cycle {cycle.id_int}: sell {sell_id} placed at {sell_price:.2f}")
        return sell_id

    def _accumulate(self, cycle: Cycle, client: ExchangeClient, price: float,
                    balances: Dict[str, Balance], decision: AccumulationDecision,
                    settings: ExchangeSettings) -> CycleOutcome:
        if not cycle.sell_id and not self._recreate_sell(cycle, client, price, balances, settings):
            logger.warning(f"Cycle {cycle.id_int}: accumulation approved but no sell order to cancel yet")
            return CycleOutcome.DEFERRED

        outcome = self._cancel_order(client, client.normalize_order_id(cycle.sell_id), cycle.exchange)
        if not outcome.success:
            logger.warning(f"Cycle {cycle.id_int}: accumulation postponed, sell cancel failed: {outcome.error}")
            return CycleOutcome.SKIPPED

        record = Accumulation(
            exchange=cycle.exchange,
            cycle_id_int=cycle.id_int,
            quantity=cycle.quantity,
            original_buy_price=cycle.buy_price,
            target_sell_price=cycle.sell_price,
            cancel_price=price,
            deviation=decision.deviation,
            created_at=self.clock(),
        )
        try:
            self.accumulations.save(record)
        except (RepositoryUnavailable, OSError) as e:
            # exchange order is already gone; the cycle row must go too
            logger.error(f"Cycle {cycle.id_int}: sell cancelled but accumulation record not saved: {e}")

        self.cycles.delete_by_id_int(cycle.id_int)
        self.metrics.record_transition(cycle.exchange, CycleStatus.SELL.value, "accumulated")
        logger.info(f"Cycle {cycle.id_int}: accumulated {cycle.quantity:.8f} BTC on {cycle.exchange} "
                    f"(deviation {decision.deviation:.2f}%)")
        return CycleOutcome.ACCUMULATED

    def _complete(self, cycle: Cycle, client: ExchangeClient, order, order_id: str,
                  settings: ExchangeSettings) -> CycleOutcome:
        sell_fees = self._order_fees(client, order_id, cycle.sell_price, cycle.quantity, settings)
        completed_at = self._completion_time(cycle, client, order)

        cycle.transition_to(CycleStatus.COMPLETED.value)
        cycle.completed_at = completed_at
        cycle.total_fees = cycle.buy_fees + sell_fees
        cycle.sale_amount_usdc = cycle.sell_price * cycle.quantity
        if cycle.purchase_amount_usdc <= 0:
            cycle.purchase_amount_usdc = cycle.buy_price * cycle.quantity
        cycle.calculate_exact_gain()

        self.cycles.update_by_id_int(cycle.id_int, {
            "status": cycle.status,
            "completedAt": format_timestamp(completed_at),
            "totalFees": cycle.total_fees,
            "saleAmountUSDC": cycle.sale_amount_usdc,
            "purchaseAmountUSDC": cycle.purchase_amount_usdc,
            "exactExchangeGain": cycle.exact_exchange_gain,
        })
        self.metrics.record_transition(cycle.exchange, CycleStatus.SELL.value, CycleStatus.COMPLETED.value)
        logger.info(f"Cycle {cycle.id_int}: completed, gain {cycle.exact_exchange_gain:.2f} USDC, "
                    f"fees {cycle.total_fees:.4f} USDC")
        return CycleOutcome.COMPLETED

    def _completion_time(self, cycle: Cycle, client: ExchangeClient, order) -> datetime:
        try:
            stamp, ok = client.completion_time(order, cycle.created_at)
        except (TypeError, ValueError) as e:
            logger.debug(f"Cycle {cycle.id_int}: unreadable completion time: {e}")
            stamp, ok = None, False
        if ok and stamp is not None and stamp > cycle.created_at:
            return stamp
        estimated = estimated_completion_time(cycle)
        logger.warning(f"Cycle {cycle.id_int}: no exchange completion time, "
                       f"using estimate {format_timestamp(estimated)}")
        return estimated

    # ----- shared -----

    @staticmethod
    def _deadline_passed(deadline: Optional[float], summary: ReconcileSummary) -> bool:
        if deadline is None or time.monotonic() < deadline:
            return False
        if not summary.timed_out:
            logger.warning(f"Reconciliation deadline reached after {summary.processed} cycles; "
                           f"remaining cycles wait for the next pass")
        summary.timed_out = True
        return True

    def _cancel_order(self, client: ExchangeClient, order_id: str, exchange: str) -> CancelOutcome:
        if not order_id:
            return CancelOutcome(success=True, reason="no order id")
        outcome = safe_cancel(client, order_id, exchange)
        self.metrics.record_order(exchange, "cancel", ok=outcome.success)
        return outcome

    def _cancel_cycle(self, cycle: Cycle, reason: str) -> CycleOutcome:
        """Mark cancelled, then drop the row."""
        old_status = cycle.status
        cycle.transition_to(CycleStatus.CANCELLED.value)
        self.cycles.update_by_id_int(cycle.id_int, {"status": cycle.status})
        self.cycles.delete_by_id_int(cycle.id_int)
        self.metrics.record_transition(cycle.exchange, old_status, CycleStatus.CANCELLED.value)
        logger.info(f"Cycle {cycle.id_int} cancelled and removed: {reason}")
        return CycleOutcome.CANCELLED
