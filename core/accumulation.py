"""
Accumulation decision.

When the price drops far enough below a cycle's target sell price, the sell
order may be cancelled and the BTC kept, provided realized profit on that
exchange (minus what previous accumulations already consumed) covers the
full value of the forgone sell.
"""

import logging
from dataclasses import dataclass

from core.cycle import Cycle, CycleStatus

logger = logging.getLogger(__name__)


@dataclass
class AccumulationDecision:
    approve: bool
    deviation: float = 0.0
    available_profit: float = 0.0
    cycle_value: float = 0.0


def calculate_exchange_profit(exchange: str, cycles_repo) -> float:
    """Sum of realized net gains over completed cycles of ``exchange``."""
    return sum(
        cycle.net_gain()
        for cycle in cycles_repo.find_by_exchange(exchange)
        if cycle.status == CycleStatus.COMPLETED.value
    )


def price_deviation(sell_price: float, current_price: float) -> float:
    """How far (in %) the market sits below the target sell price."""
    if sell_price <= 0:
        return 0.0
    return (sell_price - current_price) / sell_price * 100.0


def check_accumulation_conditions(cycle: Cycle, current_price: float, exchange_config,
                                  cycles_repo, accu_repo) -> AccumulationDecision:
    """
    Decide whether a sell cycle may be turned into an accumulation.

    Approved only when accumulation is enabled for the exchange, the
    deviation reaches ``sell_accu_price_deviation`` and the available
    profit is at least quantity × sell price.
    """
    if not exchange_config.accumulation:
        return AccumulationDecision(approve=False)

    deviation = price_deviation(cycle.sell_price, current_price)
    if deviation < exchange_config.sell_accu_price_deviation:
        return AccumulationDecision(approve=False, deviation=deviation)

    profit = calculate_exchange_profit(cycle.exchange, cycles_repo)
    already_accumulated = accu_repo.get_total_accumulated_value(cycle.exchange)
    available = profit - already_accumulated
    cycle_value = cycle.quantity * cycle.sell_price

    approve = available >= cycle_value
    logger.info(
        f"Accumulation check cycle {cycle.id_int}: deviation {deviation:.2f}%, "
        f"available profit {available:.2f} USDC vs cycle value {cycle_value:.2f} USDC -> "
        f"{'approved' if approve else 'refused'}"
    )
    return AccumulationDecision(approve=approve, deviation=deviation,
                                available_profit=available, cycle_value=cycle_value)
