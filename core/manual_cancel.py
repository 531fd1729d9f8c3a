"""
User-invoked cycle cancellation.

The exchange order is cancelled best-effort; the cycle row is deleted
afterwards unless the user refuses a force delete after a failed cancel.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

from core.cycle import CycleStatus
from core.exchange_base import ExchangeClient
from core.safe_cancel import safe_cancel

logger = logging.getLogger(__name__)


@dataclass
class ManualCancelResult:
    cycle_id: int
    deleted: bool = False
    order_cancelled: bool = False
    error: str = ""


def _always_delete(error: str) -> bool:
    return True


def cancel_cycle(cycles, clients: Mapping[str, ExchangeClient], cycle_id: int,
                 exchange: Optional[str] = None,
                 confirm_force_delete: Callable[[str], bool] = _always_delete) -> ManualCancelResult:
    """
    Cancel the open order of cycle ``cycle_id`` and delete the cycle.

    ``confirm_force_delete`` receives the cancel error and decides whether
    the row is deleted anyway.
    """
    result = ManualCancelResult(cycle_id=cycle_id)
    cycle = cycles.find_by_id_int(cycle_id)
    if cycle is None:
        result.error = f"cycle {cycle_id} not found"
        return result
    if exchange and cycle.exchange != exchange.upper():
        result.error = f"cycle {cycle_id} belongs to {cycle.exchange}, not {exchange.upper()}"
        return result

    if cycle.is_active():
        order_id = cycle.buy_id if cycle.status == CycleStatus.BUY.value else cycle.sell_id
        client = clients.get(cycle.exchange)
        if client is None:
            result.error = f"no client configured for {cycle.exchange}"
        elif not order_id:
            logger.info(f"Cycle {cycle_id}: no {cycle.status} order id, deleting record only")
        else:
            outcome = safe_cancel(client, client.normalize_order_id(order_id), cycle.exchange)
            result.order_cancelled = outcome.success
            if not outcome.success:
                result.error = outcome.error or "cancel failed"
    else:
        logger.info(f"Cycle {cycle_id} is {cycle.status}, no order to cancel")

    if result.error and not confirm_force_delete(result.error):
        logger.warning(f"Cycle {cycle_id}: cancel failed and force delete refused: {result.error}")
        return result

    result.deleted = cycles.delete_by_id_int(cycle_id)
    if result.deleted:
        logger.info(f"Cycle {cycle_id} deleted")
    return result


def cancel_all_buys(cycles, clients: Mapping[str, ExchangeClient],
                    exchange: Optional[str] = None) -> Dict[str, int]:
    """
    Cancel every buy-state cycle (of one exchange, when given).

    Only cycles whose order cancel succeeded are deleted.
    """
    counts = {"cancelled": 0, "failed": 0}
    wanted = exchange.upper() if exchange else None
    for cycle in cycles.find_by_status(CycleStatus.BUY.value):
        if wanted and cycle.exchange != wanted:
            continue
        client = clients.get(cycle.exchange)
        if client is None:
            logger.warning(f"Cycle {cycle.id_int}: no client for {cycle.exchange}")
            counts["failed"] += 1
            continue
        outcome = safe_cancel(client, client.normalize_order_id(cycle.buy_id), cycle.exchange)
        if outcome.success:
            cycles.delete_by_id_int(cycle.id_int)
            counts["cancelled"] += 1
        else:
            logger.error(f"Cycle {cycle.id_int}: buy cancel failed: {outcome.error}")
            counts["failed"] += 1
    logger.info(f"Cancel all buys: {counts['cancelled']} cancelled, {counts['failed']} failed")
    return counts
