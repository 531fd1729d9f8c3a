"""
Safe Cancel: idempotent, multi-strategy order cancellation.

Exchanges routinely answer a cancel for an order that is already filled or
already cancelled with an error. Those answers are mapped to success here,
in one table, so the reconciliation engine and the manual cancel commands
share a single definition of "the order is gone".
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from core.order_ids import id_variants

logger = logging.getLogger(__name__)

# phrase (lowercase) -> outcome it signals
DISGUISED_SUCCESS_PHRASES = {
    "order cancelled": "already cancelled",
    "cancelled": "already cancelled",
    "canceled": "already cancelled",
    "already closed": "already closed",
    "does not exist": "already gone",
    "not found": "already gone",
    "unknown order": "already filled or cancelled",
}


@dataclass
class CancelOutcome:
    """Result of a safe cancel attempt"""
    success: bool
    order_id_used: Optional[str] = None
    error: Optional[str] = None
    reason: str = ""
    attempts: List[str] = field(default_factory=list)


def classify_cancel_error(message: str) -> Tuple[bool, str]:
    """
    Check an error text against the disguised-success table.

    Returns:
        (is_success, outcome description)
    """
    lowered = (message or "").lower()
    for phrase, outcome in DISGUISED_SUCCESS_PHRASES.items():
        if phrase in lowered:
            return True, outcome
    return False, ""


def is_disguised_success(message: str) -> bool:
    return classify_cancel_error(message)[0]


def _cancel_result_failed(response) -> Optional[str]:
    """Some clients report failure in the payload instead of raising."""
    if isinstance(response, dict) and response.get("success") is False:
        return str(response.get("error") or "cancel reported failure")
    return None


def safe_cancel(client, order_id: str, exchange: str) -> CancelOutcome:
    """
    Cancel ``order_id`` through ``client`` tolerating vendor quirks.

    Id variants are tried in order (as given, prefix stripped, prefix
    added, digits only; only ambiguous MEXC ids produce more than one) and
    the first success wins. An error whose text means "already gone" counts
    as success. Failure is reported only when every variant failed.
    """
    variants = id_variants(order_id, exchange)
    if not variants:
        return CancelOutcome(success=False, error=f"empty order id for {exchange}")

    outcome = CancelOutcome(success=False)
    last_error = ""
    for candidate in variants:
        outcome.attempts.append(candidate)
        try:
            response = client.cancel_order(candidate)
        except Exception as e:
            message = str(e)
            disguised, reason = classify_cancel_error(message)
            if disguised:
                logger.info(
                    "Cancel %s on %s returned '%s'; treating as %s",
                    candidate, exchange, message, reason,
                )
                outcome.success = True
                outcome.order_id_used = candidate
                outcome.reason = reason
                return outcome
            logger.debug(f"Cancel attempt {candidate} on {exchange} failed: {message}")
            last_error = message
            continue

        failure = _cancel_result_failed(response)
        if failure:
            disguised, reason = classify_cancel_error(failure)
            if disguised:
                outcome.success = True
                outcome.order_id_used = candidate
                outcome.reason = reason
                return outcome
            last_error = failure
            continue

        logger.info(f"Cancelled order {candidate} on {exchange}")
        outcome.success = True
        outcome.order_id_used = candidate
        outcome.reason = "cancelled"
        return outcome

    outcome.error = last_error or "cancel failed"
    logger.warning(
        f"Could not cancel order {order_id} on {exchange} "
        f"(tried {', '.join(outcome.attempts)}): {outcome.error}"
    )
    return outcome
