"""
Exchange-specific order-id normalization.

Every normalizer is idempotent: normalizing an already normalized id
returns it unchanged.
"""

import re
from typing import Any, Callable, Dict, List

MEXC_PREFIX = "C02__"
KUCOIN_ID_LENGTH = 24

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")
_NON_DIGIT = re.compile(r"[^0-9]")
_NON_KRAKEN = re.compile(r"[^a-zA-Z0-9-]")
_KUCOIN_TOKEN = re.compile(r"[a-zA-Z0-9]{%d}" % KUCOIN_ID_LENGTH)
_DIGIT_GROUP = re.compile(r"[0-9]+")


def digits_only(order_id: str) -> str:
    return _NON_DIGIT.sub("", order_id or "")


def first_digit_group(order_id: str) -> str:
    match = _DIGIT_GROUP.search(order_id or "")
    return match.group(0) if match else ""


def strip_mexc_prefix(order_id: str) -> str:
    order_id = (order_id or "").strip()
    if MEXC_PREFIX in order_id:
        return order_id.split(MEXC_PREFIX, 1)[1]
    return order_id


def _clean_mexc(order_id: str) -> str:
    if order_id.startswith(MEXC_PREFIX):
        return order_id
    if MEXC_PREFIX in order_id:
        return MEXC_PREFIX + order_id.split(MEXC_PREFIX, 1)[1]
    cleaned = _NON_ALNUM.sub("", order_id)
    return MEXC_PREFIX + cleaned if cleaned else order_id


def _clean_binance(order_id: str) -> str:
    return digits_only(order_id) or order_id


def _clean_kucoin(order_id: str) -> str:
    if len(order_id) > KUCOIN_ID_LENGTH:
        match = _KUCOIN_TOKEN.search(order_id)
        if match:
            return match.group(0)
    return order_id


def _clean_kraken(order_id: str) -> str:
    return _NON_KRAKEN.sub("", order_id) or order_id


ORDER_ID_CLEANERS: Dict[str, Callable[[str], str]] = {
    "MEXC": _clean_mexc,
    "BINANCE": _clean_binance,
    "KUCOIN": _clean_kucoin,
    "KRAKEN": _clean_kraken,
}


def clean_order_id(order_id: str, exchange: str = "BINANCE") -> str:
    """
    Normalize a stored order id into the form the exchange expects.

    Empty input stays empty. Unknown exchanges get the id trimmed only.
    """
    if not order_id:
        return ""
    order_id = str(order_id).strip()
    cleaner = ORDER_ID_CLEANERS.get((exchange or "BINANCE").upper())
    return cleaner(order_id) if cleaner else order_id


def id_variants(order_id: str, exchange: str) -> List[str]:
    """
    Candidate ids to try when cancelling, most likely first, no duplicates.

    Only MEXC ids are ambiguous (the prefix may or may not be expected);
    other exchanges get the id as given.
    """
    order_id = (order_id or "").strip()
    if not order_id:
        return []
    if (exchange or "").upper() != "MEXC" and MEXC_PREFIX not in order_id:
        return [order_id]

    bare = strip_mexc_prefix(order_id)
    candidates = [
        order_id,
        bare,
        MEXC_PREFIX + bare if bare else "",
        digits_only(bare),
    ]
    variants: List[str] = []
    for candidate in candidates:
        if candidate and candidate not in variants:
            variants.append(candidate)
    return variants


def order_id_from_response(response: Any) -> str:
    """
    Pull the order id out of a create-order response.

    Exchanges answer with ``orderId`` as a string or a number (or ``id``);
    anything else yields "".
    """
    if not isinstance(response, dict):
        return ""
    for key in ("orderId", "id"):
        value = response.get(key)
        if isinstance(value, bool) or value is None:
            continue
        if isinstance(value, float):
            return str(int(value))
        if isinstance(value, (int, str)) and str(value).strip():
            return str(value).strip()
    return ""
