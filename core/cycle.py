"""
cyclebot Core: Cycle entity and state machine

One Cycle is a single buy -> sell round trip on one exchange.

States: buy -> sell -> completed, or buy/sell -> cancelled

Provides:
- Transition validation (status never moves backward)
- Financial derivations (profit, exact gain)
- Document (de)serialization in the stored camelCase format
- Accumulation audit record
"""

from enum import Enum
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any
import logging

from core.exceptions import InvalidTransition

logger = logging.getLogger(__name__)

SUPPORTED_EXCHANGES = ("BINANCE", "MEXC", "KUCOIN", "KRAKEN")


class CycleStatus(Enum):
    """Cycle lifecycle states"""
    BUY = "buy"                # Buy order placed, waiting for fill
    SELL = "sell"              # Buy filled, sell order placed (or pending placement)
    COMPLETED = "completed"    # Sell filled
    CANCELLED = "cancelled"    # Abandoned; row is deleted right after


ALLOWED_TRANSITIONS = {
    CycleStatus.BUY.value: {CycleStatus.SELL.value, CycleStatus.CANCELLED.value},
    CycleStatus.SELL.value: {CycleStatus.COMPLETED.value, CycleStatus.CANCELLED.value},
    CycleStatus.COMPLETED.value: set(),
    CycleStatus.CANCELLED.value: set(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> str:
    """RFC 3339 string, or "" for an unset timestamp."""
    if value is None:
        return ""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an RFC 3339 string; empty or malformed input yields None."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.debug(f"Unparseable timestamp {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def can_transition(old_status: str, new_status: str) -> bool:
    """True when old_status -> new_status is a forward move."""
    return new_status in ALLOWED_TRANSITIONS.get(old_status, set())


@dataclass
class Cycle:
    """
    One buy -> sell round trip tracked as a single record.

    ``id_int`` is assigned by the repository on first save (0 means unsaved).
    Financial fields are filled in as evidence arrives from the exchange.
    """
    exchange: str
    quantity: float
    buy_price: float
    buy_id: str = ""
    sell_price: float = 0.0
    sell_id: str = ""
    status: str = CycleStatus.BUY.value
    id_int: int = 0

    created_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    purchase_amount_usdc: float = 0.0
    sale_amount_usdc: float = 0.0
    exact_exchange_gain: float = 0.0
    buy_fees: float = 0.0
    total_fees: float = 0.0

    def __post_init__(self):
        """Validate initial state"""
        self.exchange = (self.exchange or "").upper()
        if self.exchange not in SUPPORTED_EXCHANGES:
            raise ValueError(f"Unsupported exchange: {self.exchange!r}")
        if self.status not in ALLOWED_TRANSITIONS:
            raise ValueError(f"Unknown cycle status: {self.status!r}")
        if self.quantity <= 0:
            raise ValueError("Cycle quantity must be positive")
        if self.status == CycleStatus.BUY.value and self.sell_id:
            raise ValueError("sell_id must be empty while status is buy")
        if self.status != CycleStatus.COMPLETED.value and self.completed_at is not None:
            raise ValueError("completed_at is only set on completed cycles")

    def is_terminal(self) -> bool:
        return self.status in (CycleStatus.COMPLETED.value, CycleStatus.CANCELLED.value)

    def is_active(self) -> bool:
        return self.status in (CycleStatus.BUY.value, CycleStatus.SELL.value)

    def transition_to(self, new_status: str) -> None:
        """
        Move to ``new_status``.

        Raises:
            InvalidTransition: if the move is backward or leaves a terminal state
        """
        if not can_transition(self.status, new_status):
            raise InvalidTransition(
                f"Cycle {self.id_int}: illegal transition {self.status} -> {new_status}"
            )
        logger.debug(f"Cycle {self.id_int}: {self.status} -> {new_status}")
        self.status = new_status

    def calculate_exact_gain(self) -> float:
        self.exact_exchange_gain = self.sale_amount_usdc - self.purchase_amount_usdc
        return self.exact_exchange_gain

    def calculate_profit(self) -> float:
        """Gross USDC profit; only completed cycles have one."""
        if self.status != CycleStatus.COMPLETED.value:
            return 0.0
        return (self.sell_price - self.buy_price) * self.quantity

    def calculate_profit_percentage(self) -> float:
        if self.status != CycleStatus.COMPLETED.value or self.buy_price == 0:
            return 0.0
        return self.calculate_profit() / (self.buy_price * self.quantity) * 100.0

    def net_gain(self) -> float:
        """Realized gain: exact amounts when recorded, price difference otherwise."""
        if self.status != CycleStatus.COMPLETED.value:
            return 0.0
        if self.sale_amount_usdc > 0 and self.purchase_amount_usdc > 0:
            return self.sale_amount_usdc - self.purchase_amount_usdc
        return self.calculate_profit()

    def age_days(self, now: Optional[datetime] = None) -> float:
        now = now or utcnow()
        return (now - self.created_at).total_seconds() / 86400.0

    def duration(self, now: Optional[datetime] = None) -> timedelta:
        if self.status == CycleStatus.COMPLETED.value and self.completed_at is not None:
            return self.completed_at - self.created_at
        return (now or utcnow()) - self.created_at

    def to_document(self) -> Dict[str, Any]:
        """Convert to the stored document shape"""
        return {
            "idInt": self.id_int,
            "exchange": self.exchange,
            "status": self.status,
            "quantity": self.quantity,
            "buyPrice": self.buy_price,
            "buyId": self.buy_id,
            "sellPrice": self.sell_price,
            "sellId": self.sell_id,
            "createdAt": format_timestamp(self.created_at),
            "completedAt": format_timestamp(self.completed_at),
            "purchaseAmountUSDC": self.purchase_amount_usdc,
            "saleAmountUSDC": self.sale_amount_usdc,
            "exactExchangeGain": self.exact_exchange_gain,
            "buyFees": self.buy_fees,
            "totalFees": self.total_fees,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Cycle":
        return cls(
            id_int=int(doc.get("idInt", 0)),
            exchange=doc.get("exchange", ""),
            status=doc.get("status", CycleStatus.BUY.value),
            quantity=float(doc.get("quantity", 0.0)),
            buy_price=float(doc.get("buyPrice", 0.0)),
            buy_id=str(doc.get("buyId") or ""),
            sell_price=float(doc.get("sellPrice", 0.0)),
            sell_id=str(doc.get("sellId") or ""),
            created_at=parse_timestamp(doc.get("createdAt")) or utcnow(),
            completed_at=parse_timestamp(doc.get("completedAt")),
            purchase_amount_usdc=float(doc.get("purchaseAmountUSDC", 0.0)),
            sale_amount_usdc=float(doc.get("saleAmountUSDC", 0.0)),
            exact_exchange_gain=float(doc.get("exactExchangeGain", 0.0)),
            buy_fees=float(doc.get("buyFees", 0.0)),
            total_fees=float(doc.get("totalFees", 0.0)),
        )

    def to_dto(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Read-side view for dashboards and reports."""
        dto = self.to_document()
        dto["change"] = self.calculate_profit_percentage()
        dto["age"] = self.age_days(now)
        dto["durationDays"] = self.duration(now).total_seconds() / 86400.0
        return dto

    def copy(self) -> "Cycle":
        return replace(self)


@dataclass(frozen=True)
class Accumulation:
    """Audit record of a forgone sell: BTC retained instead of sold."""
    exchange: str
    cycle_id_int: int
    quantity: float
    original_buy_price: float
    target_sell_price: float
    cancel_price: float
    deviation: float
    created_at: datetime = field(default_factory=utcnow)
    id_int: int = 0

    @property
    def target_value(self) -> float:
        """USDC value the cancelled sell would have realized."""
        return self.quantity * self.target_sell_price

    def to_document(self) -> Dict[str, Any]:
        return {
            "idInt": self.id_int,
            "exchange": self.exchange,
            "cycleIdInt": self.cycle_id_int,
            "quantity": self.quantity,
            "originalBuyPrice": self.original_buy_price,
            "targetSellPrice": self.target_sell_price,
            "cancelPrice": self.cancel_price,
            "deviation": self.deviation,
            "createdAt": format_timestamp(self.created_at),
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Accumulation":
        return cls(
            id_int=int(doc.get("idInt", 0)),
            exchange=doc.get("exchange", ""),
            cycle_id_int=int(doc.get("cycleIdInt", 0)),
            quantity=float(doc.get("quantity", 0.0)),
            original_buy_price=float(doc.get("originalBuyPrice", 0.0)),
            target_sell_price=float(doc.get("targetSellPrice", 0.0)),
            cancel_price=float(doc.get("cancelPrice", 0.0)),
            deviation=float(doc.get("deviation", 0.0)),
            created_at=parse_timestamp(doc.get("createdAt")) or utcnow(),
        )
