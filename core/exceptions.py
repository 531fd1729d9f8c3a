"""Shared exception types for the cycle bot."""

from typing import Optional


class CycleBotError(Exception):
    """Base class for every error raised by cyclebot code."""


class ExchangeError(CycleBotError):
    """An exchange call failed or returned something unusable."""

    def __init__(self, exchange: str, message: str, original: Optional[Exception] = None):
        super().__init__(f"{exchange}: {message}")
        self.exchange = exchange
        self.original = original


class ExchangeAPIError(ExchangeError):
    """Non-success HTTP status or error envelope returned by an exchange."""

    def __init__(self, exchange: str, message: str, status_code: Optional[int] = None,
                 body: str = "", original: Optional[Exception] = None):
        super().__init__(exchange, message, original)
        self.status_code = status_code
        self.body = body


class OrderNotFound(ExchangeError):
    """The exchange has no record of the order in any queried endpoint."""


class OrderRejected(ExchangeError):
    """Order refused locally before sending (lot size, min notional, ...)."""


class InsufficientBalance(ExchangeError):
    """Available balance is too small for the requested order."""


class UnsupportedExchange(CycleBotError):
    """Exchange name is not part of the registry."""


class InvalidTransition(CycleBotError):
    """A cycle was asked to move backward or out of a terminal state."""


class RepositoryUnavailable(CycleBotError):
    """Persistence cannot be read or written; the process must not continue."""


class ConfigError(CycleBotError):
    """Configuration is missing or invalid at startup."""
