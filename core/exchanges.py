"""
Exchange client registry.

Maps exchange names to client factories and builds clients from the
validated configuration.
"""

import logging
from typing import Callable, Dict, Optional

from core.exceptions import UnsupportedExchange
from core.exchange_base import ExchangeClient
from core.exchange_binance import BinanceClient
from core.exchange_kraken import KrakenClient
from core.exchange_kucoin import KucoinClient
from core.exchange_mexc import MexcClient
from tools.config_validator import BotConfig, ExchangeSettings, HttpSettings

logger = logging.getLogger(__name__)


def _binance(settings: ExchangeSettings, http: HttpSettings) -> ExchangeClient:
    return BinanceClient(settings.api_key, settings.secret_key, base_url=settings.base_url,
                         fee_rate=settings.fee_rate, fee_safety_margin=settings.fee_safety_margin,
                         max_retries=http.max_retries, min_interval=http.min_interval_seconds)


def _mexc(settings: ExchangeSettings, http: HttpSettings) -> ExchangeClient:
    return MexcClient(settings.api_key, settings.secret_key, base_url=settings.base_url,
                      fee_rate=settings.fee_rate, fee_safety_margin=settings.fee_safety_margin,
                      max_retries=http.max_retries, min_interval=http.min_interval_seconds)


def _kucoin(settings: ExchangeSettings, http: HttpSettings) -> ExchangeClient:
    return KucoinClient(settings.api_key, settings.secret_key, passphrase=settings.passphrase,
                        base_url=settings.base_url, fee_rate=settings.fee_rate,
                        fee_safety_margin=settings.fee_safety_margin,
                        max_retries=http.max_retries, min_interval=http.min_interval_seconds)


def _kraken(settings: ExchangeSettings, http: HttpSettings) -> ExchangeClient:
    return KrakenClient(settings.api_key, settings.secret_key, base_url=settings.base_url,
                        fee_rate=settings.fee_rate, fee_safety_margin=settings.fee_safety_margin,
                        max_retries=http.max_retries, min_interval=http.min_interval_seconds)


EXCHANGE_CLIENTS: Dict[str, Callable[[ExchangeSettings, HttpSettings], ExchangeClient]] = {
    "BINANCE": _binance,
    "MEXC": _mexc,
    "KUCOIN": _kucoin,
    "KRAKEN": _kraken,
}


def build_client(settings: ExchangeSettings, http: Optional[HttpSettings] = None) -> ExchangeClient:
    """
    Build the client for one exchange.

    Raises:
        UnsupportedExchange: if no factory is registered under the name
    """
    factory = EXCHANGE_CLIENTS.get(settings.name.upper())
    if factory is None:
        raise UnsupportedExchange(f"unsupported exchange: {settings.name}")
    return factory(settings, http or HttpSettings())


def build_clients(config: BotConfig, only: Optional[str] = None) -> Dict[str, ExchangeClient]:
    """Clients for every enabled exchange (or just ``only``)."""
    clients: Dict[str, ExchangeClient] = {}
    for name in config.enabled_exchanges():
        if only and name != only.upper():
            continue
        clients[name] = build_client(config.exchange(name), config.http)
    if only and only.upper() not in clients:
        logger.warning(f"Exchange {only.upper()} is not enabled (missing API credentials)")
    logger.info(f"Exchange clients ready: {', '.join(clients) or 'none'}")
    return clients
