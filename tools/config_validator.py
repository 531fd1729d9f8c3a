"""
Configuration Validation Module

Loads config/bot.yaml, merges per-exchange environment overrides and API
credentials, and validates the result against Pydantic schemas. The bot
refuses to start on an invalid configuration.

Usage:
    from tools.config_validator import validate_all_configs, load_bot_config

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)

    config = load_bot_config("config")
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from core.cycle import SUPPORTED_EXCHANGES
from core.exceptions import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "bot.yaml"

# Environment keys that override a per-exchange setting, as <EXCHANGE>_<KEY>
ENV_OVERRIDE_KEYS = {
    "BUY_OFFSET": "buy_offset",
    "SELL_OFFSET": "sell_offset",
    "PERCENT": "percent",
    "BUY_MAX_DAYS": "buy_max_days",
    "BUY_MAX_PRICE_DEVIATION": "buy_max_price_deviation",
    "ACCUMULATION": "accumulation",
    "SELL_ACCU_PRICE_DEVIATION": "sell_accu_price_deviation",
    "ADAPTIVE_ORDER": "adaptive_order",
    "MIN_LOCKED_RATIO": "min_locked_ratio",
    "FEE_RATE": "fee_rate",
}

# Settings that fall back to the `defaults` section (or DEFAULT_<KEY> env)
DEFAULTABLE_KEYS = (
    "percent",
    "buy_max_days",
    "buy_max_price_deviation",
    "accumulation",
    "sell_accu_price_deviation",
    "adaptive_order",
    "min_locked_ratio",
)


# ===== Schema =====
class ExchangeSettings(BaseModel):
    """Per-exchange strategy parameters and credentials"""
    model_config = ConfigDict(extra="forbid")

    name: str
    api_key: str = ""
    secret_key: str = ""
    passphrase: str = ""
    base_url: Optional[str] = None

    buy_offset: float = Field(default=-700.0, description="USDC below market for the buy (stored negative)")
    sell_offset: float = Field(default=700.0, description="USDC above buy price for the sell (stored positive)")
    percent: float = Field(default=5.0, gt=0, le=100, description="Share of free USDC committed per cycle")
    buy_max_days: int = Field(default=0, description="Cancel unfilled buys older than this (0 disables)")
    buy_max_price_deviation: float = Field(default=0.0, description="Cancel buys when price runs away by this % (0 disables)")
    accumulation: bool = False
    sell_accu_price_deviation: float = Field(default=10.0, description="Price drop % below target sell that allows accumulation")
    adaptive_order: bool = False
    min_locked_ratio: float = Field(default=0.1, ge=0, le=1)

    fee_rate: float = Field(default=0.001, ge=0, lt=0.05, description="Fallback fee rate when real fees are unavailable")
    fee_safety_margin: float = Field(default=0.05, ge=0, le=0.5, description="Extra margin applied to fees to cover")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.upper()
        if v not in SUPPORTED_EXCHANGES:
            raise ValueError(f"unsupported exchange {v}")
        return v

    @field_validator("buy_offset")
    @classmethod
    def normalize_buy_offset(cls, v: float) -> float:
        return -abs(v)

    @field_validator("sell_offset")
    @classmethod
    def normalize_sell_offset(cls, v: float) -> float:
        return abs(v)

    @field_validator("buy_max_days")
    @classmethod
    def clamp_buy_max_days(cls, v: int) -> int:
        if v < 0:
            logger.warning("buy_max_days cannot be negative, using 0 (disabled)")
            return 0
        return v

    @field_validator("buy_max_price_deviation")
    @classmethod
    def clamp_price_deviation(cls, v: float) -> float:
        if v < 0:
            logger.warning("buy_max_price_deviation cannot be negative, using 0 (disabled)")
            return 0.0
        return v

    @field_validator("sell_accu_price_deviation")
    @classmethod
    def clamp_accu_deviation(cls, v: float) -> float:
        if v < 0:
            logger.warning("sell_accu_price_deviation cannot be negative, using 10")
            return 10.0
        return v

    @property
    def enabled(self) -> bool:
        return bool(self.api_key and self.secret_key)


class AppSettings(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str = Field(default="cyclebot", min_length=1)
    main_exchange: str = "BINANCE"

    @field_validator("main_exchange")
    @classmethod
    def validate_main_exchange(cls, v: str) -> str:
        v = v.upper()
        if v not in SUPPORTED_EXCHANGES:
            logger.warning(f"Exchange {v} is not supported, using BINANCE")
            return "BINANCE"
        return v


class LoggingSettings(BaseModel):
    model_config = ConfigDict(extra="allow")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    file: str = "logs/cyclebot.log"


class StorageSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    cycles_file: str = "data/cycles.json"
    accumulations_file: str = "data/accumulations.json"
    lock_dir: str = "data"


class HttpSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_retries: int = Field(default=3, ge=1, le=10, description="Attempts for read-only requests")
    min_interval_seconds: float = Field(default=0.1, ge=0)


class ReconcileSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    balance_recheck_seconds: float = Field(default=5.0, ge=0)
    min_free_usdc: float = Field(default=10.0, ge=0)


class SchedulerSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tasks_file: str = "tasks.conf"
    poll_interval_seconds: float = Field(default=60.0, gt=0)
    dispatch_stagger_seconds: float = Field(default=2.0, ge=0)
    task_timeout_seconds: float = Field(default=600.0, gt=0)
    subprocess_timeout_seconds: float = Field(default=120.0, gt=0)
    task_mode: Literal["inprocess", "subprocess"] = "inprocess"
    create_default_tasks: bool = True


class MetricsSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    port: int = Field(default=9100, ge=0)


class BotConfig(BaseModel):
    """Validated configuration for the whole process"""
    model_config = ConfigDict(extra="forbid")

    app: AppSettings = Field(default_factory=AppSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    http: HttpSettings = Field(default_factory=HttpSettings)
    reconcile: ReconcileSettings = Field(default_factory=ReconcileSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    exchanges: Dict[str, ExchangeSettings] = Field(default_factory=dict)

    def exchange(self, name: str) -> ExchangeSettings:
        key = (name or "").upper()
        if key not in self.exchanges:
            raise ConfigError(f"exchange {key} not configured")
        return self.exchanges[key]

    def enabled_exchanges(self) -> List[str]:
        return [name for name in SUPPORTED_EXCHANGES
                if name in self.exchanges and self.exchanges[name].enabled]


def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return message with line/column context for YAML errors."""
    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message
    problem = getattr(error, "problem", str(error))
    return f"Malformed YAML in {file_path}: line {mark.line + 1}, column {mark.column + 1}: {problem}"


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, "r") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _split_kucoin_secret(secret: str, passphrase: str):
    """KuCoin secrets may be given as 'secret:passphrase'."""
    if not passphrase and ":" in secret:
        secret, passphrase = secret.split(":", 1)
    return secret, passphrase


def build_config_data(raw: Mapping[str, Any], env: Mapping[str, str]) -> Dict[str, Any]:
    """
    Merge YAML content with environment overrides and credentials.

    Precedence per exchange setting: <EX>_<KEY> env > exchanges.<EX> yaml >
    DEFAULT_<KEY> env > defaults yaml.
    """
    data = {key: value for key, value in raw.items() if key not in ("defaults", "exchanges")}

    defaults = dict(raw.get("defaults") or {})
    for key in DEFAULTABLE_KEYS:
        env_value = env.get(f"DEFAULT_{key.upper()}")
        if env_value not in (None, ""):
            defaults[key] = env_value

    main_exchange = env.get("EXCHANGE")
    if main_exchange:
        data.setdefault("app", {})
        data["app"] = {**(data.get("app") or {}), "main_exchange": main_exchange}

    yaml_exchanges = raw.get("exchanges") or {}
    exchanges: Dict[str, Dict[str, Any]] = {}
    for name in SUPPORTED_EXCHANGES:
        settings: Dict[str, Any] = {key: defaults[key] for key in DEFAULTABLE_KEYS if key in defaults}
        settings.update(yaml_exchanges.get(name) or {})
        for env_key, field_name in ENV_OVERRIDE_KEYS.items():
            value = env.get(f"{name}_{env_key}")
            if value not in (None, ""):
                settings[field_name] = value

        secret = env.get(f"{name}_SECRET_KEY", "")
        passphrase = env.get(f"{name}_PASSPHRASE", "")
        if name == "KUCOIN":
            secret, passphrase = _split_kucoin_secret(secret, passphrase)
        settings["name"] = name
        settings["api_key"] = env.get(f"{name}_API_KEY", "")
        settings["secret_key"] = secret
        settings["passphrase"] = passphrase
        exchanges[name] = settings

    unknown = set(yaml_exchanges) - set(SUPPORTED_EXCHANGES)
    for name in sorted(unknown):
        exchanges[name] = {"name": name, **(yaml_exchanges.get(name) or {})}

    data["exchanges"] = exchanges
    return data


def _validation_messages(error: ValidationError) -> List[str]:
    messages = []
    for item in error.errors():
        field = " -> ".join(str(loc) for loc in item["loc"])
        messages.append(f"{CONFIG_FILENAME}: {field}: {item['msg']}")
    return messages


def validate_all_configs(config_dir: str = "config", env: Optional[Mapping[str, str]] = None) -> List[str]:
    """
    Validate configuration.

    Returns:
        List of error messages (empty if valid)
    """
    env = os.environ if env is None else env
    path = Path(config_dir) / CONFIG_FILENAME
    try:
        raw = load_yaml_file(path)
        BotConfig(**build_config_data(raw, env))
        logger.info(f"{CONFIG_FILENAME} validation passed")
        return []
    except FileNotFoundError as e:
        return [f"{CONFIG_FILENAME}: {e}"]
    except yaml.YAMLError as e:
        return [f"{CONFIG_FILENAME}: Invalid YAML - {e}"]
    except ValidationError as e:
        return _validation_messages(e)


def load_bot_config(config_dir: str = "config", env: Optional[Mapping[str, str]] = None) -> BotConfig:
    """
    Load and validate configuration.

    Raises:
        ConfigError: when the file is missing, malformed or invalid
    """
    env = os.environ if env is None else env
    errors = validate_all_configs(config_dir, env)
    if errors:
        raise ConfigError("; ".join(errors))
    raw = load_yaml_file(Path(config_dir) / CONFIG_FILENAME)
    return BotConfig(**build_config_data(raw, env))
