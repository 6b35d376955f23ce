# batchbot/config.py
import os
from typing import Annotated, Any, Iterable, Mapping, Optional, Tuple

import yaml
from pydantic import (BaseModel, ConfigDict, Field, PlainValidator, ValidationError, field_validator,
                      model_validator)

from .economics import (DEFAULT_FEE_RATE, DEFAULT_MIN_PROFIT_MULTIPLIER, DEFAULT_MIN_TRADE_AMOUNT,
                        breakeven_multiplier, is_profitable_multiplier)
from .errors import ConfigError
from .history import window_length
from .models import Instrument
from .signals import SignalParams

MODES = ("simulated", "live")
POSITION_SIZING = ("fixed", "compound")
MAX_INSTRUMENTS = 5
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _to_instrument(value: Any) -> Instrument:
    if isinstance(value, Instrument):
        return value
    if isinstance(value, str):
        return Instrument.parse(value)
    raise ValueError(f"Not an instrument: {value!r}")


InstrumentField = Annotated[Instrument, PlainValidator(_to_instrument)]


class _Section(BaseModel):
    # Unknown keys are typos, not extensions
    model_config = ConfigDict(extra="forbid", frozen=True)


class SystemSettings(_Section):
    mode: str = "simulated"
    log_level: str = "INFO"
    start_wallet: float = Field(default=500.0, gt=0)
    shutdown_grace_seconds: float = Field(default=2.0, ge=0)
    resume: bool = False

    @field_validator("mode")
    @classmethod
    def validate_mode(cls, v):
        if v not in MODES:
            raise ValueError(f"Unknown mode {v!r}, expected one of {MODES}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        if v.upper() not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {LOG_LEVELS}")
        return v.upper()


class ExchangeSettings(_Section):
    name: str = "bitvavo"
    api_key: str = ""
    secret: str = ""
    ws_url: str = "wss://ws.bitvavo.com/v2/"
    quote_currency: str = "EUR"
    network_timeout_ms: int = Field(default=10000, gt=0)

    @field_validator("api_key", "secret", mode="before")
    @classmethod
    def empty_credentials(cls, v):
        # `api_key:` with no value parses as None
        return "" if v is None else v


class TradingSettings(_Section):
    instruments: Tuple[InstrumentField, ...] = ()
    interval_seconds: int = 10
    buy_amount: float = 10.0
    fee_rate: float = DEFAULT_FEE_RATE
    price_window_minutes: float = Field(default=5.0, gt=0)
    max_wait_index: int = Field(default=100, ge=1)
    min_profit_multiplier: float = DEFAULT_MIN_PROFIT_MULTIPLIER
    stop_loss_percent: float = 15.0
    min_trade_amount: float = Field(default=DEFAULT_MIN_TRADE_AMOUNT, ge=0)
    cooldown_minutes: float = Field(default=3.0, ge=0)
    max_active_batches: int = 1
    position_sizing: str = "fixed"
    # (threshold_percent, sell_percent), ascending by threshold
    sell_steps: Tuple[Tuple[float, float], ...] = ()

    @field_validator("interval_seconds")
    @classmethod
    def coerce_interval(cls, v):
        # Coerced, never rejected
        return max(1, v)

    @field_validator("buy_amount")
    @classmethod
    def validate_buy_amount(cls, v):
        if v <= 0:
            raise ValueError("buy_amount must be positive")
        return v

    @field_validator("fee_rate")
    @classmethod
    def validate_fee_rate(cls, v):
        if not 0 <= v < 1:
            raise ValueError("fee_rate must be in [0, 1)")
        return v

    @field_validator("stop_loss_percent")
    @classmethod
    def validate_stop_loss(cls, v):
        if not 0 < v < 100:
            raise ValueError("stop_loss_percent must be between 0 and 100")
        return v

    @field_validator("max_active_batches")
    @classmethod
    def validate_max_active_batches(cls, v):
        if v < 1:
            raise ValueError("max_active_batches must be at least 1")
        return v

    @field_validator("position_sizing")
    @classmethod
    def validate_position_sizing(cls, v):
        if v not in POSITION_SIZING:
            raise ValueError(f"position_sizing must be one of {POSITION_SIZING}")
        return v

    @field_validator("sell_steps", mode="before")
    @classmethod
    def parse_sell_steps(cls, v):
        """YAML lists steps as {threshold_percent, sell_percent} mappings."""
        steps = []
        for step in v or ():
            if isinstance(step, Mapping):
                if "threshold_percent" not in step or "sell_percent" not in step:
                    raise ValueError("sell steps need threshold_percent and sell_percent")
                step = (step["threshold_percent"], step["sell_percent"])
            steps.append(step)
        return steps

    @field_validator("sell_steps")
    @classmethod
    def validate_sell_steps(cls, v):
        if any(threshold <= 0 or pct <= 0 for threshold, pct in v):
            raise ValueError("sell steps need positive thresholds and percentages")
        if sum(pct for _, pct in v) > 100:
            raise ValueError("sell step percentages add up to more than 100")
        return tuple(sorted(v))

    @model_validator(mode="after")
    def validate_margin(self):
        if not is_profitable_multiplier(self.min_profit_multiplier, self.fee_rate):
            raise ValueError(
                f"min_profit_multiplier {self.min_profit_multiplier} does not cover the round-trip fee "
                f"(needs > {breakeven_multiplier(self.fee_rate):.5f})"
            )
        return self

    @property
    def interval_ms(self) -> int:
        return self.interval_seconds * 1000

    @property
    def window_length(self) -> int:
        return window_length(self.price_window_minutes, self.interval_ms)

    @property
    def cooldown_ticks(self) -> int:
        return window_length(self.cooldown_minutes, self.interval_ms)

    def signal_params(self) -> SignalParams:
        return SignalParams(
            min_profit_multiplier=self.min_profit_multiplier,
            stop_loss_percent=self.stop_loss_percent,
            max_wait_index=self.max_wait_index,
        )


class StreamSettings(_Section):
    stale_after_seconds: float = Field(default=60.0, gt=0)
    staleness_check_seconds: float = Field(default=1.0, gt=0)
    recovery_delay_seconds: float = Field(default=10.0, ge=0)
    backoff_base_seconds: float = Field(default=3.0, ge=0)
    backoff_cap_seconds: float = Field(default=30.0, ge=0)
    max_reconnect_attempts: int = 10
    stabilize_seconds: float = Field(default=5.0, ge=0)
    subscribe_delay_seconds: float = Field(default=0.5, ge=0)
    resubscribe_delay_seconds: float = Field(default=1.0, ge=0)
    not_open_retry_seconds: float = Field(default=2.0, ge=0)

    @field_validator("max_reconnect_attempts")
    @classmethod
    def validate_attempts(cls, v):
        if v < 1:
            raise ValueError("max_reconnect_attempts must be at least 1")
        return v


class StorageSettings(_Section):
    state_dir: str = "data"
    audit_log: str = "logs/trades.csv"
    max_archives: int = Field(default=10, ge=0)


class BotConfig(_Section):
    """Closed session configuration. Every default is listed once, in the sections above."""
    system: SystemSettings = Field(default_factory=SystemSettings)
    exchange: ExchangeSettings = Field(default_factory=ExchangeSettings)
    trading: TradingSettings = Field(default_factory=TradingSettings)
    stream: StreamSettings = Field(default_factory=StreamSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)

    @property
    def is_live(self) -> bool:
        return self.system.mode == "live"

    def with_instruments(self, instruments: Iterable[Any]) -> "BotConfig":
        parsed = tuple(_to_instrument(i) for i in instruments)
        return self.model_copy(update={"trading": self.trading.model_copy(update={"instruments": parsed})})

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]],
                     env: Optional[Mapping[str, str]] = None) -> "BotConfig":
        env = os.environ if env is None else env
        # Empty sections in YAML parse as None
        data = {key: {} if value is None else value for key, value in (raw or {}).items()}

        # Credentials from the environment win over the file
        exchange = data.get("exchange", {})
        if isinstance(exchange, Mapping):
            exchange = dict(exchange)
            for key, var in (("api_key", "BITVAVO_KEY"), ("secret", "BITVAVO_SECRET")):
                if var in env:
                    exchange[key] = env[var]
            data["exchange"] = exchange

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {_describe(e)}") from e

    def validate_session(self) -> "BotConfig":
        """Checks that depend on the instrument selection. Field-level rules already held at load time."""
        instruments = self.trading.instruments
        if self.is_live and not (self.exchange.api_key and self.exchange.secret):
            raise ConfigError("Live mode requires BITVAVO_KEY and BITVAVO_SECRET")
        if not instruments:
            raise ConfigError("No instruments selected")
        if len(instruments) > MAX_INSTRUMENTS:
            raise ConfigError(f"At most {MAX_INSTRUMENTS} instruments can be traded at once")
        if len(set(instruments)) != len(instruments):
            raise ConfigError("Duplicate instruments")
        return self


def _describe(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        where = ".".join(str(p) for p in item["loc"])
        if item["type"] == "extra_forbidden":
            parts.append(f"Unknown key {where}")
        else:
            parts.append(f"{where}: {item['msg']}")
    return "; ".join(parts)


def load_config(path: str = "config.yaml", env: Optional[Mapping[str, str]] = None) -> BotConfig:
    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Config file {path} is not valid YAML: {e}") from e
    if not isinstance(raw, Mapping):
        raise ConfigError(f"Config file {path} must hold a mapping of sections")
    return BotConfig.from_mapping(raw, env=env)
