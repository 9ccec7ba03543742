from __future__ import annotations

from pathlib import Path
from typing import Any, cast

from pydantic import BaseModel, ConfigDict, Field, model_validator


class AppCfg(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    env: str
    timezone: str = "UTC"


class LoggingCfg(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: str = "INFO"
    json_output: bool = True
    log_dir: Path = Path("./data/logs")


class SchedulerCfg(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_requests_per_window: int = Field(default=20, gt=0)
    window_ms: int = Field(default=10_000, gt=0)
    capacity_ratio: float = Field(default=0.8, gt=0, le=1)
    wait_buffer_ms: int = Field(default=500, ge=0)
    request_delay_ms: int = Field(default=200, ge=0)
    order_delay_ms: int = Field(default=250, ge=0)
    general_max_attempts: int = Field(default=4, ge=1)
    order_max_attempts: int = Field(default=2, ge=1)
    backoff_initial_ms: int = Field(default=2_000, ge=0)
    backoff_max_ms: int = Field(default=20_000, ge=0)
    backoff_multiplier: float = Field(default=1.5, ge=1)


class MetadataCfg(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ttl_s: float = Field(default=300.0, ge=0)
    keep_decimal_symbols: list[str] = Field(default_factory=lambda: ["BTC"])


class ExecutionCfg(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_price_deviation: float = Field(default=0.95, gt=0)
    order_book_ttl_s: float = Field(default=1.0, ge=0)
    candle_ttl_s: float = Field(default=5.0, ge=0)


class StrategyCfg(BaseModel):
    """Market-making parameters. Spreads and spacing are percentages."""

    model_config = ConfigDict(extra="forbid")

    trading_pairs: list[str] = Field(default_factory=lambda: ["BTC", "ETH"])
    max_spread: float = Field(default=0.5, gt=0)
    min_spread: float = Field(default=0.1, gt=0)
    update_interval_ms: int = Field(default=100, gt=0)
    order_refresh_ms: int = Field(default=500, gt=0)
    analysis_interval_factor: int = Field(default=10, ge=1)
    stale_analysis_factor: int = Field(default=5, ge=1)
    candle_interval: str = "1m"
    candle_count: int = Field(default=100, gt=0)
    leverage: float = Field(default=1.0, gt=0)
    risk_percentage: float = Field(default=1.0, gt=0)
    order_levels: int = Field(default=5, ge=1)
    order_spacing: float = Field(default=0.05, ge=0)
    max_position_size: float = Field(default=10.0, gt=0)
    simultaneous_pairs: bool = True
    ladder_max_deviation: float = Field(default=0.5, gt=0)
    duplicate_tolerance: float = Field(default=0.001, ge=0)
    history_cap: int = Field(default=20, ge=2)

    @model_validator(mode="after")
    def _check_spreads(self) -> StrategyCfg:
        if self.min_spread > self.max_spread:
            msg = f"min_spread ({self.min_spread}) must be <= max_spread ({self.max_spread})"
            raise ValueError(msg)
        return self


class RiskCfg(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kill_switch_file: str = "/var/run/perpquote.trading.halt"
    kill_switch_key: str = "perpquote:trading:halt"
    redis_url: str | None = None


class ExchangeSecretsCfg(BaseModel):
    model_config = ConfigDict(extra="forbid")

    wallet_address: str | None = None
    api_secret: str | None = None


class SecretsCfg(BaseModel):
    model_config = ConfigDict(extra="forbid")

    exchange: ExchangeSecretsCfg | None = None


class Config(BaseModel):
    model_config = ConfigDict(extra="forbid")

    app: AppCfg
    logging: LoggingCfg = Field(default_factory=LoggingCfg)
    scheduler: SchedulerCfg = Field(default_factory=SchedulerCfg)
    metadata: MetadataCfg = Field(default_factory=MetadataCfg)
    execution: ExecutionCfg = Field(default_factory=ExecutionCfg)
    strategy: StrategyCfg = Field(default_factory=StrategyCfg)
    risk: RiskCfg = Field(default_factory=RiskCfg)
    secrets: SecretsCfg = Field(default_factory=SecretsCfg)


def _read_yaml(path: Path) -> dict[str, Any]:
    """Safe YAML read; returns {} if file missing/empty."""
    import yaml  # lazy import

    if not path.exists():
        return {}
    text = path.read_text(encoding="utf-8")
    data = yaml.safe_load(text)
    return data or {}


def load_config(base_dir: str | Path) -> Config:
    """Load config models from ./config/base.yaml and optional secrets."""

    base_path = Path(base_dir)
    base_yaml = base_path / "config" / "base.yaml"
    data = _read_yaml(base_yaml)
    if not data:
        msg = f"Missing or empty config file: {base_yaml}"
        raise FileNotFoundError(msg)

    secrets_path = base_path / "config" / "secrets.enc.yaml"
    secrets = _read_yaml(secrets_path)
    if secrets:
        merged = data.setdefault("secrets", {}) or {}
        merged.update(secrets)
        data["secrets"] = merged

    return cast(Config, Config.model_validate(data))
