from __future__ import annotations

from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from broker_sync.core.exceptions import ConfigError


class ParserConfig(BaseModel):
    positions_markers: list[str] = Field(
        default_factory=lambda: ["Positions", "Posiciones", "Positionen", "Posizioni", "Posições"]
    )
    row_marker_attribute: str | None = "bgcolor"
    min_columns: int = 13
    report_timezone: str = "UTC"

    @field_validator("positions_markers")
    @classmethod
    def _markers_present(cls, v: list[str]) -> list[str]:
        cleaned = [m.strip() for m in v if m and m.strip()]
        if not cleaned:
            raise ValueError("positions_markers must not be empty")
        return cleaned

    @field_validator("min_columns")
    @classmethod
    def _min_columns(cls, v: int) -> int:
        if v < 13:
            raise ValueError("min_columns must be >= 13")
        return v

    @field_validator("report_timezone")
    @classmethod
    def _known_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown report_timezone: {v}") from exc
        return v

    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.report_timezone)


class ReconcileConfig(BaseModel):
    batch_size: int = 50

    @field_validator("batch_size")
    @classmethod
    def _batch_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("batch_size must be >= 1")
        return v


class PoolConfig(BaseModel):
    idle_timeout_seconds: float = 300.0
    sweep_interval_seconds: float = 60.0

    @field_validator("idle_timeout_seconds", "sweep_interval_seconds")
    @classmethod
    def _positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("pool intervals must be > 0")
        return v


class HealthConfig(BaseModel):
    interval_seconds: float = 30.0

    @field_validator("interval_seconds")
    @classmethod
    def _positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("interval_seconds must be > 0")
        return v


class QueueConfig(BaseModel):
    max_concurrent: int = 5
    max_retries: int = 3
    retry_delay_seconds: float = 1.0

    @field_validator("max_concurrent")
    @classmethod
    def _concurrency(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_concurrent must be >= 1")
        return v

    @field_validator("max_retries")
    @classmethod
    def _retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_retries must be >= 0")
        return v

    @field_validator("retry_delay_seconds")
    @classmethod
    def _delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError("retry_delay_seconds must be >= 0")
        return v


class SyncConfig(BaseModel):
    connector: str = "bridge"  # bridge | mt5
    history_days: int = 30
    priority: int = 0

    @field_validator("connector")
    @classmethod
    def _connector_known(cls, v: str) -> str:
        if v not in {"bridge", "mt5"}:
            raise ValueError("connector must be 'bridge' or 'mt5'")
        return v


class BridgeConfig(BaseModel):
    base_url: str = "http://localhost:5000/api"
    timeout_seconds: float = 10.0


class PersistenceConfig(BaseModel):
    db_path: str = "./data/broker_sync.sqlite"


class LoggingConfig(BaseModel):
    log_dir: str = "./logs"
    level: str = "INFO"


class AppConfig(BaseModel):
    parser: ParserConfig = Field(default_factory=ParserConfig)
    reconcile: ReconcileConfig = Field(default_factory=ReconcileConfig)
    pool: PoolConfig = Field(default_factory=PoolConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    bridge: BridgeConfig = Field(default_factory=BridgeConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_yaml(path: Path) -> dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Failed reading config yaml: {path}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config root must be a mapping: {path}")
    return data


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load `.env`, then the YAML file (if given) into a validated AppConfig."""
    load_dotenv(override=False)
    raw = load_yaml(Path(config_path)) if config_path else {}
    try:
        return AppConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc
