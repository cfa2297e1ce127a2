"""Infra Reconciler - Configuration.

Configuration is loaded from (in order of increasing priority):
    1. Built-in defaults (this file)
    2. Optional YAML config file passed to ``Settings.load``
    3. Environment variables prefixed with RECONCILER_
       (nested fields use ``__``, e.g. RECONCILER_EXECUTOR__MAX_WORKERS=8)
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Literal, Optional

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RetryPolicy(BaseModel):
    """Bounded exponential backoff for transient adapter errors."""

    max_attempts: Annotated[int, Field(ge=1, le=20)] = 3
    delay_seconds: Annotated[float, Field(ge=0.0, le=60.0)] = 0.5
    backoff_factor: Annotated[float, Field(ge=1.0, le=10.0)] = 2.0
    max_delay_seconds: Annotated[float, Field(ge=0.0, le=600.0)] = 30.0

    def delay_for_attempt(self, attempt: int) -> float:
        """Return the delay in seconds before the *attempt*-th retry (1-indexed)."""
        delay = self.delay_seconds * (self.backoff_factor ** (attempt - 1))
        return min(delay, self.max_delay_seconds)


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = Field(default=8000, ge=1, le=65535)
    log_level: Literal["debug", "info", "warning", "error"] = "info"


class ExecutorConfig(BaseModel):
    max_workers: Annotated[int, Field(ge=1, le=64)] = Field(
        default=4,
        description="Maximum number of operations applied concurrently.",
    )
    retry: RetryPolicy = Field(default_factory=RetryPolicy)


class StorageConfig(BaseModel):
    artifacts_path: Path = Path("./artifacts")
    state_path: Path = Path("./state")
    state_backend: Literal["file", "memory"] = "file"


class AdapterConfig(BaseModel):
    backend: str = "fake"
    simulate_latency: bool = False
    failure_rate: Annotated[float, Field(ge=0.0, le=1.0)] = 0.0
    state_path: Optional[Path] = Field(
        default=Path("./fake_controller.json"),
        description="Where the fake controller keeps its objects between runs "
        "when the file state backend is used.",
    )


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="RECONCILER_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    server: ServerConfig = Field(default_factory=ServerConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    adapter: AdapterConfig = Field(default_factory=AdapterConfig)

    @classmethod
    def load(cls, config_file: Optional[Path] = None) -> "Settings":
        """Load settings from an optional YAML file + environment variables."""
        data: dict[str, object] = {}
        if config_file is not None and Path(config_file).exists():
            with Path(config_file).open() as f:
                data.update(yaml.safe_load(f) or {})
        # Init kwargs beat the environment in pydantic-settings, so merge the
        # explicitly set environment values over the file before validating.
        env_overrides = cls().model_dump(exclude_unset=True)
        return cls(**_deep_merge(data, env_overrides))


def _deep_merge(base: dict, overrides: dict) -> dict:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the process-wide settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings


def set_settings(settings: Optional[Settings]) -> None:
    """Replace (or clear) the process-wide settings instance."""
    global _settings
    _settings = settings
