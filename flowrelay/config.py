from __future__ import annotations

import logging
import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel


class RedisConfig(BaseModel):
    """Configuration for the Redis suspension store."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    prefix: str = "flowrelay"


class StoreConfig(BaseModel):
    """Suspension store configuration settings."""

    backend: Literal["inmemory", "sqlite", "postgres", "redis"] = "inmemory"
    database_url: Optional[str] = None
    redis: RedisConfig = RedisConfig()


class EngineConfig(BaseModel):
    """Execution engine tuning."""

    retry_backoff_base: float = 1.5
    retry_jitter: float = 0.5
    scheduler_poll_interval: float = 1.0


class FlowRelayConfig(BaseModel):
    """Top-level configuration model."""

    store: StoreConfig = StoreConfig()
    engine: EngineConfig = EngineConfig()
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> FlowRelayConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FLOWRELAY_CONFIG env
            variable or 'flowrelay.yaml' in the current directory.
    """

    config_path = path or os.getenv("FLOWRELAY_CONFIG", "flowrelay.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FlowRelayConfig(**data)
    else:
        config = FlowRelayConfig()

    env_db_url = os.getenv("FLOWRELAY_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.store.database_url = env_db_url
    return config


def configure_logging(level: Optional[str] = None, config: Optional[FlowRelayConfig] = None) -> None:
    """Configure root logging for CLI processes."""

    level_name = (level or (config.log_level if config else "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
