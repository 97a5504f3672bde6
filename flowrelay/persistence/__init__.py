"""Persistence layer for flowrelay suspensions."""

from __future__ import annotations

import os
from typing import Optional

from ..config import FlowRelayConfig, load_config
from .inmemory import InMemorySuspensionStore
from .postgres import PostgresSuspensionStore
from .redis import RedisSuspensionStore
from .repository import SuspensionStore
from .sqlite import SQLiteSuspensionStore


def get_store(
    database_url: Optional[str] = None, config: Optional[FlowRelayConfig] = None
) -> SuspensionStore:
    """Factory function to build a suspension store.

    The backend is selected from ``database_url`` which can be provided
    explicitly, via environment variable ``FLOWRELAY_DATABASE_URL`` or
    ``DATABASE_URL``, or from the loaded configuration. Every call returns a
    new store; callers pass it on to the runtime explicitly.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("FLOWRELAY_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.store.database_url
    )

    if not database_url:
        if config.store.backend == "redis":
            redis_config = config.store.redis
            return RedisSuspensionStore(
                host=redis_config.host,
                port=redis_config.port,
                db=redis_config.db,
                password=redis_config.password,
                prefix=redis_config.prefix,
            )
        if config.store.backend != "inmemory":
            raise ValueError(
                f"Store backend '{config.store.backend}' needs a database_url"
            )
        return InMemorySuspensionStore()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteSuspensionStore(path)
    if database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        return PostgresSuspensionStore(database_url)
    if database_url.startswith("redis://") or database_url.startswith("rediss://"):
        return RedisSuspensionStore(url=database_url, prefix=config.store.redis.prefix)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "SuspensionStore",
    "InMemorySuspensionStore",
    "SQLiteSuspensionStore",
    "PostgresSuspensionStore",
    "RedisSuspensionStore",
    "get_store",
]
