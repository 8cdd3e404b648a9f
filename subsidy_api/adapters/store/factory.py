"""Factory pattern for creating key-value store instances."""

from __future__ import annotations

import logging

from subsidy_api.adapters.store.base import AbstractKeyValueStore
from subsidy_api.adapters.store.in_memory import InMemoryKeyValueStore
from subsidy_api.adapters.store.redis_store import RedisKeyValueStore
from subsidy_api.core.config import StoreSettings, settings
from subsidy_api.core.errors import ValidationAppError

logger = logging.getLogger(__name__)


def create_store(store_settings: StoreSettings | None = None) -> AbstractKeyValueStore:
    """Instantiate the configured key-value store backend.

    Args:
        store_settings: Optional store settings; defaults to global settings.

    Returns:
        AbstractKeyValueStore: Configured store instance.

    Raises:
        ValidationAppError: If the backend is unknown.
    """
    cfg = store_settings or settings.store
    backend = cfg.backend.lower()

    if backend == "memory":
        logger.info(
            "store.created",
            extra={"backend": backend, "max_entries": cfg.max_entries, "multi_instance_safe": False},
        )
        return InMemoryKeyValueStore(max_entries=cfg.max_entries)

    if backend == "redis":
        logger.info(
            "store.created",
            extra={"backend": backend, "redis_url": cfg.redis_url, "multi_instance_safe": True},
        )
        return RedisKeyValueStore.from_url(
            cfg.redis_url,
            key_prefix=cfg.key_prefix,
            socket_timeout_seconds=cfg.socket_timeout_seconds,
        )

    raise ValidationAppError(
        code="store_unknown_backend",
        message=f"Unknown store backend: '{cfg.backend}'. Supported backends: memory, redis",
    )
