from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from usertokens.config import Settings, StoreBackend, get_settings, reset_settings_cache
from usertokens.logging import get_logger
from usertokens.service.tokens import TokenService
from usertokens.storage.memory import MemoryStore
from usertokens.storage.postgres import PostgresStore
from usertokens.storage.redis_store import RedisStore

logger = get_logger(__name__)

Store = Union[MemoryStore, PostgresStore, RedisStore]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


def build_store(settings: Settings) -> Store:
    """Instantiate the token store selected by ``settings.store_backend``."""
    backend = settings.store_backend
    if backend is StoreBackend.MEMORY:
        return MemoryStore(state_root=settings.state_root)
    if backend is StoreBackend.POSTGRES:
        return PostgresStore(
            settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            auto_migrate=settings.auto_migrate,
        )
    store = RedisStore(settings.redis_url, prefix=settings.redis_key_prefix)
    store.verify_connection()
    return store


class Runtime:
    """Holds the singleton store and token service for the process."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        backend = self.settings.store_backend.value
        logger.info("runtime_init_started", store_backend=backend, test_mode=self.settings.test_mode)
        try:
            self.store = build_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_backend=backend,
                database=_mask_url_password(self.settings.database_url),
                redis=_mask_url_password(self.settings.redis_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        self.tokens = TokenService(self.store, self.settings)
        logger.info("runtime_store_initialized", store_backend=backend)

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close is not None:
            close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime singleton from a fresh read of the environment."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
            runtime = None
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


def shutdown_runtime() -> None:
    """Close the singleton's store and drop it; the next get_runtime() rebuilds."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
            runtime = None
