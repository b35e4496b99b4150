from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse, urlunparse

from toolgate.config import Settings, get_settings
from toolgate.logging import get_logger
from toolgate.service.janitor import CounterJanitor
from toolgate.service.preferences import ToolPreferenceService
from toolgate.service.registry import ToolRegistry
from toolgate.service.usage import UsageCounters
from toolgate.storage.memory import MemoryStore
from toolgate.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for safe logging.

    Example: postgresql://app:secret@db:5432/tools -> postgresql://app:***@db:5432/tools
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Wires the policy store, registry, janitor and preference service.

    Constructed explicitly and passed to whatever dispatches tool calls.
    Lifecycle: ``Runtime()`` -> ``start()`` -> ``shutdown()``; also usable as
    a context manager.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: "PostgresStore | MemoryStore | None" = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
        )

        if store is not None:
            self.store = store
        else:
            store_type = "memory" if self.settings.use_memory_store else "postgres"
            try:
                self.store = (
                    MemoryStore()
                    if self.settings.use_memory_store
                    else PostgresStore(
                        self.settings.database_url,
                        timeout_seconds=self.settings.store_timeout_seconds,
                        min_size=self.settings.db_pool_min_size,
                        max_size=self.settings.db_pool_max_size,
                    )
                )
                logger.info(
                    "runtime_store_initialized",
                    store_type=store_type,
                    database_url=None
                    if self.settings.use_memory_store
                    else _mask_url_password(self.settings.database_url),
                )
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type=store_type,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise

        self.counters = UsageCounters(
            minute_retention=self.settings.minute_bucket_retention_minutes
        )
        self.registry = ToolRegistry(
            self.store,
            cache_ttl_seconds=self.settings.tool_cache_ttl_seconds,
            counters=self.counters,
            default_roles=self.settings.default_roles,
        )
        self.janitor = CounterJanitor(
            self.counters, interval=self.settings.counter_sweep_interval_seconds
        )
        self.preferences = ToolPreferenceService(self.store)
        self._started = False

    def start(self) -> None:
        """Warm the tool cache and start the counter janitor."""
        if self._started:
            return
        loaded = self.registry.refresh_cache()
        self.janitor.start()
        self._started = True
        logger.info(
            "runtime_started",
            tool_cache_loaded=loaded,
            tools=len(self.registry.list_tools()) if loaded else 0,
        )

    def shutdown(self) -> None:
        """Stop the janitor and release the store connection pool."""
        self.janitor.stop()
        self.store.close()
        self._started = False
        logger.info("runtime_shutdown")

    def __enter__(self) -> "Runtime":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()
