from __future__ import annotations

import asyncio
from concurrent.futures import Future
from typing import Optional
from urllib.parse import urlparse, urlunparse

from tokenward.config import Settings, get_settings
from tokenward.logging import configure_logging, get_logger
from tokenward.service.index_sync import IndexRefresher
from tokenward.service.keygen import SecretGenerator
from tokenward.service.tokens import TokenEngine
from tokenward.storage.memory import MemoryStore, MemoryTokenIndex
from tokenward.storage.models import Token
from tokenward.storage.postgres import PostgresStore
from tokenward.storage.redis_cache import RedisTokenIndex

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
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
    """Composes the store, index, secret generator and engine for one process.

    Built explicitly by whoever owns the transport (see ``create_app``);
    there is no module-level instance.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store=None,
        index=None,
        generator: Optional[SecretGenerator] = None,
    ) -> None:
        self.settings = settings or get_settings()
        configure_logging(self.settings.log_level)
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.store = store if store is not None else self._build_store()
        self.index = index if index is not None else self._build_index()
        self.generator = generator or SecretGenerator(self.settings.secret_length)
        self.engine = TokenEngine(
            self.store,
            self.index,
            self.generator,
            store_timeout=self.settings.store_timeout_seconds,
        )

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._forwarding = False
        self.refresher: Optional[IndexRefresher] = None
        if self.settings.index_resync_seconds > 0 and hasattr(self.index, "replace_all"):
            self.refresher = IndexRefresher(
                self.store, self.index, interval=self.settings.index_resync_seconds
            )
        logger.info(
            "runtime_init_complete",
            store_type=type(self.store).__name__,
            index_type=type(self.index).__name__,
        )

    def _build_store(self):
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                store = MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    name_prefix=self.settings.token_name_prefix,
                )
            else:
                store = PostgresStore(
                    self.settings.database_url, name_prefix=self.settings.token_name_prefix
                )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    def _build_index(self):
        redis_error: Exception | None = None
        if self.settings.redis_url:
            index = RedisTokenIndex(
                self.settings.redis_url,
                grace_seconds=self.settings.index_grace_seconds,
                max_entry_seconds=self.settings.index_entry_max_seconds,
            )
            try:
                index.verify_connection()
                return index
            except Exception as exc:
                # The async client is built lazily, so nothing was opened yet
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for the token secret index; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for the in-process index."
            ) from redis_error

        index = MemoryTokenIndex()
        if isinstance(self.store, MemoryStore):
            index.follow(self.store)
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message="Running with an in-process token index; it is not shared across workers.",
        )
        return index

    def _forwards_mutations(self) -> bool:
        # MemoryTokenIndex follows a MemoryStore synchronously via follow()
        return (
            not isinstance(self.index, MemoryTokenIndex)
            and hasattr(self.index, "evict_token")
            and hasattr(self.store, "add_listener")
        )

    def _forward_mutation(self, mutation: str, token: Token) -> None:
        """Store listener: mirror a committed write into the async index.

        Runs in whichever thread performed the write and hands the index
        call to the event loop without waiting for it.
        """
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        if mutation == "delete":
            coro = self.index.evict_token(token.secret)
        else:
            coro = self.index.put_token(token)
        future = asyncio.run_coroutine_threadsafe(coro, loop)
        future.add_done_callback(_log_forward_failure)

    async def start(self) -> None:
        if self._forwards_mutations():
            self._loop = asyncio.get_running_loop()
            if not self._forwarding:
                self.store.add_listener(self._forward_mutation)
                self._forwarding = True
        if self.refresher is not None:
            await self.refresher.start()

    async def close(self) -> None:
        self._loop = None
        if self.refresher is not None:
            await self.refresher.stop()
        if isinstance(self.index, RedisTokenIndex):
            await self.index.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


def _log_forward_failure(future: Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.warning("token_index_forward_failed", error=str(exc))
