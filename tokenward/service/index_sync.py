"""Background refresher that keeps the secret index in step with the store.

The index is only an accelerator, so this loop gives no correctness
guarantees: it periodically rewrites the index from a full store listing.
Lag between a store write and the next pass is expected.
"""

from __future__ import annotations

import asyncio
from typing import Iterable, List, Optional, Protocol

from tokenward.logging import get_logger
from tokenward.storage.models import Token

logger = get_logger(__name__)

DEFAULT_RESYNC_SECONDS = 30
MAX_BACKOFF_SECONDS = 300


class ListableStore(Protocol):
    def list_tokens(self) -> List[Token]: ...


class WritableIndex(Protocol):
    async def replace_all(self, tokens: Iterable[Token]) -> None: ...


class IndexRefresher:
    """Periodically rewrites the secret index from the authoritative store."""

    def __init__(
        self,
        store: ListableStore,
        index: WritableIndex,
        *,
        interval: int = DEFAULT_RESYNC_SECONDS,
    ) -> None:
        self.store = store
        self.index = index
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("index_refresher_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("index_refresher_started", interval=self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("index_refresher_stopped")

    async def resync_once(self) -> int:
        """Run a single full resync and return the number of indexed tokens."""
        tokens = await asyncio.to_thread(self.store.list_tokens)
        await self.index.replace_all(tokens)
        logger.debug("index_resync_complete", indexed=len(tokens))
        return len(tokens)

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.resync_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "index_resync_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_BACKOFF_SECONDS, self.interval * (2 ** (consecutive_errors - 3))
                    )
                    logger.warning(
                        "index_refresher_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue

            await asyncio.sleep(self.interval)
