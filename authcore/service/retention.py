from __future__ import annotations

import asyncio
import contextlib
from datetime import datetime, timedelta
from typing import Callable, Optional

from authcore.logging import get_logger
from authcore.storage.models import utcnow

logger = get_logger(__name__)


class TokenRetentionSweeper:
    """Periodically deletes tokens that expired or were consumed long ago.

    ``start()`` schedules the loop on the running event loop and ``stop()``
    cancels it; each sweep is a single store call run off the loop thread.
    """

    def __init__(
        self,
        store,
        *,
        interval_seconds: int = 3600,
        retention: timedelta = timedelta(days=7),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.interval_seconds = max(1, interval_seconds)
        self.retention = retention
        self._clock = clock or utcnow
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def sweep_once(self) -> int:
        cutoff = self._clock() - self.retention
        deleted = self.store.delete_stale_tokens(cutoff)
        if deleted:
            logger.info("token_retention_sweep", deleted=deleted, cutoff=cutoff.isoformat())
        return deleted

    async def _run(self) -> None:
        try:
            while True:
                try:
                    await asyncio.to_thread(self.sweep_once)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.warning(
                        "token_retention_sweep_failed",
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                await asyncio.sleep(self.interval_seconds)
        except asyncio.CancelledError:
            logger.info("token_retention_task_cancelled")
            raise

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task  # type: ignore[return-value]
        self._task = asyncio.create_task(self._run(), name="token-retention-sweep")
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
