"""Background repair of missing embeddings.

Prompts whose embedding could not be computed when they were saved (engine
cold, timeout, bulk import, write failure) are picked up by a deferred sweep.
Scheduling is coalesced: many requests before the timer fires produce one
sweep, and requests that arrive during a sweep produce exactly one more.
A sweep that leaves failures behind schedules the next one, so work is
retried until it succeeds or the prompt is deleted.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from .embedding import EmbeddingProvider
from .errors import EngineError, EngineLoadFailed, StoreWriteFailed
from .scheduling import LoopScheduler, Scheduler, TimerHandle
from .store import RecordStore

logger = logging.getLogger(__name__)

DEFAULT_REPAIR_DELAY = 5.0


@dataclass
class SweepResult:
    """Counters for one or more sweeps."""

    repaired: int = 0
    failed: int = 0
    skipped: int = 0

    def merge(self, other: "SweepResult") -> "SweepResult":
        return SweepResult(
            repaired=self.repaired + other.repaired,
            failed=self.failed + other.failed,
            skipped=self.skipped + other.skipped,
        )


class RepairWorker:
    """Regenerates absent embeddings off the interactive path, one at a time."""

    def __init__(
        self,
        store: RecordStore,
        provider: EmbeddingProvider,
        *,
        scheduler: Optional[Scheduler] = None,
        delay: float = DEFAULT_REPAIR_DELAY,
        embed_timeout: Optional[float] = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._scheduler = scheduler or LoopScheduler()
        self._delay = delay
        self._embed_timeout = embed_timeout
        self._timer: Optional[TimerHandle] = None
        self._running = False
        self._rerun = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_scheduled(self) -> bool:
        return self._timer is not None

    @property
    def is_running(self) -> bool:
        return self._running

    def schedule(self, prompt_id: Optional[int] = None, *, delay: Optional[float] = None) -> None:
        """Ask for a sweep. Idempotent while one is already pending.

        `prompt_id` is accepted so this can be registered directly as a
        store invalidation listener; the store itself is the work queue.
        """
        if self._running:
            self._rerun = True
            logger.debug("Repair sweep running; queued one more pass")
            return
        if self._timer is not None:
            return
        self._timer = self._scheduler.call_later(
            self._delay if delay is None else delay, self._on_timer
        )

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def close(self) -> None:
        self.cancel()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)

    async def wait_idle(self) -> None:
        """Wait for a sweep started by the timer, if any."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    def _on_timer(self) -> None:
        self._timer = None
        self._task = asyncio.get_running_loop().create_task(self._run_scheduled())

    async def _run_scheduled(self) -> None:
        try:
            await self.run_sweep()
        except Exception:
            logger.exception("Embedding repair sweep crashed")

    async def run_sweep(self) -> SweepResult:
        """Sweep now. Returns empty counters if a sweep is already running."""
        if self._running:
            self._rerun = True
            return SweepResult()
        self._running = True
        try:
            result = await self._sweep()
            while self._rerun:
                self._rerun = False
                result = result.merge(await self._sweep())
        finally:
            self._running = False

        if result.failed:
            self.schedule()
        return result

    async def _sweep(self) -> SweepResult:
        result = SweepResult()
        pending = self._store.missing_embeddings()
        if not pending:
            return result

        for index, prompt_id in enumerate(pending):
            try:
                if await self._store.refresh(prompt_id, self._provider, self._embed_timeout):
                    result.repaired += 1
                else:
                    result.skipped += 1
            except EngineLoadFailed as exc:
                # Nothing else can succeed this pass; leave the rest queued
                remaining = len(pending) - index
                logger.warning(
                    "Embedding engine unavailable; %d prompts left for next sweep: %s",
                    remaining,
                    exc,
                )
                result.failed += remaining
                break
            except (EngineError, StoreWriteFailed) as exc:
                logger.warning("Embedding repair failed for prompt %s: %s", prompt_id, exc)
                result.failed += 1

        logger.info(
            "Embedding repair sweep: %d repaired, %d failed, %d skipped",
            result.repaired,
            result.failed,
            result.skipped,
        )
        return result
