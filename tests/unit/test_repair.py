"""Unit tests for RepairWorker: coalesced sweeps and retry until success."""

import asyncio
from typing import Optional

import pytest

from conftest import FakeProvider, ManualScheduler, make_prompt, wait_until
from prompthub.core.search.repair import RepairWorker, SweepResult
from prompthub.core.search.store import RecordStore

DELAY = 5.0


class _Saved:
    def __init__(self) -> None:
        self.ids: list[int] = []
        self.error: Optional[Exception] = None

    def __call__(self, prompt_id: int, embedding: Optional[list[float]], text: str) -> bool:
        if self.error is not None:
            raise self.error
        self.ids.append(prompt_id)
        return True


@pytest.fixture
def saved() -> _Saved:
    return _Saved()


@pytest.fixture
def store(saved: _Saved) -> RecordStore:
    store = RecordStore(saved)
    store.load(
        [
            make_prompt(1, "Autumn haiku", "write a haiku about autumn"),
            make_prompt(2, "Broken", "this one fails to embed"),
        ]
    )
    return store


@pytest.fixture
def worker(store: RecordStore, provider: FakeProvider, scheduler: ManualScheduler) -> RepairWorker:
    return RepairWorker(store, provider, scheduler=scheduler, delay=DELAY)


@pytest.mark.asyncio
async def test_failed_prompt_is_retried_on_next_sweep(
    worker: RepairWorker,
    store: RecordStore,
    provider: FakeProvider,
    scheduler: ManualScheduler,
    saved: _Saved,
) -> None:
    """One embed throws, the other succeeds; the failure is retried later."""
    provider.fail_on = {"fails to embed"}

    worker.schedule()
    assert scheduler.advance(DELAY - 1) == 0
    assert scheduler.advance(1) == 1
    await worker.wait_idle()

    assert saved.ids == [1]
    assert store.missing_embeddings() == [2]
    assert worker.is_scheduled is True

    provider.fail_on = set()
    scheduler.advance(DELAY)
    await worker.wait_idle()

    assert saved.ids == [1, 2]
    assert store.missing_embeddings() == []
    assert worker.is_scheduled is False


@pytest.mark.asyncio
async def test_schedule_requests_coalesce(worker: RepairWorker, scheduler: ManualScheduler) -> None:
    worker.schedule()
    worker.schedule(7)
    worker.schedule(8)

    assert len(scheduler.pending) == 1


@pytest.mark.asyncio
async def test_schedule_during_sweep_runs_exactly_one_more(
    worker: RepairWorker, store: RecordStore, provider: FakeProvider, scheduler: ManualScheduler
) -> None:
    provider.gate = asyncio.Event()
    sweep = asyncio.create_task(worker.run_sweep())
    await wait_until(lambda: provider.calls)
    assert worker.is_running is True

    store.upsert_text(make_prompt(3, "Late arrival", "email draft"), notify=False)
    worker.schedule(3)
    worker.schedule(3)
    assert scheduler.pending == []
    provider.gate.set()

    result = await sweep

    assert result == SweepResult(repaired=3, failed=0, skipped=0)
    assert store.missing_embeddings() == []
    assert worker.is_running is False
    assert worker.is_scheduled is False


@pytest.mark.asyncio
async def test_run_sweep_is_not_reentrant(worker: RepairWorker, provider: FakeProvider) -> None:
    provider.gate = asyncio.Event()
    first = asyncio.create_task(worker.run_sweep())
    await wait_until(lambda: provider.calls)

    assert await worker.run_sweep() == SweepResult()

    provider.gate.set()
    assert (await first).repaired == 2


@pytest.mark.asyncio
async def test_engine_load_failure_leaves_everything_queued(
    store: RecordStore, scheduler: ManualScheduler
) -> None:
    provider = FakeProvider(ready=False)
    provider.fail_load = True
    worker = RepairWorker(store, provider, scheduler=scheduler, delay=DELAY)

    result = await worker.run_sweep()

    assert result.failed == 2
    assert result.repaired == 0
    assert provider.warmups == 1
    assert store.missing_embeddings() == [1, 2]
    assert worker.is_scheduled is True


@pytest.mark.asyncio
async def test_write_failure_is_counted_and_retried(
    worker: RepairWorker, store: RecordStore, saved: _Saved
) -> None:
    saved.error = OSError("database is locked")

    result = await worker.run_sweep()

    assert result.failed == 2
    assert store.missing_embeddings() == [1, 2]
    assert worker.is_scheduled is True


@pytest.mark.asyncio
async def test_deleted_prompt_is_skipped(
    worker: RepairWorker, store: RecordStore, provider: FakeProvider
) -> None:
    provider.gate = asyncio.Event()
    sweep = asyncio.create_task(worker.run_sweep())
    await wait_until(lambda: provider.calls)

    store.remove(2)
    provider.gate.set()
    result = await sweep

    assert result.repaired == 1
    assert result.skipped == 1
    assert result.failed == 0


@pytest.mark.asyncio
async def test_close_cancels_timer(worker: RepairWorker, scheduler: ManualScheduler) -> None:
    worker.schedule()
    await worker.close()

    assert scheduler.pending == []
    assert worker.is_scheduled is False
