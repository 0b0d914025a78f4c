import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import pytest

from pipeflow.errors import StoreUnavailableError
from pipeflow.persistence import InMemoryWorkflowRepository, SQLiteWorkflowRepository


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "inmemory":
        return InMemoryWorkflowRepository(tenant_id="longbeach")
    return SQLiteWorkflowRepository(tmp_path / "state.db", tenant_id="longbeach")


class StepClock:
    """Deterministic clock advancing one second per reading."""

    def __init__(self, start: datetime | None = None, step: timedelta = timedelta(seconds=1)):
        self.now = start or datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current


class ReadBarrier:
    """Holds every ``get_state`` call until ``parties`` callers have read.

    Forces concurrent transitions to observe the same version before either
    one writes.
    """

    def __init__(self, inner, parties: int = 2):
        self._inner = inner
        self._parties = parties
        self._arrived = 0
        self._all_read = asyncio.Event()

    def __getattr__(self, name):
        return getattr(self._inner, name)

    async def get_state(self, work_order):
        record = await self._inner.get_state(work_order)
        self._arrived += 1
        if self._arrived >= self._parties:
            self._all_read.set()
        await self._all_read.wait()
        return record


class _WrappedTransaction:
    def __init__(self, inner, fail_append=False, append_delay=0.0):
        self._inner = inner
        self._fail_append = fail_append
        self._append_delay = append_delay

    async def insert_state(self, *args):
        return await self._inner.insert_state(*args)

    async def compare_and_set(self, *args):
        return await self._inner.compare_and_set(*args)

    async def append_history(self, record):
        if self._append_delay:
            await asyncio.sleep(self._append_delay)
        if self._fail_append:
            raise StoreUnavailableError("history write failed", operation="append_history")
        await self._inner.append_history(record)


class FaultyHistory:
    """Repository wrapper that breaks or stalls history appends."""

    def __init__(self, inner, fail_append=False, append_delay=0.0):
        self._inner = inner
        self._fail_append = fail_append
        self._append_delay = append_delay

    def __getattr__(self, name):
        return getattr(self._inner, name)

    @asynccontextmanager
    async def transaction(self):
        async with self._inner.transaction() as tx:
            yield _WrappedTransaction(tx, self._fail_append, self._append_delay)
