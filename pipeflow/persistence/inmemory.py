"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import threading
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, List, Tuple

from ..errors import ConflictError, NotFoundError, WorkOrderExistsError
from ..states import WorkOrderState
from .models import TransitionRecord, WorkflowStateRecord
from .repository import OrderBy


class _InMemoryTransaction:
    """Stages writes until the owning repository commits them."""

    def __init__(self, repo: "InMemoryWorkflowRepository") -> None:
        self._repo = repo
        self.inserts: Dict[str, WorkflowStateRecord] = {}
        # work_order -> (version read from the committed row, staged row)
        self.swaps: Dict[str, Tuple[int, WorkflowStateRecord]] = {}
        self.appends: List[TransitionRecord] = []

    def _visible(self, work_order: str) -> WorkflowStateRecord | None:
        if work_order in self.swaps:
            return self.swaps[work_order][1]
        if work_order in self.inserts:
            return self.inserts[work_order]
        return self._repo._states.get(work_order)

    async def insert_state(
        self, work_order: str, state: WorkOrderState, at: datetime
    ) -> WorkflowStateRecord:
        if self._visible(work_order) is not None:
            raise WorkOrderExistsError(work_order)
        record = WorkflowStateRecord(
            work_order=work_order, state=state, version=1, updated_at=at
        )
        self.inserts[work_order] = record
        return record

    async def compare_and_set(
        self,
        work_order: str,
        expected_version: int,
        new_state: WorkOrderState,
        at: datetime,
    ) -> WorkflowStateRecord:
        current = self._visible(work_order)
        if current is None:
            raise NotFoundError(work_order)
        if current.version != expected_version:
            raise ConflictError(
                work_order,
                expected_version=expected_version,
                actual_version=current.version,
            )
        record = WorkflowStateRecord(
            work_order=work_order,
            state=new_state,
            version=current.version + 1,
            updated_at=at,
        )
        if work_order in self.inserts:
            self.inserts[work_order] = record
        else:
            base = self.swaps.get(work_order, (expected_version, record))[0]
            self.swaps[work_order] = (base, record)
        return record

    async def append_history(self, record: TransitionRecord) -> None:
        self.appends.append(record)


class InMemoryWorkflowRepository:
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self, tenant_id: str = "default") -> None:
        self.tenant_id = tenant_id
        self._states: Dict[str, WorkflowStateRecord] = {}
        self._history: Dict[str, List[TransitionRecord]] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_InMemoryTransaction]:
        tx = _InMemoryTransaction(self)
        yield tx
        self._commit(tx)

    def _commit(self, tx: _InMemoryTransaction) -> None:
        with self._lock:
            for work_order in tx.inserts:
                if work_order in self._states:
                    raise WorkOrderExistsError(work_order)
            for work_order, (base_version, _) in tx.swaps.items():
                current = self._states.get(work_order)
                if current is None:
                    raise NotFoundError(work_order)
                if current.version != base_version:
                    raise ConflictError(
                        work_order,
                        expected_version=base_version,
                        actual_version=current.version,
                    )
            self._states.update(tx.inserts)
            for work_order, (_, record) in tx.swaps.items():
                self._states[work_order] = record
            for record in tx.appends:
                self._history.setdefault(record.work_order, []).append(record)

    # ------------------------------------------------------------------
    async def get_state(self, work_order: str) -> WorkflowStateRecord:
        record = self._states.get(work_order)
        if record is None:
            raise NotFoundError(work_order)
        return record

    async def list_history(self, work_order: str) -> list[TransitionRecord]:
        with self._lock:
            records = list(self._history.get(work_order, []))
        # sorted() is stable, so equal timestamps keep insertion order
        return sorted(records, key=lambda r: r.occurred_at)

    async def list_by_state(
        self,
        state: WorkOrderState,
        limit: int,
        offset: int = 0,
        order_by: OrderBy = "work_order",
    ) -> list[str]:
        with self._lock:
            rows = [r for r in self._states.values() if r.state == state]
        rows.sort(key=lambda r: r.work_order)
        if order_by == "updated_at":
            rows.sort(key=lambda r: r.updated_at, reverse=True)
        return [r.work_order for r in rows[offset : offset + limit]]

    async def count_by_state(self) -> dict[WorkOrderState, int]:
        counts = {state: 0 for state in WorkOrderState}
        with self._lock:
            for record in self._states.values():
                counts[record.state] += 1
        return counts

    async def close(self) -> None:
        pass
