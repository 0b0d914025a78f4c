"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import functools
import logging
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable, TypeVar

from ..errors import (
    ConflictError,
    NotFoundError,
    StoreUnavailableError,
    WorkOrderExistsError,
)
from ..states import WorkOrderState
from .models import TransitionRecord, WorkflowStateRecord
from .repository import OrderBy

logger = logging.getLogger(__name__)

T = TypeVar("T")

_STATE_VALUES = ", ".join(f"'{s.value}'" for s in WorkOrderState)

SCHEMA = [
    f"""
    CREATE TABLE IF NOT EXISTS workflow_state (
        tenant_id TEXT NOT NULL,
        work_order TEXT NOT NULL,
        state TEXT NOT NULL CHECK (state IN ({_STATE_VALUES})),
        version INTEGER NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (tenant_id, work_order)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_workflow_state_state
    ON workflow_state (tenant_id, state, work_order)
    """,
    f"""
    CREATE TABLE IF NOT EXISTS workflow_transition (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        tenant_id TEXT NOT NULL,
        work_order TEXT NOT NULL,
        from_state TEXT CHECK (from_state IS NULL OR from_state IN ({_STATE_VALUES})),
        to_state TEXT NOT NULL CHECK (to_state IN ({_STATE_VALUES})),
        actor TEXT NOT NULL,
        notes TEXT NOT NULL,
        occurred_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_workflow_transition_work_order
    ON workflow_transition (tenant_id, work_order, occurred_at)
    """,
    """
    CREATE TRIGGER IF NOT EXISTS workflow_transition_no_update
    BEFORE UPDATE ON workflow_transition
    BEGIN
        SELECT RAISE(ABORT, 'workflow_transition rows are immutable');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS workflow_transition_no_delete
    BEFORE DELETE ON workflow_transition
    BEGIN
        SELECT RAISE(ABORT, 'workflow_transition rows are immutable');
    END
    """,
]


def _ts(value: datetime) -> str:
    # stored as UTC text so ORDER BY on the column follows time order
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _state_row(row: sqlite3.Row) -> WorkflowStateRecord:
    return WorkflowStateRecord(
        work_order=row["work_order"],
        state=WorkOrderState(row["state"]),
        version=row["version"],
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _transition_row(row: sqlite3.Row) -> TransitionRecord:
    return TransitionRecord(
        work_order=row["work_order"],
        from_state=WorkOrderState(row["from_state"]) if row["from_state"] else None,
        to_state=WorkOrderState(row["to_state"]),
        actor=row["actor"],
        notes=row["notes"],
        occurred_at=datetime.fromisoformat(row["occurred_at"]),
    )


async def _run(
    operation: str,
    fn: Callable[..., T],
    *args: Any,
    executor: ThreadPoolExecutor | None = None,
) -> T:
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(executor, functools.partial(fn, *args))
    except sqlite3.Error as exc:
        logger.error(f"SQLite {operation} failed: {exc}")
        raise StoreUnavailableError(
            f"sqlite {operation} failed: {exc}", operation=operation
        ) from exc


class _SQLiteTransaction:
    """Write scope bound to a single connection holding the write lock."""

    def __init__(
        self, conn: sqlite3.Connection, tenant_id: str, executor: ThreadPoolExecutor
    ) -> None:
        self._conn = conn
        self._tenant_id = tenant_id
        self._executor = executor

    def _insert_state(
        self, work_order: str, state: WorkOrderState, at: datetime
    ) -> WorkflowStateRecord:
        try:
            self._conn.execute(
                "INSERT INTO workflow_state (tenant_id, work_order, state, version, updated_at) VALUES (?, ?, ?, 1, ?)",
                (self._tenant_id, work_order, state.value, _ts(at)),
            )
        except sqlite3.IntegrityError as exc:
            raise WorkOrderExistsError(work_order) from exc
        return WorkflowStateRecord(
            work_order=work_order, state=state, version=1, updated_at=at
        )

    def _compare_and_set(
        self,
        work_order: str,
        expected_version: int,
        new_state: WorkOrderState,
        at: datetime,
    ) -> WorkflowStateRecord:
        cur = self._conn.execute(
            """
            UPDATE workflow_state
            SET state = ?, version = version + 1, updated_at = ?
            WHERE tenant_id = ? AND work_order = ? AND version = ?
            """,
            (new_state.value, _ts(at), self._tenant_id, work_order, expected_version),
        )
        if cur.rowcount == 0:
            row = self._conn.execute(
                "SELECT version FROM workflow_state WHERE tenant_id = ? AND work_order = ?",
                (self._tenant_id, work_order),
            ).fetchone()
            if row is None:
                raise NotFoundError(work_order)
            raise ConflictError(
                work_order,
                expected_version=expected_version,
                actual_version=row[0],
            )
        return WorkflowStateRecord(
            work_order=work_order,
            state=new_state,
            version=expected_version + 1,
            updated_at=at,
        )

    def _append_history(self, record: TransitionRecord) -> None:
        self._conn.execute(
            """
            INSERT INTO workflow_transition
                (tenant_id, work_order, from_state, to_state, actor, notes, occurred_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                self._tenant_id,
                record.work_order,
                record.from_state.value if record.from_state else None,
                record.to_state.value,
                record.actor,
                record.notes,
                _ts(record.occurred_at),
            ),
        )

    # ------------------------------------------------------------------
    async def insert_state(
        self, work_order: str, state: WorkOrderState, at: datetime
    ) -> WorkflowStateRecord:
        return await _run(
            "insert_state",
            self._insert_state,
            work_order,
            state,
            at,
            executor=self._executor,
        )

    async def compare_and_set(
        self,
        work_order: str,
        expected_version: int,
        new_state: WorkOrderState,
        at: datetime,
    ) -> WorkflowStateRecord:
        return await _run(
            "compare_and_set",
            self._compare_and_set,
            work_order,
            expected_version,
            new_state,
            at,
            executor=self._executor,
        )

    async def append_history(self, record: TransitionRecord) -> None:
        await _run(
            "append_history", self._append_history, record, executor=self._executor
        )


class SQLiteWorkflowRepository:
    """Persist workflow state using SQLite.

    Each transaction runs on its own connection opened with
    ``BEGIN IMMEDIATE`` so writers are serialized by the database lock and the
    guarded ``UPDATE`` decides compare-and-swap races.
    """

    def __init__(
        self, db_path: str | Path, tenant_id: str = "default", timeout: float = 5.0
    ):
        self.db_path = str(db_path)
        self.tenant_id = tenant_id
        self._timeout = timeout
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=self._timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise StoreUnavailableError(
                f"cannot open sqlite database {self.db_path}: {exc}",
                operation="connect",
            ) from exc
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            for statement in SCHEMA:
                conn.execute(statement)
        except sqlite3.Error as exc:
            raise StoreUnavailableError(
                f"sqlite schema setup failed: {exc}", operation="schema"
            ) from exc
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Helper methods
    def _begin(self, opened: list[sqlite3.Connection]) -> None:
        conn = self._connect()
        opened.append(conn)
        conn.execute("BEGIN IMMEDIATE")

    @staticmethod
    def _commit(opened: list[sqlite3.Connection]) -> None:
        opened[0].execute("COMMIT")

    @staticmethod
    def _release(opened: list[sqlite3.Connection]) -> None:
        for conn in opened:
            try:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
            except sqlite3.Error as exc:
                logger.warning(f"SQLite rollback failed: {exc}")
            finally:
                conn.close()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        conn = self._connect()
        try:
            return conn.execute(query, params).fetchone()
        finally:
            conn.close()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        conn = self._connect()
        try:
            return conn.execute(query, params).fetchall()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Repository API
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_SQLiteTransaction]:
        # One worker thread per transaction keeps statements ordered, so the
        # release queued below always runs after any statement still in flight.
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pipeflow-sqlite")
        opened: list[sqlite3.Connection] = []
        try:
            await _run("begin", self._begin, opened, executor=executor)
            yield _SQLiteTransaction(opened[0], self.tenant_id, executor)
            await _run("commit", self._commit, opened, executor=executor)
        finally:
            # rolls back unless committed; needs no await so cancellation cannot skip it
            executor.submit(self._release, opened)
            executor.shutdown(wait=False)

    async def get_state(self, work_order: str) -> WorkflowStateRecord:
        row = await _run(
            "get_state",
            self._fetchone,
            "SELECT work_order, state, version, updated_at FROM workflow_state WHERE tenant_id = ? AND work_order = ?",
            self.tenant_id,
            work_order,
        )
        if row is None:
            raise NotFoundError(work_order)
        return _state_row(row)

    async def list_history(self, work_order: str) -> list[TransitionRecord]:
        rows = await _run(
            "list_history",
            self._fetchall,
            """
            SELECT work_order, from_state, to_state, actor, notes, occurred_at
            FROM workflow_transition
            WHERE tenant_id = ? AND work_order = ?
            ORDER BY occurred_at, id
            """,
            self.tenant_id,
            work_order,
        )
        return [_transition_row(r) for r in rows]

    async def list_by_state(
        self,
        state: WorkOrderState,
        limit: int,
        offset: int = 0,
        order_by: OrderBy = "work_order",
    ) -> list[str]:
        order = "updated_at DESC, work_order" if order_by == "updated_at" else "work_order"
        rows = await _run(
            "list_by_state",
            self._fetchall,
            f"""
            SELECT work_order FROM workflow_state
            WHERE tenant_id = ? AND state = ?
            ORDER BY {order}
            LIMIT ? OFFSET ?
            """,
            self.tenant_id,
            state.value,
            limit,
            offset,
        )
        return [r["work_order"] for r in rows]

    async def count_by_state(self) -> dict[WorkOrderState, int]:
        rows = await _run(
            "count_by_state",
            self._fetchall,
            "SELECT state, COUNT(*) AS n FROM workflow_state WHERE tenant_id = ? GROUP BY state",
            self.tenant_id,
        )
        counts = {state: 0 for state in WorkOrderState}
        for row in rows:
            counts[WorkOrderState(row["state"])] = row["n"]
        return counts

    async def close(self) -> None:
        pass
