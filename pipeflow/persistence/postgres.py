"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator

import asyncpg

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

_DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


def _unavailable(operation: str, exc: BaseException) -> StoreUnavailableError:
    logger.error(f"PostgreSQL {operation} failed: {exc}")
    return StoreUnavailableError(
        f"postgres {operation} failed: {exc}", operation=operation
    )


class _PostgresTransaction:
    def __init__(self, conn: asyncpg.Connection, tenant_id: str) -> None:
        self._conn = conn
        self._tenant_id = tenant_id

    async def insert_state(
        self, work_order: str, state: WorkOrderState, at: datetime
    ) -> WorkflowStateRecord:
        try:
            await self._conn.execute(
                "INSERT INTO workflow_state (tenant_id, work_order, state, version, updated_at) VALUES ($1, $2, $3, 1, $4)",
                self._tenant_id,
                work_order,
                state.value,
                at,
            )
        except asyncpg.UniqueViolationError as exc:
            raise WorkOrderExistsError(work_order) from exc
        except _DRIVER_ERRORS as exc:
            raise _unavailable("insert_state", exc) from exc
        return WorkflowStateRecord(
            work_order=work_order, state=state, version=1, updated_at=at
        )

    async def compare_and_set(
        self,
        work_order: str,
        expected_version: int,
        new_state: WorkOrderState,
        at: datetime,
    ) -> WorkflowStateRecord:
        try:
            status = await self._conn.execute(
                """
                UPDATE workflow_state
                SET state = $1, version = version + 1, updated_at = $2
                WHERE tenant_id = $3 AND work_order = $4 AND version = $5
                """,
                new_state.value,
                at,
                self._tenant_id,
                work_order,
                expected_version,
            )
            updated = status.split()[-1] != "0"
            actual = None
            if not updated:
                actual = await self._conn.fetchval(
                    "SELECT version FROM workflow_state WHERE tenant_id = $1 AND work_order = $2",
                    self._tenant_id,
                    work_order,
                )
        except _DRIVER_ERRORS as exc:
            raise _unavailable("compare_and_set", exc) from exc
        if not updated:
            if actual is None:
                raise NotFoundError(work_order)
            raise ConflictError(
                work_order, expected_version=expected_version, actual_version=actual
            )
        return WorkflowStateRecord(
            work_order=work_order,
            state=new_state,
            version=expected_version + 1,
            updated_at=at,
        )

    async def append_history(self, record: TransitionRecord) -> None:
        try:
            await self._conn.execute(
                """
                INSERT INTO workflow_transition
                    (tenant_id, work_order, from_state, to_state, actor, notes, occurred_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                self._tenant_id,
                record.work_order,
                record.from_state.value if record.from_state else None,
                record.to_state.value,
                record.actor,
                record.notes,
                record.occurred_at,
            )
        except _DRIVER_ERRORS as exc:
            raise _unavailable("append_history", exc) from exc


class PostgresWorkflowRepository:
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str, tenant_id: str = "default"):
        self._dsn = dsn
        self.tenant_id = tenant_id
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        try:
            conn = await asyncpg.connect(self._dsn)
        except _DRIVER_ERRORS as exc:
            raise _unavailable("connect", exc) from exc
        if not self._initialized:
            try:
                await self._ensure_schema(conn)
            except _DRIVER_ERRORS as exc:
                await conn.close()
                raise _unavailable("schema", exc) from exc
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        states = ", ".join(f"'{s.value}'" for s in WorkOrderState)
        await conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS workflow_state (
                tenant_id TEXT NOT NULL,
                work_order TEXT NOT NULL,
                state TEXT NOT NULL CHECK (state IN ({states})),
                version BIGINT NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                PRIMARY KEY (tenant_id, work_order)
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_workflow_state_state ON workflow_state (tenant_id, state, work_order)"
        )
        await conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS workflow_transition (
                id BIGSERIAL PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                work_order TEXT NOT NULL,
                from_state TEXT CHECK (from_state IS NULL OR from_state IN ({states})),
                to_state TEXT NOT NULL CHECK (to_state IN ({states})),
                actor TEXT NOT NULL,
                notes TEXT NOT NULL,
                occurred_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_workflow_transition_work_order ON workflow_transition (tenant_id, work_order, occurred_at)"
        )
        await conn.execute(
            """
            CREATE OR REPLACE FUNCTION workflow_transition_immutable() RETURNS trigger AS $$
            BEGIN
                RAISE EXCEPTION 'workflow_transition rows are immutable';
            END;
            $$ LANGUAGE plpgsql
            """
        )
        await conn.execute(
            "DROP TRIGGER IF EXISTS workflow_transition_immutable ON workflow_transition"
        )
        await conn.execute(
            """
            CREATE TRIGGER workflow_transition_immutable
            BEFORE UPDATE OR DELETE ON workflow_transition
            FOR EACH ROW EXECUTE FUNCTION workflow_transition_immutable()
            """
        )

    # ------------------------------------------------------------------
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_PostgresTransaction]:
        conn = await self._connect()
        try:
            async with conn.transaction():
                yield _PostgresTransaction(conn, self.tenant_id)
        except _DRIVER_ERRORS as exc:
            raise _unavailable("commit", exc) from exc
        finally:
            await conn.close()

    async def get_state(self, work_order: str) -> WorkflowStateRecord:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT work_order, state, version, updated_at FROM workflow_state WHERE tenant_id = $1 AND work_order = $2",
                self.tenant_id,
                work_order,
            )
        except _DRIVER_ERRORS as exc:
            raise _unavailable("get_state", exc) from exc
        finally:
            await conn.close()
        if not row:
            raise NotFoundError(work_order)
        return WorkflowStateRecord(
            work_order=row["work_order"],
            state=WorkOrderState(row["state"]),
            version=row["version"],
            updated_at=row["updated_at"],
        )

    async def list_history(self, work_order: str) -> list[TransitionRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT work_order, from_state, to_state, actor, notes, occurred_at
                FROM workflow_transition
                WHERE tenant_id = $1 AND work_order = $2
                ORDER BY occurred_at, id
                """,
                self.tenant_id,
                work_order,
            )
        except _DRIVER_ERRORS as exc:
            raise _unavailable("list_history", exc) from exc
        finally:
            await conn.close()
        return [
            TransitionRecord(
                work_order=r["work_order"],
                from_state=WorkOrderState(r["from_state"]) if r["from_state"] else None,
                to_state=WorkOrderState(r["to_state"]),
                actor=r["actor"],
                notes=r["notes"],
                occurred_at=r["occurred_at"],
            )
            for r in rows
        ]

    async def list_by_state(
        self,
        state: WorkOrderState,
        limit: int,
        offset: int = 0,
        order_by: OrderBy = "work_order",
    ) -> list[str]:
        order = "updated_at DESC, work_order" if order_by == "updated_at" else "work_order"
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"""
                SELECT work_order FROM workflow_state
                WHERE tenant_id = $1 AND state = $2
                ORDER BY {order}
                LIMIT $3 OFFSET $4
                """,
                self.tenant_id,
                state.value,
                limit,
                offset,
            )
        except _DRIVER_ERRORS as exc:
            raise _unavailable("list_by_state", exc) from exc
        finally:
            await conn.close()
        return [r["work_order"] for r in rows]

    async def count_by_state(self) -> dict[WorkOrderState, int]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT state, COUNT(*) AS n FROM workflow_state WHERE tenant_id = $1 GROUP BY state",
                self.tenant_id,
            )
        except _DRIVER_ERRORS as exc:
            raise _unavailable("count_by_state", exc) from exc
        finally:
            await conn.close()
        counts = {state: 0 for state in WorkOrderState}
        for r in rows:
            counts[WorkOrderState(r["state"])] = r["n"]
        return counts

    async def close(self) -> None:
        pass
