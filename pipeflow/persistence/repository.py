"""Repository abstraction for workflow state persistence.

A repository is bound to exactly one tenant. Reads go straight through the
repository; every write happens inside a ``StateTransaction`` obtained from
``transaction()``, which commits on clean exit and rolls back on any
exception, cancellation included.
"""

from __future__ import annotations

from datetime import datetime
from typing import AsyncContextManager, Literal, Protocol

from ..states import WorkOrderState
from .models import TransitionRecord, WorkflowStateRecord

OrderBy = Literal["work_order", "updated_at"]


class StateTransaction(Protocol):
    """Write scope covering the state store and the history log."""

    async def insert_state(
        self, work_order: str, state: WorkOrderState, at: datetime
    ) -> WorkflowStateRecord:
        """Create the state row. Raises ``WorkOrderExistsError`` on duplicates."""

    async def compare_and_set(
        self,
        work_order: str,
        expected_version: int,
        new_state: WorkOrderState,
        at: datetime,
    ) -> WorkflowStateRecord:
        """Swap the state if the stored version still equals ``expected_version``.

        Raises ``ConflictError`` on a version mismatch and ``NotFoundError`` if
        the row does not exist.
        """

    async def append_history(self, record: TransitionRecord) -> None:
        """Append a transition record to the history log."""


class WorkflowRepository(Protocol):
    """Protocol for tenant scoped workflow persistence backends."""

    tenant_id: str

    def transaction(self) -> AsyncContextManager[StateTransaction]:
        """Open an all-or-nothing write scope."""

    async def get_state(self, work_order: str) -> WorkflowStateRecord:
        """Return the current state row. Raises ``NotFoundError``."""

    async def list_history(self, work_order: str) -> list[TransitionRecord]:
        """Return history records ordered by ``occurred_at`` ascending."""

    async def list_by_state(
        self,
        state: WorkOrderState,
        limit: int,
        offset: int = 0,
        order_by: OrderBy = "work_order",
    ) -> list[str]:
        """Return work orders currently in ``state``."""

    async def count_by_state(self) -> dict[WorkOrderState, int]:
        """Return the number of work orders per state."""

    async def close(self) -> None:
        """Release backend resources."""
