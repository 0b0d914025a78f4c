"""Data models for persisted workflow state."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..states import WorkOrderState


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowStateRecord(BaseModel):
    """Current state row of a work order."""

    work_order: str
    state: WorkOrderState
    version: int = 1
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True}


class TransitionRecord(BaseModel):
    """Immutable history entry for one state change."""

    work_order: str
    from_state: Optional[WorkOrderState] = None
    to_state: WorkOrderState
    actor: str = ""
    notes: str = ""
    occurred_at: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True}

    @property
    def is_creation(self) -> bool:
        return self.from_state is None

    def to_dict(self) -> dict[str, Any]:
        """Serialize with canonical state strings."""
        return {
            "work_order": self.work_order,
            "from_state": self.from_state.value if self.from_state else None,
            "to_state": self.to_state.value,
            "actor": self.actor,
            "notes": self.notes,
            "occurred_at": self.occurred_at.isoformat(),
        }
