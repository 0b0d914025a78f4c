from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal

from pydantic import BaseModel, Field

from .persistence.models import utcnow
from .states import WorkOrderState


class WorkflowStatus(BaseModel):
    """Point-in-time view of where a work order sits in the lifecycle."""

    work_order: str
    current_state: WorkOrderState
    display_name: str
    version: int
    entered_at: datetime
    days_in_state: int = 0
    next_states: List[WorkOrderState] = Field(default_factory=list)
    is_terminal: bool = False


class WorkflowMetrics(BaseModel):
    """Distribution of a tenant's work orders across states."""

    state_distribution: Dict[WorkOrderState, int] = Field(default_factory=dict)
    total_items: int = 0
    active_items: int = 0
    last_updated: datetime = Field(default_factory=utcnow)


class WorkflowBottleneck(BaseModel):
    state: WorkOrderState
    item_count: int
    severity: Literal["low", "medium", "high", "critical"]
    message: str
