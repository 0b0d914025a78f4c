"""Pipeflow: workflow state engine for oilfield pipe work orders."""

from .engine import WorkflowEngine, get_engine
from .errors import (
    ConflictError,
    ErrorCode,
    InvalidTransitionError,
    NotFoundError,
    StoreUnavailableError,
    TerminalStateError,
    WorkflowError,
    WorkOrderExistsError,
)
from .persistence import TransitionRecord, WorkflowStateRecord, get_repository
from .states import WorkOrderState, format_state, parse_state

__version__ = "0.1.0"
__all__ = [
    "WorkflowEngine",
    "get_engine",
    "get_repository",
    "WorkOrderState",
    "parse_state",
    "format_state",
    "TransitionRecord",
    "WorkflowStateRecord",
    "WorkflowError",
    "ErrorCode",
    "NotFoundError",
    "InvalidTransitionError",
    "TerminalStateError",
    "ConflictError",
    "WorkOrderExistsError",
    "StoreUnavailableError",
]
