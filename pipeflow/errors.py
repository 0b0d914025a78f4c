"""Error taxonomy for the workflow state engine.

Every error carries a machine readable ``code``, a human readable
``message``, structured ``details`` and the ``status_code`` a client facing
layer should answer with.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ErrorCode(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"
    TERMINAL_STATE = "terminal_state"
    CONFLICT = "conflict"
    STORE_UNAVAILABLE = "store_unavailable"


class ErrorResponse(BaseModel):
    """Error envelope handed to callers."""

    ok: bool = Field(default=False, description="Always false for errors")
    code: ErrorCode = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(default=None)
    retryable: bool = False


class WorkflowError(Exception):
    """Base exception for all workflow engine errors."""

    retryable = False

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: int = 500,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(
            code=self.code,
            message=self.message,
            details=self.details,
            retryable=self.retryable,
        )


class NotFoundError(WorkflowError):
    """The work order has no state row (404)."""

    def __init__(self, work_order: str):
        self.work_order = work_order
        super().__init__(
            code=ErrorCode.NOT_FOUND,
            message=f"work order {work_order!r} not found",
            details={"work_order": work_order},
            status_code=404,
        )


class InvalidTransitionError(WorkflowError):
    """The requested edge is not part of the transition graph (422)."""

    def __init__(
        self, from_state: str, to_state: str, allowed: Optional[List[str]] = None
    ):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            code=ErrorCode.INVALID_TRANSITION,
            message=f"invalid transition from {from_state} to {to_state}",
            details={
                "from_state": from_state,
                "to_state": to_state,
                "allowed_transitions": list(allowed or []),
            },
            status_code=422,
        )


class TerminalStateError(WorkflowError):
    """The work order is already in a terminal state (422)."""

    def __init__(self, state: str, to_state: str):
        self.state = state
        self.to_state = to_state
        super().__init__(
            code=ErrorCode.TERMINAL_STATE,
            message=f"work order is in terminal state {state}; cannot transition to {to_state}",
            details={"from_state": state, "to_state": to_state},
            status_code=422,
        )


class ConflictError(WorkflowError):
    """Optimistic concurrency check failed (409). Safe to retry."""

    retryable = True

    def __init__(
        self,
        work_order: str,
        message: Optional[str] = None,
        expected_version: Optional[int] = None,
        actual_version: Optional[int] = None,
    ):
        self.work_order = work_order
        self.expected_version = expected_version
        self.actual_version = actual_version
        details: Dict[str, Any] = {"work_order": work_order}
        if expected_version is not None:
            details["expected_version"] = expected_version
        if actual_version is not None:
            details["actual_version"] = actual_version
        super().__init__(
            code=ErrorCode.CONFLICT,
            message=message
            or f"work order {work_order!r} was modified concurrently",
            details=details,
            status_code=409,
        )


class WorkOrderExistsError(ConflictError):
    """A state row already exists for the work order."""

    retryable = False

    def __init__(self, work_order: str):
        super().__init__(work_order, message=f"work order {work_order!r} already exists")


class StoreUnavailableError(WorkflowError):
    """The persistence layer failed; nothing was applied (503)."""

    def __init__(self, message: str, operation: Optional[str] = None):
        self.operation = operation
        super().__init__(
            code=ErrorCode.STORE_UNAVAILABLE,
            message=message,
            details={"operation": operation} if operation else None,
            status_code=503,
        )
