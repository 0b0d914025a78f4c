from pipeflow.errors import (
    ConflictError,
    ErrorCode,
    InvalidTransitionError,
    NotFoundError,
    StoreUnavailableError,
    TerminalStateError,
    WorkflowError,
    WorkOrderExistsError,
)


def test_status_codes_follow_caller_contract():
    assert NotFoundError("WO-1").status_code == 404
    assert InvalidTransitionError("RECEIVED", "SHIPPED").status_code == 422
    assert TerminalStateError("COMPLETED", "RECEIVED").status_code == 422
    assert ConflictError("WO-1").status_code == 409
    assert StoreUnavailableError("down").status_code == 503


def test_invalid_transition_names_the_edge():
    exc = InvalidTransitionError("INSPECTION", "SHIPPED", allowed=["PRODUCTION"])
    response = exc.to_response()
    assert not response.ok
    assert response.code == ErrorCode.INVALID_TRANSITION
    assert "INSPECTION" in response.message and "SHIPPED" in response.message
    assert response.details["allowed_transitions"] == ["PRODUCTION"]
    assert not response.retryable


def test_conflict_is_retryable_but_duplicate_creation_is_not():
    conflict = ConflictError("WO-1", expected_version=2, actual_version=3)
    assert conflict.to_response().retryable
    assert conflict.details == {
        "work_order": "WO-1",
        "expected_version": 2,
        "actual_version": 3,
    }
    exists = WorkOrderExistsError("WO-1")
    assert isinstance(exists, ConflictError)
    assert not exists.retryable


def test_all_errors_share_base():
    for exc in (
        NotFoundError("x"),
        TerminalStateError("COMPLETED", "SHIPPED"),
        StoreUnavailableError("boom", operation="commit"),
    ):
        assert isinstance(exc, WorkflowError)
        assert str(exc) == exc.message
