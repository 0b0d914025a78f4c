"""Work order lifecycle states and the fixed transition graph."""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, List

from .errors import InvalidTransitionError, TerminalStateError


class WorkOrderState(str, Enum):
    """Lifecycle stage of a pipe lot, in creation to terminal order."""

    RECEIVED = "RECEIVED"
    INSPECTION = "INSPECTION"
    PRODUCTION = "PRODUCTION"
    INVENTORY = "INVENTORY"
    SHIPPED = "SHIPPED"
    COMPLETED = "COMPLETED"

    @property
    def display_name(self) -> str:
        return self.value.title()

    def __str__(self) -> str:
        return self.value


INITIAL_STATE = WorkOrderState.RECEIVED

STATE_TRANSITIONS: Dict[WorkOrderState, FrozenSet[WorkOrderState]] = {
    WorkOrderState.RECEIVED: frozenset({WorkOrderState.INSPECTION}),
    WorkOrderState.INSPECTION: frozenset({WorkOrderState.PRODUCTION}),
    WorkOrderState.PRODUCTION: frozenset({WorkOrderState.INVENTORY}),
    WorkOrderState.INVENTORY: frozenset({WorkOrderState.SHIPPED}),
    WorkOrderState.SHIPPED: frozenset({WorkOrderState.COMPLETED}),
    WorkOrderState.COMPLETED: frozenset(),
}

# Spellings used by older handlers and imported yard data. Legacy job rows
# report "INSPECTED" while a job is in the inspection stage, before it
# reaches inventory.
_ALIASES: Dict[str, WorkOrderState] = {
    "RECEIVING": WorkOrderState.RECEIVED,
    "INSPECTED": WorkOrderState.INSPECTION,
    "IN_PRODUCTION": WorkOrderState.PRODUCTION,
    "SHIPPING": WorkOrderState.SHIPPED,
    "COMPLETE": WorkOrderState.COMPLETED,
}


def parse_state(value: str | WorkOrderState) -> WorkOrderState:
    """Convert a raw state string into a ``WorkOrderState``.

    Matching is case-insensitive, ignores surrounding whitespace and accepts
    the legacy aliases. Raises ``ValueError`` for anything else.
    """
    if isinstance(value, WorkOrderState):
        return value
    if not isinstance(value, str):
        raise ValueError(f"invalid workflow state: {value!r}")
    key = value.strip().upper().replace(" ", "_").replace("-", "_")
    try:
        return WorkOrderState(key)
    except ValueError:
        pass
    if key in _ALIASES:
        return _ALIASES[key]
    raise ValueError(f"invalid workflow state: {value!r}")


def format_state(state: WorkOrderState) -> str:
    """Return the canonical wire value for ``state``."""
    return state.value


def is_allowed(from_state: WorkOrderState, to_state: WorkOrderState) -> bool:
    return to_state in STATE_TRANSITIONS.get(from_state, frozenset())


def is_terminal(state: WorkOrderState) -> bool:
    return not STATE_TRANSITIONS.get(state)


def next_states(state: WorkOrderState) -> List[WorkOrderState]:
    """Legal successors of ``state`` in lifecycle order."""
    return [s for s in WorkOrderState if s in STATE_TRANSITIONS.get(state, ())]


def check_transition(
    from_state: WorkOrderState, target: str | WorkOrderState
) -> WorkOrderState:
    """Validate ``from_state -> target`` and return the parsed target.

    Raises ``TerminalStateError`` when ``from_state`` has no outgoing edges and
    ``InvalidTransitionError`` when the edge is not in the graph or the target
    is not a recognised state.
    """
    if is_terminal(from_state):
        raise TerminalStateError(from_state.value, str(target))
    try:
        to_state = parse_state(target)
    except ValueError:
        raise InvalidTransitionError(
            from_state.value,
            str(target),
            allowed=[s.value for s in next_states(from_state)],
        ) from None
    if not is_allowed(from_state, to_state):
        raise InvalidTransitionError(
            from_state.value,
            to_state.value,
            allowed=[s.value for s in next_states(from_state)],
        )
    return to_state
