"""Workflow state engine for work orders."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Tuple, TypeVar

from .config import EngineConfig, PipeflowConfig, load_config
from .errors import ConflictError, TerminalStateError, WorkflowError
from .models import WorkflowBottleneck, WorkflowMetrics, WorkflowStatus
from .persistence import (
    OrderBy,
    TransitionRecord,
    WorkflowRepository,
    WorkflowStateRecord,
    get_repository,
)
from .persistence.models import utcnow
from .states import (
    INITIAL_STATE,
    WorkOrderState,
    check_transition,
    is_terminal,
    next_states,
    parse_state,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ORDERINGS = ("work_order", "updated_at")


def bottleneck_severity(item_count: int) -> str:
    if item_count > 50:
        return "critical"
    if item_count > 30:
        return "high"
    if item_count > 20:
        return "medium"
    return "low"


class WorkflowEngine:
    """Drives work orders through the fixed lifecycle.

    The engine holds no locks of its own. Each transition reads the current
    state and its version, validates the edge, then performs the
    compare-and-swap and the history append inside one repository
    transaction. A lost race surfaces as ``ConflictError`` and is never
    retried here.

    Every public operation takes an optional ``timeout`` in seconds; when it
    expires the operation is cancelled and any open transaction is rolled
    back.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._config = config or EngineConfig()
        self._clock = clock

    @property
    def repository(self) -> WorkflowRepository:
        return self._repository

    async def _bounded(self, coro: Awaitable[T], timeout: Optional[float]) -> T:
        timeout = timeout if timeout is not None else self._config.timeout
        if timeout is None:
            return await coro
        return await asyncio.wait_for(coro, timeout)

    # ------------------------------------------------------------------
    # Creation
    async def create_work_order(
        self,
        work_order: str,
        actor: str = "system",
        notes: str = "",
        timeout: Optional[float] = None,
    ) -> WorkflowStateRecord:
        """Register a new work order in ``RECEIVED`` with its creation record."""
        if not isinstance(work_order, str) or not work_order.strip():
            raise ValueError("work order identifier must be a non-empty string")
        return await self._bounded(self._create(work_order, actor, notes), timeout)

    async def _create(
        self, work_order: str, actor: str, notes: str
    ) -> WorkflowStateRecord:
        at = self._clock()
        async with self._repository.transaction() as tx:
            record = await tx.insert_state(work_order, INITIAL_STATE, at)
            await tx.append_history(
                TransitionRecord(
                    work_order=work_order,
                    from_state=None,
                    to_state=INITIAL_STATE,
                    actor=actor,
                    notes=notes,
                    occurred_at=at,
                )
            )
        logger.info(f"Created work_order={work_order} in state {INITIAL_STATE}")
        return record

    # ------------------------------------------------------------------
    # Reads
    async def get_current_state(
        self, work_order: str, timeout: Optional[float] = None
    ) -> WorkOrderState:
        record = await self._bounded(self._repository.get_state(work_order), timeout)
        return record.state

    async def get_state_history(
        self, work_order: str, timeout: Optional[float] = None
    ) -> List[TransitionRecord]:
        return await self._bounded(self._history(work_order), timeout)

    async def _history(self, work_order: str) -> List[TransitionRecord]:
        records = await self._repository.list_history(work_order)
        if not records:
            # raises NotFoundError for work orders that never existed
            await self._repository.get_state(work_order)
        return records

    async def get_items_by_state(
        self,
        state: str | WorkOrderState,
        limit: Optional[int] = None,
        offset: int = 0,
        order_by: OrderBy = "work_order",
        timeout: Optional[float] = None,
    ) -> List[str]:
        """Page through the work orders currently in ``state``.

        Ordered by work order ascending by default, or most recently
        transitioned first with ``order_by="updated_at"``.
        """
        state = parse_state(state)
        limit = self._config.default_page_size if limit is None else limit
        if limit < 1 or limit > self._config.max_page_size:
            raise ValueError(
                f"limit must be between 1 and {self._config.max_page_size}, got {limit}"
            )
        if offset < 0:
            raise ValueError(f"offset must be >= 0, got {offset}")
        if order_by not in _ORDERINGS:
            raise ValueError(f"order_by must be one of {_ORDERINGS}, got {order_by!r}")
        return await self._bounded(
            self._repository.list_by_state(state, limit, offset, order_by), timeout
        )

    async def count_items_by_state(
        self, state: str | WorkOrderState, timeout: Optional[float] = None
    ) -> int:
        state = parse_state(state)
        counts = await self._bounded(self._repository.count_by_state(), timeout)
        return counts.get(state, 0)

    # ------------------------------------------------------------------
    # Transitions
    async def validate_transition(
        self,
        work_order: str,
        target: str | WorkOrderState,
        timeout: Optional[float] = None,
    ) -> None:
        """Dry run of ``transition_to``; raises instead of returning ``False``."""
        record = await self._bounded(self._repository.get_state(work_order), timeout)
        check_transition(record.state, target)

    async def transition_to(
        self,
        work_order: str,
        target: str | WorkOrderState,
        actor: str,
        notes: str = "",
        timeout: Optional[float] = None,
    ) -> TransitionRecord:
        return await self._bounded(
            self._transition(work_order, target, actor, notes), timeout
        )

    async def advance(
        self,
        work_order: str,
        actor: str,
        notes: str = "",
        timeout: Optional[float] = None,
    ) -> TransitionRecord:
        """Move the work order to its single legal successor."""
        return await self._bounded(
            self._transition(work_order, None, actor, notes), timeout
        )

    async def _transition(
        self,
        work_order: str,
        target: str | WorkOrderState | None,
        actor: str,
        notes: str,
    ) -> TransitionRecord:
        current = await self._repository.get_state(work_order)
        if target is None:
            successors = next_states(current.state)
            if not successors:
                raise TerminalStateError(current.state.value, "next state")
            target = successors[0]
        try:
            to_state = check_transition(current.state, target)
        except WorkflowError as exc:
            logger.warning(f"Rejected transition for work_order={work_order}: {exc}")
            raise

        # occurred_at never moves backwards for a work order even if the clock does
        at = max(self._clock(), current.updated_at)
        record = TransitionRecord(
            work_order=work_order,
            from_state=current.state,
            to_state=to_state,
            actor=actor,
            notes=notes,
            occurred_at=at,
        )
        try:
            async with self._repository.transaction() as tx:
                await tx.compare_and_set(work_order, current.version, to_state, at)
                await tx.append_history(record)
        except ConflictError:
            logger.warning(
                f"Lost concurrent update for work_order={work_order} "
                f"at version {current.version}"
            )
            raise
        logger.info(
            f"Transitioned work_order={work_order} {current.state} -> {to_state} by {actor!r}"
        )
        return record

    # ------------------------------------------------------------------
    # Status and monitoring
    async def get_workflow_status(
        self, work_order: str, timeout: Optional[float] = None
    ) -> WorkflowStatus:
        record = await self._bounded(self._repository.get_state(work_order), timeout)
        elapsed = self._clock() - record.updated_at
        return WorkflowStatus(
            work_order=record.work_order,
            current_state=record.state,
            display_name=record.state.display_name,
            version=record.version,
            entered_at=record.updated_at,
            days_in_state=max(elapsed.days, 0),
            next_states=next_states(record.state),
            is_terminal=is_terminal(record.state),
        )

    async def can_advance(
        self, work_order: str, timeout: Optional[float] = None
    ) -> Tuple[bool, List[WorkOrderState]]:
        state = await self.get_current_state(work_order, timeout=timeout)
        successors = next_states(state)
        return bool(successors), successors

    async def get_metrics(self, timeout: Optional[float] = None) -> WorkflowMetrics:
        counts = await self._bounded(self._repository.count_by_state(), timeout)
        distribution = {state: counts.get(state, 0) for state in WorkOrderState}
        return WorkflowMetrics(
            state_distribution=distribution,
            total_items=sum(distribution.values()),
            active_items=sum(
                n for state, n in distribution.items() if not is_terminal(state)
            ),
            last_updated=self._clock(),
        )

    async def get_bottlenecks(
        self, threshold: Optional[int] = None, timeout: Optional[float] = None
    ) -> List[WorkflowBottleneck]:
        """Non-terminal states holding more than ``threshold`` work orders."""
        threshold = (
            self._config.bottleneck_threshold if threshold is None else threshold
        )
        metrics = await self.get_metrics(timeout=timeout)
        bottlenecks = []
        for state, count in metrics.state_distribution.items():
            if is_terminal(state) or count <= threshold:
                continue
            bottlenecks.append(
                WorkflowBottleneck(
                    state=state,
                    item_count=count,
                    severity=bottleneck_severity(count),
                    message=f"{count} items stuck in {state.display_name} state",
                )
            )
        return bottlenecks


def get_engine(
    database_url: Optional[str] = None,
    tenant_id: Optional[str] = None,
    config: Optional[PipeflowConfig] = None,
) -> WorkflowEngine:
    """Build an engine over a freshly created tenant scoped repository."""

    config = config or load_config()
    repository = get_repository(database_url, tenant_id=tenant_id, config=config)
    return WorkflowEngine(repository, config=config.engine)
