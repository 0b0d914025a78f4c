"""Persistence layer for pipeflow work order state."""

from __future__ import annotations

import os
from typing import Optional

from ..config import PipeflowConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .models import TransitionRecord, WorkflowStateRecord
from .repository import OrderBy, StateTransaction, WorkflowRepository
from .sqlite import SQLiteWorkflowRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresWorkflowRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresWorkflowRepository = None  # type: ignore


def get_repository(
    database_url: Optional[str] = None,
    tenant_id: Optional[str] = None,
    config: Optional[PipeflowConfig] = None,
) -> WorkflowRepository:
    """Build a tenant scoped workflow repository.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``PIPEFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned. Every call returns a new
    instance owned by the caller.
    """

    config = config or load_config()
    tenant_id = tenant_id or config.tenant_id
    database_url = (
        database_url
        or os.getenv("PIPEFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        return InMemoryWorkflowRepository(tenant_id=tenant_id)

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteWorkflowRepository(path, tenant_id=tenant_id)
    if database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresWorkflowRepository is None:
            raise RuntimeError("Postgres support not available")
        return PostgresWorkflowRepository(database_url, tenant_id=tenant_id)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "OrderBy",
    "StateTransaction",
    "TransitionRecord",
    "WorkflowStateRecord",
    "WorkflowRepository",
    "InMemoryWorkflowRepository",
    "SQLiteWorkflowRepository",
    "PostgresWorkflowRepository",
    "get_repository",
]
