"""Command line interface for inspecting and driving work order state."""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Callable, Optional

import typer

from pipeflow.config import load_config
from pipeflow.engine import WorkflowEngine, get_engine
from pipeflow.errors import WorkflowError
from pipeflow.states import parse_state
from pipeflow.utils.retry import retry_on_conflict

app = typer.Typer(help="CLI for pipeflow work order workflows")

# Command groups
workorder_app = typer.Typer(help="Commands for registering work orders")
state_app = typer.Typer(help="Commands for reading and changing work order state")

app.add_typer(workorder_app, name="workorder")
app.add_typer(state_app, name="state")


@app.callback()
def main(
    ctx: typer.Context,
    tenant: Optional[str] = typer.Option(
        None, "--tenant", envvar="PIPEFLOW_TENANT", help="Tenant (yard) identifier"
    ),
    database_url: Optional[str] = typer.Option(
        None, "--database-url", help="sqlite://path or postgresql:// DSN"
    ),
) -> None:
    """Pipeflow CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"tenant": tenant, "database_url": database_url}


def _engine(ctx: typer.Context) -> WorkflowEngine:
    options = ctx.obj or {}
    return get_engine(
        database_url=options.get("database_url"), tenant_id=options.get("tenant")
    )


def _handle_errors(func: Callable) -> Callable:
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except WorkflowError as exc:
            typer.secho(f"Error ({exc.code.value}): {exc.message}", fg=typer.colors.RED)
            raise typer.Exit(code=1)
        except ValueError as exc:
            typer.secho(f"Error: {exc}", fg=typer.colors.RED)
            raise typer.Exit(code=2)

    return wrapper


@workorder_app.command("create")
@_handle_errors
def workorder_create(
    ctx: typer.Context,
    work_order: str,
    actor: str = typer.Option("system", help="User or system creating the record"),
    notes: str = typer.Option("", help="Free text stored with the creation event"),
) -> None:
    """Register a received work order; it starts in RECEIVED."""
    record = asyncio.run(_engine(ctx).create_work_order(work_order, actor, notes))
    typer.echo(f"{record.work_order}\t{record.state.value}")


@state_app.command("show")
@_handle_errors
def state_show(
    ctx: typer.Context, work_order: str
) -> None:
    """
    Show the current state of a work order.

    Example:
        pipeflow state show WO-1
        # Output: WO-1    INSPECTION (version 2, 0 days in state)
        #         Next: PRODUCTION
    """
    status = asyncio.run(_engine(ctx).get_workflow_status(work_order))
    typer.echo(
        f"{status.work_order}\t{status.current_state.value} "
        f"(version {status.version}, {status.days_in_state} days in state)"
    )
    if status.is_terminal:
        typer.echo("Terminal state")
    else:
        typer.echo("Next: " + ", ".join(s.value for s in status.next_states))


@state_app.command("transition")
@_handle_errors
def state_transition(
    ctx: typer.Context,
    work_order: str,
    target_state: str,
    actor: str = typer.Option(..., help="User or system performing the transition"),
    notes: str = typer.Option("", help="Free text stored with the history record"),
    retries: int = typer.Option(
        0, min=0, help="Retry this many times when another update wins the race"
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Only check whether the transition is legal"
    ),
) -> None:
    """
    Move a work order to TARGET_STATE.

    Only the single next stage of the lifecycle is accepted:
    RECEIVED -> INSPECTION -> PRODUCTION -> INVENTORY -> SHIPPED -> COMPLETED.

    Example:
        pipeflow state transition WO-1 inspection --actor alice --notes ready
    """
    engine = _engine(ctx)
    if dry_run:
        asyncio.run(engine.validate_transition(work_order, target_state))
        target = parse_state(target_state).value
        typer.echo(f"{work_order}: transition to {target} is allowed")
        return
    record = asyncio.run(
        retry_on_conflict(
            lambda: engine.transition_to(work_order, target_state, actor, notes),
            retries=retries,
        )
    )
    typer.echo(f"{work_order}\t{record.from_state.value} -> {record.to_state.value}")


@state_app.command("advance")
@_handle_errors
def state_advance(
    ctx: typer.Context,
    work_order: str,
    actor: str = typer.Option(..., help="User or system performing the transition"),
    notes: str = typer.Option("", help="Free text stored with the history record"),
) -> None:
    """Move a work order to the next stage of the lifecycle."""
    record = asyncio.run(_engine(ctx).advance(work_order, actor, notes))
    typer.echo(f"{work_order}\t{record.from_state.value} -> {record.to_state.value}")


@state_app.command("history")
@_handle_errors
def state_history(
    ctx: typer.Context, work_order: str
) -> None:
    """
    Show every recorded transition of a work order, oldest first.

    Example:
        pipeflow state history WO-1
        # Output: 2024-01-01T10:00:00+00:00  -           -> RECEIVED    system
        #         2024-01-01T11:00:00+00:00  RECEIVED    -> INSPECTION  alice  ready
    """
    records = asyncio.run(_engine(ctx).get_state_history(work_order))
    for record in records:
        data = record.to_dict()
        line = (
            f"{data['occurred_at']}\t{data['from_state'] or '-'} -> "
            f"{data['to_state']}\t{data['actor']}"
        )
        if data["notes"]:
            line += f"\t{data['notes']}"
        typer.echo(line)


@state_app.command("list")
@_handle_errors
def state_list(
    ctx: typer.Context,
    state: str,
    limit: Optional[int] = typer.Option(None, help="Page size"),
    offset: int = typer.Option(0, help="Number of work orders to skip"),
    order_by: str = typer.Option(
        "work_order", help="Sort by 'work_order' or 'updated_at' (most recent first)"
    ),
) -> None:
    """List work orders currently in STATE."""
    engine = _engine(ctx)
    items = asyncio.run(
        engine.get_items_by_state(state, limit=limit, offset=offset, order_by=order_by)
    )
    if not items:
        typer.echo("No work orders found")
        return
    for work_order in items:
        typer.echo(work_order)


@app.command("metrics")
@_handle_errors
def metrics(ctx: typer.Context) -> None:
    """Show how many work orders sit in each state."""
    result = asyncio.run(_engine(ctx).get_metrics())
    for state, count in result.state_distribution.items():
        typer.echo(f"{state.value}\t{count}")
    typer.echo(f"TOTAL\t{result.total_items}")
    typer.echo(f"ACTIVE\t{result.active_items}")


@app.command("bottlenecks")
@_handle_errors
def bottlenecks(
    ctx: typer.Context,
    threshold: Optional[int] = typer.Option(
        None, help="Report states holding more than this many work orders"
    ),
) -> None:
    """Report non-terminal states that are piling up."""
    found = asyncio.run(_engine(ctx).get_bottlenecks(threshold=threshold))
    if not found:
        typer.echo("No bottlenecks found")
        return
    for item in found:
        typer.echo(f"[{item.severity}] {item.message}")
