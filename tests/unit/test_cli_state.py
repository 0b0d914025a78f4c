import pytest
from typer.testing import CliRunner

from pipeflow.cli import app

runner = CliRunner()


@pytest.fixture
def db_args(tmp_path, monkeypatch):
    monkeypatch.setenv("PIPEFLOW_CONFIG", str(tmp_path / "absent.yaml"))
    for name in ("PIPEFLOW_DATABASE_URL", "DATABASE_URL", "PIPEFLOW_TENANT"):
        monkeypatch.delenv(name, raising=False)
    return ["--database-url", f"sqlite://{tmp_path / 'cli.db'}", "--tenant", "longbeach"]


def _invoke(db_args, *args):
    return runner.invoke(app, [*db_args, *args])


def test_create_transition_and_show(db_args):
    result = _invoke(db_args, "workorder", "create", "WO-1")
    assert result.exit_code == 0, result.output
    assert "WO-1\tRECEIVED" in result.output

    result = _invoke(
        db_args, "state", "transition", "WO-1", "inspection", "--actor", "alice", "--notes", "ready"
    )
    assert result.exit_code == 0, result.output
    assert "RECEIVED -> INSPECTION" in result.output

    result = _invoke(db_args, "state", "show", "WO-1")
    assert result.exit_code == 0, result.output
    assert "INSPECTION (version 2" in result.output
    assert "Next: PRODUCTION" in result.output


def test_invalid_transition_reports_edge(db_args):
    _invoke(db_args, "workorder", "create", "WO-1")

    result = _invoke(db_args, "state", "transition", "WO-1", "shipped", "--actor", "alice")

    assert result.exit_code == 1
    assert "invalid_transition" in result.output
    assert "RECEIVED to SHIPPED" in result.output


def test_dry_run_does_not_mutate(db_args):
    _invoke(db_args, "workorder", "create", "WO-1")

    result = _invoke(
        db_args, "state", "transition", "WO-1", "inspected", "--actor", "alice", "--dry-run"
    )
    assert result.exit_code == 0, result.output
    assert "transition to INSPECTION is allowed" in result.output

    result = _invoke(db_args, "state", "show", "WO-1")
    assert "RECEIVED" in result.output


def test_history_list_and_advance(db_args):
    _invoke(db_args, "workorder", "create", "WO-1", "--actor", "intake")
    _invoke(db_args, "workorder", "create", "WO-2")
    result = _invoke(db_args, "state", "advance", "WO-1", "--actor", "bob", "--notes", "racked")
    assert result.exit_code == 0, result.output

    result = _invoke(db_args, "state", "history", "WO-1")
    assert result.exit_code == 0, result.output
    lines = result.output.strip().splitlines()
    assert len(lines) == 2
    assert "- -> RECEIVED\tintake" in lines[0]
    assert "RECEIVED -> INSPECTION\tbob\tracked" in lines[1]

    result = _invoke(db_args, "state", "list", "received")
    assert result.output.split() == ["WO-2"]
    result = _invoke(db_args, "state", "list", "shipped")
    assert "No work orders found" in result.output


def test_missing_work_order(db_args):
    result = _invoke(db_args, "state", "show", "missing-id")
    assert result.exit_code == 1
    assert "not_found" in result.output


def test_metrics_and_bottlenecks(db_args):
    for wo in ("WO-1", "WO-2", "WO-3"):
        _invoke(db_args, "workorder", "create", wo)

    result = _invoke(db_args, "metrics")
    assert result.exit_code == 0, result.output
    assert "RECEIVED\t3" in result.output
    assert "TOTAL\t3" in result.output

    result = _invoke(db_args, "bottlenecks", "--threshold", "2")
    assert "[low] 3 items stuck in Received state" in result.output
    result = _invoke(db_args, "bottlenecks")
    assert "No bottlenecks found" in result.output


def test_tenants_do_not_see_each_other(db_args, tmp_path):
    _invoke(db_args, "workorder", "create", "WO-1")
    other = ["--database-url", f"sqlite://{tmp_path / 'cli.db'}", "--tenant", "colorado"]

    result = runner.invoke(app, [*other, "state", "show", "WO-1"])
    assert result.exit_code == 1
