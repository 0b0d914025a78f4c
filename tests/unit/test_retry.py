import pytest

from pipeflow.errors import ConflictError, InvalidTransitionError, WorkOrderExistsError
from pipeflow.utils import retry as retry_module
from pipeflow.utils.retry import compute_backoff, retry_on_conflict


@pytest.fixture(autouse=True)
def _no_sleep(monkeypatch):
    async def instant(attempt):
        return None

    monkeypatch.setattr(retry_module, "schedule_retry", instant)


def test_backoff_grows():
    assert compute_backoff(0, jitter=0) < compute_backoff(3, jitter=0)


@pytest.mark.asyncio
async def test_retries_conflicts_until_success():
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ConflictError("WO-1")
        return "ok"

    assert await retry_on_conflict(flaky, retries=3) == "ok"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_gives_up_after_retries():
    calls = []

    async def always_conflict():
        calls.append(1)
        raise ConflictError("WO-1")

    with pytest.raises(ConflictError):
        await retry_on_conflict(always_conflict, retries=2)
    assert len(calls) == 3


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error", [InvalidTransitionError("RECEIVED", "SHIPPED"), WorkOrderExistsError("WO-1")]
)
async def test_does_not_retry_other_errors(error):
    calls = []

    async def failing():
        calls.append(1)
        raise error

    with pytest.raises(type(error)):
        await retry_on_conflict(failing, retries=5)
    assert len(calls) == 1
