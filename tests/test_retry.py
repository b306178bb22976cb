import pytest

from distributor.config import EngineSettings
from distributor.constants import DeliveryMode, TaskStatus
from distributor.errors import BuildError
from distributor.models import RecipientRow
from distributor.repository import InMemoryRepository
from distributor.retry import DelayQueue, RetryController, backoff_delay


class Clock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_backoff_doubles_and_caps():
    assert [backoff_delay(n, 1.0, 300.0) for n in range(1, 5)] == [2.0, 4.0, 8.0, 16.0]
    assert backoff_delay(12, 1.0, 300.0) == 300.0
    assert backoff_delay(3, 0.5, 300.0) == 4.0


def test_delay_queue_orders_by_due_time():
    clock = Clock()
    q = DelayQueue(clock)
    q.push(1, 5.0)
    q.push(2, 1.0)
    q.push(3, 5.0)

    assert len(q) == 3 and 2 in q
    assert q.next_due() == 101.0
    assert q.pop_due() == []

    clock.now = 105.0
    assert q.seconds_until_due() == 0.0
    assert q.pop_due() == [2, 1, 3]
    assert len(q) == 0
    assert q.next_due() is None
    assert q.seconds_until_due() is None


def test_delay_queue_clear_returns_dropped_ids():
    q = DelayQueue(Clock())
    q.push(7, 1.0)
    q.push(8, 2.0)

    assert sorted(q.clear()) == [7, 8]
    assert 7 not in q


async def _setup(max_retries):
    repo = InMemoryRepository()
    job = await repo.create_job(
        name="j", asset="XRP", asset_decimals=6, source_account="rS", authority="rA",
        mode=DeliveryMode.COST_SAVER, max_retries=max_retries,
    )
    await repo.create_tasks(job.id, [RecipientRow("rX", 1)])
    task = (await repo.list_tasks(job.id))[0]
    task = await repo.update_task(task.id, status=TaskStatus.PROCESSING)
    return repo, job, task


@pytest.mark.asyncio
async def test_retry_schedules_backoff():
    repo, job, task = await _setup(max_retries=3)
    clock = Clock()
    delays = DelayQueue(clock)
    retry = RetryController(repo, EngineSettings(retry_base_delay=1.0, repo_write_pause=0))

    outcome = await retry.handle(job, task, BuildError("invalid recipient address 'rX'"), delays)

    assert outcome.retry is True
    assert outcome.delay == 2.0
    assert outcome.task.status == TaskStatus.RETRYING
    assert outcome.task.attempts == 1
    assert outcome.task.last_error == "invalid recipient address 'rX'"
    assert task.id in delays
    assert delays.next_due() == 102.0


@pytest.mark.asyncio
async def test_last_attempt_fails_permanently():
    repo, job, task = await _setup(max_retries=1)
    delays = DelayQueue()
    retry = RetryController(repo, EngineSettings(repo_write_pause=0))

    outcome = await retry.handle(job, task, RuntimeError("socket closed"), delays)

    assert outcome.retry is False
    assert outcome.task.status == TaskStatus.FAILED
    assert outcome.task.attempts == 1
    assert outcome.task.last_error == "RuntimeError: socket closed"
    assert len(delays) == 0
