import heapq
import itertools
import logging
import time
from collections.abc import Callable
from typing import NamedTuple

from distributor.config import EngineSettings
from distributor.constants import TaskStatus
from distributor.errors import sanitize_error
from distributor.models import Job, Task
from distributor.repository import TaskRepository, write_with_retry

log = logging.getLogger("distributor.retry")


def backoff_delay(attempts: int, base: float, cap: float) -> float:
    """2^attempts * base seconds, capped."""
    return min((2**attempts) * base, cap)


class DelayQueue:
    """Task ids waiting out a retry backoff, ordered by due time."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._heap: list[tuple[float, int, int]] = []
        self._ids: set[int] = set()
        self._counter = itertools.count()

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, task_id: int) -> bool:
        return task_id in self._ids

    def push(self, task_id: int, delay: float) -> float:
        due = self._clock() + max(delay, 0.0)
        heapq.heappush(self._heap, (due, next(self._counter), task_id))
        self._ids.add(task_id)
        return due

    def next_due(self) -> float | None:
        return self._heap[0][0] if self._heap else None

    def seconds_until_due(self) -> float | None:
        due = self.next_due()
        return None if due is None else max(due - self._clock(), 0.0)

    def pop_due(self) -> list[int]:
        now = self._clock()
        out = []
        while self._heap and self._heap[0][0] <= now:
            _, _, task_id = heapq.heappop(self._heap)
            self._ids.discard(task_id)
            out.append(task_id)
        return out

    def clear(self) -> list[int]:
        dropped = [task_id for _, _, task_id in self._heap]
        self._heap.clear()
        self._ids.clear()
        return dropped


class RetryOutcome(NamedTuple):
    task: Task
    retry: bool
    delay: float | None = None


class RetryController:
    """Decides retry vs permanent failure for a task whose attempt raised."""

    def __init__(self, repo: TaskRepository, settings: EngineSettings) -> None:
        self.repo = repo
        self.settings = settings

    async def handle(self, job: Job, task: Task, error: BaseException | str, delays: DelayQueue) -> RetryOutcome:
        attempts = task.attempts + 1
        message = sanitize_error(error)
        s = self.settings

        if attempts < job.max_retries:
            updated = await write_with_retry(
                lambda: self.repo.update_task(task.id, status=TaskStatus.RETRYING, attempts=attempts, last_error=message),
                attempts=s.repo_write_attempts,
                pause=s.repo_write_pause,
                what=f"task {task.id} retrying",
            )
            delay = backoff_delay(attempts, s.retry_base_delay, s.retry_max_delay)
            delays.push(task.id, delay)
            log.info("[job %s task %s] attempt %s/%s failed, retry in %.1fs: %s",
                     job.id, task.id, attempts, job.max_retries, delay, message)
            return RetryOutcome(updated, True, delay)

        updated = await write_with_retry(
            lambda: self.repo.update_task(task.id, status=TaskStatus.FAILED, attempts=attempts, last_error=message),
            attempts=s.repo_write_attempts,
            pause=s.repo_write_pause,
            what=f"task {task.id} failed",
        )
        log.warning("[job %s task %s] giving up after %s attempts: %s", job.id, task.id, attempts, message)
        return RetryOutcome(updated, False)
