import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from distributor.config import EngineSettings
from distributor.constants import TaskStatus
from distributor.errors import RepositoryError
from distributor.models import Job, Task
from distributor.pipeline import TaskPipeline
from distributor.repository import TaskRepository, write_with_retry
from distributor.retry import DelayQueue

log = logging.getLogger("distributor.scheduler")


def make_batches(tasks: list[Task], size: int) -> list[list[Task]]:
    """Split tasks, ordered by id, into consecutive batches of at most `size`."""
    if size < 1:
        raise ValueError(f"batch size must be >= 1, got {size}")
    ordered = sorted(tasks, key=lambda t: t.id)
    return [ordered[i : i + size] for i in range(0, len(ordered), size)]


async def _sleep_unless(event: asyncio.Event, seconds: float) -> None:
    """Sleep, returning early if the event fires."""
    if seconds <= 0 or event.is_set():
        return
    try:
        async with asyncio.timeout(seconds):
            await event.wait()
    except TimeoutError:
        pass


class BatchPacer:
    """Spaces consecutive batches of one job at least `pause` seconds apart.

    Lives for the whole run so the gap also holds between the last batch of one
    pass and the first batch of the next.
    """

    def __init__(self, pause: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.pause = pause
        self._clock = clock
        self._last: float | None = None

    def remaining(self) -> float:
        if self._last is None:
            return 0.0
        return max(self.pause - (self._clock() - self._last), 0.0)

    def mark(self) -> None:
        self._last = self._clock()

    async def wait(self, wake: asyncio.Event) -> None:
        await _sleep_unless(wake, self.remaining())


class BatchScheduler:
    """Runs a job's eligible tasks batch by batch until nothing is left to do.

    Batches run strictly in order; tasks inside one batch run concurrently and the
    batch is done when every pipeline has dispatched (not confirmed).
    """

    def __init__(self, repo: TaskRepository, pipeline: TaskPipeline, settings: EngineSettings) -> None:
        self.repo = repo
        self.pipeline = pipeline
        self.settings = settings

    async def eligible(self, job: Job, delays: DelayQueue) -> list[Task]:
        tasks = await self.repo.get_pending_or_retrying(job.id)
        return [t for t in tasks if t.attempts < job.max_retries and t.id not in delays]

    async def run_pass(
        self,
        job: Job,
        tasks: list[Task],
        delays: DelayQueue,
        wake: asyncio.Event,
        cancelled: Callable[[], Awaitable[bool]],
        pacer: BatchPacer | None = None,
    ) -> bool:
        """One sweep over `tasks`. False when cancellation stopped it early."""
        batches = make_batches(tasks, job.batch_size)
        if pacer is None:
            pacer = BatchPacer(self.settings.pause_for(job.batch_size))
        abandoned = 0

        for n, batch in enumerate(batches, start=1):
            await pacer.wait(wake)
            if await cancelled():
                log.info("[job %s] cancelled before batch %s/%s", job.id, n, len(batches))
                return False

            log.info("[job %s] batch %s/%s: %s tasks", job.id, n, len(batches), len(batch))
            async with asyncio.TaskGroup() as tg:
                runs = [tg.create_task(self.pipeline.run(job, t, delays)) for t in batch]
            pacer.mark()
            abandoned += sum(1 for r in runs if r.result() is None)

        if tasks and abandoned == len(tasks):
            raise RepositoryError(f"no task of job {job.id} could be marked processing")
        return True

    async def _release_due(self, job: Job, delays: DelayQueue) -> None:
        for task_id in delays.pop_due():
            try:
                await write_with_retry(
                    lambda: self.repo.update_task(task_id, status=TaskStatus.PENDING),
                    attempts=self.settings.repo_write_attempts,
                    pause=self.settings.repo_write_pause,
                    what=f"task {task_id} pending",
                )
            except RepositoryError as e:
                # still retrying, which is eligible too
                log.warning("[job %s task %s] could not flip back to pending: %s", job.id, task_id, e)

    async def drive(
        self,
        job: Job,
        delays: DelayQueue,
        wake: asyncio.Event,
        cancelled: Callable[[], Awaitable[bool]],
    ) -> bool:
        """Keep making passes until no eligible or delayed task remains.

        Returns False if the job was cancelled along the way.
        """
        passes = 0
        pacer = BatchPacer(self.settings.pause_for(job.batch_size))
        while True:
            if await cancelled():
                return False

            tasks = await self.eligible(job, delays)
            if tasks:
                passes += 1
                log.info("[job %s] pass %s: %s eligible, %s waiting on backoff", job.id, passes, len(tasks), len(delays))
                if not await self.run_pass(job, tasks, delays, wake, cancelled, pacer):
                    return False
                continue

            if not len(delays):
                return True

            wait = delays.seconds_until_due() or 0.0
            log.debug("[job %s] nothing eligible, next retry due in %.2fs", job.id, wait)
            await _sleep_unless(wake, wait)
            await self._release_due(job, delays)
