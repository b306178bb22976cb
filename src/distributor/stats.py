import asyncio
import logging
from contextlib import asynccontextmanager
from decimal import Decimal

import distributor.constants as C
from distributor.constants import JobStatus, TaskStatus
from distributor.errors import InvalidTransition, RepositoryError
from distributor.models import Job, StatusCount
from distributor.repository import TaskRepository, write_with_retry

log = logging.getLogger("distributor.stats")


def status_counts(rows: list[StatusCount]) -> dict[str, int]:
    """Count per task status, every status present (zeros included)."""
    counts = {str(s): 0 for s in TaskStatus}
    for r in rows:
        counts[str(r.status)] += r.count
    return counts


def job_totals(rows: list[StatusCount]) -> dict:
    by_status = {r.status: r for r in rows}
    confirmed = by_status.get(TaskStatus.CONFIRMED)
    failed = by_status.get(TaskStatus.FAILED)
    return {
        "total_sent": sum(r.submitted for r in rows),
        "total_confirmed": confirmed.count if confirmed else 0,
        "total_failed": failed.count if failed else 0,
        "total_fee_spent": confirmed.fee_sum if confirmed else Decimal("0"),
    }


class StatsAggregator:
    """Sole writer of job-level counters. One finalization at a time per job."""

    def __init__(
        self,
        repo: TaskRepository,
        *,
        write_attempts: int = C.REPO_WRITE_ATTEMPTS,
        write_pause: float = C.REPO_WRITE_PAUSE,
    ) -> None:
        self.repo = repo
        self.write_attempts = write_attempts
        self.write_pause = write_pause
        # job id -> (lock, holders); dropped when the last holder leaves
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def _job_lock(self, job_id: str):
        lock, users = self._locks.get(job_id) or (asyncio.Lock(), 0)
        self._locks[job_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[job_id]
            if users == 1:
                del self._locks[job_id]
            else:
                self._locks[job_id] = (lock, users - 1)

    async def _update(self, job_id: str, **fields) -> Job:
        return await write_with_retry(
            lambda: self.repo.update_job(job_id, **fields),
            attempts=self.write_attempts,
            pause=self.write_pause,
            what=f"job {job_id} stats",
        )

    async def finalize(self, job_id: str) -> Job:
        """Write counters from the task distribution and mark the job completed.

        A cancelled job keeps its status; only the counters change.
        """
        async with self._job_lock(job_id):
            job = await self.repo.get_job(job_id)
            if job is None:
                raise RepositoryError(f"job {job_id} not found")

            totals = job_totals(await self.repo.aggregate_by_status(job_id))
            log.info(
                "[job %s] sent=%s confirmed=%s failed=%s fee=%s (of %s)",
                job_id, totals["total_sent"], totals["total_confirmed"], totals["total_failed"],
                totals["total_fee_spent"], job.total_recipients,
            )
            if job.status != JobStatus.RUNNING:
                return await self._update(job_id, **totals)
            try:
                return await self._update(job_id, status=JobStatus.COMPLETED, **totals)
            except InvalidTransition:
                # cancelled between the read and the write
                return await self._update(job_id, **totals)
