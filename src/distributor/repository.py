import asyncio
import dataclasses
import logging
import time
import uuid
from collections import defaultdict
from collections.abc import Awaitable, Callable
from decimal import Decimal
from typing import Protocol, TypeVar

import distributor.constants as C
from distributor.constants import DeliveryMode, JobStatus, TaskStatus
from distributor.errors import InvalidTransition, RepositoryError
from distributor.models import (
    JOB_FIELDS,
    TASK_FIELDS,
    Job,
    RecipientRow,
    StatusCount,
    Task,
    check_job_transition,
    check_task_transition,
)

log = logging.getLogger("distributor.repository")

R = TypeVar("R")


class TaskRepository(Protocol):
    async def create_job(
        self,
        *,
        name: str,
        asset: str,
        asset_decimals: int,
        source_account: str,
        authority: str,
        mode: DeliveryMode,
        batch_size: int = C.DEFAULT_BATCH_SIZE,
        max_retries: int = C.DEFAULT_MAX_RETRIES,
    ) -> Job: ...
    async def create_tasks(self, job_id: str, rows: list[RecipientRow]) -> int: ...
    async def get_job(self, job_id: str) -> Job | None: ...
    async def list_jobs(self) -> list[Job]: ...
    async def delete_job(self, job_id: str) -> bool: ...
    async def get_task(self, task_id: int) -> Task | None: ...
    async def list_tasks(self, job_id: str, *, limit: int | None = None, offset: int = 0) -> list[Task]: ...
    async def get_pending_or_retrying(self, job_id: str) -> list[Task]: ...
    async def update_task(self, task_id: int, **fields) -> Task: ...
    async def update_job(self, job_id: str, **fields) -> Job: ...
    async def aggregate_by_status(self, job_id: str) -> list[StatusCount]: ...


def _check_fields(fields: dict, allowed: frozenset[str], kind: str) -> None:
    unknown = set(fields) - allowed
    if unknown:
        raise RepositoryError(f"cannot update {kind} fields {sorted(unknown)}")


class InMemoryRepository:
    """Dict-backed repository. Every method is a single critical section under one lock."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._jobs: dict[str, Job] = {}
        self._tasks: dict[int, Task] = {}
        self._tasks_by_job: dict[str, list[int]] = defaultdict(list)
        self._next_task_id = 1

    async def create_job(
        self,
        *,
        name: str,
        asset: str,
        asset_decimals: int,
        source_account: str,
        authority: str,
        mode: DeliveryMode,
        batch_size: int = C.DEFAULT_BATCH_SIZE,
        max_retries: int = C.DEFAULT_MAX_RETRIES,
    ) -> Job:
        job = Job(
            id=str(uuid.uuid4()),
            name=name,
            asset=asset,
            asset_decimals=asset_decimals,
            source_account=source_account,
            authority=authority,
            mode=DeliveryMode(mode),
            batch_size=batch_size,
            max_retries=max_retries,
        )
        async with self._lock:
            self._jobs[job.id] = job
        return dataclasses.replace(job)

    async def create_tasks(self, job_id: str, rows: list[RecipientRow]) -> int:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise RepositoryError(f"job {job_id} not found")
            for row in rows:
                task = Task(id=self._next_task_id, job_id=job_id, recipient=row.recipient, amount=row.amount)
                self._tasks[task.id] = task
                self._tasks_by_job[job_id].append(task.id)
                self._next_task_id += 1
            job.total_recipients += len(rows)
            return len(rows)

    async def get_job(self, job_id: str) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            return dataclasses.replace(job) if job else None

    async def list_jobs(self) -> list[Job]:
        async with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)
            return [dataclasses.replace(j) for j in jobs]

    async def delete_job(self, job_id: str) -> bool:
        async with self._lock:
            if self._jobs.pop(job_id, None) is None:
                return False
            for task_id in self._tasks_by_job.pop(job_id, []):
                self._tasks.pop(task_id, None)
            return True

    async def get_task(self, task_id: int) -> Task | None:
        async with self._lock:
            task = self._tasks.get(task_id)
            return dataclasses.replace(task) if task else None

    async def list_tasks(self, job_id: str, *, limit: int | None = None, offset: int = 0) -> list[Task]:
        async with self._lock:
            ids = self._tasks_by_job.get(job_id, [])
            ids = ids[offset : offset + limit] if limit is not None else ids[offset:]
            return [dataclasses.replace(self._tasks[i]) for i in ids]

    async def get_pending_or_retrying(self, job_id: str) -> list[Task]:
        async with self._lock:
            return [
                dataclasses.replace(self._tasks[i])
                for i in self._tasks_by_job.get(job_id, [])
                if self._tasks[i].status in C.ELIGIBLE_TASK_STATES
            ]

    async def update_task(self, task_id: int, **fields) -> Task:
        _check_fields(fields, TASK_FIELDS, "task")
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise RepositoryError(f"task {task_id} not found")
            if "status" in fields:
                fields["status"] = TaskStatus(fields["status"])
                check_task_transition(task.status, fields["status"])
            for k, v in fields.items():
                setattr(task, k, v)
            task.updated_at = time.time()
            return dataclasses.replace(task)

    async def update_job(self, job_id: str, **fields) -> Job:
        _check_fields(fields, JOB_FIELDS, "job")
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise RepositoryError(f"job {job_id} not found")
            if "status" in fields:
                fields["status"] = JobStatus(fields["status"])
                check_job_transition(job.status, fields["status"])
            for k, v in fields.items():
                setattr(job, k, v)
            job.updated_at = time.time()
            return dataclasses.replace(job)

    async def aggregate_by_status(self, job_id: str) -> list[StatusCount]:
        async with self._lock:
            counts: dict[TaskStatus, list] = {}
            for i in self._tasks_by_job.get(job_id, []):
                t = self._tasks[i]
                entry = counts.setdefault(t.status, [0, 0, Decimal("0")])
                entry[0] += 1
                if t.signature is not None:
                    entry[1] += 1
                if t.fee_paid is not None:
                    entry[2] += t.fee_paid
            return [StatusCount(status=s, count=c, submitted=n, fee_sum=f) for s, (c, n, f) in counts.items()]


async def write_with_retry(
    op: Callable[[], Awaitable[R]],
    *,
    attempts: int = C.REPO_WRITE_ATTEMPTS,
    pause: float = C.REPO_WRITE_PAUSE,
    what: str = "write",
) -> R:
    """Run a repository call, retrying RepositoryError a bounded number of times.

    Illegal state transitions are not retried: repeating them can't succeed.
    """
    for attempt in range(1, attempts + 1):
        try:
            return await op()
        except InvalidTransition:
            raise
        except RepositoryError as e:
            if attempt >= attempts:
                log.error("%s failed after %s attempts: %s", what, attempts, e)
                raise
            log.warning("%s failed (attempt %s/%s): %s - retrying in %ss", what, attempt, attempts, e, pause * attempt)
            await asyncio.sleep(pause * attempt)
    raise AssertionError("unreachable")
