"""Distribution execution engine.

Wires the scheduler, pipeline, retry controller, confirmation monitor and stats
aggregator around injected collaborators, and owns the per-job run tasks.
"""

import asyncio
import logging

from distributor.builder import TransactionBuilder
from distributor.config import EngineSettings
from distributor.constants import JobStatus
from distributor.errors import LedgerError, RepositoryError, SetupError, sanitize_error
from distributor.ledger import LedgerClient
from distributor.models import Job
from distributor.monitor import ConfirmationMonitor
from distributor.pipeline import TaskPipeline
from distributor.relay import RelayClient
from distributor.repository import TaskRepository, write_with_retry
from distributor.retry import DelayQueue, RetryController
from distributor.scheduler import BatchScheduler
from distributor.signer import Signer, signer_address
from distributor.stats import StatsAggregator

log = logging.getLogger("distributor.engine")


class DistributionEngine:
    def __init__(
        self,
        repository: TaskRepository,
        builder: TransactionBuilder,
        relay: RelayClient,
        ledger: LedgerClient,
        signer: Signer,
        settings: EngineSettings | None = None,
    ) -> None:
        self.repo = repository
        self.ledger = ledger
        self.signer = signer
        self.settings = s = settings or EngineSettings()

        self.monitor = ConfirmationMonitor(
            ledger,
            repository,
            concurrency=s.monitor_concurrency,
            write_attempts=s.repo_write_attempts,
            write_pause=s.repo_write_pause,
        )
        self.retry = RetryController(repository, s)
        self.pipeline = TaskPipeline(repository, builder, relay, ledger, signer, self.monitor, self.retry, s)
        self.scheduler = BatchScheduler(repository, self.pipeline, s)
        self.stats = StatsAggregator(repository, write_attempts=s.repo_write_attempts, write_pause=s.repo_write_pause)

        self._runs: dict[str, asyncio.Task] = {}
        self._cancel: dict[str, asyncio.Event] = {}

    def is_running(self, job_id: str) -> bool:
        return job_id in self._runs

    async def _write_job(self, job_id: str, what: str, **fields) -> Job:
        return await write_with_retry(
            lambda: self.repo.update_job(job_id, **fields),
            attempts=self.settings.repo_write_attempts,
            pause=self.settings.repo_write_pause,
            what=f"job {job_id} {what}",
        )

    async def start_execution(self, job_id: str) -> None:
        """Begin processing a pending job in the background and return immediately.

        A no-op if the job already has an active run or is not pending.
        """
        if job_id in self._runs:
            log.info("[job %s] already running", job_id)
            return
        wake = self._cancel[job_id] = asyncio.Event()
        run = asyncio.create_task(self._run(job_id, wake), name=f"job-{job_id}")
        self._runs[job_id] = run
        run.add_done_callback(lambda _: self._forget(job_id, run))

    def _forget(self, job_id: str, run: asyncio.Task) -> None:
        if self._runs.get(job_id) is run:
            del self._runs[job_id]
            self._cancel.pop(job_id, None)

    async def cancel_execution(self, job_id: str) -> bool:
        """Request cooperative cancellation. In-flight tasks of the current batch finish."""
        if (wake := self._cancel.get(job_id)) is not None:
            wake.set()
        job = await self.repo.get_job(job_id)
        if job is None:
            return False
        if job.status not in (JobStatus.PENDING, JobStatus.RUNNING):
            log.info("[job %s] cancel ignored, job is %s", job_id, job.status)
            return False
        await self._write_job(job_id, "cancelled", status=JobStatus.CANCELLED)
        log.info("[job %s] cancellation requested", job_id)
        return True

    async def wait(self, job_id: str) -> None:
        if (run := self._runs.get(job_id)) is not None:
            await asyncio.gather(run, return_exceptions=True)

    async def shutdown(self) -> None:
        runs = list(self._runs.values())
        for run in runs:
            run.cancel()
        await asyncio.gather(*runs, return_exceptions=True)
        await self.monitor.shutdown()

    async def _is_cancelled(self, job_id: str, wake: asyncio.Event) -> bool:
        if wake.is_set():
            return True
        job = await self.repo.get_job(job_id)
        return job is None or job.status == JobStatus.CANCELLED

    async def _setup(self, job: Job) -> None:
        try:
            if not await self.ledger.account_exists(job.source_account):
                raise SetupError(f"source account {job.source_account} not found on ledger")
        except (LedgerError, TimeoutError) as e:
            raise SetupError(f"source account {job.source_account} unavailable: {sanitize_error(e)}") from e
        signer = signer_address(self.signer)
        if signer != job.authority:
            raise SetupError(f"signer key controls {signer}, not authority {job.authority}")

    async def _run(self, job_id: str, wake: asyncio.Event) -> None:
        job = await self.repo.get_job(job_id)
        if job is None:
            log.error("[job %s] setup error: job not found", job_id)
            return
        if job.status != JobStatus.PENDING:
            log.info("[job %s] not pending (%s), nothing to start", job_id, job.status)
            return

        try:
            try:
                await self._setup(job)
            except SetupError as e:
                log.error("[job %s] setup error: %s", job_id, e)
                await self._write_job(job_id, "failed", status=JobStatus.FAILED, error_message=sanitize_error(e))
                return

            job = await self._write_job(job_id, "running", status=JobStatus.RUNNING)
            log.info("[job %s] running: %s recipients, batch size %s, max retries %s",
                     job_id, job.total_recipients, job.batch_size, job.max_retries)

            delays = DelayQueue()
            finished = await self.scheduler.drive(job, delays, wake, lambda: self._is_cancelled(job_id, wake))
            if not finished:
                dropped = delays.clear()
                log.info("[job %s] stopped on cancel, %s delayed retries dropped", job_id, len(dropped))

            await self.monitor.settle(job_id)
            job = await self.stats.finalize(job_id)
            log.info("[job %s] finished as %s", job_id, job.status)
        except RepositoryError as e:
            log.error("[job %s] aborted: %s", job_id, e)
            await self._mark_failed(job_id, e)
        except Exception as e:
            log.exception("[job %s] engine error", job_id)
            await self._mark_failed(job_id, e)

    async def _mark_failed(self, job_id: str, error: BaseException) -> None:
        try:
            await self._write_job(job_id, "failed", status=JobStatus.FAILED, error_message=sanitize_error(error))
        except RepositoryError as e:
            # already terminal (e.g. cancelled) or the store is down
            log.error("[job %s] could not mark failed: %s", job_id, e)
