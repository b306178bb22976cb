import functools
import logging

from distributor.builder import TransactionBuilder
from distributor.config import EngineSettings
from distributor.constants import TaskStatus
from distributor.errors import BuildError, RelayError, RepositoryError
from distributor.ledger import LedgerClient
from distributor.models import DeliveryParams, Err, Job, OptimizedTx, Task, TransferRequest, UnsignedTx
from distributor.monitor import ConfirmationMonitor
from distributor.relay import RelayClient
from distributor.repository import TaskRepository, write_with_retry
from distributor.retry import DelayQueue, RetryController
from distributor.signer import Signer

log = logging.getLogger("distributor.pipeline")


def _needs_resync(error: BaseException) -> bool:
    # tef* (e.g. tefPAST_SEQ) means our sequence counter is behind the ledger
    return isinstance(error, RelayError) and str(error.code or "").startswith("tef")


class TaskPipeline:
    """build -> optimize -> sign -> submit for one task, then hand off to the monitor.

    `run` never raises for task-level problems; they end up in the task row.
    """

    def __init__(
        self,
        repo: TaskRepository,
        builder: TransactionBuilder,
        relay: RelayClient,
        ledger: LedgerClient,
        signer: Signer,
        monitor: ConfirmationMonitor,
        retry: RetryController,
        settings: EngineSettings,
    ) -> None:
        self.repo = repo
        self.builder = builder
        self.relay = relay
        self.ledger = ledger
        self.signer = signer
        self.monitor = monitor
        self.retry = retry
        self.settings = settings

    async def _write(self, task_id: int, what: str, **fields) -> Task:
        return await write_with_retry(
            lambda: self.repo.update_task(task_id, **fields),
            attempts=self.settings.repo_write_attempts,
            pause=self.settings.repo_write_pause,
            what=f"task {task_id} {what}",
        )

    async def _dispatch(self, job: Job, task: Task) -> tuple[UnsignedTx, OptimizedTx, str]:
        unsigned: UnsignedTx | None = None
        try:
            exists = await self.ledger.account_exists(task.recipient)
            built = await self.builder.build(
                TransferRequest(
                    source_account=job.source_account,
                    recipient=task.recipient,
                    amount=task.amount,
                    asset=job.asset,
                    asset_decimals=job.asset_decimals,
                    create_account=not exists,
                )
            )
            if isinstance(built, Err):
                raise BuildError(built.reason)
            unsigned = built.value
            optimized = await self.relay.optimize(unsigned.tx_blob, DeliveryParams.for_mode(job.mode))
            signed = await self.signer.sign(optimized.tx_blob)
            signature = await self.relay.submit(signed)
        except Exception as e:
            if unsigned is not None:
                await self.builder.release(unsigned, resync=_needs_resync(e))
            raise
        return unsigned, optimized, signature

    async def run(self, job: Job, task: Task, delays: DelayQueue) -> TaskStatus | None:
        """Process one task. Returns the status it was left in, None if the attempt was abandoned."""
        try:
            await self._write(task.id, "processing", status=TaskStatus.PROCESSING)
        except RepositoryError as e:
            log.error("[job %s task %s] could not mark processing, attempt abandoned: %s", job.id, task.id, e)
            return None

        try:
            unsigned, optimized, signature = await self._dispatch(job, task)
        except Exception as e:
            try:
                outcome = await self.retry.handle(job, task, e, delays)
            except RepositoryError as write_err:
                log.error("[job %s task %s] failure not recorded (%s); original error: %s", job.id, task.id, write_err, e)
                return TaskStatus.PROCESSING
            return outcome.task.status

        attempts = task.attempts + 1
        try:
            await self._write(task.id, "sent", status=TaskStatus.SENT, signature=signature, attempts=attempts)
        except RepositoryError as e:
            # The transfer is on the network. Don't retry it, let the monitor record the outcome.
            log.error("[job %s task %s] sent write lost for %s, monitoring anyway: %s", job.id, task.id, signature, e)

        log.info("[job %s task %s] submitted %s -> %s (expires after %s)",
                 job.id, task.id, signature, task.recipient, optimized.window.expiry_height)
        # an expired submission leaves its sequence unused on the ledger
        self.monitor.watch(
            job.id,
            task.id,
            signature,
            optimized.window,
            attempts=attempts,
            on_expired=functools.partial(self.builder.release, unsigned, resync=True),
        )
        return TaskStatus.SENT
