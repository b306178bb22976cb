import asyncio
import logging
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable
from decimal import Decimal

import distributor.constants as C
from distributor.constants import TaskStatus
from distributor.errors import RepositoryError, sanitize_error
from distributor.ledger import LedgerClient
from distributor.models import ConfirmationResult, ValidityWindow
from distributor.repository import TaskRepository, write_with_retry

log = logging.getLogger("distributor.monitor")


class ConfirmationMonitor:
    """Supervised background watchers, one per submitted signature.

    At most `concurrency` watchers poll the ledger at once; the rest wait on the
    semaphore. Watchers are grouped by job so a job can be settled on its own.
    An on-chain failure or an expired window is terminal: nothing here resubmits.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        repo: TaskRepository,
        *,
        concurrency: int = C.MONITOR_CONCURRENCY,
        write_attempts: int = C.REPO_WRITE_ATTEMPTS,
        write_pause: float = C.REPO_WRITE_PAUSE,
    ) -> None:
        self.ledger = ledger
        self.repo = repo
        self.write_attempts = write_attempts
        self.write_pause = write_pause
        self._sem = asyncio.Semaphore(concurrency)
        self._watchers: dict[str, set[asyncio.Task]] = defaultdict(set)

    def watch(
        self,
        job_id: str,
        task_id: int,
        signature: str,
        window: ValidityWindow,
        *,
        attempts: int,
        on_expired: Callable[[], Awaitable[None]] | None = None,
    ) -> asyncio.Task:
        """Start watching `signature`. `on_expired` runs if it never reaches a validated ledger."""
        t = asyncio.create_task(
            self._watch(job_id, task_id, signature, window, attempts, on_expired),
            name=f"confirm-{task_id}",
        )
        self._watchers[job_id].add(t)
        t.add_done_callback(lambda done: self._forget(job_id, done))
        return t

    def _forget(self, job_id: str, t: asyncio.Task) -> None:
        watchers = self._watchers.get(job_id)
        if watchers is None:
            return
        watchers.discard(t)
        if not watchers:
            self._watchers.pop(job_id, None)

    def outstanding(self, job_id: str | None = None) -> int:
        if job_id is None:
            return sum(len(w) for w in self._watchers.values())
        return len(self._watchers.get(job_id, ()))

    async def settle(self, job_id: str) -> None:
        """Return once every watcher of this job has written its outcome."""
        while watchers := list(self._watchers.get(job_id, ())):
            await asyncio.gather(*watchers, return_exceptions=True)

    async def shutdown(self) -> None:
        watchers = [t for ws in self._watchers.values() for t in ws]
        for t in watchers:
            t.cancel()
        await asyncio.gather(*watchers, return_exceptions=True)

    async def _watch(
        self,
        job_id: str,
        task_id: int,
        signature: str,
        window: ValidityWindow,
        attempts: int,
        on_expired: Callable[[], Awaitable[None]] | None,
    ) -> None:
        async with self._sem:
            try:
                result = await self.ledger.await_confirmation(signature, window)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.exception("[job %s task %s] confirmation of %s raised", job_id, task_id, signature)
                result = ConfirmationResult(ok=False, error=f"confirmation error: {sanitize_error(e)}")

        if result.expired and on_expired is not None:
            try:
                await on_expired()
            except Exception:
                log.exception("[job %s task %s] expiry hook for %s raised", job_id, task_id, signature)

        # signature and attempts ride along in case the "sent" write was lost
        fields: dict = {"signature": signature, "attempts": attempts}
        if result.ok:
            fields.update(
                status=TaskStatus.CONFIRMED,
                fee_paid=result.fee_paid if result.fee_paid is not None else Decimal("0"),
                confirmed_at=time.time(),
            )
            log.info("[job %s task %s] confirmed %s in ledger %s", job_id, task_id, signature, result.ledger_index)
        else:
            fields.update(status=TaskStatus.FAILED, last_error=sanitize_error(result.error or "confirmation failed"))
            log.warning("[job %s task %s] %s failed: %s", job_id, task_id, signature, result.error)

        try:
            await write_with_retry(
                lambda: self.repo.update_task(task_id, **fields),
                attempts=self.write_attempts,
                pause=self.write_pause,
                what=f"task {task_id} outcome",
            )
        except RepositoryError as e:
            log.error("[job %s task %s] outcome for %s not recorded: %s", job_id, task_id, signature, e)
