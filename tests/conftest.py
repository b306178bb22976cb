"""Fake collaborators and fixtures shared by the engine tests."""

import asyncio
import time
from collections import defaultdict
from decimal import Decimal

import pytest
from xrpl.models.response import Response, ResponseStatus
from xrpl.wallet import Wallet

from distributor.config import EngineSettings
from distributor.constants import DeliveryMode
from distributor.engine import DistributionEngine
from distributor.errors import RelayError
from distributor.models import ConfirmationResult, Err, Ok, OptimizedTx, RecipientRow, UnsignedTx, ValidityWindow
from distributor.repository import InMemoryRepository

SOURCE = "rHb9CJAWyB4rj91VRWn96DkukG4bwdtyTh"
RECIPIENTS = [
    "rPT1Sjq2YGrBMTttX4GZHjKu9dyfzbpAYe",
    "rLHzPsX6oXkzU2qL12kHCH8G8cnZv1rBJh",
    "rf1BiGeXwwQoi8Z2ueFYTEXSwuJYfV2Jpn",
    *(Wallet.create().classic_address for _ in range(2)),
]
FEE = Decimal("0.000012")


class FakeLedger:
    def __init__(self) -> None:
        self.missing: set[str] = set()
        self.outcomes: dict[str, ConfirmationResult] = {}
        self.confirm_delay = 0.0
        self.account_error: Exception | None = None
        self.confirm_calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def account_exists(self, address: str) -> bool:
        if self.account_error is not None:
            raise self.account_error
        return address not in self.missing

    async def await_confirmation(self, signature: str, window: ValidityWindow) -> ConfirmationResult:
        self.confirm_calls.append(signature)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.confirm_delay)
        finally:
            self.in_flight -= 1
        return self.outcomes.get(signature, ConfirmationResult(ok=True, fee_paid=FEE, ledger_index=window.expiry_height - 10))


class FakeBuilder:
    """Returns a fake blob per recipient. `failures[recipient]` Errs that many builds first (-1 = always)."""

    def __init__(self) -> None:
        self.failures: dict[str, int] = {}
        self.calls: list[tuple[str, bool]] = []
        self.call_times: list[float] = []
        self.released: list[UnsignedTx] = []
        self.resynced: list[UnsignedTx] = []
        self.delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0
        self._seq = 0

    async def build(self, req):
        self.calls.append((req.recipient, req.create_account))
        self.call_times.append(time.monotonic())
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1

        left = self.failures.get(req.recipient, 0)
        if left:
            if left > 0:
                self.failures[req.recipient] = left - 1
            return Err(f"cannot build transfer to {req.recipient}")
        self._seq += 1
        return Ok(UnsignedTx(tx_blob=f"{req.recipient}:{req.amount}", account=req.source_account, sequence=self._seq))

    async def release(self, unsigned: UnsignedTx, *, resync: bool = False) -> None:
        self.released.append(unsigned)
        if resync:
            self.resynced.append(unsigned)


class FakeRelay:
    def __init__(self) -> None:
        self.optimized: list[tuple[str, object]] = []
        self.submitted: list[str] = []
        self.submit_error: Exception | None = None
        self.optimize_error: Exception | None = None
        self.on_submit = None
        self._n = 0

    async def optimize(self, tx_blob, params):
        self.optimized.append((tx_blob, params))
        if self.optimize_error is not None:
            raise self.optimize_error
        return OptimizedTx(tx_blob=f"{tx_blob}|opt", window=ValidityWindow(reference_blockhash="AB" * 32, expiry_height=120))

    async def submit(self, signed_blob):
        self.submitted.append(signed_blob)
        if self.on_submit is not None:
            await self.on_submit(signed_blob)
        if self.submit_error is not None:
            raise self.submit_error
        self._n += 1
        return f"SIG{self._n:04d}"


class FakeSigner:
    def __init__(self, wallet: Wallet) -> None:
        self.wallet = wallet
        self.signed: list[str] = []

    @property
    def public_key(self) -> str:
        return self.wallet.public_key

    async def sign(self, tx_blob: str) -> str:
        self.signed.append(tx_blob)
        return f"{tx_blob}|signed"


@pytest.fixture
def wallet():
    return Wallet.create()


@pytest.fixture
def repo():
    return InMemoryRepository()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def builder():
    return FakeBuilder()


@pytest.fixture
def relay():
    return FakeRelay()


@pytest.fixture
def signer(wallet):
    return FakeSigner(wallet)


@pytest.fixture
def settings():
    return EngineSettings(batch_pause=0.0, retry_base_delay=0.0, retry_max_delay=0.0, repo_write_pause=0.0)


@pytest.fixture
def engine(repo, builder, relay, ledger, signer, settings):
    return DistributionEngine(repo, builder, relay, ledger, signer, settings)


@pytest.fixture
def make_job(repo, wallet):
    async def _make(n: int = 3, *, batch_size: int = 20, max_retries: int = 3, mode=DeliveryMode.COST_SAVER, **kw):
        job = await repo.create_job(
            name=kw.pop("name", "airdrop"),
            asset=kw.pop("asset", "XRP"),
            asset_decimals=kw.pop("asset_decimals", 6),
            source_account=kw.pop("source_account", SOURCE),
            authority=kw.pop("authority", wallet.classic_address),
            mode=mode,
            batch_size=batch_size,
            max_retries=max_retries,
        )
        await repo.create_tasks(job.id, [RecipientRow(RECIPIENTS[i % len(RECIPIENTS)], 1_000_000 * (i + 1)) for i in range(n)])
        return await repo.get_job(job.id)

    return _make


async def run_to_end(engine: DistributionEngine, job_id: str) -> None:
    await engine.start_execution(job_id)
    await asyncio.wait_for(engine.wait(job_id), timeout=5)


def relay_rejects(message: str = "rate limited", status: int = 429) -> RelayError:
    return RelayError(message, status=status)


def by_status(tasks) -> dict[str, int]:
    out: dict[str, int] = defaultdict(int)
    for t in tasks:
        out[str(t.status)] += 1
    return dict(out)


class FakeRpc:
    """Stands in for AsyncJsonRpcClient. Handlers are keyed by request method.

    A handler is a result dict, a list of them (served in order, the last one
    repeats), an exception to raise, or a callable taking the request.
    A result containing "error" is returned as an error response.
    """

    def __init__(self, **handlers) -> None:
        self.handlers = handlers
        self.requests: list = []

    def count(self, method: str) -> int:
        return sum(1 for r in self.requests if r.method.value == method)

    async def request(self, req) -> Response:
        self.requests.append(req)
        h = self.handlers[req.method.value]
        if isinstance(h, list):
            h = h.pop(0) if len(h) > 1 else h[0]
        if callable(h):
            h = h(req)
        if isinstance(h, Exception):
            raise h
        status = ResponseStatus.ERROR if "error" in h else ResponseStatus.SUCCESS
        return Response(status=status, result=h)
