"""Domain data structures shared by the engine and its collaborators."""

import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Generic, TypeVar

import distributor.constants as C
from distributor.constants import DeliveryMode, DeliveryRoute, FeeTier, JobStatus, TaskStatus
from distributor.errors import InvalidTransition

T = TypeVar("T")


@dataclass(slots=True)
class Job:
    """One distribution run. Counters are written only at creation and by the stats aggregator."""

    id: str
    name: str
    asset: str
    asset_decimals: int
    source_account: str
    authority: str
    mode: DeliveryMode
    batch_size: int = C.DEFAULT_BATCH_SIZE
    max_retries: int = C.DEFAULT_MAX_RETRIES
    status: JobStatus = JobStatus.PENDING
    total_recipients: int = 0
    total_sent: int = 0
    total_confirmed: int = 0
    total_failed: int = 0
    total_fee_spent: Decimal = Decimal("0")
    error_message: str | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "asset": self.asset,
            "asset_decimals": self.asset_decimals,
            "source_account": self.source_account,
            "authority": self.authority,
            "mode": str(self.mode),
            "batch_size": self.batch_size,
            "max_retries": self.max_retries,
            "status": str(self.status),
            "total_recipients": self.total_recipients,
            "total_sent": self.total_sent,
            "total_confirmed": self.total_confirmed,
            "total_failed": self.total_failed,
            "total_fee_spent": str(self.total_fee_spent),
            "error_message": self.error_message,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(slots=True)
class Task:
    """One recipient transfer inside a job. `amount` is in the asset's smallest unit."""

    id: int
    job_id: str
    recipient: str
    amount: int
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    last_error: str | None = None
    signature: str | None = None
    fee_paid: Decimal | None = None
    confirmed_at: float | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "recipient": self.recipient,
            "amount": str(self.amount),
            "status": str(self.status),
            "attempts": self.attempts,
            "last_error": self.last_error,
            "signature": self.signature,
            "fee_paid": str(self.fee_paid) if self.fee_paid is not None else None,
            "confirmed_at": self.confirmed_at,
        }


@dataclass(frozen=True, slots=True)
class RecipientRow:
    recipient: str
    amount: int


@dataclass(frozen=True, slots=True)
class StatusCount:
    status: TaskStatus
    count: int
    submitted: int = 0  # rows with a non-null signature
    fee_sum: Decimal = Decimal("0")


TASK_FIELDS = frozenset(
    {"status", "attempts", "last_error", "signature", "fee_paid", "confirmed_at"}
)
JOB_FIELDS = frozenset(
    {"status", "total_recipients", "total_sent", "total_confirmed", "total_failed", "total_fee_spent", "error_message"}
)


def check_job_transition(old: JobStatus, new: JobStatus) -> None:
    if old != new and new not in C.JOB_TRANSITIONS[old]:
        raise InvalidTransition("job", old, new)


def check_task_transition(old: TaskStatus, new: TaskStatus) -> None:
    if old != new and new not in C.TASK_TRANSITIONS[old]:
        raise InvalidTransition("task", old, new)


# ---------------------------------------------------------------------------
# Transaction pipeline payloads
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class TransferRequest:
    source_account: str
    recipient: str
    amount: int
    asset: str
    asset_decimals: int
    create_account: bool = False


@dataclass(frozen=True, slots=True)
class UnsignedTx:
    """Hex binary-codec blob plus the account sequences it reserved."""

    tx_blob: str
    account: str
    sequence: int | None = None
    sequence_count: int = 1


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True, slots=True)
class Err:
    reason: str


BuildResult = Ok[UnsignedTx] | Err


@dataclass(frozen=True, slots=True)
class DeliveryParams:
    priority_fee_tier: FeeTier
    delivery_route: DeliveryRoute
    tip_tier: FeeTier | None = None

    @classmethod
    def for_mode(cls, mode: DeliveryMode) -> "DeliveryParams":
        if DeliveryMode(mode) == DeliveryMode.HIGH_ASSURANCE:
            return cls(FeeTier.HIGH, DeliveryRoute.HIGH_ASSURANCE, tip_tier=FeeTier.HIGH)
        return cls(FeeTier.LOW, DeliveryRoute.RPC)


@dataclass(frozen=True, slots=True)
class ValidityWindow:
    reference_blockhash: str
    expiry_height: int


@dataclass(frozen=True, slots=True)
class OptimizedTx:
    tx_blob: str
    window: ValidityWindow


@dataclass(frozen=True, slots=True)
class ConfirmationResult:
    ok: bool
    fee_paid: Decimal | None = None
    error: str | None = None
    ledger_index: int | None = None
    # never made it into a validated ledger, so its account sequence is still unused
    expired: bool = False
