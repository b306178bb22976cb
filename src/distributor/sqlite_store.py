"""SQLite-backed persistent task repository."""

import asyncio
import logging
import sqlite3
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path

import distributor.constants as C
from distributor.constants import DeliveryMode, JobStatus, TaskStatus
from distributor.errors import RepositoryError
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
from distributor.repository import _check_fields

log = logging.getLogger("distributor.sqlite_store")

_JOB_COLUMNS = (
    "id, name, asset, asset_decimals, source_account, authority, mode, batch_size, max_retries, "
    "status, total_recipients, total_sent, total_confirmed, total_failed, total_fee_spent, "
    "error_message, created_at, updated_at"
)
_TASK_COLUMNS = (
    "id, job_id, recipient, amount, status, attempts, last_error, signature, fee_paid, "
    "confirmed_at, created_at, updated_at"
)


def _job_from_row(row: tuple) -> Job:
    return Job(
        id=row[0],
        name=row[1],
        asset=row[2],
        asset_decimals=row[3],
        source_account=row[4],
        authority=row[5],
        mode=DeliveryMode(row[6]),
        batch_size=row[7],
        max_retries=row[8],
        status=JobStatus(row[9]),
        total_recipients=row[10],
        total_sent=row[11],
        total_confirmed=row[12],
        total_failed=row[13],
        total_fee_spent=Decimal(row[14]),
        error_message=row[15],
        created_at=row[16],
        updated_at=row[17],
    )


def _task_from_row(row: tuple) -> Task:
    return Task(
        id=row[0],
        job_id=row[1],
        recipient=row[2],
        amount=int(row[3]),
        status=TaskStatus(row[4]),
        attempts=row[5],
        last_error=row[6],
        signature=row[7],
        fee_paid=Decimal(row[8]) if row[8] is not None else None,
        confirmed_at=row[9],
        created_at=row[10],
        updated_at=row[11],
    )


def _to_column(value):
    """Amounts and fees are TEXT columns so they round-trip exactly."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (JobStatus, TaskStatus, DeliveryMode)):
        return str(value)
    return value


class SQLiteRepository:
    """Persistent repository backed by SQLite."""

    def __init__(self, db_path: str | Path = "distributor.db") -> None:
        self.db_path = Path(db_path)
        self._lock = asyncio.Lock()
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as e:
            raise RepositoryError(f"cannot open {self.db_path}: {e}") from e
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
        except sqlite3.Error as e:
            conn.rollback()
            raise RepositoryError(str(e)) from e
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Create tables if they don't exist."""
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    asset TEXT NOT NULL,
                    asset_decimals INTEGER NOT NULL,
                    source_account TEXT NOT NULL,
                    authority TEXT NOT NULL,
                    mode TEXT NOT NULL,
                    batch_size INTEGER NOT NULL DEFAULT 20,
                    max_retries INTEGER NOT NULL DEFAULT 3,
                    status TEXT NOT NULL DEFAULT 'pending',
                    total_recipients INTEGER NOT NULL DEFAULT 0,
                    total_sent INTEGER NOT NULL DEFAULT 0,
                    total_confirmed INTEGER NOT NULL DEFAULT 0,
                    total_failed INTEGER NOT NULL DEFAULT 0,
                    total_fee_spent TEXT NOT NULL DEFAULT '0',
                    error_message TEXT,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);

                CREATE TABLE IF NOT EXISTS tasks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
                    recipient TEXT NOT NULL,
                    amount TEXT NOT NULL,  -- integer string, smallest unit
                    status TEXT NOT NULL DEFAULT 'pending',
                    attempts INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    signature TEXT,
                    fee_paid TEXT,  -- decimal string
                    confirmed_at REAL,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_tasks_job_id ON tasks(job_id);
                CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
                """
            )
            conn.commit()
        log.debug(f"SQLite database initialized at {self.db_path}")

    # =========================================================================
    # Jobs
    # =========================================================================

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
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO jobs ({_JOB_COLUMNS}) VALUES ({', '.join('?' * 18)})",
                    tuple(_to_column(v) for v in _job_values(job)),
                )
                conn.commit()
        log.debug("Created job %s (%s)", job.id, job.name)
        return job

    async def get_job(self, job_id: str) -> Job | None:
        async with self._lock:
            with self._connect() as conn:
                row = conn.execute(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)).fetchone()
                return _job_from_row(row) if row else None

    async def list_jobs(self) -> list[Job]:
        async with self._lock:
            with self._connect() as conn:
                rows = conn.execute(f"SELECT {_JOB_COLUMNS} FROM jobs ORDER BY created_at DESC").fetchall()
                return [_job_from_row(r) for r in rows]

    async def delete_job(self, job_id: str) -> bool:
        """Delete a job; its tasks go with it (ON DELETE CASCADE)."""
        async with self._lock:
            with self._connect() as conn:
                cur = conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
                conn.commit()
                return cur.rowcount > 0

    async def update_job(self, job_id: str, **fields) -> Job:
        _check_fields(fields, JOB_FIELDS, "job")
        async with self._lock:
            with self._connect() as conn:
                row = conn.execute(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)).fetchone()
                if row is None:
                    raise RepositoryError(f"job {job_id} not found")
                job = _job_from_row(row)
                if "status" in fields:
                    fields["status"] = JobStatus(fields["status"])
                    check_job_transition(job.status, fields["status"])
                fields["updated_at"] = time.time()
                assignments = ", ".join(f"{k} = ?" for k in fields)
                conn.execute(
                    f"UPDATE jobs SET {assignments} WHERE id = ?",
                    (*(_to_column(v) for v in fields.values()), job_id),
                )
                conn.commit()
                for k, v in fields.items():
                    setattr(job, k, v)
                return job

    # =========================================================================
    # Tasks
    # =========================================================================

    async def create_tasks(self, job_id: str, rows: list[RecipientRow]) -> int:
        """Bulk insert recipients in one transaction and bump the job's recipient count."""
        now = time.time()
        async with self._lock:
            with self._connect() as conn:
                if conn.execute("SELECT 1 FROM jobs WHERE id = ?", (job_id,)).fetchone() is None:
                    raise RepositoryError(f"job {job_id} not found")
                conn.executemany(
                    "INSERT INTO tasks (job_id, recipient, amount, status, attempts, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, 0, ?, ?)",
                    [(job_id, r.recipient, str(r.amount), str(TaskStatus.PENDING), now, now) for r in rows],
                )
                conn.execute(
                    "UPDATE jobs SET total_recipients = total_recipients + ?, updated_at = ? WHERE id = ?",
                    (len(rows), now, job_id),
                )
                conn.commit()
        log.debug("Inserted %s tasks for job %s", len(rows), job_id)
        return len(rows)

    async def get_task(self, task_id: int) -> Task | None:
        async with self._lock:
            with self._connect() as conn:
                row = conn.execute(f"SELECT {_TASK_COLUMNS} FROM tasks WHERE id = ?", (task_id,)).fetchone()
                return _task_from_row(row) if row else None

    async def list_tasks(self, job_id: str, *, limit: int | None = None, offset: int = 0) -> list[Task]:
        async with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT {_TASK_COLUMNS} FROM tasks WHERE job_id = ? ORDER BY id LIMIT ? OFFSET ?",
                    (job_id, -1 if limit is None else limit, offset),
                ).fetchall()
                return [_task_from_row(r) for r in rows]

    async def get_pending_or_retrying(self, job_id: str) -> list[Task]:
        wanted = tuple(str(s) for s in C.ELIGIBLE_TASK_STATES)
        async with self._lock:
            with self._connect() as conn:
                placeholders = ",".join("?" * len(wanted))
                rows = conn.execute(
                    f"SELECT {_TASK_COLUMNS} FROM tasks WHERE job_id = ? AND status IN ({placeholders}) ORDER BY id",
                    (job_id, *wanted),
                ).fetchall()
                return [_task_from_row(r) for r in rows]

    async def update_task(self, task_id: int, **fields) -> Task:
        """Atomic read-check-write of one task row."""
        _check_fields(fields, TASK_FIELDS, "task")
        async with self._lock:
            with self._connect() as conn:
                row = conn.execute(f"SELECT {_TASK_COLUMNS} FROM tasks WHERE id = ?", (task_id,)).fetchone()
                if row is None:
                    raise RepositoryError(f"task {task_id} not found")
                task = _task_from_row(row)
                if "status" in fields:
                    fields["status"] = TaskStatus(fields["status"])
                    check_task_transition(task.status, fields["status"])
                fields["updated_at"] = time.time()
                assignments = ", ".join(f"{k} = ?" for k in fields)
                conn.execute(
                    f"UPDATE tasks SET {assignments} WHERE id = ?",
                    (*(_to_column(v) for v in fields.values()), task_id),
                )
                conn.commit()
                for k, v in fields.items():
                    setattr(task, k, v)
                return task

    async def aggregate_by_status(self, job_id: str) -> list[StatusCount]:
        async with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "SELECT status, COUNT(*), COUNT(signature) FROM tasks WHERE job_id = ? GROUP BY status",
                    (job_id,),
                )
                counts = cursor.fetchall()
                # SUM() over TEXT would go through floats; add the decimals here instead
                fees: dict[str, Decimal] = {}
                cursor = conn.execute(
                    "SELECT status, fee_paid FROM tasks WHERE job_id = ? AND fee_paid IS NOT NULL",
                    (job_id,),
                )
                for status, fee in cursor.fetchall():
                    fees[status] = fees.get(status, Decimal("0")) + Decimal(fee)

        return [
            StatusCount(status=TaskStatus(status), count=count, submitted=submitted, fee_sum=fees.get(status, Decimal("0")))
            for status, count, submitted in counts
        ]


def _job_values(job: Job) -> tuple:
    return (
        job.id,
        job.name,
        job.asset,
        job.asset_decimals,
        job.source_account,
        job.authority,
        job.mode,
        job.batch_size,
        job.max_retries,
        job.status,
        job.total_recipients,
        job.total_sent,
        job.total_confirmed,
        job.total_failed,
        job.total_fee_spent,
        job.error_message,
        job.created_at,
        job.updated_at,
    )
