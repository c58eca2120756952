#!/usr/bin/env python3
"""
Durable patient job queue backed by PostgreSQL.

Jobs are persisted in the ``patient_jobs`` table before ``enqueue`` returns.
A single consumer claims due jobs one at a time; failed jobs are rescheduled
with exponential backoff until they run out of attempts, then kept in a
bounded failure archive and announced through the ``failed`` event.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import psycopg2
from psycopg2.extras import Json, RealDictCursor

from exceptions import EnqueueError, JobInterruptedError, QueueStoreError

logger = logging.getLogger(__name__)

FAILED_ARCHIVE_SIZE = 50


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED_RETRYABLE = "failed-retryable"
    FAILED_TERMINAL = "failed-terminal"


@dataclass(frozen=True)
class RetryPolicy:
    """How many times a job runs and how long to wait between runs."""

    max_attempts: int = 3
    backoff_base_ms: int = 5000

    def backoff_delay(self, attempt: int) -> timedelta:
        """
        Delay before the retry that follows failed attempt number ``attempt``.

        Exponential with base ``backoff_base_ms``: 5s, 10s, 20s, ...
        """
        return timedelta(milliseconds=self.backoff_base_ms * 2 ** (attempt - 1))


@dataclass
class Job:
    """One queued patient submission."""

    id: str
    name: str
    payload: Dict[str, Any]
    max_attempts: int = 3
    backoff_base_ms: int = 5000
    attempt: int = 0
    status: JobStatus = JobStatus.QUEUED
    result: Optional[Any] = None
    error: Optional[str] = None
    available_at: datetime = field(default_factory=utc_now)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None

    @property
    def policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.max_attempts, backoff_base_ms=self.backoff_base_ms)


@dataclass(frozen=True)
class Ok:
    """The attempt succeeded."""

    result: Any = None


@dataclass(frozen=True)
class Retryable:
    """The attempt failed; the queue decides whether another attempt is left."""

    error: BaseException


@dataclass(frozen=True)
class Terminal:
    """The attempt failed in a way no retry can fix."""

    error: BaseException


Outcome = Union[Ok, Retryable, Terminal]
LifecycleHandler = Callable[..., Awaitable[None]]


class JobStore(ABC):
    """Persistence contract used by :class:`PatientQueue`."""

    def ensure_schema(self) -> None:
        """Create whatever the store needs. No-op by default."""

    @abstractmethod
    def insert(self, job: Job) -> None:
        """Persist a new job. Raises EnqueueError if it cannot be stored."""

    @abstractmethod
    def claim_next(self, now: datetime) -> Optional[Job]:
        """Atomically mark the next due job active, increment its attempt and return it."""

    @abstractmethod
    def update(self, job: Job) -> None:
        """Write back status, attempt, error and schedule of a job."""

    @abstractmethod
    def delete(self, job_id: str) -> None:
        """Remove a job."""

    def next_available_at(self) -> Optional[datetime]:
        """Earliest ``available_at`` among waiting jobs, or None. Unknown by default."""
        return None

    @abstractmethod
    def list_active(self) -> List[Job]:
        """Jobs currently marked active."""

    @abstractmethod
    def list_failed(self, limit: int) -> List[Job]:
        """Terminal failures, most recent first."""

    @abstractmethod
    def trim_failed(self, keep: int) -> None:
        """Keep only the ``keep`` most recent terminal failures."""


class PostgresJobStore(JobStore):
    """JobStore on a PostgreSQL table, one short-lived connection per operation."""

    def __init__(self, db_config: Dict[str, Any], schema_file: Optional[Path] = None):
        self.db_config = db_config
        self.schema_file = schema_file or Path(__file__).parent / 'db_schema.sql'

    def _execute(self, query: str, params: Any = None, fetch: bool = False) -> List[Dict[str, Any]]:
        try:
            conn = psycopg2.connect(**self.db_config)
        except psycopg2.Error as e:
            raise QueueStoreError(f"Database connection error: {e}") from e

        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                cursor.execute(query, params)
                rows = cursor.fetchall() if fetch else []
            conn.commit()
            return [dict(row) for row in rows]
        except psycopg2.Error as e:
            conn.rollback()
            raise QueueStoreError(f"Database error: {e}") from e
        finally:
            conn.close()

    @staticmethod
    def _row_to_job(row: Dict[str, Any]) -> Job:
        return Job(
            id=row['id'],
            name=row['name'],
            payload=row['payload'] if row['payload'] is not None else {},
            max_attempts=row['max_attempts'],
            backoff_base_ms=row['backoff_base_ms'],
            attempt=row['attempt'],
            status=JobStatus(row['status']),
            error=row.get('error'),
            available_at=row['available_at'],
            created_at=row['created_at'],
            updated_at=row['updated_at'],
            finished_at=row.get('finished_at'),
        )

    def ensure_schema(self) -> None:
        schema_sql = self.schema_file.read_text(encoding='utf-8')
        # We are already connected to the target database
        schema_sql = schema_sql.replace('CREATE DATABASE', '-- CREATE DATABASE')
        schema_sql = schema_sql.replace('\\c', '-- \\c')
        self._execute(schema_sql)

    def insert(self, job: Job) -> None:
        query = """
            INSERT INTO patient_jobs (
                id, name, payload, status, attempt, max_attempts, backoff_base_ms,
                available_at, created_at, updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """
        values = (
            job.id,
            job.name,
            Json(job.payload),
            job.status.value,
            job.attempt,
            job.max_attempts,
            job.backoff_base_ms,
            job.available_at,
            job.created_at,
            job.updated_at,
        )
        try:
            self._execute(query, values)
        except QueueStoreError as e:
            raise EnqueueError(str(e)) from e

    def claim_next(self, now: datetime) -> Optional[Job]:
        query = """
            UPDATE patient_jobs
            SET status = 'active', attempt = attempt + 1, updated_at = %(now)s
            WHERE id = (
                SELECT id FROM patient_jobs
                WHERE status IN ('queued', 'failed-retryable')
                  AND available_at <= %(now)s
                ORDER BY available_at, created_at
                LIMIT 1
                FOR UPDATE SKIP LOCKED
            )
            RETURNING *;
        """
        rows = self._execute(query, {'now': now}, fetch=True)
        return self._row_to_job(rows[0]) if rows else None

    def update(self, job: Job) -> None:
        query = """
            UPDATE patient_jobs
            SET status = %s, attempt = %s, error = %s, available_at = %s,
                updated_at = %s, finished_at = %s
            WHERE id = %s
        """
        self._execute(query, (
            job.status.value,
            job.attempt,
            job.error,
            job.available_at,
            job.updated_at,
            job.finished_at,
            job.id,
        ))

    def delete(self, job_id: str) -> None:
        self._execute("DELETE FROM patient_jobs WHERE id = %s", (job_id,))

    def next_available_at(self) -> Optional[datetime]:
        rows = self._execute(
            """
            SELECT MIN(available_at) AS next_at FROM patient_jobs
            WHERE status IN ('queued', 'failed-retryable')
            """,
            fetch=True,
        )
        return rows[0]['next_at'] if rows else None

    def list_active(self) -> List[Job]:
        rows = self._execute(
            "SELECT * FROM patient_jobs WHERE status = 'active' ORDER BY updated_at",
            fetch=True,
        )
        return [self._row_to_job(row) for row in rows]

    def list_failed(self, limit: int) -> List[Job]:
        rows = self._execute(
            """
            SELECT * FROM patient_jobs
            WHERE status = 'failed-terminal'
            ORDER BY finished_at DESC
            LIMIT %s
            """,
            (limit,),
            fetch=True,
        )
        return [self._row_to_job(row) for row in rows]

    def trim_failed(self, keep: int) -> None:
        self._execute(
            """
            DELETE FROM patient_jobs
            WHERE status = 'failed-terminal' AND id NOT IN (
                SELECT id FROM patient_jobs
                WHERE status = 'failed-terminal'
                ORDER BY finished_at DESC
                LIMIT %s
            )
            """,
            (keep,),
        )


class PatientQueue:
    """
    Producer/consumer queue with one job in flight at a time.

    Args:
        store: Persistence backend, the source of truth for attempts and schedules
        policy: Default retry policy for new jobs
        poll_interval: Longest time ``dequeue`` sleeps between claim attempts
        clock: Returns the current UTC time
        failed_archive_size: Number of terminal failures kept for inspection
    """

    def __init__(
        self,
        store: JobStore,
        policy: Optional[RetryPolicy] = None,
        poll_interval: float = 1.0,
        clock: Callable[[], datetime] = utc_now,
        failed_archive_size: int = FAILED_ARCHIVE_SIZE,
    ):
        self.store = store
        self.policy = policy or RetryPolicy()
        self.poll_interval = poll_interval
        self.clock = clock
        self.failed_archive_size = failed_archive_size
        self._completed_handlers: List[LifecycleHandler] = []
        self._failed_handlers: List[LifecycleHandler] = []
        self._slot = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._in_flight: Optional[str] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def in_flight(self) -> Optional[str]:
        """Id of the job currently handed to the consumer, if any."""
        return self._in_flight

    def on_completed(self, handler: LifecycleHandler) -> None:
        """Register ``handler(job, result)`` for completed jobs."""
        self._completed_handlers.append(handler)

    def on_failed(self, handler: LifecycleHandler) -> None:
        """Register ``handler(job, error)``, called once per job that fails permanently."""
        self._failed_handlers.append(handler)

    async def open(self) -> None:
        """Create the table if needed and settle jobs interrupted by a previous run."""
        try:
            await asyncio.to_thread(self.store.ensure_schema)
            recovered = await self.recover()
        except QueueStoreError as e:
            logger.error("Queue store unavailable at startup: %s", e)
            return
        if recovered:
            logger.warning("Recovered %d interrupted job(s)", recovered)

    async def recover(self) -> int:
        """Treat jobs left active by a stopped process as a failed attempt."""
        stale = await asyncio.to_thread(self.store.list_active)
        for job in stale:
            await self.settle(job, Retryable(JobInterruptedError(
                f"Job {job.id} was interrupted during attempt {job.attempt}"
            )))
        return len(stale)

    async def enqueue(self, name: str, payload: Dict[str, Any], policy: Optional[RetryPolicy] = None) -> Job:
        """
        Persist a new job and return it.

        Returns as soon as the row is stored; processing happens later in the consumer.

        Raises:
            EnqueueError: if the store is unreachable
        """
        if self._closed:
            raise EnqueueError("Queue is closed")

        policy = policy or self.policy
        now = self.clock()
        job = Job(
            id=uuid.uuid4().hex,
            name=name,
            payload=dict(payload),
            max_attempts=policy.max_attempts,
            backoff_base_ms=policy.backoff_base_ms,
            available_at=now,
            created_at=now,
            updated_at=now,
        )
        await asyncio.to_thread(self.store.insert, job)
        self._wakeup.set()
        return job

    async def dequeue(self) -> Optional[Job]:
        """
        Wait for the next due job and hand it to the caller.

        Only one job is handed out at a time: the slot stays taken until the job
        is settled. Returns None once the queue is closed.
        """
        await self._slot.acquire()
        job = None
        try:
            while job is None and not self._closed:
                self._wakeup.clear()
                job = await self._claim()
                if job is None:
                    await self._wait_for_work()
        finally:
            if job is None:
                self._slot.release()

        if job is None:
            return None
        self._in_flight = job.id
        logger.info("Dequeued job %s (attempt %d/%d)", job.id, job.attempt, job.max_attempts)
        return job

    async def _claim(self) -> Optional[Job]:
        """
        Claim the next due job.

        The claim runs to completion in its thread even if the caller is
        cancelled; a job claimed for a cancelled caller is handed back.
        """
        claim = asyncio.ensure_future(asyncio.to_thread(self.store.claim_next, self.clock()))
        try:
            return await asyncio.shield(claim)
        except asyncio.CancelledError:
            try:
                job = await claim
                if job is not None:
                    await asyncio.to_thread(self._release_claim, job)
            except QueueStoreError as e:
                logger.error("Could not hand back claim after cancellation: %s", e)
            raise

    def _release_claim(self, job: Job) -> None:
        job.attempt -= 1
        job.status = JobStatus.QUEUED if job.attempt == 0 else JobStatus.FAILED_RETRYABLE
        job.updated_at = self.clock()
        self.store.update(job)
        logger.info("Handed back job %s claimed by a cancelled consumer", job.id)

    async def _wait_for_work(self) -> None:
        """Sleep until the next due job, the poll interval, or a wake-up, whichever is first."""
        timeout = self.poll_interval
        next_at = await asyncio.to_thread(self.store.next_available_at)
        if next_at is not None:
            until_due = (next_at - self.clock()).total_seconds()
            # A due job the claim skipped is locked elsewhere; keep polling
            if until_due > 0:
                timeout = min(timeout, until_due)
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def settle(self, job: Job, outcome: Outcome) -> None:
        """Apply the processor's outcome to the job and free the consumer slot."""
        try:
            if isinstance(outcome, Ok):
                await self._complete(job, outcome.result)
            elif isinstance(outcome, Retryable) and job.attempt < job.max_attempts:
                await self._schedule_retry(job, outcome.error)
            else:
                await self._fail_permanently(job, outcome.error)
        finally:
            if self._in_flight == job.id:
                self._in_flight = None
                self._slot.release()

    async def _complete(self, job: Job, result: Any) -> None:
        now = self.clock()
        job.status = JobStatus.COMPLETED
        job.result = result
        job.error = None
        job.updated_at = now
        job.finished_at = now
        await asyncio.to_thread(self.store.delete, job.id)
        logger.info("Job %s completed.", job.id)
        await self._emit(self._completed_handlers, job, result)

    async def _schedule_retry(self, job: Job, error: BaseException) -> None:
        now = self.clock()
        delay = job.policy.backoff_delay(job.attempt)
        job.status = JobStatus.FAILED_RETRYABLE
        job.error = str(error)
        job.available_at = now + delay
        job.updated_at = now
        await asyncio.to_thread(self.store.update, job)
        logger.warning(
            "Job %s failed attempt %d/%d, retrying in %.0fs: %s",
            job.id, job.attempt, job.max_attempts, delay.total_seconds(), error,
        )
        self._wakeup.set()

    async def _fail_permanently(self, job: Job, error: BaseException) -> None:
        now = self.clock()
        job.status = JobStatus.FAILED_TERMINAL
        job.result = None
        job.error = str(error)
        job.updated_at = now
        job.finished_at = now
        await asyncio.to_thread(self.store.update, job)
        logger.error(
            "Job %s failed permanently after %d attempt(s): %s",
            job.id, job.attempt, error,
        )
        # Alert before trimming; terminal rows are not revisited
        await self._emit(self._failed_handlers, job, error)
        try:
            await asyncio.to_thread(self.store.trim_failed, self.failed_archive_size)
        except QueueStoreError as e:
            logger.error("Could not trim failure archive: %s", e)

    async def _emit(self, handlers: List[LifecycleHandler], job: Job, value: Any) -> None:
        for handler in handlers:
            try:
                await handler(job, value)
            except Exception:
                logger.exception("Lifecycle handler %r failed for job %s", handler, job.id)

    async def failed_jobs(self, limit: int = FAILED_ARCHIVE_SIZE) -> List[Job]:
        """Terminal failures kept for manual recovery, most recent first."""
        return await asyncio.to_thread(self.store.list_failed, limit)

    def close(self) -> None:
        """Stop handing out jobs and wake a consumer waiting in ``dequeue``."""
        self._closed = True
        self._wakeup.set()
