#!/usr/bin/env python3
"""
Queue consumer that replays patient submissions against IsiClinic.

The processor runs one attempt and reports an explicit outcome; retry and
escalation decisions belong to the queue.
"""

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from config import Settings
from exceptions import InvalidPayloadError, QueueStoreError
from isiclinic import fill_patient_form
from patient_queue import Job, Ok, Outcome, PatientQueue, Retryable, Terminal

logger = logging.getLogger(__name__)

FillForm = Callable[[Dict[str, Any], Settings], Awaitable[Dict[str, Any]]]


class PatientJobProcessor:
    """
    Run one attempt of a patient job.

    Args:
        settings: Passed through to the form filler
        fill_form: Coroutine that drives IsiClinic with a payload
        session_lock: Held while a browser session is alive so only one
            session exists at a time (shared with the debug endpoints)
    """

    def __init__(
        self,
        settings: Settings,
        fill_form: FillForm = fill_patient_form,
        session_lock: Optional[asyncio.Lock] = None,
    ):
        self.settings = settings
        self.fill_form = fill_form
        self.session_lock = session_lock or asyncio.Lock()

    async def __call__(self, job: Job) -> Outcome:
        if not isinstance(job.payload, dict):
            return Terminal(InvalidPayloadError(
                f"Job {job.id} payload is {type(job.payload).__name__}, expected an object"
            ))

        payload_snapshot = json.dumps(job.payload, ensure_ascii=False, default=str)
        logger.info(
            "Processing patient from queue id=%s attempt=%d/%d datos=%s",
            job.id, job.attempt, job.max_attempts, payload_snapshot,
        )

        start = time.monotonic()
        try:
            async with self.session_lock:
                result = await self.fill_form(dict(job.payload), self.settings)
        except Exception as e:
            ms = int((time.monotonic() - start) * 1000)
            logger.error(
                "Error processing patient id=%s attempt=%d ms=%d err=%s datos=%s",
                job.id, job.attempt, ms, e, payload_snapshot,
            )
            return Retryable(e)

        ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "Patient processed successfully id=%s attempt=%d ms=%d datos=%s",
            job.id, job.attempt, ms, payload_snapshot,
        )
        return Ok(result)


class QueueWorker:
    """Single consumer loop: dequeue, process, settle, one job at a time."""

    def __init__(self, queue: PatientQueue, processor: Callable[[Job], Awaitable[Outcome]]):
        self.queue = queue
        self.processor = processor
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self.run(), name="patient-queue-worker")

    async def run_once(self) -> Optional[Job]:
        """Process the next job. Returns None once the queue is closed."""
        job = await self.queue.dequeue()
        if job is None:
            return None

        outcome = await self.processor(job)
        try:
            await self.queue.settle(job, outcome)
        except QueueStoreError as e:
            # The row stays active and is recovered on the next start
            logger.error("Could not record outcome of job %s: %s", job.id, e)
        return job

    async def run(self) -> None:
        logger.info("Queue worker started, processing jobs one at a time...")
        while not self.queue.closed:
            try:
                job = await self.run_once()
            except QueueStoreError as e:
                logger.error("Could not read from queue: %s", e)
                await asyncio.sleep(self.queue.poll_interval)
                continue
            if job is None:
                break
        logger.info("Queue worker stopped.")

    async def stop(self) -> None:
        """Close the queue and wait for the in-flight job to finish."""
        self.queue.close()
        if self._task is not None:
            await self._task
            self._task = None
