"""Shared test fixtures: in-memory queue store, fake clock, fake Playwright page."""

import asyncio
import copy
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from config import Settings
from exceptions import EnqueueError
from patient_queue import Job, JobStatus, JobStore


class MemoryJobStore(JobStore):
    """JobStore kept in a dict; stores copies the way a database would."""

    def __init__(self, fail_inserts: bool = False):
        self.jobs: Dict[str, Job] = {}
        self.fail_inserts = fail_inserts
        self._lock = threading.Lock()

    def insert(self, job: Job) -> None:
        if self.fail_inserts:
            raise EnqueueError("Database connection error: connection refused")
        with self._lock:
            self.jobs[job.id] = copy.deepcopy(job)

    def claim_next(self, now: datetime) -> Optional[Job]:
        with self._lock:
            due = [
                job for job in self.jobs.values()
                if job.status in (JobStatus.QUEUED, JobStatus.FAILED_RETRYABLE)
                and job.available_at <= now
            ]
            if not due:
                return None
            job = min(due, key=lambda j: (j.available_at, j.created_at))
            job.status = JobStatus.ACTIVE
            job.attempt += 1
            job.updated_at = now
            return copy.deepcopy(job)

    def update(self, job: Job) -> None:
        with self._lock:
            self.jobs[job.id] = copy.deepcopy(job)

    def delete(self, job_id: str) -> None:
        with self._lock:
            self.jobs.pop(job_id, None)

    def next_available_at(self) -> Optional[datetime]:
        with self._lock:
            waiting = [
                job.available_at for job in self.jobs.values()
                if job.status in (JobStatus.QUEUED, JobStatus.FAILED_RETRYABLE)
            ]
        return min(waiting) if waiting else None

    def list_active(self) -> List[Job]:
        with self._lock:
            return [copy.deepcopy(j) for j in self.jobs.values() if j.status == JobStatus.ACTIVE]

    def list_failed(self, limit: int) -> List[Job]:
        with self._lock:
            failed = [j for j in self.jobs.values() if j.status == JobStatus.FAILED_TERMINAL]
        failed.sort(key=lambda j: j.finished_at, reverse=True)
        return [copy.deepcopy(j) for j in failed[:limit]]

    def trim_failed(self, keep: int) -> None:
        with self._lock:
            failed = [j for j in self.jobs.values() if j.status == JobStatus.FAILED_TERMINAL]
            failed.sort(key=lambda j: j.finished_at, reverse=True)
            for job in failed[keep:]:
                del self.jobs[job.id]


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 11, 13, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakePage:
    """
    Minimal stand-in for a Playwright page.

    ``appear_after`` maps a selector to the seconds it takes to show up;
    selectors not listed never appear and time out after ``timeout_seconds``.
    """

    def __init__(self, appear_after: Optional[Dict[str, float]] = None, timeout_seconds: float = 0.05):
        self.url = "about:blank"
        self.appear_after = appear_after or {}
        self.timeout_seconds = timeout_seconds
        self.goto_errors: Dict[str, Exception] = {}
        self.screenshot_error: Optional[Exception] = None
        self.values: Dict[str, str] = {}
        self.calls: List[tuple] = []
        self.cancelled: List[str] = []
        self.screenshots: List[str] = []

    async def goto(self, url, wait_until=None, timeout=None):
        self.calls.append(("goto", url))
        if url in self.goto_errors:
            raise self.goto_errors[url]
        self.url = url

    async def fill(self, selector, value):
        self.calls.append(("fill", selector, value))
        self.values[selector] = value

    async def click(self, selector):
        self.calls.append(("click", selector))

    async def select_option(self, selector, value):
        self.calls.append(("select_option", selector, value))
        self.values[selector] = value

    async def wait_for_selector(self, selector, state="visible", timeout=None):
        self.calls.append(("wait_for_selector", selector))
        try:
            if selector not in self.appear_after:
                await asyncio.sleep(self.timeout_seconds)
                raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {selector}")
            await asyncio.sleep(self.appear_after[selector])
        except asyncio.CancelledError:
            self.cancelled.append(selector)
            raise
        return selector

    async def wait_for_load_state(self, state="load", timeout=None):
        self.calls.append(("wait_for_load_state", state))

    async def screenshot(self, path, full_page=False):
        if self.screenshot_error is not None:
            raise self.screenshot_error
        Path(path).write_bytes(b"\x89PNG")
        self.screenshots.append(path)


class RecordingNotifier:
    def __init__(self):
        self.messages: List[str] = []

    async def notify(self, text: str) -> bool:
        self.messages.append(text)
        return True


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        isi_url="https://app.esiclinic.com/login.php",
        isi_user="recepcion",
        isi_pass="clave",
        screenshot_dir=tmp_path / "capturas",
        webhook_secret="s3cret",
        poll_interval=0.01,
    )


@pytest.fixture()
def store() -> MemoryJobStore:
    return MemoryJobStore()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()
