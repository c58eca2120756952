#!/usr/bin/env python3
"""
FastAPI application that receives patient submissions and queues them.

The webhook answers 202 as soon as the job is stored; a background worker
started with the app replays each job against IsiClinic.
"""

import asyncio
import hmac
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from config import Settings
from exceptions import EnqueueError
from isiclinic import fill_patient_form, run_test_login
from notifier import TelegramNotifier, make_escalation_handler
from patient_queue import Job, PatientQueue, PostgresJobStore, RetryPolicy
from worker import PatientJobProcessor, QueueWorker

logger = logging.getLogger(__name__)

JOB_NAME = "nuevo-paciente"
RETRY_POLICY = RetryPolicy(max_attempts=3, backoff_base_ms=5000)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def secret_matches(provided: str, expected: str) -> bool:
    """Constant-time comparison; an unset secret never matches."""
    if not expected:
        return False
    return hmac.compare_digest(provided.encode('utf-8'), expected.encode('utf-8'))


def clean_patient_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    """Strip surrounding whitespace from string values."""
    cleaned = {}
    for key, value in data.items():
        cleaned[str(key)] = value.strip() if isinstance(value, str) else value
    return cleaned


async def read_payload(request: Request) -> Optional[Dict[str, Any]]:
    """
    Read a JSON object or urlencoded form body.

    Returns:
        The cleaned payload, or None if the body is missing, empty or not an object
    """
    content_type = request.headers.get('content-type', '')
    if content_type.startswith('application/x-www-form-urlencoded'):
        form = await request.form()
        data = dict(form)
    else:
        body = await request.body()
        if not body.strip():
            return None
        try:
            data = json.loads(body)
        except ValueError:
            return None

    if not isinstance(data, dict) or not data:
        return None
    return clean_patient_payload(data)


async def log_completed(job: Job, result: Any) -> None:
    logger.info("Job %s completed.", job.id)


def create_app(
    settings: Optional[Settings] = None,
    queue: Optional[PatientQueue] = None,
    notifier: Optional[TelegramNotifier] = None,
    fill_form=fill_patient_form,
    test_login=run_test_login,
    start_worker: bool = True,
) -> FastAPI:
    """
    Build the API with its queue, worker and notifier.

    The queue and worker live for the lifespan of the app: the worker starts
    when the app starts and is stopped (after finishing its current job) when
    the app shuts down.
    """
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        patient_queue = queue or PatientQueue(
            PostgresJobStore(settings.db_config),
            policy=RETRY_POLICY,
            poll_interval=settings.poll_interval,
        )
        alert_notifier = notifier or TelegramNotifier(
            settings.telegram_bot_token,
            settings.telegram_chat_id,
        )
        patient_queue.on_completed(log_completed)
        patient_queue.on_failed(make_escalation_handler(alert_notifier))

        session_lock = asyncio.Lock()
        processor = PatientJobProcessor(settings, fill_form=fill_form, session_lock=session_lock)
        worker = QueueWorker(patient_queue, processor)

        app.state.queue = patient_queue
        app.state.worker = worker
        app.state.session_lock = session_lock

        await patient_queue.open()
        if start_worker:
            worker.start()
            logger.info("Queue worker connected and processing jobs...")
        try:
            yield
        finally:
            await worker.stop()

    app = FastAPI(
        title="IsiClinic Patient Intake API",
        description="Queues patient submissions and fills them into IsiClinic",
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.get("/")
    async def root():
        """Root endpoint with API information."""
        return {
            "message": "IsiClinic Patient Intake API",
            "version": "1.0.0",
            "endpoints": {
                "GET /health": "Health check",
                "GET /test-login": "Log in to IsiClinic and fill a demo patient",
                "POST /rellenar-isiclinic": "Fill the patient form synchronously (debug)",
                "POST /crear-paciente": "Queue a patient submission (webhook)",
            }
        }

    @app.get("/health")
    async def health():
        return {"ok": True, "queue": "ready"}

    @app.get("/test-login")
    async def test_login_endpoint(request: Request):
        """Debug endpoint: checks credentials and form selectors without the queue."""
        try:
            async with request.app.state.session_lock:
                info = await test_login(settings)
        except Exception as e:
            logger.error("Error in /test-login: %s", e)
            return JSONResponse(status_code=500, content={"ok": False, "error": str(e)})
        return {"ok": True, **info}

    @app.post("/rellenar-isiclinic")
    async def fill_form_now(request: Request):
        """
        Debug endpoint: fill the form inline, bypassing the queue.

        Slow; waits for the whole browser session before answering.
        """
        patient_data = await read_payload(request) or {}
        start = time.monotonic()
        try:
            async with request.app.state.session_lock:
                result = await fill_form(patient_data, settings)
        except Exception as e:
            ms = int((time.monotonic() - start) * 1000)
            logger.error("Error (synchronous) ms=%d err=%s datos=%s", ms, e, patient_data)
            return JSONResponse(status_code=500, content={"ok": False, "error": str(e)})

        ms = int((time.monotonic() - start) * 1000)
        logger.info("Form filled (synchronous) ms=%d datos=%s", ms, patient_data)
        return {"ok": True, "ms": ms, "result": result}

    @app.post("/crear-paciente")
    async def create_patient(request: Request):
        """
        Webhook: validate the shared secret and queue the submission.

        Answers 202 right after the job is stored, before any processing.
        """
        secret = request.headers.get("X-Webhook-Secret", "")
        if not secret_matches(secret, settings.webhook_secret):
            logger.warning("Webhook attempt with wrong secret")
            return JSONResponse(status_code=401, content={"ok": False, "error": "Invalid secret"})

        patient_data = await read_payload(request)
        if not patient_data:
            logger.warning("Webhook received without data (empty body)")
            return JSONResponse(status_code=400, content={"ok": False, "error": "Empty body"})

        try:
            job = await request.app.state.queue.enqueue(JOB_NAME, patient_data, RETRY_POLICY)
        except EnqueueError as e:
            logger.error("Error queueing job: %s", e)
            return JSONResponse(
                status_code=500,
                content={"ok": False, "error": "Error al encolar la tarea"},
            )

        logger.info("Patient queued id=%s datos=%s", job.id, json.dumps(patient_data, ensure_ascii=False))
        return JSONResponse(
            status_code=202,
            content={"ok": True, "message": "Tarea encolada", "id": job.id},
        )

    return app


app_settings = Settings.from_env()
app = create_app(app_settings)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=app_settings.api_host, port=app_settings.api_port)
