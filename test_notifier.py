import asyncio
import json
import logging

import requests

import notifier as notifier_module
from notifier import TelegramNotifier, build_failure_alert, make_escalation_handler
from patient_queue import Job

PAYLOAD = {"nombre": "Ana", "apellidos": "García", "dni": "12345678A"}


class FakeResponse:
    def __init__(self, status_code=200):
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Client Error")


def test_failure_alert_contains_job_patient_error_and_payload():
    job = Job(id="f00d", name="nuevo-paciente", payload=PAYLOAD, attempt=3)

    text = build_failure_alert(job, RuntimeError("Login falló"))

    assert "`f00d`" in text
    assert "`Ana`" in text
    assert "3 intentos" in text
    assert "Login falló" in text
    assert json.dumps(PAYLOAD, indent=2, ensure_ascii=False) in text


def test_failure_alert_without_name_uses_placeholder():
    job = Job(id="f00d", name="nuevo-paciente", payload={"dni": "12345678A"}, attempt=3)

    assert "`N/A`" in build_failure_alert(job, RuntimeError("boom"))


def test_failure_alert_for_non_object_payload_still_shows_data():
    job = Job(id="f00d", name="nuevo-paciente", payload=["Ana", "García"], attempt=1)

    text = build_failure_alert(job, RuntimeError("payload inválido"))

    assert "`N/A`" in text
    assert '"García"' in text


def test_notify_without_configuration_only_warns(monkeypatch, caplog):
    def fail_post(*args, **kwargs):
        raise AssertionError("requests.post should not be called")

    monkeypatch.setattr(notifier_module.requests, "post", fail_post)

    with caplog.at_level(logging.WARNING, logger="notifier"):
        sent = asyncio.run(TelegramNotifier(token="", chat_id="123").notify("hola"))

    assert sent is False
    assert "not configured" in caplog.text


def test_notify_posts_markdown_message(monkeypatch):
    calls = []

    def fake_post(url, json=None, timeout=None):
        calls.append((url, json, timeout))
        return FakeResponse()

    monkeypatch.setattr(notifier_module.requests, "post", fake_post)

    sent = asyncio.run(TelegramNotifier(token="TOKEN", chat_id="42", timeout=5).notify("*alerta*"))

    assert sent is True
    assert calls == [(
        "https://api.telegram.org/botTOKEN/sendMessage",
        {"chat_id": "42", "text": "*alerta*", "parse_mode": "Markdown"},
        5,
    )]


def test_notify_logs_delivery_failures_without_raising(monkeypatch, caplog):
    calls = []

    def fake_post(url, json=None, timeout=None):
        calls.append(url)
        raise requests.ConnectionError("network unreachable")

    monkeypatch.setattr(notifier_module.requests, "post", fake_post)

    with caplog.at_level(logging.ERROR, logger="notifier"):
        sent = asyncio.run(TelegramNotifier(token="TOKEN", chat_id="42").notify("hola"))

    assert sent is False
    assert len(calls) == 1
    assert "network unreachable" in caplog.text


def test_notify_treats_http_errors_as_delivery_failures(monkeypatch):
    monkeypatch.setattr(notifier_module.requests, "post", lambda *a, **kw: FakeResponse(400))

    assert asyncio.run(TelegramNotifier(token="TOKEN", chat_id="42").notify("hola")) is False


def test_escalation_handler_sends_formatted_alert(notifier):
    job = Job(id="f00d", name="nuevo-paciente", payload=PAYLOAD, attempt=3)

    asyncio.run(make_escalation_handler(notifier)(job, RuntimeError("Login falló")))

    assert notifier.messages == [build_failure_alert(job, RuntimeError("Login falló"))]
