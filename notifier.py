#!/usr/bin/env python3
"""
Telegram alerts for jobs that fail permanently.
"""

import asyncio
import json
import logging
from typing import Any, Optional

import requests

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/sendMessage"


def build_failure_alert(job: Any, error: BaseException) -> str:
    """
    Build the alert text for a job that ran out of attempts.

    Includes the job id, patient name, error and the submitted data so the
    patient can be registered by hand.
    """
    patient_data = json.dumps(job.payload, indent=2, ensure_ascii=False)
    patient = job.payload if isinstance(job.payload, dict) else {}
    patient_name = patient.get('nombre') or 'N/A'
    return (
        "*¡ALERTA DE ERROR EN EL BOT!* 🤖\n"
        "\n"
        f"El Job `{job.id}` para el paciente `{patient_name}` ha fallado "
        f"después de {job.attempt} intentos.\n"
        "\n"
        f"*Error:* `{error}`\n"
        "\n"
        "*Datos enviados:*\n"
        "```\n"
        f"{patient_data}\n"
        "```\n"
        "Por favor, registra al paciente manualmente."
    )


class TelegramNotifier:
    """
    Best-effort alert delivery through the Telegram Bot API.

    Missing configuration and delivery errors are logged, never raised.
    """

    def __init__(self, token: Optional[str], chat_id: Optional[str], timeout: float = 10.0):
        self.token = token
        self.chat_id = chat_id
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.token and self.chat_id)

    async def notify(self, text: str) -> bool:
        """Send ``text``; returns True if Telegram accepted it."""
        if not self.configured:
            logger.warning("Telegram bot not configured (TOKEN or CHAT_ID), alert not sent.")
            return False

        try:
            await asyncio.to_thread(self._send, text)
        except requests.RequestException as e:
            logger.error("Error sending Telegram message: %s", e)
            return False

        logger.info("Error notification sent to Telegram.")
        return True

    def _send(self, text: str) -> None:
        response = requests.post(
            TELEGRAM_API_URL.format(token=self.token),
            json={
                'chat_id': self.chat_id,
                'text': text,
                'parse_mode': 'Markdown',
            },
            timeout=self.timeout,
        )
        response.raise_for_status()


def make_escalation_handler(notifier: TelegramNotifier):
    """Queue ``failed`` handler that sends one alert per permanently failed job."""

    async def escalate(job: Any, error: BaseException) -> None:
        await notifier.notify(build_failure_alert(job, error))

    return escalate
