#!/usr/bin/env python3
"""
Runtime configuration loaded from environment variables (and .env).
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

from dotenv import load_dotenv

load_dotenv()


def str_to_bool(value: str) -> bool:
    """Interpret common truthy strings ("true", "1", "yes", "on")."""
    return str(value).strip().lower() in ("true", "1", "yes", "on")


def get_db_config() -> Dict[str, Any]:
    """Get PostgreSQL connection parameters from environment variables."""
    return {
        'host': os.getenv('DB_HOST', 'localhost'),
        'port': os.getenv('DB_PORT', '5432'),
        'database': os.getenv('DB_NAME', 'isiclinic_queue'),
        'user': os.getenv('DB_USER', 'postgres'),
        'password': os.getenv('DB_PASSWORD', '')
    }


@dataclass(frozen=True)
class Settings:
    """Application settings for the API, worker and browser session."""

    isi_url: str = ""
    isi_user: str = ""
    isi_pass: str = ""
    headless: bool = True
    screenshot_dir: Path = Path.cwd() / "capturas"
    webhook_secret: str = ""
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    db_config: Dict[str, Any] = field(default_factory=dict)
    poll_interval: float = 1.0
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 3000

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the current environment."""
        return cls(
            isi_url=os.getenv('ISI_URL', ''),
            isi_user=os.getenv('ISI_USER', ''),
            isi_pass=os.getenv('ISI_PASS', ''),
            headless=str_to_bool(os.getenv('HEADLESS', 'true')),
            screenshot_dir=Path(os.getenv('SCREENSHOT_DIR', str(Path.cwd() / "capturas"))),
            webhook_secret=os.getenv('WEBHOOK_SECRET', ''),
            telegram_bot_token=os.getenv('TELEGRAM_BOT_TOKEN', ''),
            telegram_chat_id=os.getenv('TELEGRAM_CHAT_ID', ''),
            db_config=get_db_config(),
            poll_interval=float(os.getenv('QUEUE_POLL_INTERVAL', '1.0')),
            log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
            api_host=os.getenv('API_HOST', '0.0.0.0'),
            api_port=int(os.getenv('API_PORT', '3000')),
        )
