from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Dict, Optional

import structlog
from dotenv import load_dotenv

PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
DOTENV_PATH = os.path.join(PROJECT_ROOT, ".env")

MODE_EXCHANGE = "exchange"
MODE_DEMO = "demo"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}.")


def _parse_users(raw: Optional[str]) -> Dict[str, str]:
    users: Dict[str, str] = {}
    for pair in (raw or "").split(","):
        name, sep, password = pair.strip().partition(":")
        if sep and name and password:
            users[name.strip()] = password.strip()
    return users


@dataclass
class Settings:
    mode: str = MODE_EXCHANGE
    search_min_length: int = 3
    search_result_cap: int = 200
    audit_log_file: str = os.path.join(PROJECT_ROOT, "log.txt")
    powershell_exe: str = "pwsh"
    exo_organization: Optional[str] = None
    exo_app_id: Optional[str] = None
    exo_certificate_thumbprint: Optional[str] = None
    exo_user_principal_name: Optional[str] = None
    demo_mongo_uri: Optional[str] = None
    demo_mongo_db: str = "mailbox_demo"
    secret_key: str = "change-me"
    session_minutes: int = 10
    users: Dict[str, str] = field(default_factory=dict)
    log_level: str = "INFO"


def load_settings(dotenv_path: Optional[str] = DOTENV_PATH) -> Settings:
    if dotenv_path and os.path.exists(dotenv_path):
        load_dotenv(dotenv_path)

    mode = os.getenv("DEFAULT_MODE", MODE_EXCHANGE).strip().lower()
    if mode not in (MODE_EXCHANGE, MODE_DEMO):
        raise ValueError(f"DEFAULT_MODE must be '{MODE_EXCHANGE}' or '{MODE_DEMO}', got {mode!r}.")

    return Settings(
        mode=mode,
        search_min_length=_int_env("SEARCH_MIN_LENGTH", 3),
        search_result_cap=_int_env("SEARCH_RESULT_CAP", 200),
        audit_log_file=os.getenv("AUDIT_LOG_FILE", os.path.join(PROJECT_ROOT, "log.txt")),
        powershell_exe=os.getenv("POWERSHELL_EXE", "pwsh"),
        exo_organization=os.getenv("EXO_ORGANIZATION"),
        exo_app_id=os.getenv("EXO_APP_ID"),
        exo_certificate_thumbprint=os.getenv("EXO_CERT_THUMBPRINT"),
        exo_user_principal_name=os.getenv("EXO_USER_PRINCIPAL_NAME"),
        demo_mongo_uri=os.getenv("DEMO_MONGO_URI"),
        demo_mongo_db=os.getenv("DEMO_MONGO_DB", "mailbox_demo"),
        secret_key=os.getenv("FLASK_SECRET_KEY", "change-me"),
        session_minutes=_int_env("SESSION_MINUTES", 10),
        users=_parse_users(os.getenv("CONSOLE_USERS")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=getattr(logging, level, logging.INFO))
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
