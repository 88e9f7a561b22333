"""Environment driven settings for the clinic client.
Values come from the process environment, optionally seeded from a .env file.
"""
from __future__ import annotations
import logging
import os
from dotenv import load_dotenv

load_dotenv()


def _get_float(value: str | None, default: float) -> float:
    if value is None or not value.strip():
        return default
    return float(value)


API_BASE_URL = os.getenv("CLINIC_API_BASE_URL", "http://localhost:8000").rstrip("/")
HTTP_TIMEOUT = _get_float(os.getenv("CLINIC_HTTP_TIMEOUT"), 15.0)

STORE_PATH = os.path.expanduser(os.getenv("CLINIC_STORE_PATH", "~/.clinic_client/credentials.json"))

# "light" or "dark"; stands in for the OS colour scheme when nothing is cached
DEVICE_THEME = os.getenv("CLINIC_DEVICE_THEME", "light").strip().lower()

ROLE_CLAIM = os.getenv("CLINIC_ROLE_CLAIM", "role")
# claim holding the user id that appointments reference as doctorId/patientId
SUBJECT_CLAIM = os.getenv("CLINIC_SUBJECT_CLAIM", "sub")

LOG_LEVEL = os.getenv("CLINIC_LOG_LEVEL", "INFO")

SANDBOX_SECRET = os.getenv("CLINIC_SANDBOX_SECRET", "sandbox-secret")


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or LOG_LEVEL).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("hpack").setLevel(logging.WARNING)
