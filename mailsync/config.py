"""
Global settings and constants for the mail sync engine.

Values here are module-level defaults. Call ``load_env()`` at startup to
apply overrides from the environment (and from a ``.env`` file, if present).
"""
import os
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv


# Default port constants
DEFAULT_IMAP_PORT: int = 993
DEFAULT_SMTP_PORT: int = 587

# Storage
DATA_DIR: Path = Path.home() / ".mailsync"
SQLITE_DB_PATH: Path = DATA_DIR / "mailsync.db"
SECRET_KEY_PATH: Path = DATA_DIR / "secret.key"
LOG_DIR: Path = DATA_DIR / "logs"

# OAuth client credentials (read from environment)
GMAIL_CLIENT_ID: Optional[str] = None
GMAIL_CLIENT_SECRET: Optional[str] = None
OUTLOOK_CLIENT_ID: Optional[str] = None
OUTLOOK_CLIENT_SECRET: Optional[str] = None

GMAIL_SCOPES = [
    "https://mail.google.com/",
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.send",
]

# Remote endpoints
GMAIL_API_BASE: str = "https://gmail.googleapis.com/gmail/v1/users/me"

# Network and sync limits
HTTP_TIMEOUT_SECONDS: float = 30.0
IMAP_TIMEOUT_SECONDS: float = 30.0
MAX_MESSAGES_PER_FOLDER: int = 100
MAX_RETRY_AFTER_SECONDS: float = 30.0

# Per-service protocol endpoints used when an account draft leaves them blank
PROVIDER_DEFAULTS: Dict[str, Dict[str, object]] = {
    "gmail": {
        "imap_host": "imap.gmail.com",
        "imap_port": 993,
        "smtp_host": "smtp.gmail.com",
        "smtp_port": 587,
    },
    "outlook": {
        "imap_host": "outlook.office365.com",
        "imap_port": 993,
        "smtp_host": "smtp.office365.com",
        "smtp_port": 587,
    },
    "yahoo": {
        "imap_host": "imap.mail.yahoo.com",
        "imap_port": 993,
        "smtp_host": "smtp.mail.yahoo.com",
        "smtp_port": 587,
    },
}


def load_env(dotenv_path: Optional[str] = None) -> None:
    """
    Load environment variables and apply them over the defaults.

    Args:
        dotenv_path: Optional explicit path to a ``.env`` file.
    """
    global DATA_DIR, SQLITE_DB_PATH, SECRET_KEY_PATH, LOG_DIR
    global GMAIL_CLIENT_ID, GMAIL_CLIENT_SECRET, OUTLOOK_CLIENT_ID, OUTLOOK_CLIENT_SECRET
    global GMAIL_API_BASE, HTTP_TIMEOUT_SECONDS, IMAP_TIMEOUT_SECONDS, MAX_MESSAGES_PER_FOLDER

    load_dotenv(dotenv_path)

    GMAIL_CLIENT_ID = os.environ.get("GMAIL_CLIENT_ID")
    GMAIL_CLIENT_SECRET = os.environ.get("GMAIL_CLIENT_SECRET")
    OUTLOOK_CLIENT_ID = os.environ.get("OUTLOOK_CLIENT_ID")
    OUTLOOK_CLIENT_SECRET = os.environ.get("OUTLOOK_CLIENT_SECRET")

    data_dir_env = os.environ.get("MAILSYNC_DATA_DIR")
    if data_dir_env:
        DATA_DIR = Path(data_dir_env)
        SQLITE_DB_PATH = DATA_DIR / "mailsync.db"
        SECRET_KEY_PATH = DATA_DIR / "secret.key"
        LOG_DIR = DATA_DIR / "logs"

    if os.environ.get("MAILSYNC_DB_PATH"):
        SQLITE_DB_PATH = Path(os.environ["MAILSYNC_DB_PATH"])
    if os.environ.get("MAILSYNC_KEY_PATH"):
        SECRET_KEY_PATH = Path(os.environ["MAILSYNC_KEY_PATH"])
    if os.environ.get("MAILSYNC_LOG_DIR"):
        LOG_DIR = Path(os.environ["MAILSYNC_LOG_DIR"])

    GMAIL_API_BASE = os.environ.get("GMAIL_API_BASE", GMAIL_API_BASE).rstrip("/")
    HTTP_TIMEOUT_SECONDS = float(os.environ.get("MAILSYNC_HTTP_TIMEOUT", HTTP_TIMEOUT_SECONDS))
    IMAP_TIMEOUT_SECONDS = float(os.environ.get("MAILSYNC_IMAP_TIMEOUT", IMAP_TIMEOUT_SECONDS))
    MAX_MESSAGES_PER_FOLDER = int(os.environ.get("MAILSYNC_MAX_PER_FOLDER", MAX_MESSAGES_PER_FOLDER))


def provider_defaults(service: str) -> Dict[str, object]:
    """Return default IMAP/SMTP endpoints for a named service (empty for custom)."""
    return dict(PROVIDER_DEFAULTS.get((service or "").lower(), {}))
