"""
Global settings and constants for the SmartMail sync core.

This module provides configuration constants and helpers. It is
framework-agnostic and designed to be easily unit-testable: every value
is a module-level attribute that tests can monkeypatch.
"""
import os
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv


# Default port constants
DEFAULT_IMAP_PORT: int = 993

# Storage locations
APP_DIR: Path = Path.home() / ".smartmail"
SQLITE_DB_PATH: Path = APP_DIR / "smartmail.db"
SECRET_KEY_PATH: Path = APP_DIR / "secret.key"
LOG_DIR: Path = APP_DIR / "logs"

# Network behaviour
IMAP_TIMEOUT: float = 30.0
CONNECT_RETRIES: int = 1

# Sync behaviour
SYNC_FETCH_BATCH_SIZE: int = 50
DEBUG: bool = False

# Canonical display folders
INBOX_FOLDER: str = "Posteingang"
SENT_FOLDER: str = "Gesendet"
SPAM_FOLDER: str = "Spam"
TRASH_FOLDER: str = "Papierkorb"
SYSTEM_FOLDERS = (INBOX_FOLDER, SENT_FOLDER, SPAM_FOLDER, TRASH_FOLDER)

# Server-side inbox token (RFC 3501: case-insensitive)
SERVER_INBOX: str = "INBOX"

# Special-use attributes (RFC 6154) that map onto canonical folders
SPECIAL_USE_FOLDERS: Dict[str, str] = {
    "\\sent": SENT_FOLDER,
    "\\trash": TRASH_FOLDER,
    "\\junk": SPAM_FOLDER,
}

# Leaf names recognised when the server advertises no special-use attribute
NAMED_FOLDERS: Dict[str, str] = {
    "sent": SENT_FOLDER,
    "gesendet": SENT_FOLDER,
    "trash": TRASH_FOLDER,
    "papierkorb": TRASH_FOLDER,
    "junk": SPAM_FOLDER,
    "spam": SPAM_FOLDER,
}

# Virtual aggregate folders that would duplicate every message
SKIPPED_SPECIAL_USE = ("\\all", "\\flagged")

# Built-in categories seeded on first start
DEFAULT_CATEGORIES = (
    "Rechnungen",
    "Newsletter",
    "Privat",
    "Geschäftlich",
    "Kündigungen",
    "Sonstiges",
)

# Provider presets (static configuration, not protocol logic)
PROVIDERS: Dict[str, Dict[str, object]] = {
    "gmx": {"host": "imap.gmx.net", "port": 993, "security": "ssl"},
    "webde": {"host": "imap.web.de", "port": 993, "security": "ssl"},
    "gmail": {"host": "imap.gmail.com", "port": 993, "security": "ssl"},
    "outlook": {"host": "outlook.office365.com", "port": 993, "security": "ssl"},
    "yahoo": {"host": "imap.mail.yahoo.com", "port": 993, "security": "ssl"},
}


def get_provider_preset(provider: str) -> Optional[Dict[str, object]]:
    """
    Look up the connection preset for a provider.

    Args:
        provider: Provider identifier (e.g., 'gmx', 'gmail'). Case-insensitive.

    Returns:
        A copy of the preset dict, or None for custom providers.
    """
    preset = PROVIDERS.get((provider or "").lower())
    return dict(preset) if preset else None


def _env_bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def load_env() -> None:
    """
    Load environment variables and apply sensible defaults.

    Reads a ``.env`` file if present, then applies overrides from the
    environment. It should be called once at application startup.
    """
    global SQLITE_DB_PATH, SECRET_KEY_PATH, LOG_DIR
    global IMAP_TIMEOUT, SYNC_FETCH_BATCH_SIZE, DEBUG

    load_dotenv()

    db_path_env = os.environ.get("SMARTMAIL_DB_PATH")
    if db_path_env:
        SQLITE_DB_PATH = Path(db_path_env)

    key_path_env = os.environ.get("SMARTMAIL_KEY_PATH")
    if key_path_env:
        SECRET_KEY_PATH = Path(key_path_env)

    log_dir_env = os.environ.get("SMARTMAIL_LOG_DIR")
    if log_dir_env:
        LOG_DIR = Path(log_dir_env)

    timeout_env = os.environ.get("SMARTMAIL_IMAP_TIMEOUT")
    if timeout_env:
        IMAP_TIMEOUT = float(timeout_env)

    batch_env = os.environ.get("SMARTMAIL_FETCH_BATCH_SIZE")
    if batch_env:
        SYNC_FETCH_BATCH_SIZE = max(1, int(batch_env))

    DEBUG = _env_bool(os.environ.get("SMARTMAIL_DEBUG"))

    # Ensure the database directory exists
    SQLITE_DB_PATH.parent.mkdir(parents=True, exist_ok=True)
