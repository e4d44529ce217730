"""Environment-driven settings and platform-aware default paths."""

import logging
import os
import sys
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_CAP = 8
DEFAULT_PERSIST_RETRIES = 3
DEFAULT_PROVIDER_TIMEOUT = 60.0


def get_data_dir() -> Path:
    """Return the directory repochat keeps its database in."""
    env = os.environ.get("REPOCHAT_DATA_DIR")
    if env:
        return Path(env)

    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "repochat"
    elif sys.platform == "win32":
        return Path(os.environ.get("APPDATA", "")) / "repochat"
    else:  # Linux
        return Path.home() / ".local" / "share" / "repochat"


def get_db_path() -> Path:
    """Return the path to the SQLite session/message store."""
    env = os.environ.get("REPOCHAT_DB_PATH")
    if env:
        return Path(env)
    return get_data_dir() / "repochat.db"


def get_catalog_path() -> Path | None:
    """Return the JSON project catalog loaded by /admin/reindex, if set."""
    env = os.environ.get("REPOCHAT_CATALOG_PATH")
    return Path(env) if env else None


def get_provider_url() -> str | None:
    """Return the answer-generation endpoint, or None if unconfigured."""
    return os.environ.get("REPOCHAT_PROVIDER_URL") or None


def get_provider_timeout() -> float:
    raw = os.environ.get("REPOCHAT_PROVIDER_TIMEOUT")
    if not raw:
        return DEFAULT_PROVIDER_TIMEOUT
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid REPOCHAT_PROVIDER_TIMEOUT=%r", raw)
        return DEFAULT_PROVIDER_TIMEOUT


def get_admin_key() -> str | None:
    """Return the opaque admin credential, or None if admin routes are off."""
    return os.environ.get("REPOCHAT_ADMIN_KEY") or None


def get_history_cap() -> int:
    """Return how many prior messages are forwarded as context."""
    return _get_int("REPOCHAT_HISTORY_CAP", DEFAULT_HISTORY_CAP)


def get_persist_retries() -> int:
    """Return how many times a completed turn's write is attempted."""
    return max(1, _get_int("REPOCHAT_PERSIST_RETRIES", DEFAULT_PERSIST_RETRIES))


def _get_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", name, raw)
        return default
