import os
from typing import Optional


def get_setting(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return an environment setting with an optional default."""
    return os.getenv(name, default)


def get_int_setting(name: str, default: int, *, minimum: Optional[int] = None, maximum: Optional[int] = None) -> int:
    """Return an integer setting, falling back to the default on bad input and clamping to bounds."""
    raw = str(os.getenv(name) or "").strip()
    try:
        value = int(raw) if raw else default
    except ValueError:
        value = default
    if minimum is not None:
        value = max(minimum, value)
    if maximum is not None:
        value = min(maximum, value)
    return value


def get_database_url() -> str:
    """
    Return the database URL for SQLAlchemy.
    Defaults to a local SQLite file for development if not provided.
    """
    return os.getenv("DATABASE_URL") or os.getenv("POSTGRES_CONNECTION_STRING") or "sqlite:///./crm.db"


def get_storage_connection_string() -> Optional[str]:
    """
    Connection string for the CRM document tables.
    When unset, the in-process memory backend is used.
    """
    return os.getenv("AZURE_STORAGE_CONNECTION_STRING") or None


def get_session_secret() -> str:
    for key in ("AUTH_SESSION_SECRET", "JWT_SECRET", "SECRET_KEY"):
        value = str(os.getenv(key) or "").strip()
        if value:
            return value
    return ""


def get_session_ttl_seconds() -> int:
    return get_int_setting(
        "AUTH_SESSION_TTL_SECONDS",
        12 * 60 * 60,
        minimum=15 * 60,
        maximum=7 * 24 * 60 * 60,
    )
