"""Shared configuration utilities."""

import os
from pathlib import Path
from typing import Optional


def get_env(key: str, default: Optional[str] = None, required: bool = False) -> str:
    """Get environment variable with optional default and required validation."""
    value = os.getenv(key, default)
    if required and not value:
        raise ValueError(f"Required environment variable {key} is not set")
    return value


def get_data_dir() -> Path:
    """Get the root directory holding the local database, media and sync queue."""
    return Path(get_env("TIMELINE_DATA_DIR", os.path.join(Path.home(), ".timeline"))).expanduser()


def get_database_url() -> str:
    """Get the local SQLite database URL from environment."""
    return get_env(
        "DATABASE_URL",
        f"sqlite:///{get_data_dir() / 'timeline.db'}",
        required=False
    )


def get_notesync_config() -> dict:
    """Get notesync service configuration from environment."""
    return {
        "base_url": get_env("NOTESYNC_BASE_URL", "https://zzuse.duckdns.org"),
        "api_key": get_env("NOTESYNC_API_KEY", "replace-me"),
        "max_batch_bytes": int(get_env("NOTESYNC_MAX_BATCH_BYTES", str(512 * 1024))),
        "restore_limit": int(get_env("NOTESYNC_RESTORE_LIMIT", "50")),
    }


def get_auth_config() -> dict:
    """Get OAuth login and callback configuration from environment."""
    return {
        "api_key": get_env("AUTH_API_KEY", "replace-me"),
        "login_url": get_env(
            "AUTH_LOGIN_URL",
            "https://zzuse.duckdns.org/auth/oauth_start?client=ios"
        ),
        "callback_host": get_env("AUTH_CALLBACK_HOST", "zzuse.duckdns.org"),
        "callback_path": get_env("AUTH_CALLBACK_PATH", "/auth/callback"),
    }
