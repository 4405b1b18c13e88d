"""Helper utilities for the PostgreSQL backup tool."""
from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

FILENAME_TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"


def ensure_directory(path: Path) -> Path:
    """Create *path* (and parents) if it does not exist and return it."""

    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def timestamp_for_filename(dt: Optional[datetime] = None) -> str:
    dt = dt or datetime.now()
    return dt.strftime(FILENAME_TIMESTAMP_FORMAT)


def mask_sensitive(value: str, secrets: Iterable[Optional[str]]) -> str:
    """Replace occurrences of secret values in *value* with '***'."""

    masked = value
    for secret in secrets:
        if secret:
            masked = masked.replace(secret, "***")
    return masked


__all__ = [
    "FILENAME_TIMESTAMP_FORMAT",
    "ensure_directory",
    "timestamp_for_filename",
    "mask_sensitive",
]
