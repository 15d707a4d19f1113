"""Environment helper utilities."""

from __future__ import annotations

import os
from typing import Optional


def get_env(name: str, *, default: Optional[str] = None) -> Optional[str]:
    """Return a stripped environment value, treating blanks as unset."""
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip()
    return value or default


def get_float_env(name: str, *, default: Optional[float] = None) -> Optional[float]:
    """Read a float from the environment; malformed values raise ValueError."""
    value = get_env(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a number, got {value!r}") from exc
