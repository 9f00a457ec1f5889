"""Type-safe helpers for loading settings from environment variables."""

import os
from typing import List, Optional


def get_env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return the variable as a stripped string, or ``default`` when unset/blank."""
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def get_env_int(name: str, default: int) -> int:
    """Return the variable parsed as an int.

    Raises:
        ValueError: If the variable is set but is not an integer.
    """
    value = get_env_str(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None


def get_env_float(name: str, default: float) -> float:
    value = get_env_str(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}") from None


def get_env_list(name: str, default: List[str], separator: str = ",") -> List[str]:
    """Return the variable split on ``separator`` with empty items dropped."""
    value = get_env_str(name)
    if value is None:
        return list(default)
    return [item.strip() for item in value.split(separator) if item.strip()]
