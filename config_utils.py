from __future__ import annotations

import os

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _raw_env(name: str) -> str:
    return (os.getenv(name) or "").strip()


def read_str_env(name: str, default: str) -> str:
    return _raw_env(name) or default


def read_float_env(name: str, default: float) -> float:
    raw = _raw_env(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def read_int_env(name: str, default: int) -> int:
    raw = _raw_env(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def read_bool_env(name: str, default: bool) -> bool:
    raw = _raw_env(name).lower()
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    return default


def read_list_env(name: str, default: tuple[str, ...] = ()) -> tuple[str, ...]:
    raw = _raw_env(name)
    if not raw:
        return default
    items = tuple(item.strip() for item in raw.split(",") if item.strip())
    return items or default
