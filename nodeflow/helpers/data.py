"""Collection and object utilities for node code (helpers.data)."""

from __future__ import annotations

import copy
from collections.abc import Callable
from typing import Any

__all__ = [
    "map",
    "filter",
    "reduce",
    "group_by",
    "sort_by",
    "unique",
    "flatten",
    "chunk",
    "pick",
    "omit",
    "merge",
    "flatten_object",
    "get",
    "set",
    "clone",
]

_MISSING = object()


def _require_list(items: Any, name: str) -> None:
    if not isinstance(items, list | tuple):
        raise TypeError(f"{name}() requires an array as first argument")


def _key_fn(key: str | Callable[[Any], Any]) -> Callable[[Any], Any]:
    if callable(key):
        return key
    return lambda item: get(item, key)


def map(items: list[Any], fn: Callable[[Any, int], Any]) -> list[Any]:
    _require_list(items, "map")
    return [fn(item, i) for i, item in enumerate(items)]


def filter(items: list[Any], fn: Callable[[Any, int], bool]) -> list[Any]:
    _require_list(items, "filter")
    return [item for i, item in enumerate(items) if fn(item, i)]


def reduce(items: list[Any], fn: Callable[[Any, Any, int], Any], initial: Any) -> Any:
    _require_list(items, "reduce")
    acc = initial
    for i, item in enumerate(items):
        acc = fn(acc, item, i)
    return acc


def group_by(items: list[Any], key: str | Callable[[Any], Any]) -> dict[str, list[Any]]:
    """Group items by a key path or key function; group names are strings."""
    _require_list(items, "group_by")
    key_of = _key_fn(key)
    groups: dict[str, list[Any]] = {}
    for item in items:
        groups.setdefault(str(key_of(item)), []).append(item)
    return groups


def sort_by(
    items: list[Any], key: str | Callable[[Any], Any], order: str = "asc"
) -> list[Any]:
    """Stable sort; items whose keys cannot be compared keep their relative order."""
    _require_list(items, "sort_by")
    key_of = _key_fn(key)
    decorated = [(key_of(item), i, item) for i, item in enumerate(items)]

    def sort_key(entry):
        value = entry[0]
        # None sorts first, numbers before strings
        if value is None:
            return (0, 0, "")
        if isinstance(value, bool | int | float):
            return (1, value, "")
        return (2, 0, str(value))

    decorated.sort(key=sort_key, reverse=order == "desc")
    return [item for _, _, item in decorated]


def unique(items: list[Any], key: str | Callable[[Any], Any] | None = None) -> list[Any]:
    """Drop duplicates, keeping the first occurrence."""
    _require_list(items, "unique")
    key_of = _key_fn(key) if key else (lambda item: item)
    seen: list[Any] = []
    result = []
    for item in items:
        marker = key_of(item)
        if marker in seen:
            continue
        seen.append(marker)
        result.append(item)
    return result


def flatten(items: list[Any], depth: int = 1) -> list[Any]:
    _require_list(items, "flatten")
    result: list[Any] = []
    for item in items:
        if isinstance(item, list) and depth > 0:
            result.extend(flatten(item, depth - 1))
        else:
            result.append(item)
    return result


def chunk(items: list[Any], size: int) -> list[list[Any]]:
    """Split items into consecutive chunks of at most size."""
    _require_list(items, "chunk")
    if size <= 0:
        raise ValueError("Chunk size must be greater than 0")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


def pick(obj: dict[str, Any], keys: list[str]) -> dict[str, Any]:
    return {k: obj[k] for k in keys if k in obj}


def omit(obj: dict[str, Any], keys: list[str]) -> dict[str, Any]:
    return {k: v for k, v in obj.items() if k not in keys}


def merge(*objects: dict[str, Any]) -> dict[str, Any]:
    """Deep merge; later objects win, nested dicts are merged recursively."""
    result: dict[str, Any] = {}
    for obj in objects:
        if not isinstance(obj, dict):
            continue
        for key, value in obj.items():
            if isinstance(value, dict) and isinstance(result.get(key), dict):
                result[key] = merge(result[key], value)
            else:
                result[key] = copy.deepcopy(value)
    return result


def flatten_object(obj: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    """{"a": {"b": 1}} -> {"a.b": 1}. Lists are kept as values."""
    flat: dict[str, Any] = {}
    for key, value in obj.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict) and value:
            flat.update(flatten_object(value, path))
        else:
            flat[path] = value
    return flat


def get(obj: Any, path: str, default: Any = None) -> Any:
    """Read a dotted path; list segments may be integer indexes."""
    value = obj
    for part in str(path).split("."):
        if isinstance(value, dict):
            value = value.get(part, _MISSING)
        elif isinstance(value, list | tuple) and part.lstrip("-").isdigit():
            index = int(part)
            value = value[index] if -len(value) <= index < len(value) else _MISSING
        else:
            value = _MISSING
        if value is _MISSING:
            return default
    return value


def set(obj: dict[str, Any], path: str, value: Any) -> dict[str, Any]:
    """Write a dotted path in place, creating intermediate dicts. Returns obj."""
    parts = str(path).split(".")
    target = obj
    for part in parts[:-1]:
        if not isinstance(target.get(part), dict):
            target[part] = {}
        target = target[part]
    target[parts[-1]] = value
    return obj


def clone(obj: Any) -> Any:
    return copy.deepcopy(obj)
