"""Helpers for invoking user callables that may or may not be async."""

from __future__ import annotations

import inspect
from typing import Any, Mapping, Optional, Sequence


async def maybe_await(value: Any) -> Any:
    """Await ``value`` when it is awaitable, otherwise return it unchanged."""
    if inspect.isawaitable(value):
        return await value
    return value


async def call(fn: Any, *args: Any) -> Any:
    return await maybe_await(fn(*args))


def read_path(value: Any, path: Optional[str] = None) -> Any:
    """Read a dotted ``path`` from nested mappings, sequences or objects."""
    if path is None or path == ".":
        return value

    current = value
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                raise KeyError(f"Invalid path '{path}': missing '{part}'")
            current = current[part]
        elif isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError) as exc:
                raise KeyError(f"Invalid path '{path}': bad index '{part}'") from exc
        elif hasattr(current, part):
            current = getattr(current, part)
        else:
            raise KeyError(f"Invalid path '{path}'")
    return current
