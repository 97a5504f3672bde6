"""Lifecycle hooks declared on a chain."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .utils.calls import maybe_await

logger = logging.getLogger(__name__)

Hook = Callable[..., Any]


@dataclass(frozen=True)
class WorkflowHooks:
    """Optional callbacks fired by the runtime and engine.

    ``on_start``/``on_finish``/``on_end`` receive the ``StartResult`` or the
    execution context, ``on_step_start``/``on_step_end`` receive the context and
    the step id. Failures inside a hook are logged and never change the outcome.
    """

    on_start: Optional[Hook] = None
    on_step_start: Optional[Hook] = None
    on_step_end: Optional[Hook] = None
    on_suspend: Optional[Hook] = None
    on_error: Optional[Hook] = None
    on_finish: Optional[Hook] = None
    on_end: Optional[Hook] = None


async def run_hook(hooks: Optional[WorkflowHooks], name: str, *args: Any) -> None:
    """Invoke hook ``name`` if declared, logging instead of propagating errors."""
    if hooks is None:
        return
    hook = getattr(hooks, name, None)
    if hook is None:
        return
    try:
        await maybe_await(hook(*args))
    except Exception as exc:
        logger.warning(f"Workflow hook {name} failed: {exc}")
