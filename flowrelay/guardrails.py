"""Guardrail checks applied by ``and_guardrail`` steps."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable, Literal, Optional, Sequence

from pydantic import BaseModel

from .errors import GuardrailBlockedError
from .utils.calls import call

if TYPE_CHECKING:
    from .context import ExecutionContext

logger = logging.getLogger(__name__)

GuardrailCheck = Callable[["ExecutionContext"], Any]


class GuardrailDecision(BaseModel):
    """Verdict returned by a guardrail check."""

    action: Literal["allow", "modify", "block"] = "allow"
    value: Any = None
    message: Optional[str] = None

    @classmethod
    def allow(cls) -> "GuardrailDecision":
        return cls(action="allow")

    @classmethod
    def modify(cls, value: Any, message: Optional[str] = None) -> "GuardrailDecision":
        return cls(action="modify", value=value, message=message)

    @classmethod
    def block(cls, message: str = "Blocked by guardrail") -> "GuardrailDecision":
        return cls(action="block", message=message)


def _normalize(decision: Any) -> GuardrailDecision:
    if decision is None or decision is True:
        return GuardrailDecision.allow()
    if decision is False:
        return GuardrailDecision.block()
    if isinstance(decision, GuardrailDecision):
        return decision
    raise TypeError(
        "Guardrail checks must return a GuardrailDecision, a bool or None, "
        f"got {type(decision).__name__}"
    )


async def apply_guardrails(
    checks: Sequence[GuardrailCheck], ctx: "ExecutionContext"
) -> Any:
    """Run ``checks`` in order against ``ctx.data`` and return the final data.

    A ``modify`` decision replaces ``ctx.data`` for the following checks; a
    ``block`` decision raises :class:`GuardrailBlockedError`.
    """
    for check in checks:
        decision = _normalize(await call(check, ctx))
        name = getattr(check, "__name__", repr(check))
        if decision.action == "block":
            logger.info(f"Guardrail {name} blocked step {ctx.step_id}: {decision.message}")
            raise GuardrailBlockedError(decision.message or "Blocked by guardrail")
        if decision.action == "modify":
            logger.debug(f"Guardrail {name} modified data for step {ctx.step_id}")
            ctx.data = decision.value
    return ctx.data
