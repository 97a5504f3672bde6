from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from pydantic_ai import Agent

from ..schema import Schema
from ..utils.calls import call

logger = logging.getLogger(__name__)


@runtime_checkable
class Delegate(Protocol):
    """External sub-computation invoked by ``and_agent``.

    Implementations return the structured output or raise on failure.
    """

    async def invoke(self, prompt: Any, output_schema: Optional[Schema]) -> Any:
        ...


class PydanticAIDelegate:
    """Delegate backed by a ``pydantic_ai.Agent``.

    When the declared output schema wraps a Python type it is forwarded to the
    agent as ``output_type`` so the model produces structured output.
    """

    def __init__(self, agent: Agent, deps: Any = None) -> None:
        self.agent = agent
        self.deps = deps

    async def invoke(self, prompt: Any, output_schema: Optional[Schema]) -> Any:
        output_type = getattr(output_schema, "python_type", None)
        kwargs: dict[str, Any] = {}
        if output_type is not None:
            kwargs["output_type"] = output_type
        if self.deps is not None:
            kwargs["deps"] = self.deps

        logger.debug(f"Invoking agent {getattr(self.agent, 'name', None)}")
        result = await self.agent.run(prompt, **kwargs)
        return result.output


class CallableDelegate:
    """Delegate wrapping a plain (sync or async) function ``fn(prompt)``."""

    def __init__(self, fn: Callable[[Any], Any]) -> None:
        self.fn = fn

    async def invoke(self, prompt: Any, output_schema: Optional[Schema]) -> Any:
        return await call(self.fn, prompt)
