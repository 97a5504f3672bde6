"""Delegate adapters used by ``and_agent`` steps."""

from .delegate import CallableDelegate, Delegate, PydanticAIDelegate

__all__ = ["Delegate", "CallableDelegate", "PydanticAIDelegate"]
