"""flowrelay: durable step-chain workflows with suspend and resume."""

from .agent import CallableDelegate, Delegate, PydanticAIDelegate
from .chain import Chain, create_chain
from .config import FlowRelayConfig, load_config
from .context import CancelSignal, ExecutionContext
from .contracts import (
    ErrorInfo,
    ExecutionStatus,
    StartResult,
    SuspensionRecord,
    WorkflowEvent,
)
from .engine import ExecutionEngine
from .guardrails import GuardrailDecision
from .hooks import WorkflowHooks
from .persistence import get_store
from .registry import ChainRegistry
from .runtime import WorkflowRuntime
from .scheduler import SleepScheduler
from .schema import PydanticSchema, as_schema
from .steps import from_data, from_fn, from_input, from_state, from_step, from_value

__version__ = "0.1.0"
__all__ = [
    "Chain",
    "create_chain",
    "ExecutionContext",
    "CancelSignal",
    "ExecutionEngine",
    "WorkflowRuntime",
    "SleepScheduler",
    "ChainRegistry",
    "StartResult",
    "ExecutionStatus",
    "ErrorInfo",
    "SuspensionRecord",
    "WorkflowEvent",
    "WorkflowHooks",
    "GuardrailDecision",
    "Delegate",
    "CallableDelegate",
    "PydanticAIDelegate",
    "PydanticSchema",
    "as_schema",
    "FlowRelayConfig",
    "load_config",
    "get_store",
    "from_value",
    "from_data",
    "from_input",
    "from_step",
    "from_state",
    "from_fn",
]
