import pytest

from flowrelay import WorkflowRuntime
from flowrelay.config import EngineConfig, FlowRelayConfig
from flowrelay.persistence import InMemorySuspensionStore


@pytest.fixture
def store() -> InMemorySuspensionStore:
    return InMemorySuspensionStore()


@pytest.fixture
def runtime(store) -> WorkflowRuntime:
    # No backoff so retry tests stay fast.
    config = FlowRelayConfig(engine=EngineConfig(retry_backoff_base=0, retry_jitter=0))
    return WorkflowRuntime(store=store, config=config)
