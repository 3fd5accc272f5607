import asyncio
from typing import Any, Dict, List, Optional

import pytest

import flowgate.persistence as persistence
from flowgate.config import FlowgateConfig
from flowgate.contracts import WorkflowDefinition
from flowgate.dispatch import LocalDispatcher


class RecordingDispatcher(LocalDispatcher):
    """LocalDispatcher that remembers every call it receives."""

    def __init__(self) -> None:
        super().__init__()
        self.calls: List[Dict[str, Any]] = []

    async def dispatch(
        self,
        agent: str,
        service: str,
        action: str,
        params: Dict[str, Any],
        *,
        context: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        self.calls.append(
            {"agent": agent, "action": action, "idempotency_key": idempotency_key}
        )
        return await super().dispatch(
            agent,
            service,
            action,
            params,
            context=context,
            idempotency_key=idempotency_key,
        )

    def actions(self) -> List[str]:
        return [call["action"] for call in self.calls]


class FakeSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


def _step(step_id: str, **overrides: Any) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": step_id,
        "name": step_id.replace("-", " ").title(),
        "type": "execute",
        "agent": "ops-agent",
        "service": "ops",
        "action": step_id,
        "parameters": {},
        "outputs": [],
    }
    data.update(overrides)
    return data


def _definition(
    steps: List[Dict[str, Any]], use_case_id: str = "test-case", **extra: Any
) -> WorkflowDefinition:
    data: Dict[str, Any] = {
        "useCaseId": use_case_id,
        "name": use_case_id.replace("-", " ").title(),
        "steps": steps,
    }
    data.update(extra)
    return WorkflowDefinition.model_validate(data)


@pytest.fixture
def make_step():
    return _step


@pytest.fixture
def make_definition():
    return _definition


@pytest.fixture
def engine_config() -> FlowgateConfig:
    return FlowgateConfig(
        engine={
            "max_workers": 2,
            "approval_timeout_seconds": 5,
            "resume_on_start": False,
        }
    )


@pytest.fixture(autouse=True)
def _reset_store_singleton():
    persistence._store_instance = None
    yield
    persistence._store_instance = None


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()
