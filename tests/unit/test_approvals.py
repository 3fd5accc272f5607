"""Approval broker tests."""

from datetime import timedelta

import pytest

from flowgate.approvals import ApprovalBroker, ApprovalDecision, publish_decision
from flowgate.bus import EventBus
from flowgate.contracts import utcnow
from flowgate.transports.inmemory import InMemoryTransport


def test_first_decision_wins():
    broker = ApprovalBroker()
    woken = []
    broker.add_listener(woken.append)
    broker.expect("run-1", "gate", utcnow() + timedelta(minutes=5))

    first = broker.approve("run-1", "gate", "alice")
    second = broker.reject("run-1", "gate", "bob", reason="too late")

    assert second is first
    assert broker.decision("run-1", "gate").approver_id == "alice"
    assert woken == ["run-1"]


def test_clear_forgets_gate():
    broker = ApprovalBroker()
    broker.expect("run-1", "gate", utcnow())
    assert broker.is_pending("run-1", "gate")
    assert broker.pending() == [("run-1", "gate")]
    broker.reject("run-1", "gate", "alice")
    broker.clear("run-1", "gate")
    assert not broker.is_pending("run-1", "gate")
    assert broker.decision("run-1", "gate") is None


@pytest.mark.asyncio
async def test_decisions_arrive_over_the_bus():
    bus = EventBus(InMemoryTransport())
    broker = ApprovalBroker()
    await publish_decision(
        bus,
        ApprovalDecision(run_id="run-9", step_id="gate", approved=False, approver_id="carol"),
    )
    await bus.publish_event("flowgate.approvals", {"garbage": True}, kind="approval")

    await broker.listen(bus, lifespan=0.1)

    decision = broker.decision("run-9", "gate")
    assert decision is not None
    assert decision.approved is False
    assert decision.approver_id == "carol"
