"""End-to-end runs of an outage-response workflow through the engine."""

import asyncio

import pytest

from flowgate import LocalDispatcher, WorkflowEngine
from flowgate.config import FlowgateConfig
from flowgate.contracts import RunStatus, StepStatus, WorkflowDefinition
from flowgate.errors import DispatchError, ErrorKind

OUTAGE_WORKFLOW = {
    "useCaseId": "grid-outage-response",
    "name": "Grid outage response",
    "industry": "energy",
    "version": "1.0.0",
    "steps": [
        {
            "id": "detect",
            "name": "Detect outages",
            "type": "detect",
            "agent": "grid-monitor",
            "service": "scada",
            "action": "detectOutages",
            "outputs": ["outage"],
        },
        {
            "id": "assess",
            "name": "Assess impact",
            "type": "analyze",
            "agent": "grid-analyst",
            "service": "analytics",
            "action": "assessImpact",
            "outputs": ["impact"],
            "conditions": [{"field": "outage.customers", "operator": ">", "value": 100}],
            "errorHandling": {"retry": {"attempts": 3, "delayMs": 500}},
        },
        {
            "id": "dispatch-crews",
            "name": "Dispatch crews",
            "type": "execute",
            "agent": "field-ops",
            "service": "workforce",
            "action": "dispatchCrews",
            "outputs": ["crews"],
            "humanApprovalRequired": True,
        },
        {
            "id": "notify",
            "name": "Notify customers",
            "type": "report",
            "agent": "comms",
            "service": "messaging",
            "action": "notifyCustomers",
            "conditions": [{"field": "impact", "operator": "exists"}],
        },
    ],
    "triggers": [{"type": "event", "event": "grid.outage.detected"}],
    "metadata": {"criticality": "critical", "estimatedDuration": 60000},
}


def outage_dispatcher(customers=500, assess_failures=0):
    dispatcher = LocalDispatcher()
    calls = []
    state = {"assess": 0}

    @dispatcher.action("scada", "detectOutages")
    async def detect(params, **_):
        calls.append("detect")
        return {"outage": {"region": "north", "customers": customers}}

    @dispatcher.action("analytics", "assessImpact")
    async def assess(params, context, **_):
        calls.append("assess")
        state["assess"] += 1
        if state["assess"] <= assess_failures:
            raise DispatchError("analytics warming up")
        return {"impact": {"customers": context["outage"]["customers"]}}

    @dispatcher.action("workforce", "dispatchCrews")
    async def crews(params, **_):
        calls.append("dispatch-crews")
        return {"crews": 4}

    @dispatcher.action("messaging", "notifyCustomers")
    async def notify(params, context, **_):
        calls.append("notify")
        return {}

    return dispatcher, calls


async def wait_for_status(engine, run_id, status, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        run = await engine.get_run(run_id)
        if run is not None and run.status is status:
            return run
        await asyncio.sleep(0.01)
    raise AssertionError(f"run {run_id} never reached {status.value}")


def _config(**engine):
    settings = {"max_workers": 2, "resume_on_start": False, "approval_timeout_seconds": 5}
    settings.update(engine)
    return FlowgateConfig(engine=settings)


@pytest.mark.asyncio
async def test_approved_outage_response_completes(fake_sleep):
    dispatcher, calls = outage_dispatcher()
    definition = WorkflowDefinition.model_validate(OUTAGE_WORKFLOW)

    async with WorkflowEngine(dispatcher, config=_config(), sleep=fake_sleep) as engine:
        engine.register(definition)
        run_id = await engine.start_run("grid-outage-response")
        waiting = await wait_for_status(engine, run_id, RunStatus.WAITING_APPROVAL)
        assert waiting.context["impact"] == {"customers": 500}
        assert calls == ["detect", "assess"]

        engine.approve(run_id, "dispatch-crews", "supervisor-1")
        run = await engine.wait(run_id, timeout=2)

    assert run.status is RunStatus.SUCCEEDED
    assert calls == ["detect", "assess", "dispatch-crews", "notify"]
    gated = run.latest_record("dispatch-crews")
    assert gated.approved_by == "supervisor-1"
    assert gated.transitions == [
        StepStatus.GATED,
        StepStatus.DISPATCHING,
        StepStatus.SUCCEEDED,
    ]
    assert run.context["crews"] == 4


@pytest.mark.asyncio
async def test_rejected_approval_aborts_run(fake_sleep):
    dispatcher, calls = outage_dispatcher()
    definition = WorkflowDefinition.model_validate(OUTAGE_WORKFLOW)

    async with WorkflowEngine(dispatcher, config=_config(), sleep=fake_sleep) as engine:
        run_id = await engine.start_run(definition)
        await wait_for_status(engine, run_id, RunStatus.WAITING_APPROVAL)
        engine.reject(run_id, "dispatch-crews", "supervisor-1", reason="storm ongoing")
        run = await engine.wait(run_id, timeout=2)

    assert run.status is RunStatus.ABORTED
    assert run.error.kind is ErrorKind.APPROVAL_REJECTED
    assert run.error.step_id == "dispatch-crews"
    assert run.latest_record("dispatch-crews").transitions == [
        StepStatus.GATED,
        StepStatus.FAILED,
    ]
    assert calls == ["detect", "assess"]
    assert run.latest_record("notify") is None


@pytest.mark.asyncio
async def test_unanswered_approval_times_out(fake_sleep):
    dispatcher, calls = outage_dispatcher()
    definition = WorkflowDefinition.model_validate(OUTAGE_WORKFLOW)

    config = _config(approval_timeout_seconds=0.05)
    async with WorkflowEngine(dispatcher, config=config, sleep=fake_sleep) as engine:
        run_id = await engine.start_run(definition)
        run = await engine.wait(run_id, timeout=2)

    assert run.status is RunStatus.ABORTED
    assert run.error.kind is ErrorKind.APPROVAL_TIMEOUT
    assert run.latest_record("dispatch-crews").transitions == [
        StepStatus.GATED,
        StepStatus.FAILED,
    ]
    assert "dispatch-crews" not in calls


@pytest.mark.asyncio
async def test_retries_then_continues_with_outputs(fake_sleep):
    dispatcher, calls = outage_dispatcher(assess_failures=2)
    definition = WorkflowDefinition.model_validate(OUTAGE_WORKFLOW)

    async with WorkflowEngine(dispatcher, config=_config(), sleep=fake_sleep) as engine:
        run_id = await engine.start_run(definition)
        await wait_for_status(engine, run_id, RunStatus.WAITING_APPROVAL)
        engine.approve(run_id, "dispatch-crews", "supervisor-1")
        run = await engine.wait(run_id, timeout=2)

    assert run.status is RunStatus.SUCCEEDED
    attempts = run.records_for("assess")
    assert [r.attempt for r in attempts] == [1, 2, 3]
    assert [r.status for r in attempts] == [
        StepStatus.RETRYING,
        StepStatus.RETRYING,
        StepStatus.SUCCEEDED,
    ]
    assert fake_sleep.delays == [0.5, 0.5]
    assert run.context["impact"] == {"customers": 500}
    assert calls.count("assess") == 3
    assert calls[-1] == "notify"


@pytest.mark.asyncio
async def test_skipped_producer_skips_dependent_step(fake_sleep):
    dispatcher, calls = outage_dispatcher(customers=10)
    workflow = dict(OUTAGE_WORKFLOW)
    workflow["steps"] = [
        s for s in OUTAGE_WORKFLOW["steps"] if s["id"] != "dispatch-crews"
    ]
    definition = WorkflowDefinition.model_validate(workflow)

    async with WorkflowEngine(dispatcher, config=_config(), sleep=fake_sleep) as engine:
        run_id = await engine.start_run(definition)
        run = await engine.wait(run_id, timeout=2)

    assert run.status is RunStatus.SUCCEEDED
    assert calls == ["detect"]
    assert run.latest_record("assess").status is StepStatus.SKIPPED
    assert run.latest_record("notify").status is StepStatus.SKIPPED
    assert "impact" not in run.context


@pytest.mark.asyncio
async def test_incomplete_output_fails_run(fake_sleep):
    dispatcher = LocalDispatcher()

    @dispatcher.action("scada", "detectOutages")
    async def detect(params, **_):
        return {"unexpected": True}

    definition = WorkflowDefinition.model_validate(OUTAGE_WORKFLOW)
    async with WorkflowEngine(dispatcher, config=_config(), sleep=fake_sleep) as engine:
        run_id = await engine.start_run(definition)
        run = await engine.wait(run_id, timeout=2)

    assert run.status is RunStatus.FAILED
    assert run.error.kind is ErrorKind.INCOMPLETE_OUTPUT
    assert run.error.step_id == "detect"
    assert len(run.history) == 1
    assert run.context == {}


@pytest.mark.asyncio
async def test_exhausted_retries_fail_run_and_escalate(fake_sleep):
    dispatcher, calls = outage_dispatcher(assess_failures=10)
    workflow = dict(OUTAGE_WORKFLOW)
    assess = dict(OUTAGE_WORKFLOW["steps"][1])
    assess["errorHandling"] = {
        "retry": {"attempts": 1, "delayMs": 100},
        "notification": {"recipients": ["grid-ops"], "channels": ["sms"]},
    }
    workflow["steps"] = [OUTAGE_WORKFLOW["steps"][0], assess]
    definition = WorkflowDefinition.model_validate(workflow)

    async with WorkflowEngine(dispatcher, config=_config(), sleep=fake_sleep) as engine:
        run_id = await engine.start_run(definition)
        run = await engine.wait(run_id, timeout=2)
        sent = list(engine.notifier.sent)

    assert run.status is RunStatus.FAILED
    assert run.error.kind is ErrorKind.DISPATCH
    assert [r.status for r in run.records_for("assess")] == [
        StepStatus.RETRYING,
        StepStatus.FAILED,
    ]
    assert len(sent) == 1
    assert sent[0].run_id == run_id
    assert sent[0].attempts == 2
    assert sent[0].use_case_id == "grid-outage-response"


@pytest.mark.asyncio
async def test_trigger_payload_is_visible_to_conditions(fake_sleep, make_step):
    dispatcher = LocalDispatcher()
    calls = []

    @dispatcher.action("ops", "page")
    async def page(params, **_):
        calls.append("page")
        return {}

    definition = WorkflowDefinition.model_validate(
        {
            "useCaseId": "paging",
            "steps": [
                make_step(
                    "page",
                    conditions=[
                        {"field": "trigger.severity", "operator": ">=", "value": 3}
                    ],
                )
            ],
        }
    )
    async with WorkflowEngine(dispatcher, config=_config(), sleep=fake_sleep) as engine:
        low = await engine.start_run(definition, payload={"severity": 1})
        high = await engine.start_run(definition, payload={"severity": 4})
        low_run = await engine.wait(low, timeout=2)
        high_run = await engine.wait(high, timeout=2)

    assert low_run.latest_record("page").status is StepStatus.SKIPPED
    assert high_run.latest_record("page").status is StepStatus.SUCCEEDED
    assert calls == ["page"]
