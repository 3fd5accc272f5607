"""Retry decisions and failure escalation."""

import pytest

from flowgate.contracts import StepExecutionRecord, WorkflowRun
from flowgate.errors import DispatchError, ErrorKind, IncompleteOutputError
from flowgate.notify import LoggingNotifier
from flowgate.retry import RetryManager
from flowgate.utils.retry import compute_delay


def _step(make_definition, make_step, **error_handling):
    definition = make_definition([make_step("detect", errorHandling=error_handling)])
    return definition, definition.steps[0]


def test_retryable_error_is_retried_until_attempts_exhausted(make_definition, make_step):
    _, step = _step(make_definition, make_step, retry={"attempts": 2, "delayMs": 100})
    manager = RetryManager()
    error = DispatchError("timeout")

    first = manager.decide(step, 1, error)
    assert first.retry and first.delay_seconds == pytest.approx(0.1)
    assert not first.park
    assert manager.decide(step, 2, error).retry
    assert not manager.decide(step, 3, error).retry


def test_non_retryable_errors_stop_immediately(make_definition, make_step):
    _, step = _step(make_definition, make_step, retry={"attempts": 5})
    manager = RetryManager()
    assert not manager.decide(step, 1, DispatchError("bad request", retryable=False)).retry
    assert not manager.decide(step, 1, IncompleteOutputError("detect", ["x"])).retry
    assert not manager.decide(step, 1, ValueError("plain")).retry


def test_long_delays_are_parked(make_definition, make_step):
    _, step = _step(make_definition, make_step, retry={"attempts": 1, "delay": 60000})
    decision = RetryManager(park_threshold_ms=30000).decide(step, 1, DispatchError("x"))
    assert decision.retry and decision.park
    assert decision.retry_at is not None


def test_compute_delay_without_policy():
    assert compute_delay(None) == 0.0


@pytest.mark.asyncio
async def test_wait_uses_injected_sleep(make_definition, make_step):
    _, step = _step(make_definition, make_step, retry={"attempts": 1, "delayMs": 250})
    slept = []

    async def fake_sleep(seconds):
        slept.append(seconds)

    manager = RetryManager(sleep=fake_sleep)
    await manager.wait(manager.decide(step, 1, DispatchError("x")))
    assert slept == [0.25]


@pytest.mark.asyncio
async def test_escalate_notifies_recipients(make_definition, make_step):
    definition, step = _step(
        make_definition,
        make_step,
        notification={"recipients": ["ops-lead"], "channels": ["sms", "email"]},
    )
    run = WorkflowRun.for_definition(definition)
    record = StepExecutionRecord(step_id=step.id, attempt=3)
    notifier = LoggingNotifier()

    delivered = await RetryManager(notifier=notifier).escalate(
        run, step, record, DispatchError("scada down")
    )

    assert delivered
    payload = notifier.sent[0]
    assert payload.run_id == run.run_id
    assert payload.step_id == "detect"
    assert payload.attempts == 3
    assert payload.error == "scada down"
    assert payload.error_kind is ErrorKind.DISPATCH


@pytest.mark.asyncio
async def test_escalate_uses_defaults_when_flagged(make_definition, make_step):
    definition, step = _step(make_definition, make_step, escalate=True)
    notifier = LoggingNotifier()
    manager = RetryManager(
        notifier=notifier, default_recipients=["duty"], default_channels=["pager"]
    )
    run = WorkflowRun.for_definition(definition)
    record = StepExecutionRecord(step_id="detect")
    assert await manager.escalate(run, step, record, DispatchError("x"))
    assert len(notifier.sent) == 1


@pytest.mark.asyncio
async def test_escalate_without_policy_sends_nothing(make_definition, make_step):
    definition, step = _step(make_definition, make_step)
    notifier = LoggingNotifier()
    run = WorkflowRun.for_definition(definition)
    assert not await RetryManager(notifier=notifier).escalate(
        run, step, StepExecutionRecord(step_id="detect"), DispatchError("x")
    )
    assert not notifier.sent


@pytest.mark.asyncio
async def test_logging_notifier_keeps_only_recent_payloads(make_definition, make_step):
    definition, step = _step(
        make_definition,
        make_step,
        notification={"recipients": ["ops-lead"], "channels": ["sms"]},
    )
    run = WorkflowRun.for_definition(definition)
    notifier = LoggingNotifier(keep=3)
    manager = RetryManager(notifier=notifier)
    for attempt in range(1, 6):
        record = StepExecutionRecord(step_id=step.id, attempt=attempt)
        await manager.escalate(run, step, record, DispatchError(f"failure {attempt}"))

    assert [p.error for p in notifier.sent] == ["failure 3", "failure 4", "failure 5"]


@pytest.mark.asyncio
async def test_notification_failure_is_logged_not_raised(make_definition, make_step, caplog):
    definition, step = _step(
        make_definition, make_step, notification={"recipients": ["a"], "channels": ["b"]}
    )

    class BrokenNotifier:
        async def notify(self, recipients, channels, payload):
            raise RuntimeError("smtp down")

    run = WorkflowRun.for_definition(definition)
    delivered = await RetryManager(notifier=BrokenNotifier()).escalate(
        run, step, StepExecutionRecord(step_id="detect"), DispatchError("x")
    )
    assert delivered is False
    assert "smtp down" in caplog.text
