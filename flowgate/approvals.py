"""Human approval gates."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from .constants import APPROVAL_TOPIC, DEFAULT_APPROVAL_TIMEOUT_SECONDS
from .contracts import utcnow

if TYPE_CHECKING:
    from .bus import EventBus

logger = logging.getLogger(__name__)

Key = Tuple[str, str]
Listener = Callable[[str], None]


class ApprovalDecision(BaseModel):
    run_id: str
    step_id: str
    approved: bool
    approver_id: str
    reason: Optional[str] = None
    decided_at: datetime = Field(default_factory=utcnow)


class ApprovalBroker:
    """Collects approve/reject signals for gated steps.

    The broker never touches run state. It records decisions and wakes its
    listeners (the scheduler) with the run id; the run's worker then reads the
    decision while holding the run lock. The first decision for a gate wins.
    """

    def __init__(self, timeout_seconds: float = DEFAULT_APPROVAL_TIMEOUT_SECONDS) -> None:
        self.timeout_seconds = timeout_seconds
        self._pending: Dict[Key, datetime] = {}
        self._decisions: Dict[Key, ApprovalDecision] = {}
        self._listeners: List[Listener] = []

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def expect(self, run_id: str, step_id: str, deadline: datetime) -> None:
        """Register a gate waiting for a decision until ``deadline``."""
        if (run_id, step_id) not in self._pending:
            logger.info(f"Run {run_id} step {step_id} awaiting approval until {deadline}")
        self._pending[(run_id, step_id)] = deadline

    def is_pending(self, run_id: str, step_id: str) -> bool:
        return (run_id, step_id) in self._pending

    def pending(self) -> List[Key]:
        return list(self._pending)

    def decision(self, run_id: str, step_id: str) -> Optional[ApprovalDecision]:
        return self._decisions.get((run_id, step_id))

    def clear(self, run_id: str, step_id: str) -> None:
        self._pending.pop((run_id, step_id), None)
        self._decisions.pop((run_id, step_id), None)

    def approve(self, run_id: str, step_id: str, approver_id: str) -> ApprovalDecision:
        return self.submit(
            ApprovalDecision(
                run_id=run_id, step_id=step_id, approved=True, approver_id=approver_id
            )
        )

    def reject(
        self, run_id: str, step_id: str, approver_id: str, reason: Optional[str] = None
    ) -> ApprovalDecision:
        return self.submit(
            ApprovalDecision(
                run_id=run_id,
                step_id=step_id,
                approved=False,
                approver_id=approver_id,
                reason=reason,
            )
        )

    def submit(self, decision: ApprovalDecision) -> ApprovalDecision:
        key = (decision.run_id, decision.step_id)
        existing = self._decisions.get(key)
        if existing is not None:
            logger.warning(
                f"Ignoring duplicate decision for run {decision.run_id} step "
                f"{decision.step_id}; already decided by {existing.approver_id}"
            )
            return existing
        if key not in self._pending:
            logger.warning(
                f"Decision for run {decision.run_id} step {decision.step_id} "
                "arrived before the gate was registered"
            )
        self._decisions[key] = decision
        verb = "approved" if decision.approved else "rejected"
        logger.info(
            f"Run {decision.run_id} step {decision.step_id} {verb} by {decision.approver_id}"
        )
        for listener in self._listeners:
            listener(decision.run_id)
        return decision

    async def listen(self, bus: "EventBus", lifespan: Optional[float] = None) -> None:
        """Apply decisions published on the approvals topic."""
        async for message in bus.subscribe(APPROVAL_TOPIC, lifespan=lifespan):
            try:
                decision = ApprovalDecision.model_validate(message.payload)
            except ValueError as exc:
                logger.error(f"Discarding malformed approval message: {exc}")
                continue
            self.submit(decision)


async def publish_decision(bus: "EventBus", decision: ApprovalDecision) -> None:
    """Send a decision to whichever engine process owns the gate."""
    await bus.publish_event(
        APPROVAL_TOPIC, decision.model_dump(mode="json"), kind="approval"
    )


__all__ = ["ApprovalDecision", "ApprovalBroker", "publish_decision"]
