"""Example running a grid outage workflow with in-process handlers.

Usage:
    python guides/outage_response.py
"""

import asyncio

from flowgate import LocalDispatcher, WorkflowDefinition, WorkflowEngine

WORKFLOW = {
    "useCaseId": "grid-outage-response",
    "name": "Grid outage response",
    "industry": "energy",
    "steps": [
        {
            "id": "detect",
            "type": "detect",
            "agent": "grid-monitor",
            "service": "scada",
            "action": "detectOutages",
            "outputs": ["outage"],
        },
        {
            "id": "dispatch-crews",
            "type": "execute",
            "agent": "field-ops",
            "service": "workforce",
            "action": "dispatchCrews",
            "outputs": ["crews"],
            "conditions": [{"field": "outage.customers", "operator": ">", "value": 100}],
            "humanApprovalRequired": True,
            "errorHandling": {"retry": {"attempts": 2, "delayMs": 1000}},
        },
    ],
    "metadata": {"criticality": "critical", "estimatedDuration": 600000},
}

dispatcher = LocalDispatcher()


@dispatcher.action("scada", "detectOutages")
async def detect(params, **_):
    return {"outage": {"region": "north", "customers": 1200}}


@dispatcher.action("workforce", "dispatchCrews")
async def dispatch_crews(params, context, **_):
    return {"crews": max(1, context["outage"]["customers"] // 500)}


async def main():
    async with WorkflowEngine(dispatcher) as engine:
        engine.register(WorkflowDefinition.model_validate(WORKFLOW))
        run_id = await engine.start_run("grid-outage-response")

        # an operator approves once the run reaches the gate
        while (await engine.get_run(run_id)).status.value != "waiting_approval":
            await asyncio.sleep(0.1)
        engine.approve(run_id, "dispatch-crews", "shift-supervisor")

        run = await engine.wait(run_id)
        print(f"Run {run.run_id} finished: {run.status.value}")
        print(f"Context: {run.context}")


if __name__ == "__main__":
    asyncio.run(main())
