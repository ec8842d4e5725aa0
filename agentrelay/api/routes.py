from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Path, Query

from agentrelay.api.schemas import (
    Envelope,
    ReplayRequest,
    ReplayResponse,
    RunRequest,
    RunResponse,
    TraceListResponse,
    TraceSummary,
    WorkflowResponse,
)
from agentrelay.logging import get_logger
from agentrelay.service.errors import NotFoundError
from agentrelay.service.runtime import get_runtime
from agentrelay.service.visualize import workflow_diagram

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_TASK_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_-]*$"


@router.post("/runs", response_model=Envelope, tags=["runs"])
async def create_run(body: RunRequest):
    """Run a task through the configured workflow and wait for a terminal state.

    The run's own outcome (ok, error, stopped) is reported in ``data.status``;
    the HTTP status is 200 for every run that started.
    """
    runtime = get_runtime()
    result = await runtime.engine.run(body.task, body.memory)
    return Envelope(status="ok", data=RunResponse(**result.to_dict()))


@router.get("/traces", response_model=Envelope, tags=["traces"])
async def list_traces(
    limit: int = Query(50, ge=1, le=500),
    workflow_name: Optional[str] = Query(None, max_length=256),
):
    runtime = get_runtime()
    traces = runtime.trace_store.list_traces(
        org_id=runtime.settings.org_id, workflow_name=workflow_name, limit=limit
    )
    items = [TraceSummary.from_trace(t) for t in traces]
    return Envelope(status="ok", data=TraceListResponse(items=items))


@router.get("/traces/{task_id}", response_model=Envelope, tags=["traces"])
async def get_trace(task_id: str = Path(..., min_length=1, max_length=128, pattern=_TASK_ID_PATTERN)):
    runtime = get_runtime()
    trace = runtime.trace_store.get(task_id)
    if trace is None:
        raise NotFoundError("trace not found", detail={"task_id": task_id})
    return Envelope(status="ok", data=trace)


@router.post("/traces/{task_id}/replay", response_model=Envelope, tags=["traces"])
async def replay_trace(body: ReplayRequest, task_id: str = Path(..., min_length=1, max_length=128, pattern=_TASK_ID_PATTERN)):
    """Re-run a recorded task against a substitute workflow (or the captured one)."""
    runtime = get_runtime()
    result = await runtime.replay.replay_by_id(task_id, body.workflow)
    return Envelope(status="ok", data=ReplayResponse(**result.to_dict()))


@router.get("/workflow", response_model=Envelope, tags=["workflow"])
async def get_workflow():
    runtime = get_runtime()
    config = runtime.workflow
    agents = [
        {
            "name": agent.name,
            "type": agent.kind.value,
            "maxLoops": config.max_loops_for(agent.name),
            "hasGuardrails": bool(agent.policy.guardrails.declared),
            "hasRetries": agent.policy.retries.count > 0,
            "canCall": list(config.can_call(agent.name)),
        }
        for agent in config.agents
    ]
    data = WorkflowResponse(
        name=config.name,
        workflow=config.to_dict(),
        agents=agents,
        diagram=workflow_diagram(config, fenced=False),
    )
    return Envelope(status="ok", data=data)
