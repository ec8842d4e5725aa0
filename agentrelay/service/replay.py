from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from agentrelay.logging import get_logger
from agentrelay.service.engine import RunResult, WorkflowEngine
from agentrelay.service.errors import NotFoundError, ReplayPreconditionError
from agentrelay.service.trace import Trace
from agentrelay.service.workflow_config import WorkflowConfig, load_workflow
from agentrelay.storage.traces import TraceStore

logger = get_logger(__name__)


@dataclass
class ReplayComparison:
    original_status: str
    replay_status: str
    cost_delta: float
    duration_delta_ms: float
    original_routing: List[str]
    replay_routing: List[str]

    @property
    def routing_matches(self) -> bool:
        return self.original_routing == self.replay_routing

    def to_dict(self) -> Dict[str, Any]:
        return {
            "originalStatus": self.original_status,
            "replayStatus": self.replay_status,
            "costDelta": self.cost_delta,
            "durationDeltaMs": self.duration_delta_ms,
            "originalRouting": list(self.original_routing),
            "replayRouting": list(self.replay_routing),
            "routingMatches": self.routing_matches,
        }


@dataclass
class ReplayResult(RunResult):
    is_replay: bool = True
    original_trace_id: Optional[str] = None
    comparison: Optional[ReplayComparison] = None

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["isReplay"] = self.is_replay
        data["originalTraceId"] = self.original_trace_id
        if self.comparison is not None:
            data["comparison"] = self.comparison.to_dict()
        return data


class ReplayEngine:
    """Re-runs a recorded task and memory against a substitute workflow.

    Replays make real calls; only the inputs are reproduced, not the
    responses of external systems.
    """

    def __init__(self, engine: WorkflowEngine, trace_store: Optional[TraceStore] = None) -> None:
        self.engine = engine
        self.trace_store = trace_store if trace_store is not None else engine.trace_store

    @staticmethod
    def _coerce_trace(original: Trace | Mapping[str, Any]) -> Trace:
        if isinstance(original, Trace):
            return original
        if not isinstance(original, Mapping) or "taskId" not in original:
            raise ReplayPreconditionError("source trace is malformed")
        return Trace.from_dict(original)

    async def replay(
        self,
        original: Trace | Mapping[str, Any],
        new_config: WorkflowConfig | Mapping[str, Any] | None = None,
    ) -> ReplayResult:
        source = self._coerce_trace(original)
        missing = [
            key
            for key, value in (
                ("workflowConfig", source.workflow_config),
                ("initialTask", source.initial_task),
                ("initialMemory", source.initial_memory),
            )
            if value is None
        ]
        if missing:
            raise ReplayPreconditionError(
                f"trace {source.task_id} cannot be replayed; missing {', '.join(missing)}",
                detail={"task_id": source.task_id, "missing": missing},
            )

        config = load_workflow(new_config if new_config is not None else source.workflow_config)
        logger.info("workflow_replay_started", original_trace_id=source.task_id)
        run = await self.engine.run(
            source.initial_task or "",
            copy.deepcopy(source.initial_memory),
            config=config,
            replay_of=source.task_id,
        )

        replay_trace = run.trace
        comparison = ReplayComparison(
            original_status=source.status.value,
            replay_status=run.status.value,
            cost_delta=run.totals.get("cost", 0.0) - source.totals.get("cost", 0.0),
            duration_delta_ms=run.totals.get("durationMs", 0.0) - source.totals.get("durationMs", 0.0),
            original_routing=source.routing,
            replay_routing=replay_trace.routing if replay_trace else [],
        )
        logger.info(
            "workflow_replay_finished",
            original_trace_id=source.task_id,
            task_id=run.task_id,
            routing_matches=comparison.routing_matches,
            cost_delta=comparison.cost_delta,
        )
        return ReplayResult(
            status=run.status,
            task_id=run.task_id,
            result=run.result,
            totals=run.totals,
            error=run.error,
            trace=run.trace,
            original_trace_id=source.task_id,
            comparison=comparison,
        )

    async def replay_by_id(
        self,
        trace_id: str,
        new_config: WorkflowConfig | Mapping[str, Any] | None = None,
    ) -> ReplayResult:
        stored = self.trace_store.get(trace_id)
        if stored is None:
            raise NotFoundError("trace not found", detail={"task_id": trace_id})
        return await self.replay(stored, new_config)


__all__ = ["ReplayComparison", "ReplayEngine", "ReplayResult"]
