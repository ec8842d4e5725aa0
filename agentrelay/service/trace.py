from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

from agentrelay.logging import get_logger

if TYPE_CHECKING:
    from agentrelay.storage.traces import TraceStore

logger = get_logger(__name__)


class RunStatus(str, Enum):
    RUNNING = "running"
    OK = "ok"
    ERROR = "error"
    STOPPED = "stopped"


TERMINAL_STATUSES = frozenset({RunStatus.OK, RunStatus.ERROR, RunStatus.STOPPED})


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class TraceFinalizedError(RuntimeError):
    """Raised when a finalized trace is mutated."""


@dataclass(frozen=True)
class ExecutionStep:
    at: str
    agent: str
    loop: int
    attempt: int
    input: Dict[str, Any]
    output: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "at": self.at,
            "agent": self.agent,
            "loop": self.loop,
            "attempt": self.attempt,
            "input": copy.deepcopy(self.input),
            "output": copy.deepcopy(self.output),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ExecutionStep":
        return cls(
            at=data.get("at", ""),
            agent=data["agent"],
            loop=int(data.get("loop", 0)),
            attempt=int(data.get("attempt", 1)),
            input=dict(data.get("input") or {}),
            output=dict(data.get("output") or {}),
        )


@dataclass
class Trace:
    """Permanent record of one run, serialized with camelCase keys."""

    task_id: str
    started_at: str
    status: RunStatus = RunStatus.RUNNING
    steps: List[ExecutionStep] = field(default_factory=list)
    ceilings: Dict[str, Any] = field(default_factory=dict)
    totals: Dict[str, float] = field(default_factory=lambda: {"cost": 0.0, "durationMs": 0.0})
    memory_namespaces: List[str] = field(default_factory=list)
    workflow_config: Optional[Dict[str, Any]] = None
    initial_task: Optional[str] = None
    initial_memory: Optional[Dict[str, Any]] = None
    finished_at: Optional[str] = None
    error: Optional[str] = None
    workflow_name: Optional[str] = None
    org_id: Optional[str] = None
    replay_of: Optional[str] = None

    @property
    def finalized(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def routing(self) -> List[str]:
        """Agent names in invocation order, one entry per logical step."""
        sequence: List[str] = []
        for step in self.steps:
            if step.attempt == 1:
                sequence.append(step.agent)
        return sequence

    @property
    def replayable(self) -> bool:
        return (
            self.workflow_config is not None
            and self.initial_task is not None
            and self.initial_memory is not None
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "taskId": self.task_id,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "status": self.status.value,
            "steps": [s.to_dict() for s in self.steps],
            "ceilings": dict(self.ceilings),
            "totals": dict(self.totals),
            "memoryNamespaces": list(self.memory_namespaces),
            "workflowConfig": copy.deepcopy(self.workflow_config),
            "initialTask": self.initial_task,
            "initialMemory": copy.deepcopy(self.initial_memory),
            "workflowName": self.workflow_name,
            "orgId": self.org_id,
        }
        if self.error is not None:
            data["error"] = self.error
        if self.replay_of is not None:
            data["replayOf"] = self.replay_of
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Trace":
        totals = {"cost": 0.0, "durationMs": 0.0}
        totals.update(data.get("totals") or {})
        return cls(
            task_id=data["taskId"],
            started_at=data.get("startedAt", ""),
            status=RunStatus(data.get("status", RunStatus.RUNNING.value)),
            steps=[ExecutionStep.from_dict(s) for s in data.get("steps") or []],
            ceilings=dict(data.get("ceilings") or {}),
            totals=totals,
            memory_namespaces=list(data.get("memoryNamespaces") or []),
            workflow_config=copy.deepcopy(data.get("workflowConfig")),
            initial_task=data.get("initialTask"),
            initial_memory=copy.deepcopy(data.get("initialMemory")),
            finished_at=data.get("finishedAt"),
            error=data.get("error"),
            workflow_name=data.get("workflowName"),
            org_id=data.get("orgId"),
            replay_of=data.get("replayOf"),
        )


class TracePersistError(Exception):
    """The trace store rejected a flush; the run cannot keep a durable record."""


class TraceRecorder:
    """Append-only writer for one in-progress trace.

    Every mutation flushes the whole trace to the store before returning, so
    the most recently completed step is durable if the process dies.
    """

    def __init__(self, trace: Trace, store: Optional["TraceStore"] = None) -> None:
        self.trace = trace
        self.store = store
        self.persist_error: Optional[str] = None
        self._lock = threading.Lock()
        self._flush()

    def _flush(self) -> bool:
        """Save the trace; a failing store is logged and remembered, never raised."""
        if self.store is None:
            return True
        try:
            self.store.save(self.trace.to_dict())
        except Exception as exc:
            self.persist_error = f"Trace persistence failed: {exc}"
            logger.error(
                "trace_persist_failed",
                task_id=self.trace.task_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return False
        return True

    def add(self, step: ExecutionStep, *, cost: float = 0.0, duration_ms: Optional[float] = None) -> None:
        with self._lock:
            if self.trace.finalized:
                raise TraceFinalizedError(f"trace {self.trace.task_id} is already finalized")
            self.trace.steps.append(step)
            self.trace.totals["cost"] = self.trace.totals.get("cost", 0.0) + cost
            if duration_ms is not None:
                self.trace.totals["durationMs"] = duration_ms
            if not self._flush():
                raise TracePersistError(self.persist_error)

    def end(
        self,
        status: RunStatus,
        error: Optional[str] = None,
        *,
        duration_ms: Optional[float] = None,
        memory_namespaces: Optional[List[str]] = None,
    ) -> Trace:
        with self._lock:
            if self.trace.finalized:
                raise TraceFinalizedError(f"trace {self.trace.task_id} is already finalized")
            if status not in TERMINAL_STATUSES:
                raise ValueError(f"cannot finalize a trace with status {status}")
            self.trace.status = status
            self.trace.error = error
            self.trace.finished_at = utcnow_iso()
            if duration_ms is not None:
                self.trace.totals["durationMs"] = duration_ms
            if memory_namespaces is not None:
                self.trace.memory_namespaces = list(memory_namespaces)
            self._flush()
        logger.debug("trace_finalized", task_id=self.trace.task_id, status=status.value)
        return self.trace


__all__ = [
    "ExecutionStep",
    "RunStatus",
    "Trace",
    "TraceFinalizedError",
    "TracePersistError",
    "TraceRecorder",
    "utcnow_iso",
]
