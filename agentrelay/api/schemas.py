from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from agentrelay.service.guardrails import normalize_text

# Maximum nested JSON depth accepted in memory and workflow bodies
MAX_JSON_DEPTH = 20
MAX_ARRAY_ITEMS = 1000
MAX_TASK_LENGTH = 65536

_VALID_ERROR_CODES = frozenset({
    "forbidden",
    "not_found",
    "validation_error",
    "server_error",
})


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class RunRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    task: str = Field(..., min_length=1, max_length=MAX_TASK_LENGTH)
    memory: Optional[Dict[str, Any]] = None

    @field_validator("task")
    @classmethod
    def _normalize_task(cls, value: str) -> str:
        value = normalize_text(value).strip()
        if not value:
            raise ValueError("task must not be blank")
        return value

    @field_validator("memory")
    @classmethod
    def _validate_memory(cls, value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if value is not None:
            _validate_json_depth(value)
        return value


class ReplayRequest(BaseModel):
    """Substitute workflow document; omit to replay with the captured one."""

    model_config = ConfigDict(extra="forbid")

    workflow: Optional[Dict[str, Any]] = None

    @field_validator("workflow")
    @classmethod
    def _validate_workflow(cls, value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if value is not None:
            _validate_json_depth(value)
        return value


class RunResponse(BaseModel):
    status: str
    taskId: str
    result: Dict[str, Any] = Field(default_factory=dict)
    totals: Dict[str, float] = Field(default_factory=dict)
    error: Optional[str] = None


class ReplayResponse(RunResponse):
    isReplay: bool = True
    originalTraceId: str
    comparison: Optional[Dict[str, Any]] = None


class TraceSummary(BaseModel):
    taskId: str
    status: str
    startedAt: Optional[str] = None
    finishedAt: Optional[str] = None
    workflowName: Optional[str] = None
    totals: Dict[str, float] = Field(default_factory=dict)
    steps: int = 0
    replayOf: Optional[str] = None

    @classmethod
    def from_trace(cls, trace: Dict[str, Any]) -> "TraceSummary":
        return cls(
            taskId=trace["taskId"],
            status=trace.get("status", "running"),
            startedAt=trace.get("startedAt"),
            finishedAt=trace.get("finishedAt"),
            workflowName=trace.get("workflowName"),
            totals=trace.get("totals") or {},
            steps=len(trace.get("steps") or []),
            replayOf=trace.get("replayOf"),
        )


class TraceListResponse(BaseModel):
    items: List[TraceSummary]


class WorkflowResponse(BaseModel):
    name: Optional[str] = None
    workflow: Dict[str, Any]
    agents: List[Dict[str, Any]]
    diagram: str
