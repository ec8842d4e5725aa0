"""Handler contract shared by every agent the engine can invoke."""
from __future__ import annotations

import copy
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, Mapping, Optional, Tuple

from agentrelay.config import Settings
from agentrelay.service.errors import GuardrailViolationError, MemoryAccessError
from agentrelay.service.workflow_config import AgentKind, AgentSpec, Guardrails, WorkflowConfig

if TYPE_CHECKING:
    from agentrelay.service.guardrails import GuardrailEvaluator


@dataclass
class AgentInput:
    message: str
    payload: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "payload": copy.deepcopy(self.payload)}


@dataclass
class AgentResult:
    """What a handler reports back: ``{ok, message, payload?, next?, cost?, metadata?}``."""

    ok: bool
    message: str = ""
    payload: Optional[Dict[str, Any]] = None
    next: Optional[str] = None
    cost: float = 0.0
    metadata: Optional[Dict[str, Any]] = None

    @classmethod
    def failure(
        cls,
        message: str,
        *,
        payload: Optional[Dict[str, Any]] = None,
        cost: float = 0.0,
    ) -> "AgentResult":
        return cls(ok=False, message=message, payload=payload, cost=cost)

    @classmethod
    def from_value(cls, value: Any) -> "AgentResult":
        if isinstance(value, AgentResult):
            result = value
        elif isinstance(value, Mapping):
            payload = value.get("payload")
            if payload is not None and not isinstance(payload, Mapping):
                payload = {"value": payload}
            result = cls(
                ok=value.get("ok") is True,
                message=str(value.get("message") or ""),
                payload=dict(payload) if payload is not None else None,
                next=value.get("next") or None,
                cost=value.get("cost") or 0.0,
                metadata=value.get("metadata"),
            )
        elif value is None:
            return cls.failure("Agent returned no result")
        else:
            raise TypeError(f"agent returned unsupported result type: {type(value).__name__}")
        # only a real boolean true counts as success ("false", 1 and None do not)
        result.ok = result.ok is True
        try:
            cost = float(result.cost or 0.0)
        except (TypeError, ValueError):
            cost = 0.0
        # totals must never decrease
        result.cost = cost if math.isfinite(cost) and cost > 0 else 0.0
        return result

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "ok": self.ok,
            "message": self.message,
            "payload": copy.deepcopy(self.payload),
        }
        if self.next is not None:
            out["next"] = self.next
        if self.cost:
            out["cost"] = self.cost
        if self.metadata:
            out["metadata"] = copy.deepcopy(self.metadata)
        return out


class AgentContext:
    """Per-attempt view of the run handed to a handler.

    ``memory`` is a copy of the namespaces the agent may read. Values passed
    to ``put_memory`` are buffered and only land in the agent's ``writeTo``
    namespace when the attempt succeeds.
    """

    def __init__(
        self,
        *,
        task_id: str,
        workflow: WorkflowConfig,
        agent: AgentSpec,
        memory: Dict[str, Any],
        settings: Settings,
        logger: Any,
        evaluator: Optional["GuardrailEvaluator"] = None,
        check_write: Optional[Callable[[str, Optional[str]], str]] = None,
        loop: int = 1,
        attempt: int = 1,
    ) -> None:
        self.task_id = task_id
        self.workflow = workflow
        self.agent = agent
        self.memory = memory
        self.settings = settings
        self.logger = logger
        self.evaluator = evaluator
        self.loop = loop
        self.attempt = attempt
        self._check_write = check_write
        self._pending: Dict[str, Any] = {}

    @property
    def guardrails(self) -> Guardrails:
        return self.agent.policy.guardrails

    @property
    def routes(self) -> Tuple[str, ...]:
        return self.workflow.can_call(self.agent.name)

    def can_call(self, name: str) -> bool:
        return name in self.routes

    def log(self, event: str, **fields: Any) -> None:
        self.logger.info(event, **fields)

    def put_memory(self, values: Mapping[str, Any], namespace: Optional[str] = None) -> None:
        if self._check_write is not None:
            self._check_write(self.agent.name, namespace)
        elif not self.agent.policy.memory.write_to:
            raise MemoryAccessError(f"agent '{self.agent.name}' has no writeTo namespace")
        self._pending.update(copy.deepcopy(dict(values)))

    @property
    def pending_memory(self) -> Dict[str, Any]:
        return dict(self._pending)

    def check_guardrail(self, action: Any) -> None:
        """Evaluate ``action`` against this agent's guardrails.

        Raises GuardrailViolationError before anything is executed.
        """
        if self.evaluator is None:
            return
        violation = self.evaluator.evaluate(action, self.guardrails)
        if violation is not None:
            self.logger.warning(
                "guardrail_violation",
                kind=self.evaluator.kind,
                code=violation.code,
                reason=violation.reason,
            )
            raise GuardrailViolationError(violation)


class Agent(ABC):
    """An invocable handler bound to one declared agent name."""

    kind: AgentKind
    guardrail_kind: Optional[str] = None
    description: str = ""

    def __init__(self, name: Optional[str] = None) -> None:
        self.name = name or getattr(self, "default_name", type(self).__name__)

    @abstractmethod
    async def handle(self, context: AgentContext, agent_input: AgentInput) -> AgentResult | Mapping[str, Any]:
        ...

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r} kind={self.kind.value}>"


class OrchestratorAgent(Agent):
    kind = AgentKind.ORCHESTRATOR


class WorkerAgent(Agent):
    kind = AgentKind.WORKER

    def report_back(self, context: AgentContext, target: str = "orchestrator") -> Optional[str]:
        """Route back to ``target`` only when this agent's routes permit it."""
        return target if context.can_call(target) else None


@dataclass
class CallableAgent(Agent):
    """Wraps a plain async function as a handler, mostly for embedding and tests."""

    name: str
    fn: Callable[[AgentContext, AgentInput], Any]
    kind: AgentKind = AgentKind.WORKER
    guardrail_kind: Optional[str] = None
    description: str = field(default="")

    async def handle(self, context: AgentContext, agent_input: AgentInput) -> Any:
        return await self.fn(context, agent_input)


__all__ = [
    "Agent",
    "AgentContext",
    "AgentInput",
    "AgentResult",
    "CallableAgent",
    "OrchestratorAgent",
    "WorkerAgent",
]
