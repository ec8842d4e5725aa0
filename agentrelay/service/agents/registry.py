from __future__ import annotations

import threading
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional

from agentrelay.config import Settings
from agentrelay.logging import get_logger
from agentrelay.service.agents.api_agent import ApiAgent
from agentrelay.service.agents.base import Agent
from agentrelay.service.agents.data_agent import DataAgent
from agentrelay.service.agents.db_agent import DatabaseAgent
from agentrelay.service.agents.orchestrator import RoutingOrchestrator
from agentrelay.service.agents.search_agent import SearchAgent
from agentrelay.service.database import DatabaseClient
from agentrelay.service.errors import ConfigError
from agentrelay.service.guardrails import GUARDRAIL_FIELDS_BY_KIND, GuardrailEvaluator, build_evaluators
from agentrelay.service.llm import LLMService
from agentrelay.service.workflow_config import COMMON_GUARDRAIL_FIELDS, AgentSpec, WorkflowConfig

logger = get_logger(__name__)


@dataclass(frozen=True)
class AgentBinding:
    spec: AgentSpec
    handler: Agent
    evaluator: Optional[GuardrailEvaluator] = None


@dataclass(frozen=True)
class ResolvedWorkflow:
    """A workflow whose every agent is bound to a handler and evaluator."""

    config: WorkflowConfig
    bindings: Mapping[str, AgentBinding]

    @property
    def entrypoint(self) -> str:
        return self.config.entrypoint

    def binding(self, name: str) -> AgentBinding:
        return self.bindings[name]


class AgentRegistry:
    """Maps declared agent names to handlers.

    Registration happens at startup; ``resolve`` is read-only and may be
    called concurrently for independent runs.
    """

    def __init__(self, evaluators: Optional[Mapping[str, GuardrailEvaluator]] = None) -> None:
        self._handlers: Dict[str, Agent] = {}
        self._evaluators: Dict[str, GuardrailEvaluator] = dict(
            evaluators if evaluators is not None else build_evaluators()
        )
        self._lock = threading.Lock()

    def register(self, handler: Agent, *, name: Optional[str] = None) -> Agent:
        key = name or handler.name
        with self._lock:
            self._handlers[key] = handler
        return handler

    def register_many(self, handlers: Iterable[Agent]) -> None:
        for handler in handlers:
            self.register(handler)

    @property
    def names(self) -> List[str]:
        return sorted(self._handlers)

    def get(self, name: str) -> Optional[Agent]:
        return self._handlers.get(name)

    def evaluator(self, kind: Optional[str]) -> Optional[GuardrailEvaluator]:
        if kind is None:
            return None
        return self._evaluators.get(kind)

    def resolve(self, config: WorkflowConfig) -> ResolvedWorkflow:
        """Bind every declared agent once; raises ConfigError listing all problems."""
        errors: List[str] = []
        bindings: Dict[str, AgentBinding] = {}
        for spec in config.agents:
            handler = self._handlers.get(spec.name)
            if handler is None:
                errors.append(f"no handler registered for agent: {spec.name}")
                continue
            if handler.kind is not spec.kind:
                errors.append(
                    f"agent '{spec.name}' is declared as {spec.kind.value} "
                    f"but its handler is a {handler.kind.value}"
                )
            declared = set(spec.policy.guardrails.declared) - COMMON_GUARDRAIL_FIELDS
            evaluator = self.evaluator(handler.guardrail_kind)
            if handler.guardrail_kind and evaluator is None:
                errors.append(
                    f"no guardrail evaluator for kind '{handler.guardrail_kind}' (agent {spec.name})"
                )
            if declared:
                allowed = GUARDRAIL_FIELDS_BY_KIND.get(handler.guardrail_kind or "", frozenset())
                unexpected = sorted(declared - allowed)
                if unexpected:
                    errors.append(
                        f"agent '{spec.name}' declares guardrail fields not valid for "
                        f"{handler.guardrail_kind or 'an unguarded'} agent: {', '.join(unexpected)}"
                    )
            bindings[spec.name] = AgentBinding(spec=spec, handler=handler, evaluator=evaluator)

        if errors:
            raise ConfigError(errors[0], errors)
        logger.debug("workflow_resolved", agents=list(bindings), workflow=config.name)
        return ResolvedWorkflow(config=config, bindings=MappingProxyType(bindings))


def build_default_registry(
    settings: Settings,
    *,
    llm: Optional[LLMService] = None,
    database: Optional[DatabaseClient] = None,
) -> AgentRegistry:
    """Registry with the built-in agents wired to the process settings."""
    llm = llm if llm is not None else LLMService(settings)
    if database is None and settings.database_url:
        database = DatabaseClient(settings.database_url, max_size=settings.database_pool_size)
    registry = AgentRegistry(build_evaluators(resolve_dns=settings.guardrail_resolve_dns))
    registry.register_many(
        [
            RoutingOrchestrator(llm),
            DatabaseAgent(llm=llm, database=database),
            ApiAgent(settings),
            SearchAgent(settings),
            DataAgent(llm),
        ]
    )
    return registry


__all__ = ["AgentBinding", "AgentRegistry", "ResolvedWorkflow", "build_default_registry"]
