"""Declarative workflow configuration: the agent graph, policies and limits.

Documents are validated in two passes. The JSON Schema pass checks shape
(types, required keys, non-negative numbers, known guardrail fields) and
reports every problem with its path. The semantic pass checks references
between agents (routes, fallbacks) and namespace ownership. Loading is pure:
the input mapping is deep-copied and never mutated, so the same document can
be loaded any number of times (replay relies on this).
"""
from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml
from jsonschema import Draft202012Validator

from agentrelay.service.errors import ConfigError

DEFAULT_MAX_LOOPS = 3
MAX_RETRY_COUNT = 10
EXPONENTIAL_BACKOFF_FACTOR = 4  # 1x, 4x, 16x ...
GLOBAL_NAMESPACE = "global"


class AgentKind(str, Enum):
    ORCHESTRATOR = "orchestrator"
    WORKER = "worker"


class BackoffStrategy(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


SQL_GUARDRAIL_FIELDS = frozenset({"allowedOperations", "allowedTables", "requireWhere"})
HTTP_GUARDRAIL_FIELDS = frozenset({"allowedDomains", "allowedMethods", "blockPrivateIPs"})
COMMON_GUARDRAIL_FIELDS = frozenset({"maxCostPerInvocation"})

_STRING_LIST = {"type": "array", "items": {"type": "string"}}

_POLICY_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "retries": {
            "type": "object",
            "properties": {
                "count": {"type": "integer", "minimum": 0, "maximum": MAX_RETRY_COUNT},
                "backoffMs": {"type": "number", "minimum": 0},
                "strategy": {"enum": [s.value for s in BackoffStrategy]},
            },
            "additionalProperties": False,
        },
        "fallback": {"type": "string", "minLength": 1},
        "memoryPolicy": {
            "type": "object",
            "properties": {
                "readFrom": _STRING_LIST,
                "writeTo": {"type": "string", "minLength": 1},
            },
            "additionalProperties": False,
        },
        "guardrails": {
            "type": "object",
            "properties": {
                "maxCostPerInvocation": {"type": "number", "minimum": 0},
                "allowedOperations": _STRING_LIST,
                "allowedTables": _STRING_LIST,
                "requireWhere": {"type": "boolean"},
                "allowedDomains": _STRING_LIST,
                "allowedMethods": _STRING_LIST,
                "blockPrivateIPs": {"type": "boolean"},
            },
            "additionalProperties": False,
        },
    },
    "additionalProperties": False,
}

_WORKFLOW_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "agents": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string", "minLength": 1},
                    "type": {"enum": [k.value for k in AgentKind]},
                    "kind": {"enum": [k.value for k in AgentKind]},
                    "maxLoops": {"type": "integer", "minimum": 0},
                    "policy": _POLICY_SCHEMA,
                },
                "required": ["name"],
                "anyOf": [{"required": ["type"]}, {"required": ["kind"]}],
                "additionalProperties": False,
            },
        },
        "routes": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "properties": {"canCall": _STRING_LIST},
                "required": ["canCall"],
                "additionalProperties": False,
            },
        },
        "limits": {
            "type": "object",
            "properties": {
                "defaultMaxLoops": {"type": "integer", "minimum": 0},
                "maxDurationMs": {"type": ["number", "null"], "minimum": 0},
                "maxCost": {"type": ["number", "null"], "minimum": 0},
            },
            "additionalProperties": False,
        },
        "memory": {"type": "object", "additionalProperties": {"type": "object"}},
    },
    "required": ["agents"],
}

_VALIDATOR = Draft202012Validator(_WORKFLOW_SCHEMA)


@dataclass(frozen=True)
class RetryPolicy:
    count: int = 0
    backoff_ms: float = 0
    strategy: BackoffStrategy = BackoffStrategy.FIXED

    @property
    def max_attempts(self) -> int:
        return self.count + 1

    def delay_ms(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt`` (1-based)."""
        if self.strategy is BackoffStrategy.EXPONENTIAL:
            return self.backoff_ms * (EXPONENTIAL_BACKOFF_FACTOR ** (attempt - 1))
        return self.backoff_ms


@dataclass(frozen=True)
class MemoryPolicy:
    read_from: Tuple[str, ...] = ()
    write_to: Optional[str] = None


@dataclass(frozen=True)
class Guardrails:
    allowed_operations: Tuple[str, ...] = ()
    allowed_tables: Tuple[str, ...] = ()
    require_where: bool = False
    allowed_domains: Tuple[str, ...] = ()
    allowed_methods: Tuple[str, ...] = ()
    block_private_ips: bool = False
    max_cost_per_invocation: Optional[float] = None
    # document field names actually present, used for kind checks
    declared: frozenset = frozenset()

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for doc_key, attr in _GUARDRAIL_ATTRS.items():
            if doc_key in self.declared:
                value = getattr(self, attr)
                out[doc_key] = list(value) if isinstance(value, tuple) else value
        return out


_GUARDRAIL_ATTRS = {
    "allowedOperations": "allowed_operations",
    "allowedTables": "allowed_tables",
    "requireWhere": "require_where",
    "allowedDomains": "allowed_domains",
    "allowedMethods": "allowed_methods",
    "blockPrivateIPs": "block_private_ips",
    "maxCostPerInvocation": "max_cost_per_invocation",
}


@dataclass(frozen=True)
class AgentPolicy:
    retries: RetryPolicy = field(default_factory=RetryPolicy)
    memory: MemoryPolicy = field(default_factory=MemoryPolicy)
    guardrails: Guardrails = field(default_factory=Guardrails)
    fallback: Optional[str] = None


@dataclass(frozen=True)
class AgentSpec:
    name: str
    kind: AgentKind
    max_loops: Optional[int] = None
    policy: AgentPolicy = field(default_factory=AgentPolicy)


@dataclass(frozen=True)
class Limits:
    max_duration_ms: Optional[float] = None
    max_cost: Optional[float] = None
    default_max_loops: int = DEFAULT_MAX_LOOPS

    def ceilings(self) -> Dict[str, Any]:
        return {
            "maxDurationMs": self.max_duration_ms,
            "maxCost": self.max_cost,
            "defaultMaxLoops": self.default_max_loops,
        }


@dataclass(frozen=True)
class WorkflowConfig:
    agents: Tuple[AgentSpec, ...]
    routes: Mapping[str, Tuple[str, ...]]
    limits: Limits = field(default_factory=Limits)
    memory: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    name: Optional[str] = None
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False)

    @property
    def agent_names(self) -> List[str]:
        return [a.name for a in self.agents]

    @property
    def entrypoint(self) -> str:
        for agent in self.agents:
            if agent.kind is AgentKind.ORCHESTRATOR:
                return agent.name
        raise ConfigError("workflow declares no orchestrator agent")

    def agent(self, name: str) -> AgentSpec:
        for agent in self.agents:
            if agent.name == name:
                return agent
        raise KeyError(name)

    def can_call(self, name: str) -> Tuple[str, ...]:
        return tuple(self.routes.get(name, ()))

    def max_loops_for(self, name: str) -> int:
        spec = self.agent(name)
        if spec.max_loops is not None:
            return spec.max_loops
        return self.limits.default_max_loops

    def to_dict(self) -> Dict[str, Any]:
        """The document this config was loaded from (deep copy)."""
        return copy.deepcopy(dict(self.raw))


def _schema_errors(document: Mapping[str, Any]) -> List[str]:
    errors = sorted(
        _VALIDATOR.iter_errors(document),
        key=lambda e: [str(p) for p in e.absolute_path],
    )
    messages = []
    for err in errors:
        location = ".".join(str(p) for p in err.absolute_path) or "<root>"
        messages.append(f"{location}: {err.message}")
    return messages


def _build_guardrails(raw: Mapping[str, Any]) -> Guardrails:
    values: Dict[str, Any] = {}
    for doc_key, attr in _GUARDRAIL_ATTRS.items():
        if doc_key not in raw:
            continue
        value = raw[doc_key]
        values[attr] = tuple(value) if isinstance(value, list) else value
    return Guardrails(declared=frozenset(k for k in raw if k in _GUARDRAIL_ATTRS), **values)


def _build_agent(raw: Mapping[str, Any]) -> AgentSpec:
    declared_type = raw.get("type")
    declared_kind = raw.get("kind")
    if declared_type and declared_kind and declared_type != declared_kind:
        raise ConfigError(
            f"agent '{raw['name']}' declares conflicting type '{declared_type}' and kind '{declared_kind}'"
        )
    policy_raw = raw.get("policy") or {}
    retries_raw = policy_raw.get("retries") or {}
    memory_raw = policy_raw.get("memoryPolicy") or {}
    policy = AgentPolicy(
        retries=RetryPolicy(
            count=retries_raw.get("count", 0),
            backoff_ms=retries_raw.get("backoffMs", 0),
            strategy=BackoffStrategy(retries_raw.get("strategy", BackoffStrategy.FIXED.value)),
        ),
        memory=MemoryPolicy(
            read_from=tuple(memory_raw.get("readFrom") or ()),
            write_to=memory_raw.get("writeTo"),
        ),
        guardrails=_build_guardrails(policy_raw.get("guardrails") or {}),
        fallback=policy_raw.get("fallback"),
    )
    return AgentSpec(
        name=raw["name"],
        kind=AgentKind(declared_type or declared_kind),
        max_loops=raw.get("maxLoops"),
        policy=policy,
    )


def _semantic_errors(agents: Tuple[AgentSpec, ...], routes: Mapping[str, Tuple[str, ...]]) -> List[str]:
    errors: List[str] = []
    names: set[str] = set()
    for agent in agents:
        if agent.name in names:
            errors.append(f"duplicate agent name: {agent.name}")
        names.add(agent.name)

    if not any(a.kind is AgentKind.ORCHESTRATOR for a in agents):
        errors.append("workflow declares no orchestrator agent")

    for source, targets in routes.items():
        if source not in names:
            errors.append(f"route references unknown agent: {source}")
        for target in targets:
            if target not in names:
                errors.append(f"route references unknown agent: {source} -> {target}")

    owners: Dict[str, str] = {}
    for agent in agents:
        fallback = agent.policy.fallback
        if fallback is not None:
            if fallback not in names:
                errors.append(f"fallback references unknown agent: {agent.name} -> {fallback}")
            elif fallback == agent.name:
                errors.append(f"agent '{agent.name}' cannot be its own fallback")
        write_to = agent.policy.memory.write_to
        if write_to:
            if write_to in owners:
                errors.append(
                    f"namespace '{write_to}' is written by both '{owners[write_to]}' and '{agent.name}'"
                )
            else:
                owners[write_to] = agent.name
    return errors


def load_workflow(raw: Any) -> WorkflowConfig:
    """Validate and build a WorkflowConfig from a parsed document.

    Raises ConfigError naming every offending field or reference.
    """
    if isinstance(raw, WorkflowConfig):
        return raw
    if not isinstance(raw, Mapping):
        raise ConfigError("workflow document must be a mapping")
    document = copy.deepcopy(dict(raw))

    shape_errors = _schema_errors(document)
    if shape_errors:
        raise ConfigError("workflow document failed validation", shape_errors)

    agents = tuple(_build_agent(a) for a in document["agents"])
    routes = {
        source: tuple(entry.get("canCall") or ())
        for source, entry in (document.get("routes") or {}).items()
    }
    semantic = _semantic_errors(agents, routes)
    if semantic:
        raise ConfigError(semantic[0], semantic)

    limits_raw = document.get("limits") or {}
    limits = Limits(
        max_duration_ms=limits_raw.get("maxDurationMs"),
        max_cost=limits_raw.get("maxCost"),
        default_max_loops=limits_raw.get("defaultMaxLoops", DEFAULT_MAX_LOOPS),
    )
    memory = {
        namespace: MappingProxyType(copy.deepcopy(values))
        for namespace, values in (document.get("memory") or {}).items()
    }
    return WorkflowConfig(
        agents=agents,
        routes=MappingProxyType(routes),
        limits=limits,
        memory=MappingProxyType(memory),
        name=document.get("name"),
        raw=MappingProxyType(document),
    )


def load_workflow_file(path: str | Path) -> WorkflowConfig:
    """Load a workflow document from YAML (or JSON, by suffix)."""
    file = Path(path)
    if not file.exists():
        raise ConfigError(f"workflow file not found at {file.resolve()}")
    text = file.read_text(encoding="utf-8")
    try:
        if file.suffix.lower() == ".json":
            document = json.loads(text)
        else:
            document = yaml.safe_load(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigError(f"workflow file {file.name} could not be parsed: {exc}") from exc
    return load_workflow(document)


__all__ = [
    "AgentKind",
    "AgentPolicy",
    "AgentSpec",
    "BackoffStrategy",
    "Guardrails",
    "Limits",
    "MemoryPolicy",
    "RetryPolicy",
    "WorkflowConfig",
    "load_workflow",
    "load_workflow_file",
    "DEFAULT_MAX_LOOPS",
    "GLOBAL_NAMESPACE",
    "MAX_RETRY_COUNT",
]
