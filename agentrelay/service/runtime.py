from __future__ import annotations

import threading
from typing import Optional

from agentrelay.config import Settings, get_settings, reset_settings_cache
from agentrelay.logging import get_logger, mask_url_credentials
from agentrelay.service.agents.registry import AgentRegistry, build_default_registry
from agentrelay.service.engine import WorkflowEngine
from agentrelay.service.replay import ReplayEngine
from agentrelay.service.workflow_config import WorkflowConfig, load_workflow_file
from agentrelay.storage.traces import RedisTraceCache, TraceStore, build_trace_store

logger = get_logger(__name__)


class Runtime:
    """Wires settings, workflow, registry, trace store and engines for the API and CLI."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        workflow: Optional[WorkflowConfig] = None,
        registry: Optional[AgentRegistry] = None,
        trace_store: Optional[TraceStore] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            workflow_path=self.settings.workflow_path,
            trace_backend=self.settings.trace_backend.value,
            redis_url=mask_url_credentials(self.settings.redis_url) if self.settings.redis_url else None,
            test_mode=self.settings.test_mode,
        )
        self.workflow = workflow or load_workflow_file(self.settings.workflow_path)
        self.registry = registry or build_default_registry(self.settings)
        self.trace_store = trace_store or build_trace_store(self.settings)
        self.engine = WorkflowEngine(
            self.workflow,
            registry=self.registry,
            trace_store=self.trace_store,
            settings=self.settings,
        )
        self.replay = ReplayEngine(self.engine)
        logger.info(
            "runtime_init_completed",
            workflow=self.workflow.name,
            agents=self.workflow.agent_names,
        )

    def close(self) -> None:
        if isinstance(self.trace_store, RedisTraceCache):
            self.trace_store.client.close()
        for name in self.registry.names:
            database = getattr(self.registry.get(name), "database", None)
            if database is not None:
                database.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def set_runtime(value: Optional[Runtime]) -> None:
    global runtime
    with _runtime_lock:
        runtime = value


def reset_runtime_for_tests() -> None:
    """Drop the runtime singleton and cached settings; rebuilt lazily on next use."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        runtime = None
        reset_settings_cache()


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests", "set_runtime"]
