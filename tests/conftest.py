import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

# Configure the environment before anything builds settings or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="agentrelay_test_")
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("TRACE_BACKEND", "memory")
os.environ.setdefault("TRACE_DIR", os.path.join(_test_tmp_dir, "traces"))
os.environ.setdefault("GUARDRAIL_RESOLVE_DNS", "false")
os.environ.pop("OPENAI_API_KEY", None)
os.environ.pop("DATABASE_URL", None)
os.environ.pop("SERPER_API_KEY", None)
os.environ.pop("BRAVE_API_KEY", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("WORKFLOW_PATH", str(ROOT / "workflow.yaml"))

from agentrelay.config import Settings  # noqa: E402
from agentrelay.service.agents.base import (  # noqa: E402
    AgentContext,
    AgentInput,
    AgentResult,
    OrchestratorAgent,
    WorkerAgent,
)
from agentrelay.service.agents.registry import AgentRegistry  # noqa: E402
from agentrelay.service.guardrails import build_evaluators  # noqa: E402
from agentrelay.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


Script = Callable[[AgentContext, AgentInput], Any]


class _Scripted:
    """Replays a list of canned results (or callables) one per invocation."""

    def __init__(self, name: str, script: List[Any]) -> None:
        self.name = name
        self.script = list(script)
        self.calls: List[Dict[str, Any]] = []

    async def handle(self, context: AgentContext, agent_input: AgentInput) -> Any:
        self.calls.append(
            {
                "message": agent_input.message,
                "payload": agent_input.payload,
                "memory": dict(context.memory),
                "loop": context.loop,
                "attempt": context.attempt,
            }
        )
        index = min(len(self.calls), len(self.script)) - 1
        step = self.script[index]
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            value = step(context, agent_input)
            if inspect.isawaitable(value):
                value = await value
            return value
        return step


class ScriptedOrchestrator(_Scripted, OrchestratorAgent):
    def __init__(self, name: str, script: List[Any], guardrail_kind: Optional[str] = None) -> None:
        OrchestratorAgent.__init__(self, name)
        _Scripted.__init__(self, name, script)
        self.guardrail_kind = guardrail_kind


class ScriptedWorker(_Scripted, WorkerAgent):
    def __init__(self, name: str, script: List[Any], guardrail_kind: Optional[str] = None) -> None:
        WorkerAgent.__init__(self, name)
        _Scripted.__init__(self, name, script)
        self.guardrail_kind = guardrail_kind


@pytest.fixture
def settings() -> Settings:
    return Settings(test_mode=True, guardrail_resolve_dns=False)


@pytest.fixture
def make_registry():
    """Build a registry from scripted handlers; DNS is never resolved."""

    def _make(*handlers, resolver=None) -> AgentRegistry:
        registry = AgentRegistry(build_evaluators(resolve_dns=resolver is not None, resolver=resolver))
        registry.register_many(handlers)
        return registry

    return _make


@pytest.fixture
def orchestrator_cls():
    return ScriptedOrchestrator


@pytest.fixture
def worker_cls():
    return ScriptedWorker


@pytest.fixture
def ok():
    """Shorthand for a successful handler result."""

    def _ok(message: str = "done", *, payload=None, next=None, cost: float = 0.0) -> AgentResult:
        return AgentResult(ok=True, message=message, payload=payload, next=next, cost=cost)

    return _ok


@pytest.fixture
def basic_workflow() -> Dict[str, Any]:
    """Orchestrator that may call one worker which reports back."""
    return {
        "name": "basic",
        "agents": [
            {"name": "orchestrator", "type": "orchestrator"},
            {
                "name": "worker",
                "type": "worker",
                "policy": {"memoryPolicy": {"writeTo": "worker_out"}},
            },
        ],
        "routes": {
            "orchestrator": {"canCall": ["worker"]},
            "worker": {"canCall": ["orchestrator"]},
        },
        "limits": {"defaultMaxLoops": 3, "maxDurationMs": None, "maxCost": None},
    }
