"""The orchestration loop.

A run walks the declared agent graph one agent at a time::

    INIT -> RUNNING -> OK | ERROR | STOPPED

Each step reads memory, invokes the current agent through the retry
controller, records every attempt, checks the workflow ceilings, and follows
``next`` if the current agent's routes allow it. Exceptions never escape a
run: failures end as ERROR, ceiling breaches as STOPPED.
"""
from __future__ import annotations

import asyncio
import copy
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

from agentrelay.config import Settings
from agentrelay.logging import bind_run_context, clear_run_context, get_logger, log_run_summary
from agentrelay.service.agents.base import AgentContext, AgentInput, AgentResult
from agentrelay.service.agents.registry import AgentRegistry, ResolvedWorkflow
from agentrelay.service.memory import MemoryContext
from agentrelay.service.retry import RetryController
from agentrelay.service.trace import (
    ExecutionStep,
    RunStatus,
    Trace,
    TracePersistError,
    TraceRecorder,
    utcnow_iso,
)
from agentrelay.service.workflow_config import GLOBAL_NAMESPACE, AgentKind, WorkflowConfig, load_workflow
from agentrelay.storage.traces import MemoryTraceStore, TraceStore

logger = get_logger(__name__)


class CeilingExceeded(Exception):
    """A workflow or per-invocation ceiling tripped; the run stops."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class RunFailed(Exception):
    """Unrecoverable step failure; the run ends in ERROR."""


@dataclass
class RunResult:
    status: RunStatus
    task_id: str
    result: Dict[str, Any] = field(default_factory=dict)
    totals: Dict[str, float] = field(default_factory=dict)
    error: Optional[str] = None
    trace: Optional[Trace] = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.status is RunStatus.OK

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "status": self.status.value,
            "taskId": self.task_id,
            "result": copy.deepcopy(self.result),
            "totals": dict(self.totals),
        }
        if self.error is not None:
            data["error"] = self.error
        return data


class _RunState:
    """Mutable bookkeeping for one run; owned by a single ``_execute`` call."""

    def __init__(self, workflow: ResolvedWorkflow, clock: Callable[[], float]) -> None:
        self.workflow = workflow
        self.clock = clock
        self.started = clock()
        self.loop = 0
        self.loop_counts: Dict[str, int] = defaultdict(int)
        self.last_payload: Dict[str, Any] = {}

    def elapsed_ms(self) -> float:
        return (self.clock() - self.started) * 1000

    def remaining_ms(self) -> Optional[float]:
        limit = self.workflow.config.limits.max_duration_ms
        if limit is None:
            return None
        return limit - self.elapsed_ms()


class WorkflowEngine:
    """Executes tasks against a workflow configuration.

    The engine itself holds only read-only state (resolved workflow,
    registry, settings), so one instance serves any number of concurrent
    runs. Each run owns its own memory context and trace.
    """

    def __init__(
        self,
        config: WorkflowConfig | Mapping[str, Any],
        *,
        registry: AgentRegistry,
        trace_store: Optional[TraceStore] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self.settings = settings or Settings()
        self.registry = registry
        self.trace_store = trace_store if trace_store is not None else MemoryTraceStore()
        self.clock = clock
        self.retry = RetryController(
            retry_guardrail_violations=self.settings.retry_guardrail_violations,
            sleep=sleep,
        )
        self.workflow = registry.resolve(load_workflow(config))

    @property
    def config(self) -> WorkflowConfig:
        return self.workflow.config

    def resolve(self, config: WorkflowConfig | Mapping[str, Any] | None) -> ResolvedWorkflow:
        if config is None:
            return self.workflow
        return self.registry.resolve(load_workflow(config))

    async def run(
        self,
        task: str,
        memory: Optional[Mapping[str, Any]] = None,
        *,
        config: WorkflowConfig | Mapping[str, Any] | None = None,
        replay_of: Optional[str] = None,
    ) -> RunResult:
        """Run ``task`` to a terminal state.

        ``config`` substitutes a different workflow for this run only (replay
        uses it); it is validated and resolved before anything executes, so
        a bad substitute raises ConfigError without creating a trace.
        """
        workflow = self.resolve(config)
        task_id = str(uuid.uuid4())
        bind_run_context(task_id=task_id)
        try:
            return await self._execute(workflow, task_id, task, dict(memory or {}), replay_of)
        finally:
            clear_run_context("task_id")

    async def _execute(
        self,
        workflow: ResolvedWorkflow,
        task_id: str,
        task: str,
        initial_memory: Dict[str, Any],
        replay_of: Optional[str],
    ) -> RunResult:
        config = workflow.config
        log = logger.bind(task_id=task_id)
        memory = MemoryContext(config)
        memory.seed(config.memory.get(GLOBAL_NAMESPACE), initial_memory)

        trace = Trace(
            task_id=task_id,
            started_at=utcnow_iso(),
            ceilings=config.limits.ceilings(),
            memory_namespaces=memory.namespaces,
            workflow_config=config.to_dict(),
            initial_task=task,
            initial_memory=copy.deepcopy(initial_memory),
            workflow_name=config.name or self.settings.workflow_name,
            org_id=self.settings.org_id,
            replay_of=replay_of,
        )
        recorder = TraceRecorder(trace, self.trace_store)
        state = _RunState(workflow, self.clock)
        log.info(
            "workflow_run_started",
            workflow=trace.workflow_name,
            entrypoint=workflow.entrypoint,
            replay_of=replay_of,
        )

        current: Optional[str] = workflow.entrypoint
        agent_input = AgentInput(message=task, payload=copy.deepcopy(initial_memory))
        status = RunStatus.OK
        error: Optional[str] = None
        try:
            if recorder.persist_error:
                raise TracePersistError(recorder.persist_error)
            while current is not None:
                current, agent_input = await self._step(
                    state, memory, recorder, log, task_id, task, current, agent_input
                )
        except CeilingExceeded as exc:
            status, error = RunStatus.STOPPED, exc.reason
            log.warning("workflow_run_stopped", reason=exc.reason)
        except (RunFailed, TracePersistError) as exc:
            status, error = RunStatus.ERROR, str(exc)
            log.error("workflow_run_failed", error=error)
        except Exception as exc:
            status, error = RunStatus.ERROR, str(exc) or type(exc).__name__
            log.exception("workflow_run_crashed", error=error)

        recorder.end(
            status,
            error,
            duration_ms=state.elapsed_ms(),
            memory_namespaces=memory.namespaces,
        )
        if recorder.persist_error and status is RunStatus.OK:
            # the final flush failed; the run has no durable record
            status, error = RunStatus.ERROR, recorder.persist_error
            trace.status, trace.error = status, error
        log_run_summary(trace.to_dict(), logger=log)
        return RunResult(
            status=status,
            task_id=task_id,
            result=copy.deepcopy(state.last_payload),
            totals=dict(trace.totals),
            error=error,
            trace=trace,
        )

    def _check_workflow_ceilings(self, state: _RunState, recorder: TraceRecorder) -> None:
        limits = state.workflow.config.limits
        if limits.max_duration_ms is not None and state.elapsed_ms() > limits.max_duration_ms:
            raise CeilingExceeded(f"Duration ceiling exceeded ({limits.max_duration_ms}ms)")
        total = recorder.trace.totals.get("cost", 0.0)
        if limits.max_cost is not None and total > limits.max_cost:
            raise CeilingExceeded(f"Cost ceiling exceeded ({total:g} > {limits.max_cost:g})")

    async def _step(
        self,
        state: _RunState,
        memory: MemoryContext,
        recorder: TraceRecorder,
        log: Any,
        task_id: str,
        task: str,
        current: str,
        agent_input: AgentInput,
    ) -> tuple[Optional[str], AgentInput]:
        config = state.workflow.config
        binding = state.workflow.binding(current)
        spec = binding.spec

        state.loop_counts[current] += 1
        max_loops = config.max_loops_for(current)
        if state.loop_counts[current] > max_loops:
            log.warning("workflow_loop_limit", agent=current, max_loops=max_loops)
            raise CeilingExceeded(f"Loop limit exceeded for {current} (max {max_loops})")
        self._check_workflow_ceilings(state, recorder)

        state.loop += 1
        loop = state.loop
        contexts: Dict[int, AgentContext] = {}
        agent_log = log.bind(agent=current)
        per_call_ceiling = spec.policy.guardrails.max_cost_per_invocation

        async def attempt_fn(attempt: int) -> AgentResult:
            context = AgentContext(
                task_id=task_id,
                workflow=config,
                agent=spec,
                memory=memory.read(current),
                settings=self.settings,
                logger=agent_log,
                evaluator=binding.evaluator,
                check_write=memory.check_write,
                loop=loop,
                attempt=attempt,
            )
            contexts[attempt] = context
            raw = await binding.handler.handle(context, AgentInput(
                message=agent_input.message, payload=copy.deepcopy(agent_input.payload)
            ))
            return AgentResult.from_value(raw)

        def after_attempt(attempt: int, result: AgentResult) -> None:
            output = result.to_dict()
            breach: Optional[str] = None
            if per_call_ceiling is not None and result.cost > per_call_ceiling:
                breach = f"Agent {current} cost ceiling exceeded: {result.cost:g} > {per_call_ceiling:g}"
                output = {
                    "ok": False,
                    "message": f"Agent cost ceiling exceeded: {result.cost:g} > {per_call_ceiling:g}",
                    "payload": {
                        "error": "GUARDRAIL_VIOLATION",
                        "actualCost": result.cost,
                        "ceiling": per_call_ceiling,
                    },
                    "cost": result.cost,
                }
            step = ExecutionStep(
                at=utcnow_iso(),
                agent=current,
                loop=loop,
                attempt=attempt,
                input=agent_input.to_dict(),
                output=output,
            )
            recorder.add(step, cost=result.cost, duration_ms=state.elapsed_ms())
            agent_log.debug(
                "agent_step_recorded", loop=loop, attempt=attempt, ok=result.ok, cost=result.cost
            )
            if breach:
                raise CeilingExceeded(breach)
            self._check_workflow_ceilings(state, recorder)

        outcome = await self.retry.invoke(
            attempt_fn,
            spec.policy.retries,
            agent_name=current,
            after_attempt=after_attempt,
            remaining_ms=state.remaining_ms,
        )

        result = outcome.result
        if not outcome.ok:
            fallback = spec.policy.fallback
            if fallback:
                log.info("workflow_agent_fallback", agent=current, fallback=fallback)
                return fallback, agent_input
            raise RunFailed(result.message or f"Agent {current} failed")

        memory.write(current, result.payload)
        pending = contexts[outcome.attempts].pending_memory
        if pending:
            memory.write(current, pending)
        if result.payload is not None:
            state.last_payload = copy.deepcopy(result.payload)

        next_agent = result.next
        if next_agent is None:
            log.info("workflow_agent_completed", agent=current, loop=loop)
            return None, agent_input
        if next_agent not in config.can_call(current):
            raise RunFailed(f"Route not permitted: {current} -> {next_agent}")

        payload = result.payload if result.payload is not None else agent_input.payload
        if spec.kind is AgentKind.ORCHESTRATOR:
            # workers always see the caller's original task text
            message = task
        else:
            message = f"Previous step completed: {result.message or 'Success'}. Original task: {task}"
        log.info("workflow_route", source=current, target=next_agent, loop=loop)
        return next_agent, AgentInput(message=message, payload=copy.deepcopy(payload))


__all__ = ["CeilingExceeded", "RunFailed", "RunResult", "WorkflowEngine"]
