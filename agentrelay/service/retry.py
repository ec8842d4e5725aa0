from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from agentrelay.logging import get_logger
from agentrelay.service.agents.base import AgentResult
from agentrelay.service.errors import GuardrailViolationError
from agentrelay.service.workflow_config import RetryPolicy

logger = get_logger(__name__)

AttemptFn = Callable[[int], Awaitable[AgentResult]]
AfterAttempt = Callable[[int, AgentResult], None]
RemainingMs = Callable[[], Optional[float]]


@dataclass
class StepOutcome:
    """Result of one logical step after all of its attempts."""

    result: AgentResult
    attempts: int
    violation: bool = False

    @property
    def ok(self) -> bool:
        return self.result.ok


class RetryController:
    """Runs one agent invocation with bounded retries and backoff.

    An attempt fails when the handler raises or returns ``ok: false``; a
    handler exception is converted into a failed ``AgentResult`` so every
    attempt, failed or not, is handed to ``after_attempt`` for recording.
    ``after_attempt`` may raise to abort the step (ceiling breaches), in
    which case the exception propagates to the caller untouched.
    """

    def __init__(
        self,
        *,
        retry_guardrail_violations: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.retry_guardrail_violations = retry_guardrail_violations
        self._sleep = sleep

    async def invoke(
        self,
        attempt_fn: AttemptFn,
        policy: RetryPolicy,
        *,
        agent_name: str,
        after_attempt: Optional[AfterAttempt] = None,
        remaining_ms: Optional[RemainingMs] = None,
    ) -> StepOutcome:
        max_attempts = policy.max_attempts
        attempt = 0
        result = AgentResult.failure(f"Agent {agent_name} was not invoked")
        violation = False

        while attempt < max_attempts:
            attempt += 1
            budget_ms = remaining_ms() if remaining_ms else None
            started = time.monotonic()
            violation = False
            try:
                if budget_ms is not None:
                    result = await asyncio.wait_for(
                        attempt_fn(attempt), timeout=max(budget_ms, 0) / 1000.0
                    )
                else:
                    result = await attempt_fn(attempt)
            except asyncio.TimeoutError:
                result = AgentResult.failure(
                    f"Agent {agent_name} timed out after {int((time.monotonic() - started) * 1000)}ms"
                )
                logger.warning("agent_attempt_timeout", agent=agent_name, attempt=attempt)
            except GuardrailViolationError as exc:
                violation = True
                result = AgentResult.failure(
                    exc.message,
                    payload=exc.violation.to_dict(),
                )
                logger.warning(
                    "agent_guardrail_violation",
                    agent=agent_name,
                    attempt=attempt,
                    code=exc.violation.code,
                    reason=exc.violation.reason,
                )
            except Exception as exc:
                result = AgentResult.failure(str(exc) or type(exc).__name__)
                logger.warning(
                    "agent_attempt_failed",
                    agent=agent_name,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    error=str(exc),
                )
            else:
                if not result.ok:
                    logger.warning(
                        "agent_attempt_failed",
                        agent=agent_name,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        error=result.message,
                    )

            if after_attempt is not None:
                after_attempt(attempt, result)

            if result.ok:
                return StepOutcome(result=result, attempts=attempt)
            if violation and not self.retry_guardrail_violations:
                break
            if attempt >= max_attempts:
                break

            delay_ms = policy.delay_ms(attempt)
            if remaining_ms is not None:
                left = remaining_ms()
                if left is not None:
                    # never sleep past the workflow duration budget
                    delay_ms = min(delay_ms, max(left, 0))
            if delay_ms > 0:
                logger.info(
                    "agent_retry_backoff", agent=agent_name, attempt=attempt, backoff_ms=delay_ms
                )
                await self._sleep(delay_ms / 1000.0)

        logger.error(
            "agent_retries_exhausted",
            agent=agent_name,
            attempts=attempt,
            error=result.message,
        )
        return StepOutcome(result=result, attempts=attempt, violation=violation)


__all__ = ["RetryController", "StepOutcome"]
