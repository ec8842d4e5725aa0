from __future__ import annotations

from typing import Optional, Sequence, Tuple

from agentrelay.service.agents.base import AgentContext, AgentInput, AgentResult, OrchestratorAgent
from agentrelay.service.llm import LLMService

KEYWORD_COST = 0.001
COMPLETED_PREFIX = "previous step completed"

KEYWORD_ROUTES: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("sql", "db", "query", "database"), "db_agent"),
    (("search", "find", "lookup", "google"), "search_agent"),
    (("api", "http", "fetch", "request"), "api_agent"),
    (("analy", "chart", "summary", "report"), "data_agent"),
)
DEFAULT_ROUTE = "data_agent"

AGENT_HINTS = {
    "db_agent": "database queries, SQL operations, data retrieval from databases",
    "search_agent": "web searches, finding information online, news articles",
    "api_agent": "HTTP API calls with specific URLs",
    "data_agent": "data analysis, summaries, charts, statistics",
}

_SYSTEM_PROMPT = """You are a task router for a multi-agent system.
Decide which agent should handle the NEXT step of the user's request.

Available agents:
{agents}

Rules:
- Pick an agent whose work has not been done yet.
- If gathered data needs analysis or a summary, pick the analysis agent.
- If the message says "Previous step completed" and the original task is done, respond "DONE".
- If unsure what is left to do, respond "DONE".

Respond with ONLY the agent name or "DONE"."""


def keyword_route(message: str, routes: Sequence[str]) -> Optional[str]:
    """Pick a permitted route by keyword, falling back to the analysis agent."""
    text = message.lower()
    for keywords, target in KEYWORD_ROUTES:
        if target in routes and any(k in text for k in keywords):
            return target
    if DEFAULT_ROUTE in routes:
        return DEFAULT_ROUTE
    return routes[0] if routes else None


class RoutingOrchestrator(OrchestratorAgent):
    """Routes each task to one of its permitted agents.

    Uses the LLM when one is configured and keyword matching otherwise (or
    when the LLM call fails or names an agent it may not call).
    """

    default_name = "orchestrator"
    description = "LLM router with keyword fallback"

    def __init__(self, llm: Optional[LLMService] = None, *, name: Optional[str] = None) -> None:
        super().__init__(name)
        self.llm = llm

    @staticmethod
    def _done(agent_input: AgentInput, *, cost: float = 0.0, metadata: Optional[dict] = None) -> AgentResult:
        return AgentResult(
            ok=True,
            message="Task completed successfully",
            payload=agent_input.payload,
            cost=cost,
            metadata=metadata,
        )

    async def handle(self, context: AgentContext, agent_input: AgentInput) -> AgentResult:
        routes = list(context.routes)
        if not routes:
            context.log("orchestrator_no_routes")
            return self._done(agent_input)
        if self.llm is None or not self.llm.available:
            return self._keyword(context, agent_input, routes)

        agents = "\n".join(f"- {name}: {AGENT_HINTS.get(name, 'general worker')}" for name in routes)
        try:
            response = await self.llm.chat(
                [
                    {"role": "system", "content": _SYSTEM_PROMPT.format(agents=agents)},
                    {"role": "user", "content": f"Task: {agent_input.message}"},
                ],
                temperature=0.3,
                max_tokens=50,
            )
        except Exception as exc:
            context.logger.warning("orchestrator_llm_failed", error=str(exc))
            return self._keyword(context, agent_input, routes)

        choice = response.content.strip().strip("\"'`.").lower()
        metadata = {"model": response.model, "usage": response.usage}
        if choice in {"done", "complete"} or "done" in choice:
            context.log("orchestrator_completed", model=response.model, cost=response.cost)
            return self._done(agent_input, cost=response.cost, metadata=metadata)
        if choice not in routes:
            context.log("orchestrator_unknown_choice", suggested=choice, available=routes)
            fallback = self._keyword(context, agent_input, routes)
            fallback.cost += response.cost
            return fallback

        context.log("orchestrator_routed", next=choice, model=response.model, cost=response.cost)
        return AgentResult(
            ok=True,
            message=f"Routing to {choice} (AI decision)",
            payload=agent_input.payload,
            next=choice,
            cost=response.cost,
            metadata=metadata,
        )

    def _keyword(self, context: AgentContext, agent_input: AgentInput, routes: Sequence[str]) -> AgentResult:
        # without a model there is no way to judge what is left, so a
        # completed worker step ends the run
        if agent_input.message.lower().startswith(COMPLETED_PREFIX):
            return self._done(agent_input, cost=KEYWORD_COST)
        target = keyword_route(agent_input.message, routes)
        context.log("orchestrator_keyword_routed", next=target)
        return AgentResult(
            ok=True,
            message=f"Routing to {target} (keyword matching)",
            payload=agent_input.payload,
            next=target,
            cost=KEYWORD_COST,
        )


__all__ = ["RoutingOrchestrator", "keyword_route", "KEYWORD_COST"]
