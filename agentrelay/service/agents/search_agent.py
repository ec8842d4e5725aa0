from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

import httpx

from agentrelay.config import Settings
from agentrelay.service.agents.base import AgentContext, AgentInput, AgentResult, WorkerAgent

SEARCH_COST = 0.02
SAMPLE_COST = 0.1
SEARCH_TIMEOUT_SECONDS = 10.0
SERPER_URL = "https://google.serper.dev/search"
BRAVE_URL = "https://api.search.brave.com/res/v1/web/search"

_QUERY_PREFIX = re.compile(r"^(search|find|lookup|google)\s+", re.IGNORECASE)


class SearchError(Exception):
    pass


class SearchAgent(WorkerAgent):
    """Web search through Serper or Brave; sample results when neither key is set."""

    default_name = "search_agent"
    description = "web search"

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        name: Optional[str] = None,
    ) -> None:
        super().__init__(name)
        self.settings = settings
        self.transport = transport

    async def handle(self, context: AgentContext, agent_input: AgentInput) -> AgentResult:
        query = _QUERY_PREFIX.sub("", agent_input.message).strip()
        if not query:
            return AgentResult.failure(
                "No search query provided", payload={"error": "NO_QUERY"}
            )

        if self.settings.serper_api_key:
            provider = "serper"
        elif self.settings.brave_api_key:
            provider = "brave"
        else:
            context.log("search_agent_sample_results")
            return AgentResult(
                ok=True,
                message="Using sample search results (configure SERPER_API_KEY or BRAVE_API_KEY)",
                payload={
                    "query": query,
                    "results": [
                        {"title": "Sample Result 1", "snippet": "Sample search result.", "url": "https://example.com/1"},
                        {"title": "Sample Result 2", "snippet": "Sample search result.", "url": "https://example.com/2"},
                    ],
                    "warning": "NO_API_KEY_CONFIGURED",
                },
                next=self.report_back(context),
                cost=SAMPLE_COST,
                metadata={"provider": "sample"},
            )

        try:
            async with httpx.AsyncClient(
                timeout=SEARCH_TIMEOUT_SECONDS, transport=self.transport
            ) as client:
                if provider == "serper":
                    results = await self._serper(client, query)
                else:
                    results = await self._brave(client, query)
        except httpx.TimeoutException:
            return AgentResult.failure(f"{provider} request timeout ({SEARCH_TIMEOUT_SECONDS:g}s)")
        except (httpx.HTTPError, SearchError) as exc:
            return AgentResult.failure(f"Search error: {exc}", payload={"error": str(exc)})

        context.log("search_agent_completed", query=query, result_count=len(results), provider=provider)
        return AgentResult(
            ok=True,
            message=f"Found {len(results)} search results for: {query}",
            payload={"query": query, "results": results},
            next=self.report_back(context),
            cost=SEARCH_COST,
            metadata={"provider": provider},
        )

    async def _serper(self, client: httpx.AsyncClient, query: str) -> List[Dict[str, Any]]:
        response = await client.post(
            SERPER_URL,
            headers={"X-API-KEY": self.settings.serper_api_key or ""},
            json={"q": query, "num": 5},
        )
        if not response.is_success:
            raise SearchError(f"Serper API error ({response.status_code}): {response.text[:200]}")
        data = response.json()
        if not isinstance(data, dict) or "organic" not in data:
            raise SearchError("Invalid response from Serper API")
        return [
            {"title": r.get("title"), "snippet": r.get("snippet"), "url": r.get("link")}
            for r in data.get("organic") or []
        ]

    async def _brave(self, client: httpx.AsyncClient, query: str) -> List[Dict[str, Any]]:
        response = await client.get(
            BRAVE_URL,
            params={"q": query, "count": 5},
            headers={"Accept": "application/json", "X-Subscription-Token": self.settings.brave_api_key or ""},
        )
        if not response.is_success:
            raise SearchError(f"Brave API error ({response.status_code}): {response.text[:200]}")
        data = response.json()
        if not isinstance(data, dict) or "web" not in data:
            raise SearchError("Invalid response from Brave API")
        return [
            {"title": r.get("title"), "snippet": r.get("description"), "url": r.get("url")}
            for r in (data.get("web") or {}).get("results") or []
        ]


__all__ = ["SearchAgent"]
