from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Tuple

import httpx

from agentrelay.config import Settings
from agentrelay.service.agents.base import AgentContext, AgentInput, AgentResult, WorkerAgent
from agentrelay.service.guardrails import HttpAction

CALL_COST = 0.01
_BODY_METHODS = {"POST", "PUT", "PATCH"}


class TooManyRedirects(Exception):
    pass


class ApiAgent(WorkerAgent):
    """Calls an HTTP endpoint named in the payload (``url``, ``method``, ``headers``, ``body``).

    Redirects are followed by hand so the HTTP guardrail sees every hop
    before it is requested.
    """

    default_name = "api_agent"
    guardrail_kind = "http"
    description = "outbound HTTP calls"

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

    @staticmethod
    def _request_spec(payload: Optional[Mapping[str, Any]], memory: Mapping[str, Any]) -> Dict[str, Any]:
        source: Mapping[str, Any] = payload if payload and payload.get("url") else memory
        return {
            "url": source.get("url"),
            "method": str(source.get("method") or "GET").upper(),
            "headers": dict(source.get("headers") or {}),
            "body": source.get("body"),
        }

    async def handle(self, context: AgentContext, agent_input: AgentInput) -> AgentResult:
        spec = self._request_spec(agent_input.payload, context.memory)
        url = spec["url"]
        if not url or not isinstance(url, str):
            return AgentResult.failure(
                "No URL provided; API calls need a url in the payload or memory",
                payload={"error": "NO_URL", "suggestion": "Pass memory={'url': ..., 'method': 'GET'}"},
            )
        method = spec["method"]
        context.check_guardrail(HttpAction(url=url, method=method))
        context.log("api_agent_request", url=url, method=method)

        timeout = httpx.Timeout(
            self.settings.http_timeout_seconds, connect=self.settings.http_connect_timeout_seconds
        )
        try:
            async with httpx.AsyncClient(
                timeout=timeout, follow_redirects=False, transport=self.transport
            ) as client:
                response, final_url = await self._send(
                    client, context, method, url, spec["headers"], spec["body"]
                )
        except httpx.TimeoutException:
            return AgentResult.failure(
                f"API request timeout ({self.settings.http_timeout_seconds:g}s)", cost=CALL_COST
            )
        except TooManyRedirects as exc:
            return AgentResult.failure(str(exc), cost=CALL_COST)
        except httpx.HTTPError as exc:
            return AgentResult.failure(f"API error: {exc}", payload={"error": str(exc)}, cost=CALL_COST)

        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            try:
                data: Any = response.json()
            except ValueError:
                data = response.text
        else:
            data = response.text

        ok = response.is_success
        context.log("api_agent_completed", status=response.status_code, url=final_url)
        return AgentResult(
            ok=ok,
            message=f"API call {'succeeded' if ok else 'failed'}: {response.status_code} {response.reason_phrase}",
            payload={
                "status": response.status_code,
                "statusText": response.reason_phrase,
                "headers": dict(response.headers),
                "data": data,
                "url": final_url,
            },
            next=self.report_back(context) if ok else None,
            cost=CALL_COST,
            metadata={"provider": "http"},
        )

    async def _send(
        self,
        client: httpx.AsyncClient,
        context: AgentContext,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Any,
    ) -> Tuple[httpx.Response, str]:
        for _ in range(self.settings.http_max_redirects + 1):
            kwargs: Dict[str, Any] = {"headers": headers}
            if body is not None and method in _BODY_METHODS:
                if isinstance(body, (str, bytes)):
                    kwargs["content"] = body
                else:
                    kwargs["json"] = body
            response = await client.request(method, url, **kwargs)
            location = response.headers.get("location")
            if not response.is_redirect or not location:
                return response, url

            next_url = str(response.url.join(location))
            if response.status_code == 303 or (
                response.status_code in (301, 302) and method not in {"GET", "HEAD"}
            ):
                method, body = "GET", None
            context.log("api_agent_redirect", status=response.status_code, location=next_url)
            # every hop is checked before it is requested
            context.check_guardrail(HttpAction(url=next_url, method=method))
            await response.aclose()
            url = next_url
        raise TooManyRedirects(f"Too many redirects (max {self.settings.http_max_redirects})")


__all__ = ["ApiAgent", "CALL_COST"]
