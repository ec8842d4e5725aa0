"""Built-in agents: orchestrator routing, database, HTTP, search and analysis."""

from __future__ import annotations

import json
from types import SimpleNamespace

import httpx
import psycopg
import pytest

from agentrelay.config import Settings
from agentrelay.logging import get_logger
from agentrelay.service.agents.api_agent import CALL_COST, ApiAgent
from agentrelay.service.agents.base import AgentContext, AgentInput
from agentrelay.service.agents.data_agent import DataAgent, extract_insights
from agentrelay.service.agents.db_agent import QUERY_COST, SAMPLE_ROWS, DatabaseAgent, extract_sql
from agentrelay.service.agents.orchestrator import KEYWORD_COST, RoutingOrchestrator, keyword_route
from agentrelay.service.agents.search_agent import SAMPLE_COST, SEARCH_COST, SearchAgent
from agentrelay.service.database import QueryResult
from agentrelay.service.errors import GuardrailViolationError
from agentrelay.service.guardrails import HttpGuardrail, SqlGuardrail
from agentrelay.service.llm import LLMResponse
from agentrelay.service.workflow_config import load_workflow

WORKFLOW = load_workflow(
    {
        "agents": [
            {"name": "orchestrator", "type": "orchestrator"},
            {
                "name": "db_agent",
                "type": "worker",
                "policy": {
                    "guardrails": {
                        "allowedOperations": ["SELECT"],
                        "allowedTables": ["users"],
                        "requireWhere": True,
                    },
                    "memoryPolicy": {"writeTo": "db_results"},
                },
            },
            {
                "name": "api_agent",
                "type": "worker",
                "policy": {
                    "guardrails": {
                        "allowedDomains": ["api.example.com", "redirect.example.com"],
                        "allowedMethods": ["GET", "POST"],
                        "blockPrivateIPs": True,
                    }
                },
            },
            {"name": "search_agent", "type": "worker"},
            {"name": "data_agent", "type": "worker"},
        ],
        "routes": {
            "orchestrator": {"canCall": ["db_agent", "api_agent", "search_agent", "data_agent"]},
            "db_agent": {"canCall": ["orchestrator"]},
            "api_agent": {"canCall": ["orchestrator"]},
            "search_agent": {"canCall": ["orchestrator"]},
        },
    }
)

PUBLIC_DNS = {
    "api.example.com": ["93.184.216.34"],
    "redirect.example.com": ["93.184.216.35"],
}


def _context(agent_name, *, memory=None, evaluator=None, settings=None):
    return AgentContext(
        task_id="t-1",
        workflow=WORKFLOW,
        agent=WORKFLOW.agent(agent_name),
        memory=dict(memory or {}),
        settings=settings or Settings(test_mode=True),
        logger=get_logger("tests").bind(agent=agent_name),
        evaluator=evaluator,
    )


class FakeLLM:
    """Stands in for LLMService: canned replies, records prompts."""

    def __init__(self, *replies, available=True, error=None):
        self.replies = list(replies)
        self.available = available
        self.error = error
        self.prompts = []

    async def chat(self, messages, **kwargs):
        self.prompts.append(messages)
        if self.error is not None:
            raise self.error
        content = self.replies.pop(0) if self.replies else ""
        return LLMResponse(content=content, usage={"prompt_tokens": 10}, cost=0.002, model="fake-model")


class FakeDatabase:
    def __init__(self, rows=None, error=None):
        self.rows = rows or []
        self.error = error
        self.queries = []

    async def query(self, sql):
        self.queries.append(sql)
        if self.error is not None:
            raise self.error
        return QueryResult(rows=self.rows, row_count=len(self.rows))

    def close(self):
        pass


class TestOrchestrator:
    def test_keyword_route(self):
        routes = ["db_agent", "api_agent", "search_agent", "data_agent"]
        assert keyword_route("Query the users table", routes) == "db_agent"
        assert keyword_route("search for python news", routes) == "search_agent"
        assert keyword_route("fetch the GitHub API", routes) == "api_agent"
        assert keyword_route("something else entirely", routes) == "data_agent"
        assert keyword_route("query the db", ["api_agent"]) == "api_agent"
        assert keyword_route("anything", []) is None

    @pytest.mark.asyncio
    async def test_keyword_routing_without_llm(self):
        result = await RoutingOrchestrator().handle(_context("orchestrator"), AgentInput("Query the users table"))
        assert result.ok
        assert result.next == "db_agent"
        assert result.cost == KEYWORD_COST

    @pytest.mark.asyncio
    async def test_completed_step_ends_run_without_llm(self):
        message = "Previous step completed: Query executed. Original task: Query the users table"
        result = await RoutingOrchestrator().handle(_context("orchestrator"), AgentInput(message, {"rows": []}))
        assert result.ok
        assert result.next is None
        assert result.payload == {"rows": []}

    @pytest.mark.asyncio
    async def test_llm_choice(self):
        llm = FakeLLM("search_agent")
        result = await RoutingOrchestrator(llm).handle(_context("orchestrator"), AgentInput("latest news"))
        assert result.next == "search_agent"
        assert result.cost == 0.002
        assert result.metadata["model"] == "fake-model"
        assert "search_agent" in llm.prompts[0][0]["content"]

    @pytest.mark.asyncio
    async def test_llm_done(self):
        result = await RoutingOrchestrator(FakeLLM("DONE")).handle(_context("orchestrator"), AgentInput("x"))
        assert result.next is None

    @pytest.mark.asyncio
    async def test_unknown_llm_choice_falls_back_to_keywords(self):
        result = await RoutingOrchestrator(FakeLLM("shell_agent")).handle(
            _context("orchestrator"), AgentInput("query the database")
        )
        assert result.next == "db_agent"
        assert result.cost == pytest.approx(KEYWORD_COST + 0.002)

    @pytest.mark.asyncio
    async def test_llm_failure_falls_back_to_keywords(self):
        llm = FakeLLM(error=RuntimeError("rate limited"))
        result = await RoutingOrchestrator(llm).handle(_context("orchestrator"), AgentInput("search cats"))
        assert result.next == "search_agent"


class TestDatabaseAgent:
    def test_extract_sql(self):
        assert extract_sql("```sql\nSELECT 1\n```") == "SELECT 1"
        assert extract_sql("SELECT * FROM users WHERE id = 1") == "SELECT * FROM users WHERE id = 1"
        assert extract_sql("show me the users") is None

    @pytest.mark.asyncio
    async def test_violation_never_reaches_database(self):
        database = FakeDatabase(rows=[{"id": 1}])
        agent = DatabaseAgent(database=database)
        context = _context("db_agent", evaluator=SqlGuardrail())
        with pytest.raises(GuardrailViolationError) as excinfo:
            await agent.handle(context, AgentInput("DELETE FROM users"))
        assert database.queries == []
        assert "WHERE clause required" in excinfo.value.violation.reason

    @pytest.mark.asyncio
    async def test_runs_allowed_query(self):
        database = FakeDatabase(rows=[{"id": 7, "name": "Ada"}])
        agent = DatabaseAgent(database=database)
        context = _context("db_agent", evaluator=SqlGuardrail())
        result = await agent.handle(context, AgentInput("SELECT id, name FROM users WHERE id = 7"))
        assert result.ok
        assert result.payload["rows"] == [{"id": 7, "name": "Ada"}]
        assert result.payload["rowCount"] == 1
        assert result.next == "orchestrator"
        assert result.cost == QUERY_COST
        assert database.queries == ["SELECT id, name FROM users WHERE id = 7"]

    @pytest.mark.asyncio
    async def test_sample_rows_without_database(self):
        result = await DatabaseAgent().handle(
            _context("db_agent", evaluator=SqlGuardrail()), AgentInput("SELECT * FROM users WHERE id > 0")
        )
        assert result.ok
        assert result.payload["rowCount"] == len(SAMPLE_ROWS)

    @pytest.mark.asyncio
    async def test_no_sql_and_no_llm(self):
        result = await DatabaseAgent().handle(_context("db_agent"), AgentInput("how many users signed up?"))
        assert not result.ok
        assert result.payload["error"] == "NO_SQL_AND_NO_LLM"

    @pytest.mark.asyncio
    async def test_generated_sql_is_checked(self):
        llm = FakeLLM("```sql\nSELECT * FROM users WHERE active = true LIMIT 10\n```")
        database = FakeDatabase(rows=[{"id": 1}])
        agent = DatabaseAgent(llm=llm, database=database)
        result = await agent.handle(
            _context("db_agent", evaluator=SqlGuardrail()), AgentInput("list active users")
        )
        assert result.ok
        assert database.queries == ["SELECT * FROM users WHERE active = true LIMIT 10"]
        assert result.cost == pytest.approx(QUERY_COST + 0.002)
        assert "Available tables: users" in llm.prompts[0][0]["content"]

    @pytest.mark.asyncio
    async def test_database_error_is_a_failure(self):
        database = FakeDatabase(error=psycopg.OperationalError("connection refused"))
        result = await DatabaseAgent(database=database).handle(
            _context("db_agent", evaluator=SqlGuardrail()), AgentInput("SELECT * FROM users WHERE id = 1")
        )
        assert not result.ok
        assert "connection refused" in result.message


class TestApiAgent:
    @staticmethod
    def _agent(handler, **settings):
        return ApiAgent(Settings(test_mode=True, **settings), transport=httpx.MockTransport(handler))

    @staticmethod
    def _context(memory=None):
        return _context(
            "api_agent",
            memory=memory,
            evaluator=HttpGuardrail(resolver=lambda host: PUBLIC_DNS.get(host, [])),
        )

    @pytest.mark.asyncio
    async def test_get_json(self):
        seen = []

        def handler(request):
            seen.append((request.method, str(request.url)))
            return httpx.Response(200, json={"login": "octocat"})

        result = await self._agent(handler).handle(
            self._context({"url": "https://api.example.com/users/octocat"}), AgentInput("fetch user")
        )
        assert result.ok
        assert result.payload["status"] == 200
        assert result.payload["data"] == {"login": "octocat"}
        assert result.cost == CALL_COST
        assert result.next == "orchestrator"
        assert seen == [("GET", "https://api.example.com/users/octocat")]

    @pytest.mark.asyncio
    async def test_payload_request_with_json_body(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(201, json={"id": 1})

        result = await self._agent(handler).handle(
            self._context(),
            AgentInput("create", {"url": "https://api.example.com/items", "method": "post", "body": {"a": 1}}),
        )
        assert result.ok
        assert bodies == [{"a": 1}]

    @pytest.mark.asyncio
    async def test_missing_url(self):
        result = await self._agent(lambda r: httpx.Response(200)).handle(self._context(), AgentInput("call it"))
        assert not result.ok
        assert result.payload["error"] == "NO_URL"

    @pytest.mark.asyncio
    async def test_blocked_before_any_request(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200)

        with pytest.raises(GuardrailViolationError) as excinfo:
            await self._agent(handler).handle(
                self._context({"url": "http://169.254.169.254/latest/meta-data/"}), AgentInput("x")
            )
        assert calls == []
        assert excinfo.value.violation.code == "domain_not_allowed"

    @pytest.mark.asyncio
    async def test_redirect_to_private_address_is_blocked(self):
        calls = []

        def handler(request):
            calls.append(str(request.url))
            return httpx.Response(302, headers={"location": "http://169.254.169.254/latest/meta-data/"})

        agent = self._agent(handler)
        context = _context(
            "api_agent",
            memory={"url": "https://api.example.com/start"},
            evaluator=HttpGuardrail(resolver=lambda host: PUBLIC_DNS.get(host, [])),
        )
        with pytest.raises(GuardrailViolationError):
            await agent.handle(context, AgentInput("x"))
        assert calls == ["https://api.example.com/start"]

    @pytest.mark.asyncio
    async def test_allowed_redirect_is_followed(self):
        def handler(request):
            if request.url.host == "api.example.com":
                return httpx.Response(301, headers={"location": "https://redirect.example.com/final"})
            return httpx.Response(200, text="landed", headers={"content-type": "text/plain"})

        result = await self._agent(handler).handle(
            self._context({"url": "https://api.example.com/old"}), AgentInput("x")
        )
        assert result.ok
        assert result.payload["url"] == "https://redirect.example.com/final"
        assert result.payload["data"] == "landed"

    @pytest.mark.asyncio
    async def test_too_many_redirects(self):
        def handler(request):
            return httpx.Response(302, headers={"location": "https://api.example.com/loop"})

        result = await self._agent(handler, http_max_redirects=2).handle(
            self._context({"url": "https://api.example.com/loop"}), AgentInput("x")
        )
        assert not result.ok
        assert "Too many redirects" in result.message

    @pytest.mark.asyncio
    async def test_error_status_is_a_failure(self):
        result = await self._agent(lambda r: httpx.Response(503)).handle(
            self._context({"url": "https://api.example.com/down"}), AgentInput("x")
        )
        assert not result.ok
        assert result.payload["status"] == 503
        assert result.next is None


class TestSearchAgent:
    @pytest.mark.asyncio
    async def test_sample_results_without_keys(self):
        result = await SearchAgent(Settings(test_mode=True)).handle(
            _context("search_agent"), AgentInput("search python asyncio")
        )
        assert result.ok
        assert result.payload["query"] == "python asyncio"
        assert result.cost == SAMPLE_COST

    @pytest.mark.asyncio
    async def test_serper(self):
        captured = {}

        def handler(request):
            captured["url"] = str(request.url)
            captured["key"] = request.headers.get("x-api-key")
            captured["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={"organic": [{"title": "Asyncio", "snippet": "docs", "link": "https://docs.python.org"}]},
            )

        agent = SearchAgent(
            Settings(test_mode=True, serper_api_key="k-123"), transport=httpx.MockTransport(handler)
        )
        result = await agent.handle(_context("search_agent"), AgentInput("find asyncio docs"))
        assert result.ok
        assert result.cost == SEARCH_COST
        assert captured["key"] == "k-123"
        assert captured["body"]["q"] == "asyncio docs"
        assert result.payload["results"][0]["url"] == "https://docs.python.org"

    @pytest.mark.asyncio
    async def test_empty_query(self):
        result = await SearchAgent(Settings(test_mode=True)).handle(_context("search_agent"), AgentInput("search "))
        assert not result.ok
        assert result.payload["error"] == "NO_QUERY"


class TestDataAgent:
    def test_extract_insights(self):
        text = "Overview\n- Revenue grew 10%\n- Churn fell\n1. Hire more staff"
        assert extract_insights(text) == ["Revenue grew 10%", "Churn fell", "Hire more staff"]

    @pytest.mark.asyncio
    async def test_basic_summary_without_llm(self):
        result = await DataAgent().handle(_context("data_agent"), AgentInput("summarise sales"))
        assert result.ok
        assert result.payload["summary"] == "Summary of: summarise sales"
        # data_agent has no route back
        assert result.next is None

    @pytest.mark.asyncio
    async def test_llm_analysis_includes_data(self):
        llm = FakeLLM("- Sales doubled\n- Costs flat")
        result = await DataAgent(llm).handle(
            _context("data_agent"), AgentInput("analyse", {"rows": [{"sales": 2}]})
        )
        assert result.payload["insights"] == ["Sales doubled", "Costs flat"]
        assert result.payload["hasSourceData"] is True
        assert '"sales": 2' in llm.prompts[0][1]["content"]


@pytest.mark.asyncio
async def test_unconfigured_llm_uses_keyword_routing():
    llm = SimpleNamespace(available=False)
    result = await RoutingOrchestrator(llm).handle(_context("orchestrator"), AgentInput("analyze revenue"))
    assert result.next == "data_agent"
    assert result.cost == KEYWORD_COST
