from __future__ import annotations

import re
from typing import Optional

import psycopg

from agentrelay.service.agents.base import AgentContext, AgentInput, AgentResult, WorkerAgent
from agentrelay.service.database import DatabaseClient
from agentrelay.service.llm import LLMService

QUERY_COST = 0.5
MAX_MESSAGE_LENGTH = 50_000

SAMPLE_ROWS = (
    {"id": 1, "name": "Alice Johnson", "email": "alice@example.com", "created_at": "2024-01-15"},
    {"id": 2, "name": "Bob Smith", "email": "bob@example.com", "created_at": "2024-02-20"},
    {"id": 3, "name": "Charlie Davis", "email": "charlie@example.com", "created_at": "2024-03-10"},
)

_CODE_BLOCK = re.compile(r"```(?:sql)?\n([^`]+)```")
_LEADING_VERBS = ("SELECT", "INSERT", "UPDATE", "DELETE")
_FENCE = re.compile(r"```(?:sql)?")

_SQL_PROMPT = """You are a SQL query generator. Generate a safe SELECT query for the user's request.
{tables}
Always include a LIMIT clause (max 100 rows).
Return ONLY the SQL query, no explanation."""


def extract_sql(message: str) -> Optional[str]:
    """SQL from a fenced block, or the message itself when it starts with a DML verb."""
    if len(message) > MAX_MESSAGE_LENGTH:
        return None
    match = _CODE_BLOCK.search(message)
    if match:
        return match.group(1).strip()
    stripped = message.lstrip()
    head = stripped.upper()
    for verb in _LEADING_VERBS:
        if head.startswith(verb + " ") or head.startswith(verb + "\n"):
            return stripped
    return None


class DatabaseAgent(WorkerAgent):
    """Runs explicit or generated SQL after the SQL guardrail approves it."""

    default_name = "db_agent"
    guardrail_kind = "sql"
    description = "SQL queries against Postgres"

    def __init__(
        self,
        *,
        llm: Optional[LLMService] = None,
        database: Optional[DatabaseClient] = None,
        name: Optional[str] = None,
    ) -> None:
        super().__init__(name)
        self.llm = llm
        self.database = database

    async def handle(self, context: AgentContext, agent_input: AgentInput) -> AgentResult:
        sql = extract_sql(agent_input.message)
        llm_cost = 0.0
        if not sql:
            if self.llm is None or not self.llm.available:
                return AgentResult.failure(
                    "No SQL query found and no LLM configured to generate one",
                    payload={
                        "error": "NO_SQL_AND_NO_LLM",
                        "suggestion": "Provide explicit SQL or configure OPENAI_API_KEY",
                    },
                )
            tables = context.guardrails.allowed_tables
            table_hint = f"Available tables: {', '.join(tables)}" if tables else ""
            response = await self.llm.chat(
                [
                    {"role": "system", "content": _SQL_PROMPT.format(tables=table_hint)},
                    {"role": "user", "content": agent_input.message},
                ],
                temperature=0,
                max_tokens=150,
            )
            sql = _FENCE.sub("", response.content).strip()
            llm_cost = response.cost
            context.log("db_agent_sql_generated", sql=sql, cost=llm_cost)

        context.check_guardrail(sql)

        if self.database is None:
            context.log("db_agent_sample_rows")
            rows = [dict(r) for r in SAMPLE_ROWS]
            return AgentResult(
                ok=True,
                message=f"Sample query returned {len(rows)} rows (no database configured)",
                payload={"rows": rows, "rowCount": len(rows), "sql": sql},
                next=self.report_back(context),
                cost=QUERY_COST + llm_cost,
            )

        try:
            result = await self.database.query(sql)
        except psycopg.Error as exc:
            context.logger.warning("db_agent_query_failed", error=str(exc))
            return AgentResult.failure(
                f"Database error: {exc}", payload={"error": str(exc)}, cost=llm_cost
            )
        context.log("db_agent_query_executed", row_count=result.row_count)
        return AgentResult(
            ok=True,
            message=f"Query executed successfully: {result.row_count} rows",
            payload={"rows": result.rows, "rowCount": result.row_count, "sql": sql},
            next=self.report_back(context),
            cost=QUERY_COST + llm_cost,
        )


__all__ = ["DatabaseAgent", "extract_sql", "SAMPLE_ROWS"]
