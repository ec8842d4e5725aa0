from __future__ import annotations

import json
import re
from typing import List, Optional

from agentrelay.service.agents.base import AgentContext, AgentInput, AgentResult, WorkerAgent
from agentrelay.service.llm import LLMService

SUMMARY_COST = 0.25
MAX_INSIGHTS = 5

_BULLET = re.compile(r"^\s*[•\-*]\s*(.+)$", re.MULTILINE)
_NUMBERED = re.compile(r"^\s*\d+\.\s*(.+)$", re.MULTILINE)

_ANALYST_PROMPT = """You are an expert data analyst.
- Identify patterns, trends and insights in the data
- Write clear, actionable summaries
- Suggest next steps where relevant

Be concise and structured."""


def extract_insights(text: str) -> List[str]:
    """Bulleted or numbered lines from ``text``, else its first few long sentences."""
    insights = [m.strip() for m in _BULLET.findall(text)]
    insights.extend(m.strip() for m in _NUMBERED.findall(text))
    if not insights:
        sentences = [s.strip() for s in re.split(r"[.!?]+", text) if len(s.strip()) > 20]
        insights = sentences[:3]
    return insights[:MAX_INSIGHTS]


class DataAgent(WorkerAgent):
    default_name = "data_agent"
    description = "analysis and summaries"

    def __init__(self, llm: Optional[LLMService] = None, *, name: Optional[str] = None) -> None:
        super().__init__(name)
        self.llm = llm

    async def handle(self, context: AgentContext, agent_input: AgentInput) -> AgentResult:
        if self.llm is None or not self.llm.available:
            context.log("data_agent_basic_summary")
            return AgentResult(
                ok=True,
                message="Generated basic summary (no LLM configured)",
                payload={"summary": f"Summary of: {agent_input.message}"},
                next=self.report_back(context),
                cost=SUMMARY_COST,
            )

        has_data = bool(agent_input.payload)
        prompt = agent_input.message
        if has_data:
            prompt += "\n\nData provided:\n" + json.dumps(agent_input.payload, indent=2, default=str)
        response = await self.llm.chat(
            [
                {"role": "system", "content": _ANALYST_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=0.5,
            max_tokens=1500,
        )
        context.log("data_agent_analysis", summary_length=len(response.content), cost=response.cost)
        return AgentResult(
            ok=True,
            message="Generated analysis",
            payload={
                "summary": response.content,
                "hasSourceData": has_data,
                "insights": extract_insights(response.content),
            },
            next=self.report_back(context),
            cost=response.cost,
            metadata={"model": response.model, "usage": response.usage},
        )


__all__ = ["DataAgent", "extract_insights"]
