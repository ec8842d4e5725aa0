from __future__ import annotations

import json
import re
from typing import List

from agentrelay.service.workflow_config import AgentKind, WorkflowConfig

_NODE_ID = re.compile(r"[^A-Za-z0-9_]")


def _node(name: str) -> str:
    return _NODE_ID.sub("_", name)


def workflow_diagram(config: WorkflowConfig, *, fenced: bool = True) -> str:
    """Mermaid flowchart of the agents and their permitted routes."""
    lines: List[str] = ["graph TD"]
    entry = config.entrypoint
    lines.append(f"  Start((Start)) --> {_node(entry)}")
    for agent in config.agents:
        css = "orchestrator" if agent.kind is AgentKind.ORCHESTRATOR else "worker"
        lines.append(f"  {_node(agent.name)}[{agent.name}]:::{css}")
    for agent in config.agents:
        targets = config.can_call(agent.name)
        for target in targets:
            lines.append(f"  {_node(agent.name)} --> {_node(target)}")
        if agent.policy.fallback:
            lines.append(f"  {_node(agent.name)} -. fallback .-> {_node(agent.policy.fallback)}")
        if not targets and agent.kind is AgentKind.WORKER:
            lines.append(f"  {_node(agent.name)} --> End((End))")
    lines.append("")
    lines.append("  classDef orchestrator fill:#4f46e5,stroke:#333,stroke-width:2px,color:#fff")
    lines.append("  classDef worker fill:#10b981,stroke:#333,stroke-width:2px,color:#fff")
    body = "\n".join(lines)
    return f"```mermaid\n{body}\n```" if fenced else body


def _fmt_limit(value, unit: str = "") -> str:
    return "none" if value is None else f"{value:g}{unit}"


def workflow_docs(config: WorkflowConfig) -> str:
    """Markdown reference for a workflow: diagram, limits, agents, seeded memory."""
    lines: List[str] = [f"# {config.name or 'Workflow'}", "", workflow_diagram(config), ""]

    limits = config.limits
    lines += [
        "## Limits",
        "",
        f"- **Max Duration:** {_fmt_limit(limits.max_duration_ms, 'ms')}",
        f"- **Max Cost:** {_fmt_limit(limits.max_cost)}",
        f"- **Default Max Loops:** {limits.default_max_loops}",
        "",
        "## Agents",
        "",
    ]

    for agent in config.agents:
        policy = agent.policy
        lines.append(f"### {agent.name}")
        lines.append("")
        lines.append(f"**Type:** {agent.kind.value}")
        lines.append(f"**Max Loops:** {config.max_loops_for(agent.name)}")
        lines.append("")
        lines.append("**Policy:**")
        retries = policy.retries
        lines.append(
            f"- Retries: {retries.count} (backoff: {retries.backoff_ms:g}ms, {retries.strategy.value})"
        )
        if policy.fallback:
            lines.append(f"- Fallback: {policy.fallback}")
        lines.append(f"- Read From: {', '.join(('global',) + policy.memory.read_from)}")
        lines.append(f"- Write To: {policy.memory.write_to or 'none'}")

        guardrails = policy.guardrails.to_dict()
        if guardrails:
            lines.append("")
            lines.append("**Guardrails:**")
            for key, value in guardrails.items():
                if isinstance(value, list):
                    value = ", ".join(value)
                lines.append(f"- {key}: {value}")

        routes = config.can_call(agent.name)
        if routes:
            lines.append("")
            lines.append(f"**Can Call:** {', '.join(routes)}")
        lines.append("")

    if config.memory:
        lines.append("## Pre-seeded Memory")
        lines.append("")
        for namespace, values in config.memory.items():
            lines.append(f"### {namespace}")
            lines.append("```json")
            lines.append(json.dumps(dict(values), indent=2, default=str))
            lines.append("```")
            lines.append("")

    return "\n".join(lines)


__all__ = ["workflow_diagram", "workflow_docs"]
