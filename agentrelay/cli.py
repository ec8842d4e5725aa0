"""Command-line entry point.

Usage:
    agentrelay run "Query the users table" --memory '{"url": "https://api.github.com"}'
    agentrelay replay <trace-id> --workflow fixed.yaml
    agentrelay traces --limit 10
    agentrelay diagram [--docs]

Settings come from the environment (and ``.env``). The global ``--workflow``
(before the subcommand) overrides WORKFLOW_PATH;
``replay --workflow`` names the substitute workflow for the replayed run.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import List, Optional

from agentrelay.config import Settings
from agentrelay.logging import get_logger
from agentrelay.service.errors import ServiceError
from agentrelay.service.runtime import Runtime
from agentrelay.service.trace import RunStatus
from agentrelay.service.visualize import workflow_diagram, workflow_docs
from agentrelay.service.workflow_config import load_workflow_file

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_STOPPED = 2


def _exit_code(status: RunStatus) -> int:
    if status is RunStatus.OK:
        return EXIT_OK
    if status is RunStatus.STOPPED:
        return EXIT_STOPPED
    return EXIT_ERROR


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentrelay",
        description="Run, inspect and replay agent workflows",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--workflow", help="Workflow YAML/JSON file (default: WORKFLOW_PATH)")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run a task")
    run.add_argument("task")
    run.add_argument("--memory", help="JSON object merged into the global namespace")

    replay = sub.add_parser("replay", help="Replay a recorded trace")
    replay.add_argument("trace_id")
    replay.add_argument(
        "--workflow",
        dest="new_workflow",
        help="Substitute workflow file (default: the trace's captured workflow)",
    )

    traces = sub.add_parser("traces", help="List recent traces")
    traces.add_argument("--limit", type=int, default=20)

    diagram = sub.add_parser("diagram", help="Print the workflow as a Mermaid diagram")
    diagram.add_argument("--docs", action="store_true", help="Print full Markdown documentation")
    return parser


def _settings(args: argparse.Namespace) -> Settings:
    settings = Settings.from_env()
    if args.workflow:
        settings = settings.model_copy(update={"workflow_path": args.workflow})
    return settings


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = _settings(args)

    try:
        if args.command == "diagram":
            config = load_workflow_file(settings.workflow_path)
            print(workflow_docs(config) if args.docs else workflow_diagram(config))
            return EXIT_OK

        runtime = Runtime(settings)
        try:
            if args.command == "run":
                memory = json.loads(args.memory) if args.memory else None
                if memory is not None and not isinstance(memory, dict):
                    print("Error: --memory must be a JSON object", file=sys.stderr)
                    return EXIT_ERROR
                result = asyncio.run(runtime.engine.run(args.task, memory))
                _print_json(result.to_dict())
                return _exit_code(result.status)

            if args.command == "replay":
                new_config = load_workflow_file(args.new_workflow) if args.new_workflow else None
                result = asyncio.run(runtime.replay.replay_by_id(args.trace_id, new_config))
                _print_json(result.to_dict())
                return _exit_code(result.status)

            if args.command == "traces":
                for trace in runtime.trace_store.list_traces(org_id=settings.org_id, limit=args.limit):
                    totals = trace.get("totals") or {}
                    print(
                        f"{trace['taskId']}  {trace.get('status', '?'):8}  "
                        f"cost={totals.get('cost', 0):.4f}  steps={len(trace.get('steps') or [])}  "
                        f"{trace.get('startedAt', '')}"
                    )
                return EXIT_OK
        finally:
            runtime.close()
    except json.JSONDecodeError as exc:
        print(f"Error: --memory is not valid JSON: {exc}", file=sys.stderr)
        return EXIT_ERROR
    except ServiceError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        problems = [p for p in exc.detail.get("errors", []) if p != exc.message]
        for problem in problems:
            print(f"  - {problem}", file=sys.stderr)
        return EXIT_ERROR
    return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
