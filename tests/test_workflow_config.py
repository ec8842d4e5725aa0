"""Workflow document loading: schema pass, semantic pass, and derived views."""

from __future__ import annotations

import copy
import json

import pytest

from agentrelay.service.errors import ConfigError
from agentrelay.service.workflow_config import (
    DEFAULT_MAX_LOOPS,
    AgentKind,
    BackoffStrategy,
    RetryPolicy,
    load_workflow,
    load_workflow_file,
)


def _doc(**overrides):
    doc = {
        "name": "demo",
        "agents": [
            {"name": "orchestrator", "type": "orchestrator", "maxLoops": 5},
            {
                "name": "db_agent",
                "type": "worker",
                "policy": {
                    "retries": {"count": 2, "backoffMs": 100},
                    "guardrails": {"allowedOperations": ["SELECT"], "requireWhere": True},
                    "memoryPolicy": {"writeTo": "db_results"},
                },
            },
            {
                "name": "data_agent",
                "kind": "worker",
                "policy": {"memoryPolicy": {"readFrom": ["db_results"]}},
            },
        ],
        "routes": {
            "orchestrator": {"canCall": ["db_agent", "data_agent"]},
            "db_agent": {"canCall": ["orchestrator"]},
        },
        "limits": {"defaultMaxLoops": 2, "maxDurationMs": 30000, "maxCost": 1.5},
        "memory": {"global": {"region": "eu"}},
    }
    doc.update(overrides)
    return doc


class TestLoadWorkflow:
    def test_builds_typed_config(self):
        config = load_workflow(_doc())
        assert config.name == "demo"
        assert config.agent_names == ["orchestrator", "db_agent", "data_agent"]
        assert config.entrypoint == "orchestrator"
        assert config.agent("data_agent").kind is AgentKind.WORKER
        db = config.agent("db_agent")
        assert db.policy.retries.count == 2
        assert db.policy.retries.max_attempts == 3
        assert db.policy.guardrails.allowed_operations == ("SELECT",)
        assert db.policy.guardrails.require_where is True
        assert db.policy.memory.write_to == "db_results"
        assert config.limits.max_cost == 1.5
        assert config.limits.max_duration_ms == 30000

    def test_routes_default_to_empty(self):
        config = load_workflow(_doc())
        assert config.can_call("orchestrator") == ("db_agent", "data_agent")
        assert config.can_call("data_agent") == ()

    def test_max_loops_falls_back_to_default(self):
        config = load_workflow(_doc())
        assert config.max_loops_for("orchestrator") == 5
        assert config.max_loops_for("db_agent") == 2

        doc = _doc()
        del doc["limits"]
        assert load_workflow(doc).max_loops_for("db_agent") == DEFAULT_MAX_LOOPS

    def test_input_document_is_not_mutated(self):
        doc = _doc()
        before = copy.deepcopy(doc)
        load_workflow(doc)
        load_workflow(doc)
        assert doc == before

    def test_to_dict_reloads_to_equal_config(self):
        config = load_workflow(_doc())
        again = load_workflow(config.to_dict())
        assert again.agent_names == config.agent_names
        assert again.routes == config.routes
        assert again.limits == config.limits

    def test_loading_a_config_returns_it(self):
        config = load_workflow(_doc())
        assert load_workflow(config) is config

    def test_null_ceilings_disable_limits(self):
        config = load_workflow(_doc(limits={"maxCost": None, "maxDurationMs": None}))
        assert config.limits.max_cost is None
        assert config.limits.max_duration_ms is None


class TestValidationErrors:
    def test_unknown_route_target_is_rejected(self):
        doc = _doc(routes={"orchestrator": {"canCall": ["ghost_agent"]}})
        with pytest.raises(ConfigError) as excinfo:
            load_workflow(doc)
        assert any("ghost_agent" in e for e in excinfo.value.errors)

    def test_all_problems_are_reported_together(self):
        doc = _doc(
            routes={
                "orchestrator": {"canCall": ["ghost_one"]},
                "phantom": {"canCall": ["ghost_two"]},
            }
        )
        with pytest.raises(ConfigError) as excinfo:
            load_workflow(doc)
        joined = " | ".join(excinfo.value.errors)
        assert "ghost_one" in joined
        assert "phantom" in joined
        assert "ghost_two" in joined
        assert excinfo.value.detail == {"errors": excinfo.value.errors}

    def test_schema_errors_carry_paths(self):
        doc = _doc()
        doc["agents"][1]["policy"]["retries"]["count"] = -1
        doc["limits"]["maxCost"] = "lots"
        with pytest.raises(ConfigError) as excinfo:
            load_workflow(doc)
        assert len(excinfo.value.errors) >= 2
        assert any("agents" in e and "count" in e for e in excinfo.value.errors)

    def test_retry_count_is_capped(self):
        doc = _doc()
        doc["agents"][1]["policy"]["retries"]["count"] = 11
        with pytest.raises(ConfigError):
            load_workflow(doc)

    def test_unknown_guardrail_field_is_rejected(self):
        doc = _doc()
        doc["agents"][1]["policy"]["guardrails"]["allowEverything"] = True
        with pytest.raises(ConfigError):
            load_workflow(doc)

    def test_duplicate_agent_names(self):
        doc = _doc()
        doc["agents"].append({"name": "db_agent", "type": "worker"})
        with pytest.raises(ConfigError) as excinfo:
            load_workflow(doc)
        assert any("duplicate" in e for e in excinfo.value.errors)

    def test_requires_an_orchestrator(self):
        doc = _doc(agents=[{"name": "solo", "type": "worker"}], routes={})
        with pytest.raises(ConfigError) as excinfo:
            load_workflow(doc)
        assert any("orchestrator" in e for e in excinfo.value.errors)

    def test_unknown_fallback(self):
        doc = _doc()
        doc["agents"][1]["policy"]["fallback"] = "nobody"
        with pytest.raises(ConfigError) as excinfo:
            load_workflow(doc)
        assert any("fallback" in e for e in excinfo.value.errors)

    def test_namespace_written_by_two_agents(self):
        doc = _doc()
        doc["agents"][2]["policy"]["memoryPolicy"]["writeTo"] = "db_results"
        with pytest.raises(ConfigError) as excinfo:
            load_workflow(doc)
        assert any("db_results" in e for e in excinfo.value.errors)

    def test_non_mapping_document(self):
        with pytest.raises(ConfigError):
            load_workflow(["not", "a", "mapping"])


class TestRetryPolicy:
    def test_fixed_delay(self):
        policy = RetryPolicy(count=3, backoff_ms=250)
        assert [policy.delay_ms(n) for n in (1, 2, 3)] == [250, 250, 250]

    def test_exponential_delay_quadruples(self):
        policy = RetryPolicy(count=3, backoff_ms=100, strategy=BackoffStrategy.EXPONENTIAL)
        assert [policy.delay_ms(n) for n in (1, 2, 3)] == [100, 400, 1600]


class TestLoadWorkflowFile:
    def test_yaml_file(self, tmp_path):
        path = tmp_path / "wf.yaml"
        path.write_text(
            "name: from-yaml\n"
            "agents:\n"
            "  - name: orchestrator\n"
            "    type: orchestrator\n",
            encoding="utf-8",
        )
        config = load_workflow_file(path)
        assert config.name == "from-yaml"
        assert config.agent_names == ["orchestrator"]

    def test_json_file(self, tmp_path):
        path = tmp_path / "wf.json"
        path.write_text(json.dumps(_doc()), encoding="utf-8")
        assert load_workflow_file(path).name == "demo"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_workflow_file(tmp_path / "nope.yaml")

    def test_unparseable_file(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("agents: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_workflow_file(path)

    def test_bundled_example_workflow_loads(self):
        from pathlib import Path

        root = Path(__file__).resolve().parent.parent
        config = load_workflow_file(root / "workflow.yaml")
        assert config.entrypoint == "orchestrator"
        assert "db_agent" in config.can_call("orchestrator")
