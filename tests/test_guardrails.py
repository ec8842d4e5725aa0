"""SQL and HTTP guardrail evaluators."""

from __future__ import annotations

import ipaddress

import pytest

from agentrelay.service.errors import GuardrailViolationError
from agentrelay.service.guardrails import (
    HttpAction,
    HttpGuardrail,
    SqlGuardrail,
    is_private_address,
    normalize_text,
)
from agentrelay.service.workflow_config import Guardrails

SELECT_ONLY = Guardrails(
    allowed_operations=("SELECT",),
    allowed_tables=("users", "orders"),
    require_where=True,
)


class TestSqlGuardrail:
    def setup_method(self):
        self.guard = SqlGuardrail()

    def test_allowed_select_passes(self):
        assert self.guard.evaluate("SELECT id, name FROM users WHERE id = 5 LIMIT 10", SELECT_ONLY) is None

    def test_delete_without_where_cites_operation_and_where(self):
        violation = self.guard.evaluate("DELETE FROM users", SELECT_ONLY)
        assert violation is not None
        assert violation.code == "operation_not_allowed"
        assert "Operation not allowed: DELETE" in violation.reason
        assert "WHERE clause required" in violation.reason
        assert len(violation.findings) == 2

    def test_evaluation_is_deterministic(self):
        first = self.guard.evaluate("DELETE FROM users", SELECT_ONLY)
        second = self.guard.evaluate("DELETE FROM users", SELECT_ONLY)
        assert first == second

    def test_where_required_only_for_update_and_delete(self):
        guardrails = Guardrails(require_where=True)
        assert self.guard.evaluate("SELECT * FROM users", guardrails) is None
        violation = self.guard.evaluate("UPDATE users SET active = false", guardrails)
        assert violation.code == "where_required"
        assert self.guard.evaluate("UPDATE users SET active = false WHERE id = 2", guardrails) is None

    def test_table_not_allowed(self):
        violation = self.guard.evaluate("SELECT * FROM secrets WHERE id = 1", SELECT_ONLY)
        assert violation.code == "table_not_allowed"
        assert violation.value == "SECRETS"

    def test_qualified_and_joined_tables(self):
        assert self.guard.evaluate(
            "SELECT * FROM public.users u JOIN orders o ON o.user_id = u.id WHERE u.id = 1",
            SELECT_ONLY,
        ) is None
        violation = self.guard.evaluate(
            "SELECT * FROM users JOIN payments ON payments.user_id = users.id WHERE users.id = 1",
            SELECT_ONLY,
        )
        assert violation.code == "table_not_allowed"

    @pytest.mark.parametrize(
        "sql",
        [
            "SELECT * FROM users, secrets WHERE users.id = 1",
            "SELECT * FROM users u, orders o, secrets s WHERE u.id = 1",
            "SELECT * FROM users AS u, secrets WHERE u.id = 1",
        ],
    )
    def test_every_table_in_a_from_list_is_checked(self, sql):
        violation = self.guard.evaluate(sql, SELECT_ONLY)
        assert violation.code == "table_not_allowed"
        assert violation.value == "SECRETS"

    @pytest.mark.parametrize(
        "sql",
        [
            "SELECT * FROM users u, orders o WHERE o.user_id = u.id",
            "SELECT id FROM users WHERE id IN (1, 2, 3)",
            "SELECT * FROM orders WHERE id = 1 FOR UPDATE",
        ],
    )
    def test_lists_of_allowed_tables_and_values_pass(self, sql):
        assert self.guard.evaluate(sql, SELECT_ONLY) is None
        assert violation.code == "table_not_allowed"

    @pytest.mark.parametrize(
        "sql",
        [
            "SELECT * FROM users WHERE id = 1 -- sneaky",
            "SELECT * FROM users /* hidden */ WHERE id = 1",
            "SELECT LOAD_FILE('/etc/passwd') FROM users WHERE id = 1",
        ],
    )
    def test_blocked_keywords(self, sql):
        violation = self.guard.evaluate(sql, Guardrails())
        assert violation is not None
        assert any("dangerous keyword" in f for f in violation.findings)

    def test_stacked_statements(self):
        violation = self.guard.evaluate("SELECT * FROM users WHERE id = 1; SELECT 2", Guardrails())
        assert violation.code == "stacked_statements"

    def test_trailing_semicolon_is_fine(self):
        assert self.guard.evaluate("SELECT * FROM users WHERE id = 1;", Guardrails()) is None

    def test_tautology(self):
        violation = self.guard.evaluate("SELECT * FROM users WHERE name = 'x' OR 1=1", Guardrails())
        assert violation.code == "tautology"

    def test_fullwidth_homoglyphs_are_normalized(self):
        violation = self.guard.evaluate("ＤＥＬＥＴＥ FROM users", SELECT_ONLY)
        assert violation is not None
        assert violation.value == "DELETE"

    def test_zero_width_characters_are_stripped(self):
        violation = self.guard.evaluate("DEL\u200bETE FROM users", SELECT_ONLY)
        assert violation is not None
        assert violation.value == "DELETE"

    def test_oversized_query(self):
        violation = self.guard.evaluate("SELECT " + "x" * 100_001, Guardrails())
        assert violation.code == "sql_too_long"

    def test_violation_dict_shape(self):
        data = self.guard.evaluate("DELETE FROM users", SELECT_ONLY).to_dict()
        assert data["error"] == "GUARDRAIL_VIOLATION"
        assert set(data) == {"error", "code", "reason", "value", "suggestion", "findings"}


def test_normalize_text_removes_bidi_overrides():
    assert normalize_text("SEL\u202eECT") == "SELECT"


class TestHttpGuardrail:
    GUARDRAILS = Guardrails(
        allowed_domains=("api.github.com",),
        allowed_methods=("GET",),
        block_private_ips=True,
    )

    def _guard(self, addresses=None):
        mapping = addresses or {}
        return HttpGuardrail(resolve_dns=True, resolver=lambda host: mapping.get(host, []))

    def test_allowed_request(self):
        guard = self._guard({"api.github.com": ["140.82.112.5"]})
        assert guard.evaluate(HttpAction("https://api.github.com/repos"), self.GUARDRAILS) is None

    def test_domain_not_allowed(self):
        violation = self._guard().evaluate("https://evil.example.com/", self.GUARDRAILS)
        assert violation.code == "domain_not_allowed"

    def test_method_not_allowed(self):
        guard = self._guard({"api.github.com": ["140.82.112.5"]})
        violation = guard.evaluate({"url": "https://api.github.com/x", "method": "delete"}, self.GUARDRAILS)
        assert violation.code == "method_not_allowed"
        assert violation.value == "DELETE"

    def test_cloud_metadata_endpoint_is_blocked(self):
        violation = self._guard().evaluate(
            "http://169.254.169.254/latest/meta-data/", Guardrails(block_private_ips=True)
        )
        assert violation.code == "private_address"
        assert violation.reason == (
            "Private IP addresses are blocked for security: 169.254.169.254 (cloud metadata endpoint)"
        )

    @pytest.mark.parametrize(
        "url",
        [
            "http://127.0.0.1:8080/",
            "http://10.1.2.3/",
            "http://192.168.0.10/",
            "http://[::1]/",
            "http://[::ffff:127.0.0.1]/",
            "http://2130706433/",
            "http://0x7f000001/",
            "http://127.1/",
            "http://0177.0.0.1/",
            "http://0x7f.0.0.1/",
            "http://169.254.43518/latest/meta-data/",
            "http://012.0.0.1/",
            "http://localhost/admin",
            "http://metadata.google.internal/",
        ],
    )
    def test_private_targets_are_blocked(self, url):
        # literal forms are caught without any DNS lookup
        violation = HttpGuardrail(resolve_dns=False).evaluate(url, Guardrails(block_private_ips=True))
        assert violation is not None
        assert violation.code == "private_address"

    def test_hostname_resolving_to_private_address(self):
        guard = self._guard({"internal.example.com": ["93.184.216.34", "10.0.0.5"]})
        violation = guard.evaluate("https://internal.example.com/", Guardrails(block_private_ips=True))
        assert violation.code == "private_address"
        assert violation.value == "10.0.0.5"

    def test_shortened_metadata_address_is_labelled(self):
        guard = HttpGuardrail(resolve_dns=False)
        violation = guard.evaluate("http://169.254.43518/", Guardrails(block_private_ips=True))
        assert violation.value == "169.254.169.254"
        assert "cloud metadata endpoint" in violation.reason

    @pytest.mark.parametrize("url", ["http://0x8.0x8.0x8.0x8/", "http://8.8.2056/", "http://1.2.3.4.5/"])
    def test_public_or_non_address_hosts_pass_without_dns(self, url):
        guard = HttpGuardrail(resolve_dns=False)
        assert guard.evaluate(url, Guardrails(block_private_ips=True)) is None

    def test_dns_resolution_can_be_disabled(self):
        guard = HttpGuardrail(resolve_dns=False, resolver=lambda host: ["10.0.0.5"])
        assert guard.evaluate("https://internal.example.com/", Guardrails(block_private_ips=True)) is None

    def test_private_ips_allowed_when_not_blocked(self):
        assert self._guard().evaluate("http://127.0.0.1/", Guardrails()) is None

    @pytest.mark.parametrize("url", ["ftp://example.com/file", "file:///etc/passwd", "http:///nohost"])
    def test_invalid_urls(self, url):
        violation = self._guard().evaluate(url, Guardrails())
        assert violation.code == "invalid_url"


def test_is_private_address_handles_mapped_ipv4():
    assert is_private_address(ipaddress.ip_address("::ffff:10.0.0.1"))
    assert not is_private_address(ipaddress.ip_address("8.8.8.8"))


def test_guardrail_violation_error_carries_structured_detail():
    violation = SqlGuardrail().evaluate("DELETE FROM users", SELECT_ONLY)
    error = GuardrailViolationError(violation)
    assert error.status_code == 403
    assert error.message.startswith("Security: ")
    assert error.detail["code"] == "operation_not_allowed"
