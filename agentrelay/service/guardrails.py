"""Pre-execution policy checks for side-effecting agent actions.

Each guardrail kind owns one evaluator with the same contract:
``evaluate(action, guardrails) -> Violation | None``. Evaluators are
stateless, so evaluating the same action against the same configuration
always gives the same answer. They run before the agent touches any
external system; a violation means the action is never attempted.
"""
from __future__ import annotations

import ipaddress
import re
import socket
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Protocol, Tuple
from urllib.parse import urlsplit

from agentrelay.service.workflow_config import (
    HTTP_GUARDRAIL_FIELDS,
    SQL_GUARDRAIL_FIELDS,
    Guardrails,
)

MAX_SQL_LENGTH = 100_000

_SQL_TABLE_KEYWORDS = ("FROM", "INTO", "UPDATE", "JOIN", "TABLE")
_IDENTIFIER = re.compile(r"^[A-Z_][A-Z0-9_$]*(\.[A-Z_][A-Z0-9_$]*)*$")
_SQL_TOKENS = re.compile(r"[(),;]|[^\s(),;]+")
# words that may follow a table name without being its alias
_SQL_CLAUSE_WORDS = frozenset({
    "WHERE", "ON", "USING", "SET", "VALUES", "SELECT", "DEFAULT",
    "GROUP", "ORDER", "HAVING", "LIMIT", "OFFSET", "FETCH", "FOR", "WINDOW",
    "UNION", "INTERSECT", "EXCEPT", "RETURNING",
    "JOIN", "INNER", "LEFT", "RIGHT", "FULL", "CROSS", "OUTER", "NATURAL", "LATERAL",
})

_BLOCKED_SQL_KEYWORDS = (
    "DROP TABLE", "DROP DATABASE", "DROP SCHEMA",
    "TRUNCATE", "ALTER TABLE", "CREATE TABLE",
    "GRANT ", "REVOKE ",
    "; DROP", "; DELETE", "; UPDATE", "; INSERT",
    "/*", "*/", "--",
    "EXEC ", "EXECUTE ", "XP_",
    "LOAD_FILE", "INTO OUTFILE", "INTO DUMPFILE",
)

_TAUTOLOGY_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"WHERE\s+1\s*=\s*1",
        r"WHERE\s+TRUE",
        r"WHERE\s+'[^']*'\s*=\s*'[^']*'",
        r"OR\s+1\s*=\s*1",
        r"OR\s+TRUE",
    )
)

_ZERO_WIDTH = "\u200b\u200c\u200d\ufeff"
_BIDI_OVERRIDES = {chr(c) for c in range(0x202A, 0x202F)} | {chr(c) for c in range(0x2066, 0x206A)}

METADATA_ADDRESSES = frozenset({"169.254.169.254", "fd00:ec2::254"})
_BLOCKED_HOSTNAMES = frozenset({"localhost", "metadata", "metadata.google.internal"})


@dataclass(frozen=True)
class Violation:
    """Structured guardrail rejection."""

    code: str
    reason: str
    value: Any = None
    suggestion: str = ""
    findings: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": "GUARDRAIL_VIOLATION",
            "code": self.code,
            "reason": self.reason,
            "value": self.value,
            "suggestion": self.suggestion,
            "findings": list(self.findings or (self.reason,)),
        }


@dataclass(frozen=True)
class _Finding:
    code: str
    message: str
    value: Any
    suggestion: str


def _merge_findings(findings: List[_Finding]) -> Optional[Violation]:
    if not findings:
        return None
    first = findings[0]
    messages = tuple(f.message for f in findings)
    return Violation(
        code=first.code,
        reason="; ".join(messages),
        value=first.value,
        suggestion=first.suggestion,
        findings=messages,
    )


def normalize_text(value: str) -> str:
    """NFKC-normalize text after removing zero-width and bidi override characters.

    Fullwidth or compatibility forms (e.g. ``ＤＥＬＥＴＥ``) collapse to ASCII so
    keyword matching cannot be sidestepped with lookalike characters.
    """
    cleaned = "".join(c for c in value if c not in _ZERO_WIDTH and c not in _BIDI_OVERRIDES)
    return unicodedata.normalize("NFKC", cleaned)


class GuardrailEvaluator(Protocol):
    kind: str
    fields: frozenset

    def evaluate(self, action: Any, guardrails: Guardrails) -> Optional[Violation]:
        ...


def _table_references(upper_sql: str) -> Iterator[str]:
    """Names following FROM, INTO, UPDATE, JOIN or TABLE, including every entry
    of a comma-separated list (``FROM users u, secrets s``)."""
    tokens = _SQL_TOKENS.findall(upper_sql)
    for index, token in enumerate(tokens):
        if token not in _SQL_TABLE_KEYWORDS:
            continue
        pos = index + 1
        while pos < len(tokens):
            yield tokens[pos].strip('"`[]')
            pos += 1
            # step over an alias ("users u", "users AS u") to reach a comma
            if pos < len(tokens) and tokens[pos] == "AS":
                pos += 1
            if (
                pos < len(tokens)
                and tokens[pos] not in _SQL_CLAUSE_WORDS
                and _IDENTIFIER.match(tokens[pos].strip('"`[]'))
            ):
                pos += 1
            if pos < len(tokens) and tokens[pos] == ",":
                pos += 1
            else:
                break


class SqlGuardrail:
    """Allow/deny policy for SQL text proposed by database workers."""

    kind = "sql"
    fields = SQL_GUARDRAIL_FIELDS

    def evaluate(self, action: Any, guardrails: Guardrails) -> Optional[Violation]:
        sql = str(action or "")
        if len(sql) > MAX_SQL_LENGTH:
            return Violation(
                code="sql_too_long",
                reason="SQL query too long (max 100KB)",
                value=len(sql),
                suggestion="Split the statement or narrow the query",
            )
        normalized = normalize_text(sql)
        upper = normalized.upper()
        findings: List[_Finding] = []

        verb = re.split(r"[\s(]", upper.lstrip(), maxsplit=1)[0]
        if guardrails.allowed_operations:
            allowed_ops = [op.upper() for op in guardrails.allowed_operations]
            if verb not in allowed_ops:
                findings.append(
                    _Finding(
                        "operation_not_allowed",
                        f"Operation not allowed: {verb or '<empty>'}. "
                        f"Allowed: {', '.join(guardrails.allowed_operations)}",
                        verb,
                        "Add the operation to the agent's guardrails.allowedOperations",
                    )
                )

        if guardrails.allowed_tables:
            table = self._first_disallowed_table(upper, guardrails.allowed_tables)
            if table:
                findings.append(
                    _Finding(
                        "table_not_allowed",
                        f"Table not allowed: {table}. Allowed: {', '.join(guardrails.allowed_tables)}",
                        table,
                        "Add the table to the agent's guardrails.allowedTables",
                    )
                )

        if guardrails.require_where and verb in {"UPDATE", "DELETE"}:
            if not re.search(r"\bWHERE\b", upper):
                findings.append(
                    _Finding(
                        "where_required",
                        "WHERE clause required for UPDATE/DELETE operations",
                        verb,
                        "Add a WHERE clause to your UPDATE/DELETE query",
                    )
                )

        for keyword in _BLOCKED_SQL_KEYWORDS:
            if keyword in upper:
                findings.append(
                    _Finding(
                        "blocked_keyword",
                        f"Blocked: SQL contains dangerous keyword '{keyword.strip()}'",
                        keyword.strip(),
                        "Remove DDL, comments and stacked statements from the query",
                    )
                )
                break

        if ";" in normalized.strip().rstrip(";"):
            findings.append(
                _Finding(
                    "stacked_statements",
                    "Blocked: multiple SQL statements are not allowed",
                    ";",
                    "Submit one statement per agent call",
                )
            )

        for pattern in _TAUTOLOGY_PATTERNS:
            if pattern.search(normalized):
                findings.append(
                    _Finding(
                        "tautology",
                        "Blocked: SQL contains suspicious tautology pattern",
                        pattern.pattern,
                        "Use a selective WHERE condition",
                    )
                )
                break

        return _merge_findings(findings)

    def _first_disallowed_table(self, upper_sql: str, allowed: Iterable[str]) -> Optional[str]:
        allowed_upper = {t.upper() for t in allowed}
        for candidate in _table_references(upper_sql):
            if candidate in _SQL_TABLE_KEYWORDS or not _IDENTIFIER.match(candidate):
                continue
            bare = candidate.rsplit(".", 1)[-1]
            if candidate not in allowed_upper and bare not in allowed_upper:
                return candidate
        return None


@dataclass(frozen=True)
class HttpAction:
    url: str
    method: str = "GET"


Resolver = Callable[[str], List[str]]


def resolve_host(hostname: str) -> List[str]:
    """Every address the hostname resolves to; empty when it does not resolve."""
    try:
        infos = socket.getaddrinfo(hostname, None)
    except (socket.gaierror, UnicodeError):
        return []
    return sorted({info[4][0] for info in infos})


def _inet_aton_part(part: str) -> Optional[int]:
    lowered = part.lower()
    if lowered.startswith("0x"):
        digits = lowered[2:]
        return int(digits, 16) if digits and all(c in "0123456789abcdef" for c in digits) else None
    if not part.isascii() or not part.isdigit():
        return None
    if len(part) > 1 and part.startswith("0"):
        return int(part, 8) if all(c in "01234567" for c in part) else None
    return int(part)


def _parse_legacy_ipv4(host: str) -> Optional[ipaddress.IPv4Address]:
    """Read ``host`` the way inet_aton does, so the address matches what the
    resolver will connect to.

    Accepts one to four dot-separated parts, each decimal, 0-prefixed octal or
    0x-prefixed hex; the last part fills the remaining bytes (``127.1``,
    ``0177.0.0.1``, ``0x7f.0.0.1``, ``169.254.43518``, ``2130706433``).
    """
    parts = host.split(".")
    if not 1 <= len(parts) <= 4:
        return None
    values = [_inet_aton_part(p) for p in parts]
    if any(v is None for v in values):
        return None
    *head, last = values
    if any(v > 0xFF for v in head) or last >= 1 << (8 * (4 - len(head))):
        return None
    number = 0
    for value in head:
        number = (number << 8) | value
    number = (number << (8 * (4 - len(head)))) | last
    return ipaddress.IPv4Address(number)


def _parse_ip(host: str) -> Optional[ipaddress._BaseAddress]:
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        return _parse_legacy_ipv4(host)


def is_private_address(ip: ipaddress._BaseAddress) -> bool:
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return bool(
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_unspecified
        or ip.is_reserved
        or ip.is_multicast
        or getattr(ip, "is_site_local", False)
    )


class HttpGuardrail:
    """Domain/method allowlists and SSRF protection for outbound requests."""

    kind = "http"
    fields = HTTP_GUARDRAIL_FIELDS

    def __init__(self, *, resolve_dns: bool = True, resolver: Optional[Resolver] = None) -> None:
        self.resolve_dns = resolve_dns
        self.resolver = resolver or resolve_host

    def evaluate(self, action: Any, guardrails: Guardrails) -> Optional[Violation]:
        if isinstance(action, Mapping):
            action = HttpAction(url=str(action.get("url", "")), method=str(action.get("method", "GET")))
        elif isinstance(action, str):
            action = HttpAction(url=action)
        method = (action.method or "GET").upper()

        parsed = urlsplit(action.url)
        if parsed.scheme.lower() not in {"http", "https"}:
            return Violation(
                code="invalid_url",
                reason=f"Unsupported URL scheme: '{parsed.scheme or '<none>'}'",
                value=action.url,
                suggestion="Use an http:// or https:// URL",
            )
        hostname = (parsed.hostname or "").rstrip(".").lower()
        if not hostname:
            return Violation(
                code="invalid_url",
                reason="URL is missing a host",
                value=action.url,
                suggestion="Provide an absolute URL",
            )

        if guardrails.allowed_domains:
            allowed = {d.lower() for d in guardrails.allowed_domains}
            if hostname not in allowed:
                return Violation(
                    code="domain_not_allowed",
                    reason=f"Domain '{hostname}' not in allowlist",
                    value=hostname,
                    suggestion=f"Add '{hostname}' to the agent's guardrails.allowedDomains",
                )

        if guardrails.allowed_methods:
            allowed_methods = {m.upper() for m in guardrails.allowed_methods}
            if method not in allowed_methods:
                return Violation(
                    code="method_not_allowed",
                    reason=(
                        f"HTTP method not allowed: {method}. "
                        f"Allowed methods: {', '.join(guardrails.allowed_methods)}"
                    ),
                    value=method,
                    suggestion="Add the method to the agent's guardrails.allowedMethods",
                )

        if guardrails.block_private_ips:
            blocked = self._private_target(hostname)
            if blocked:
                label = blocked
                if blocked in METADATA_ADDRESSES:
                    label = f"{blocked} (cloud metadata endpoint)"
                return Violation(
                    code="private_address",
                    reason=f"Private IP addresses are blocked for security: {label}",
                    value=blocked,
                    suggestion="Call a public endpoint or disable blockPrivateIPs for this agent",
                )
        return None

    def _private_target(self, hostname: str) -> Optional[str]:
        if hostname in _BLOCKED_HOSTNAMES or hostname.endswith(".localhost"):
            return hostname
        ip = _parse_ip(hostname)
        if ip is not None:
            return str(ip) if is_private_address(ip) else None
        if not self.resolve_dns:
            return None
        for address in self.resolver(hostname):
            resolved = _parse_ip(address.split("%", 1)[0])
            if resolved is not None and is_private_address(resolved):
                return str(resolved)
        return None


GUARDRAIL_FIELDS_BY_KIND: Dict[str, frozenset] = {
    SqlGuardrail.kind: SqlGuardrail.fields,
    HttpGuardrail.kind: HttpGuardrail.fields,
}


def build_evaluators(*, resolve_dns: bool = True, resolver: Optional[Resolver] = None) -> Dict[str, GuardrailEvaluator]:
    return {
        SqlGuardrail.kind: SqlGuardrail(),
        HttpGuardrail.kind: HttpGuardrail(resolve_dns=resolve_dns, resolver=resolver),
    }


__all__ = [
    "GuardrailEvaluator",
    "HttpAction",
    "HttpGuardrail",
    "SqlGuardrail",
    "Violation",
    "build_evaluators",
    "is_private_address",
    "normalize_text",
    "GUARDRAIL_FIELDS_BY_KIND",
]
