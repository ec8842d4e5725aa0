from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# X-Request-ID of the HTTP request being served; runs bind task_id separately.
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# settings and handler kwargs that carry provider credentials
_SECRET_KEY_PARTS = ("api_key", "password", "secret", "token", "authorization")
_URL_CREDENTIALS = re.compile(r"(?P<scheme>[a-z][a-z0-9+.-]*://)(?P<user>[^:/@\s]*):[^@/\s]+@", re.IGNORECASE)


def get_correlation_id() -> Optional[str]:
    return request_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Adopt the caller's request id, or mint one, for the current context."""
    cid = correlation_id or str(uuid.uuid4())
    request_id_var.set(cid)
    return cid


def mask_url_credentials(value: str) -> str:
    """``postgresql://app:hunter2@db/x`` -> ``postgresql://app:***@db/x``."""
    return _URL_CREDENTIALS.sub(lambda m: f"{m.group('scheme')}{m.group('user')}:***@", value)


def _add_request_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    request_id = request_id_var.get()
    if request_id:
        event_dict.setdefault("request_id", request_id)
    return event_dict


def _redact_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in event_dict.items():
        if not isinstance(value, str):
            continue
        if any(part in key.lower() for part in _SECRET_KEY_PARTS):
            event_dict[key] = "***" if len(value) <= 8 else f"{value[:3]}***{value[-2:]}"
        elif "://" in value:
            event_dict[key] = mask_url_credentials(value)
    return event_dict


def configure_logging(level: str = "INFO", *, json_output: bool = True, development: bool = False) -> None:
    """Route every ``get_logger`` logger through one structlog pipeline.

    JSON lines by default; ``development`` (or ``json_output=False``) switches
    to the coloured console renderer.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_request_id,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
    ]
    if development or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper(), logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_run_context(**values: Any) -> None:
    """Bind run-scoped values (task_id, workflow) into every log entry."""
    structlog.contextvars.bind_contextvars(**values)


def clear_run_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def log_run_summary(trace: dict, logger: Optional[Any] = None) -> None:
    """Log the routing sequence and outcome of a finished run."""
    log = logger or get_logger("workflow")
    log.info(
        "workflow_run_summary",
        task_id=trace.get("taskId"),
        status=trace.get("status"),
        agents=[step.get("agent") for step in trace.get("steps", [])],
        totals=trace.get("totals"),
    )


MAX_ERROR_MESSAGE_LENGTH = 500

# What a failing agent or backend can echo back into an error string
_ERROR_LEAKS = tuple(
    re.compile(pattern)
    for pattern in (
        # DSNs and other URLs with embedded credentials
        r"(?i)\b[a-z][a-z0-9+.-]*://[^\s/@]+:[^\s@]+@\S+",
        # statement text quoted by psycopg or the SQL guardrail
        r"(?i)\b(select|insert|update|delete|with|from|where|join)\s+.{0,60}",
        r"(?i)\bLINE \d+:.*",
        r"(?i)connection (to server )?.{0,80}(failed|refused|timed out)",
        # provider keys and bearer tokens
        r"(?i)\b(api[_-]?key|password|secret|token|bearer)\b\s*[:= ]\s*\S+",
        r"\bsk-[A-Za-z0-9_-]{8,}",
        # filesystem paths
        r"(?i)(?<![\w:])/(?:home|var|etc|usr|opt|tmp|root|srv)/\S+",
        r"(?i)\b[a-z]:\\\S+",
        r"(?i)traceback \(most recent call last\).*",
    )
)


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip SQL text, credentials and paths from an error before the HTTP
    layer returns it, and cap its length."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    for pattern in _ERROR_LEAKS:
        error = pattern.sub(replacement, error)
    if len(error) > MAX_ERROR_MESSAGE_LENGTH:
        error = error[: MAX_ERROR_MESSAGE_LENGTH - 3] + "..."
    return error
