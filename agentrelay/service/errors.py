from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from agentrelay.service.guardrails import Violation


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - validation_error (400)
    - forbidden (403)
    - not_found (404)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request or document validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class ConfigError(ValidationError):
    """Workflow configuration is malformed or references unknown agents.

    Raised at load time only; no run starts with a config that fails here.
    """

    def __init__(self, message: str, errors: Optional[List[str]] = None) -> None:
        self.errors = list(errors or [message])
        super().__init__(message, detail={"errors": self.errors})


class ReplayPreconditionError(ValidationError):
    """Source trace lacks the captured context needed for replay."""


class ForbiddenError(ServiceError):
    """Access denied by policy (403)."""
    status_code = 403
    error_code = "forbidden"


class GuardrailViolationError(ForbiddenError):
    """A proposed agent action was rejected by its guardrail evaluator."""

    def __init__(self, violation: "Violation") -> None:
        self.violation = violation
        super().__init__(
            f"Security: {violation.reason}", detail=violation.to_dict()
        )


class MemoryAccessError(ForbiddenError):
    """Agent tried to write a namespace it does not own."""


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "ConfigError",
    "ReplayPreconditionError",
    "ForbiddenError",
    "GuardrailViolationError",
    "MemoryAccessError",
    "NotFoundError",
    "ServerError",
]
