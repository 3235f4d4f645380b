"""Boundary mapping from domain errors to structured failures.

This module provides:
- OperationFailure, the tagged failure result every operation boundary returns
- to_failure(), which maps each ErrorKind to a registry code and HTTP status
- format_failure() for plain-text display (CLI)
"""

from dataclasses import dataclass, field

from abraxas.errors.domain import (
    DomainError,
    ErrorKind,
    NotFoundError,
    ValidationError,
)
from abraxas.errors.registry import get_error
from abraxas.utils.redaction import sanitize_error_message

# Every ErrorKind must appear here; tests assert the table is exhaustive.
KIND_TABLE: dict[ErrorKind, tuple[str, int]] = {
    ErrorKind.NOT_FOUND: ("E-1001", 404),
    ErrorKind.VALIDATION: ("E-2001", 400),
    ErrorKind.SANDBOX_EXECUTION: ("E-3001", 502),
    ErrorKind.REPOSITORY_FETCH: ("E-3003", 502),
    ErrorKind.CRYPTO_CONFIG: ("E-4001", 500),
    ErrorKind.ENCRYPTION: ("E-4002", 500),
    ErrorKind.DECRYPTION: ("E-4003", 500),
    ErrorKind.UNAUTHENTICATED: ("E-5001", 401),
    ErrorKind.UNAUTHORIZED: ("E-5002", 403),
}

INTERNAL_ERROR_CODE = "E-4999"


@dataclass
class OperationFailure:
    """Structured failure returned by an operation boundary.

    Attributes:
        code: Error code in E-XXXX format.
        kind: ErrorKind value, or "internal" for unexpected exceptions.
        message: Human-readable, sanitized message.
        status_code: HTTP status the API layer responds with.
        remediation: Action the user should take.
        details: Kind-specific context (entity/id, field, sandbox name).
    """

    code: str
    kind: str
    message: str
    status_code: int
    remediation: str = ""
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def to_envelope(self) -> dict:
        """Return the JSON error envelope used by the HTTP API."""
        envelope = {"code": self.code, "kind": self.kind, "message": self.message}
        if self.details:
            envelope["details"] = self.details
        return {"error": envelope}


def _details_for(error: DomainError) -> dict:
    if isinstance(error, NotFoundError):
        return {"entity": error.entity, "id": error.identifier}
    if isinstance(error, ValidationError):
        return {"field": error.field}
    sandbox_name = getattr(error, "sandbox_name", None)
    if sandbox_name:
        return {"sandbox_name": sandbox_name}
    return {}


def to_failure(error: Exception, operation: str | None = None) -> OperationFailure:
    """Map an exception raised by an operation to an OperationFailure.

    Domain errors keep their own message. Anything else is treated as an
    internal failure and reported as "Failed to <operation>: <message>".

    Args:
        error: The exception that reached the boundary.
        operation: Human-readable operation name, used for unexpected errors.

    Returns:
        OperationFailure with a sanitized message.
    """
    if isinstance(error, DomainError):
        code, status_code = KIND_TABLE[error.kind]
        code = error.code or code
        error_def = get_error(code)
        return OperationFailure(
            code=code,
            kind=error.kind.value,
            message=sanitize_error_message(error.message) or "",
            status_code=status_code,
            remediation=error_def.remediation if error_def else "",
            details=_details_for(error),
        )

    message = str(error) or type(error).__name__
    if operation:
        message = f"Failed to {operation}: {message}"
    error_def = get_error(INTERNAL_ERROR_CODE)
    return OperationFailure(
        code=INTERNAL_ERROR_CODE,
        kind="internal",
        message=sanitize_error_message(message) or "",
        status_code=500,
        remediation=error_def.remediation if error_def else "",
    )


def format_failure(failure: OperationFailure, include_remediation: bool = True) -> str:
    """Format a failure for display to a user.

    Args:
        failure: The failure to format.
        include_remediation: Whether to include remediation steps.

    Returns:
        Multi-line formatted string suitable for terminal display.
    """
    lines = [f"{failure.code}: {failure.message}"]
    for key, value in failure.details.items():
        lines.append(f"  {key}: {value}")
    if include_remediation and failure.remediation:
        lines.append(f"  Action: {failure.remediation}")
    return "\n".join(lines)
