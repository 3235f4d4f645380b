"""Error code registry with E-XXXX format codes.

This module defines the error code system for Abraxas, organizing errors
into categories:
- E-1xxx: Missing entities
- E-2xxx: Validation errors
- E-3xxx: Sandbox provider and repository host errors
- E-4xxx: System and cryptography errors
- E-5xxx: Authentication and authorization errors

Each error includes a code, title, message template, and remediation steps.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Categories for error codes."""

    DATA = "data"  # E-1xxx: Missing entities
    VALIDATION = "validation"  # E-2xxx: Validation errors
    SANDBOX = "sandbox"  # E-3xxx: Sandbox provider and repository host errors
    SYSTEM = "system"  # E-4xxx: System/crypto errors
    AUTH = "auth"  # E-5xxx: Authentication errors


@dataclass
class ErrorCode:
    """Definition of an error code with metadata.

    Attributes:
        code: Error code in E-XXXX format.
        category: Error category for grouping.
        title: Short title for display.
        message_template: Message with {placeholders} for context.
        remediation: Action user should take to resolve.
        is_retryable: Whether the operation can be retried without user action.
    """

    code: str
    category: ErrorCategory
    title: str
    message_template: str
    remediation: str
    is_retryable: bool = False


# Error registry - all defined error codes
ERROR_REGISTRY: dict[str, ErrorCode] = {
    # Data errors (E-1xxx)
    "E-1001": ErrorCode(
        code="E-1001",
        category=ErrorCategory.DATA,
        title="Not Found",
        message_template="{entity} '{identifier}' not found.",
        remediation="Check the identifier and that the record was not deleted.",
    ),
    # Validation errors (E-2xxx)
    "E-2001": ErrorCode(
        code="E-2001",
        category=ErrorCategory.VALIDATION,
        title="Invalid Request",
        message_template="{message}",
        remediation="Correct the invalid field and retry.",
    ),
    "E-2002": ErrorCode(
        code="E-2002",
        category=ErrorCategory.VALIDATION,
        title="Task Already Executing",
        message_template="Task is already executing.",
        remediation="Wait for the current run to finish or destroy its sandbox.",
    ),
    "E-2003": ErrorCode(
        code="E-2003",
        category=ErrorCategory.VALIDATION,
        title="Manifest Already Active",
        message_template="{message}",
        remediation="Cancel or finish the active manifest before starting another.",
    ),
    # Sandbox errors (E-3xxx)
    "E-3001": ErrorCode(
        code="E-3001",
        category=ErrorCategory.SANDBOX,
        title="Sandbox Execution Failed",
        message_template="{message}",
        remediation="Retry the run. If the failure persists, check the sandbox provider status.",
        is_retryable=True,
    ),
    "E-3002": ErrorCode(
        code="E-3002",
        category=ErrorCategory.SANDBOX,
        title="Invalid Webhook Signature",
        message_template="Webhook signature is missing or invalid.",
        remediation="Ensure the sandbox signs callbacks with the session webhook secret.",
    ),
    "E-3003": ErrorCode(
        code="E-3003",
        category=ErrorCategory.SANDBOX,
        title="Repository Fetch Failed",
        message_template="{message}",
        remediation="Check the repository URL and that the project token can read it.",
        is_retryable=True,
    ),
    # System errors (E-4xxx)
    "E-4001": ErrorCode(
        code="E-4001",
        category=ErrorCategory.SYSTEM,
        title="Encryption Not Configured",
        message_template="{message}",
        remediation="Set ABRAXAS_ENCRYPTION_KEY to 64 hex characters (see 'abraxas gen-key').",
    ),
    "E-4002": ErrorCode(
        code="E-4002",
        category=ErrorCategory.SYSTEM,
        title="Encryption Failed",
        message_template="{message}",
        remediation="Check the configured encryption key.",
    ),
    "E-4003": ErrorCode(
        code="E-4003",
        category=ErrorCategory.SYSTEM,
        title="Decryption Failed",
        message_template="{message}",
        remediation="The stored secret is corrupt or was encrypted with another key. Re-enter it.",
    ),
    "E-4999": ErrorCode(
        code="E-4999",
        category=ErrorCategory.SYSTEM,
        title="Internal Error",
        message_template="{message}",
        remediation="Check the server logs.",
    ),
    # Auth errors (E-5xxx)
    "E-5001": ErrorCode(
        code="E-5001",
        category=ErrorCategory.AUTH,
        title="Authentication Required",
        message_template="Authentication required.",
        remediation="Sign in and retry.",
    ),
    "E-5002": ErrorCode(
        code="E-5002",
        category=ErrorCategory.AUTH,
        title="Access Denied",
        message_template="{message}",
        remediation="Only the project owner can perform this action.",
    ),
}


def get_error(code: str) -> ErrorCode | None:
    """Get error definition by code.

    Args:
        code: Error code in E-XXXX format.

    Returns:
        ErrorCode if found, None otherwise.
    """
    return ERROR_REGISTRY.get(code)


def get_errors_by_category(category: ErrorCategory) -> list[ErrorCode]:
    """Get all errors in a category.

    Args:
        category: The error category to filter by.

    Returns:
        List of ErrorCode objects in the specified category.
    """
    return [e for e in ERROR_REGISTRY.values() if e.category == category]
