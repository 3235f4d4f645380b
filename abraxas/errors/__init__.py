"""Error handling framework for Abraxas.

This package provides:
- Typed domain exceptions with a closed ErrorKind discriminant
- Error code registry with E-XXXX format codes
- Boundary mapping to structured failures

Error categories:
- E-1xxx: Missing entities
- E-2xxx: Validation errors
- E-3xxx: Sandbox provider and repository host errors
- E-4xxx: System and cryptography errors
- E-5xxx: Authentication and authorization errors
"""

from abraxas.errors.domain import (
    CryptoConfigError,
    DecryptionError,
    DomainError,
    EncryptionError,
    ErrorKind,
    GitHubFetchError,
    NotFoundError,
    SandboxExecutionError,
    SandboxNotFoundError,
    UnauthenticatedError,
    UnauthorizedError,
    ValidationError,
    WebhookSignatureError,
)
from abraxas.errors.formatter import (
    OperationFailure,
    format_failure,
    to_failure,
)
from abraxas.errors.registry import (
    ERROR_REGISTRY,
    ErrorCategory,
    ErrorCode,
    get_error,
    get_errors_by_category,
)

__all__ = [
    # Domain
    "DomainError",
    "ErrorKind",
    "NotFoundError",
    "UnauthorizedError",
    "UnauthenticatedError",
    "ValidationError",
    "CryptoConfigError",
    "EncryptionError",
    "DecryptionError",
    "SandboxExecutionError",
    "SandboxNotFoundError",
    "WebhookSignatureError",
    "GitHubFetchError",
    # Registry
    "ErrorCode",
    "ErrorCategory",
    "ERROR_REGISTRY",
    "get_error",
    "get_errors_by_category",
    # Formatter
    "OperationFailure",
    "to_failure",
    "format_failure",
]
