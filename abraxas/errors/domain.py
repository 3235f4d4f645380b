"""Typed domain exceptions for the orchestrator.

Every error the orchestrator raises is a DomainError carrying a closed
ErrorKind discriminant. Errors are raised where they are detected and
propagate unchanged to the operation boundary, which matches on ``kind``
to build a structured failure (see abraxas.errors.formatter).

Usage:
    # In service layer
    raise NotFoundError("task", task_id)

    # At the boundary
    try:
        result = service.execute(task_id, caller)
    except DomainError as e:
        failure = to_failure(e)
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Closed set of domain error kinds."""

    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    UNAUTHENTICATED = "unauthenticated"
    VALIDATION = "validation"
    CRYPTO_CONFIG = "crypto_config"
    ENCRYPTION = "encryption"
    DECRYPTION = "decryption"
    SANDBOX_EXECUTION = "sandbox_execution"
    REPOSITORY_FETCH = "repository_fetch"


class DomainError(Exception):
    """Base exception for all domain errors.

    ``code`` optionally pins a specific registry code; otherwise the
    boundary uses the default code for ``kind``.
    """

    kind: ErrorKind
    code: str | None = None

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(DomainError):
    """Entity was not found. Maps to HTTP 404."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, entity: str, identifier: str) -> None:
        super().__init__(f"{entity.capitalize()} '{identifier}' not found")
        self.entity = entity
        self.identifier = identifier


class UnauthorizedError(DomainError):
    """Caller does not own the entity. Maps to HTTP 403."""

    kind = ErrorKind.UNAUTHORIZED

    def __init__(self, message: str = "You do not have access to this project") -> None:
        super().__init__(message)


class UnauthenticatedError(DomainError):
    """No caller identity could be resolved. Redirects to login."""

    kind = ErrorKind.UNAUTHENTICATED

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message)


class ValidationError(DomainError):
    """Input or state precondition failed. Maps to HTTP 400."""

    kind = ErrorKind.VALIDATION

    def __init__(self, field: str, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.field = field
        if code is not None:
            self.code = code


class CryptoConfigError(DomainError):
    """Encryption key is absent, empty or malformed."""

    kind = ErrorKind.CRYPTO_CONFIG


class EncryptionError(DomainError):
    """Encrypting a secret failed."""

    kind = ErrorKind.ENCRYPTION

    def __init__(self, message: str = "Failed to encrypt token") -> None:
        super().__init__(message)


class DecryptionError(DomainError):
    """Decrypting a secret failed, including tampered or truncated blobs."""

    kind = ErrorKind.DECRYPTION

    def __init__(self, message: str = "Failed to decrypt token") -> None:
        super().__init__(message)


class SandboxExecutionError(DomainError):
    """The sandbox provider failed to create, run in, or destroy a sandbox."""

    kind = ErrorKind.SANDBOX_EXECUTION

    def __init__(self, message: str, sandbox_name: str | None = None) -> None:
        super().__init__(message)
        self.sandbox_name = sandbox_name


class SandboxNotFoundError(SandboxExecutionError):
    """The provider has no sandbox with the given name."""

    def __init__(self, sandbox_name: str) -> None:
        super().__init__(f"Sandbox '{sandbox_name}' not found", sandbox_name)


class GitHubFetchError(DomainError):
    """Reading from the GitHub API failed or returned an unexpected status."""

    kind = ErrorKind.REPOSITORY_FETCH

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class WebhookSignatureError(UnauthenticatedError):
    """A sandbox callback is unsigned or its signature does not verify."""

    code = "E-3002"

    def __init__(self, message: str = "Invalid signature") -> None:
        super().__init__(message)
