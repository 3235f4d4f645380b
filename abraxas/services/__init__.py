"""Service layer for Abraxas.

Provides the credential vault, ownership checks, the sandbox lifecycle,
task execution, the GitHub PRD reader and the project, task, comment
and manifest services.
"""

from abraxas.services.comment_service import CommentService
from abraxas.services.credential_vault import CredentialVault
from abraxas.services.github_client import GitHubClient
from abraxas.services.manifest_service import ManifestService
from abraxas.services.project_service import ProjectService
from abraxas.services.sandbox_manager import SandboxManager
from abraxas.services.session_ledger import SessionLedger, SessionUpdate
from abraxas.services.task_execution import (
    InvalidStateTransition,
    TaskExecutionService,
)
from abraxas.services.task_service import TaskService

__all__ = [
    "CommentService",
    "CredentialVault",
    "GitHubClient",
    "InvalidStateTransition",
    "ManifestService",
    "ProjectService",
    "SandboxManager",
    "SessionLedger",
    "SessionUpdate",
    "TaskExecutionService",
    "TaskService",
]
