"""Database module for Abraxas state management and persistence."""

from abraxas.db.connection import (
    SessionLocal,
    engine,
    get_db,
    get_db_context,
    init_db,
)
from abraxas.db.models import (
    Comment,
    ExecutionMode,
    ExecutionSession,
    ExecutionState,
    Manifest,
    ManifestStatus,
    Project,
    SandboxDestroyRetry,
    SandboxPurpose,
    SandboxRecord,
    SessionStatus,
    Task,
    TaskStatus,
    TaskType,
    User,
)

__all__ = [
    # Models
    "User",
    "Project",
    "Task",
    "Comment",
    "ExecutionSession",
    "SandboxRecord",
    "SandboxDestroyRetry",
    "Manifest",
    # Enums
    "TaskType",
    "TaskStatus",
    "ExecutionState",
    "SessionStatus",
    "ExecutionMode",
    "SandboxPurpose",
    "ManifestStatus",
    # Connection
    "engine",
    "SessionLocal",
    "get_db",
    "get_db_context",
    "init_db",
]
