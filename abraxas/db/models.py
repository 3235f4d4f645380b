"""SQLAlchemy ORM models for the Abraxas orchestrator database.

This module defines the data models for projects, tasks, their comment
history, execution sessions, sandbox tracking and batch-run manifests.
Uses SQLAlchemy 2.0 style with Mapped and mapped_column.
"""

from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)


def generate_uuid() -> str:
    """Generate a UUID4 string for primary keys."""
    return str(uuid4())


def utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format."""
    return datetime.now(UTC).isoformat()


# Enums matching the database schema constraints


class TaskType(str, Enum):
    """Kinds of work item a task can describe."""

    bug = "bug"
    feature = "feature"
    plan = "plan"
    other = "other"


class TaskStatus(str, Enum):
    """Board column a task is displayed in.

    Purely presentational; the orchestrator only moves tasks between
    columns as a side effect of execution state changes.
    """

    backlog = "backlog"
    todo = "todo"
    running = "running"
    failed = "failed"
    review = "review"
    done = "done"


class ExecutionState(str, Enum):
    """Execution state of a task.

    Lifecycle: idle -> in_progress -> awaiting_review/completed/error
               any state except in_progress -> in_progress (re-run)
    """

    idle = "idle"
    in_progress = "in_progress"
    awaiting_review = "awaiting_review"
    completed = "completed"
    error = "error"


class AgentModel(str, Enum):
    """Agent model identifiers selectable on a task."""

    grok_1 = "grok-1"
    claude_opus_4_5 = "claude-opus-4-5"
    claude_sonnet_4_5 = "claude-sonnet-4-5"
    claude_haiku_4_5 = "claude-haiku-4-5"


class SessionStatus(str, Enum):
    """Status values for an execution session.

    Lifecycle: pending -> in_progress -> completed/error
    """

    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"
    error = "error"


class ExecutionMode(str, Enum):
    """Where an execution session runs."""

    local = "local"
    sandbox = "sandbox"


class SandboxPurpose(str, Enum):
    """Distinguishes per-task sandboxes from batch-run sandboxes."""

    task = "task"
    manifest = "manifest"


class ManifestStatus(str, Enum):
    """Status values for a batch-run manifest.

    Lifecycle: pending -> active -> running -> completed/failed/cancelled
    """

    pending = "pending"
    active = "active"
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


ACTIVE_MANIFEST_STATUSES: tuple[str, ...] = (
    ManifestStatus.pending.value,
    ManifestStatus.active.value,
    ManifestStatus.running.value,
)


class DestroyRetryStatus(str, Enum):
    """Status values for queued sandbox destroy retries."""

    pending = "pending"
    completed = "completed"
    dead_letter = "dead_letter"


# SQLAlchemy Base


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# Models


class User(Base):
    """Identity row that callers resolve to.

    Attributes:
        id: UUID primary key.
        name: Display name.
        email: Unique email address.
        encrypted_agent_auth: Vault-encrypted agent auth JSON, uploaded
            into sandboxes when present.
        created_at: ISO8601 creation timestamp.
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    encrypted_agent_auth: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    projects: Mapped[list["Project"]] = relationship(
        "Project", back_populates="owner", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id!r}, email={self.email!r})>"


class Project(Base):
    """Registered repository plus its credentials and agent configuration.

    Attributes:
        id: UUID primary key.
        user_id: Owning user. Only the owner may read or mutate.
        name: Display name.
        description: Optional description.
        repository_url: HTTPS URL of the repository.
        encrypted_token: Vault-encrypted repository access token.
        agents_md_content: Optional custom agent instructions.
        local_setup_script: Optional setup script; presence enables local setup.
        created_at: ISO8601 creation timestamp.
        updated_at: ISO8601 last update timestamp.
    """

    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    repository_url: Mapped[str] = mapped_column(Text, nullable=False)
    encrypted_token: Mapped[str] = mapped_column(Text, nullable=False)
    agents_md_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    local_setup_script: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso, onupdate=utc_now_iso
    )

    owner: Mapped["User"] = relationship("User", back_populates="projects")
    tasks: Mapped[list["Task"]] = relationship(
        "Task", back_populates="project", cascade="all, delete-orphan"
    )
    manifests: Mapped[list["Manifest"]] = relationship(
        "Manifest", back_populates="project", cascade="all, delete-orphan"
    )
    sandboxes: Mapped[list["SandboxRecord"]] = relationship(
        "SandboxRecord", back_populates="project", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("idx_projects_user_id", "user_id"),)

    @property
    def local_setup_enabled(self) -> bool:
        """True when a local setup script is configured."""
        return self.local_setup_script is not None

    def __repr__(self) -> str:
        return f"<Project(id={self.id!r}, name={self.name!r})>"


class Task(Base):
    """Unit of work executed by an agent against a project.

    A task has no owner of its own; ownership is always resolved through
    its project.

    Attributes:
        id: UUID primary key.
        project_id: Foreign key to the owning project.
        title: Short title.
        description: Optional long description.
        type: Task type (bug, feature, plan, other).
        status: Board column (display only).
        execution_state: Guarded execution state.
        branch_name: Branch the agent works on, set by the first run.
        model: Selected agent model identifier.
        completed_at: ISO8601 timestamp of the last successful run.
        created_at: ISO8601 creation timestamp.
        updated_at: ISO8601 last update timestamp.
    """

    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    project_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TaskType.feature.value
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TaskStatus.backlog.value
    )
    execution_state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ExecutionState.idle.value
    )
    branch_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    model: Mapped[str] = mapped_column(
        String(50), nullable=False, default=AgentModel.claude_sonnet_4_5.value
    )
    completed_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso, onupdate=utc_now_iso
    )

    project: Mapped["Project"] = relationship("Project", back_populates="tasks")
    comments: Mapped[list["Comment"]] = relationship(
        "Comment", back_populates="task", cascade="all, delete-orphan"
    )
    sessions: Mapped[list["ExecutionSession"]] = relationship(
        "ExecutionSession", back_populates="task", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("idx_tasks_project_id", "project_id"),
        Index("idx_tasks_execution_state", "execution_state"),
    )

    def __repr__(self) -> str:
        return (
            f"<Task(id={self.id!r}, title={self.title!r}, "
            f"execution_state={self.execution_state!r})>"
        )


class Comment(Base):
    """Append-only comment on a task.

    Exactly one of user_id and agent_name is set. Ordering is by
    (created_at, sequence); sequence is a per-task counter so that two
    comments written within the same clock tick still sort strictly.

    Attributes:
        id: UUID primary key.
        task_id: Foreign key to the task.
        user_id: Authoring user, if written by a person.
        agent_name: Authoring agent, if written by an agent.
        content: Comment body.
        sequence: Per-task monotonically increasing counter.
        created_at: ISO8601 creation timestamp.
    """

    __tablename__ = "comments"
    __table_args__ = (
        UniqueConstraint("task_id", "sequence", name="uq_comments_task_seq"),
        Index("ix_comments_task_order", "task_id", "created_at", "sequence"),
        CheckConstraint(
            "(user_id IS NULL) <> (agent_name IS NULL)",
            name="ck_comments_single_author",
        ),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    task_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=True
    )
    agent_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    task: Mapped["Task"] = relationship("Task", back_populates="comments")

    @property
    def is_agent(self) -> bool:
        """True when the comment was authored by an agent."""
        return self.agent_name is not None

    def __repr__(self) -> str:
        author = f"agent:{self.agent_name}" if self.agent_name else f"user:{self.user_id}"
        return f"<Comment(id={self.id!r}, author={author!r}, seq={self.sequence})>"


class ExecutionSession(Base):
    """One execution attempt of a task.

    Token counters are strings so that large values survive any storage
    engine's integer width.

    Attributes:
        id: UUID primary key.
        task_id: Foreign key to the task.
        session_id: External correlation id.
        status: Session status (pending, in_progress, completed, error).
        execution_mode: local or sandbox.
        sandbox_name: Provider-side sandbox handle.
        sandbox_url: Connection URL for the sandbox.
        sandbox_password: Connection password for the sandbox.
        webhook_secret: HMAC secret for completion callbacks.
        branch_name: Branch the run works on.
        pull_request_url: PR opened by the agent, if any.
        error_message: Sanitized failure message.
        logs: Trailing log output reported on failure.
        message_count: Agent message counter.
        input_tokens: Input token counter.
        output_tokens: Output token counter.
        created_at: ISO8601 creation timestamp; "latest" is max of this.
        updated_at: ISO8601 last update timestamp.
        completed_at: ISO8601 completion timestamp.
    """

    __tablename__ = "execution_sessions"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    task_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False
    )
    session_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SessionStatus.pending.value
    )
    execution_mode: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ExecutionMode.sandbox.value
    )
    sandbox_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sandbox_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    sandbox_password: Mapped[str | None] = mapped_column(String(255), nullable=True)
    webhook_secret: Mapped[str | None] = mapped_column(String(128), nullable=True)
    branch_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    pull_request_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    logs: Mapped[str | None] = mapped_column(Text, nullable=True)
    message_count: Mapped[str | None] = mapped_column(String(32), nullable=True)
    input_tokens: Mapped[str | None] = mapped_column(String(32), nullable=True)
    output_tokens: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso, onupdate=utc_now_iso
    )
    completed_at: Mapped[str | None] = mapped_column(String(50), nullable=True)

    task: Mapped["Task"] = relationship("Task", back_populates="sessions")

    __table_args__ = (
        Index("idx_exec_sessions_task_created", "task_id", "created_at"),
        Index("idx_exec_sessions_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<ExecutionSession(id={self.id!r}, task_id={self.task_id!r}, "
            f"status={self.status!r})>"
        )


class SandboxRecord(Base):
    """Tracks a live sandbox by (branch name, purpose).

    Deliberately not tied to tasks or manifests by foreign key: the
    sandbox lives at an external provider and can outlive its ledger row.

    Attributes:
        id: UUID primary key.
        project_id: Project the sandbox was spawned for.
        branch_name: Branch the sandbox works on.
        type: Purpose (task or manifest).
        status: Free-form provider status.
        sandbox_name: Provider-side sandbox handle.
        sandbox_url: Connection URL.
        webhook_secret: HMAC secret for callbacks from this sandbox.
        error_message: Last reported error.
        created_at: ISO8601 creation timestamp.
        updated_at: ISO8601 last update timestamp.
    """

    __tablename__ = "sandbox_records"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    project_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    branch_name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="running")
    sandbox_name: Mapped[str] = mapped_column(String(255), nullable=False)
    sandbox_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    webhook_secret: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso, onupdate=utc_now_iso
    )

    project: Mapped["Project"] = relationship("Project", back_populates="sandboxes")

    __table_args__ = (
        UniqueConstraint("branch_name", "type", name="uq_sandbox_records_branch_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<SandboxRecord(branch={self.branch_name!r}, type={self.type!r}, "
            f"sandbox={self.sandbox_name!r})>"
        )


class SandboxDestroyRetry(Base):
    """Durable queue entry for a sandbox whose destroy call failed.

    The reaper drains pending entries with per-entry retry and
    dead-letter semantics.

    Attributes:
        id: UUID primary key.
        sandbox_name: Provider-side sandbox handle to destroy.
        reason: What triggered the original destroy.
        status: pending, completed or dead_letter.
        retry_count: Number of failed attempts so far.
        last_error: Sanitized message of the last failure.
        created_at: ISO8601 creation timestamp.
        updated_at: ISO8601 last update timestamp.
    """

    __tablename__ = "sandbox_destroy_retries"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    sandbox_name: Mapped[str] = mapped_column(String(255), nullable=False)
    reason: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DestroyRetryStatus.pending.value
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso, onupdate=utc_now_iso
    )

    __table_args__ = (
        Index("idx_destroy_retries_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<SandboxDestroyRetry(sandbox={self.sandbox_name!r}, "
            f"status={self.status!r}, retries={self.retry_count})>"
        )


class Manifest(Base):
    """Batch run of a project's tasks under a single long-lived sandbox.

    At most one manifest per project may be pending, active or running.
    This is checked on read, not by a storage constraint.

    Attributes:
        id: UUID primary key.
        project_id: Foreign key to the project.
        name: Display name of the batch run.
        prd_name: Kebab-case PRD name; its state lives on manifest-<prd_name>.
        status: Manifest status.
        completed_tasks: Number of tasks the run has finished.
        sandbox_name: Provider-side sandbox handle.
        sandbox_url: Connection URL.
        sandbox_password: Connection password.
        webhook_secret: HMAC secret for manifest callbacks.
        branch_name: Branch the batch run works on.
        error_message: Sanitized failure message.
        created_at: ISO8601 creation timestamp.
        updated_at: ISO8601 last update timestamp.
        completed_at: ISO8601 completion timestamp.
    """

    __tablename__ = "manifests"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    project_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    prd_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ManifestStatus.pending.value
    )
    completed_tasks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sandbox_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sandbox_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    sandbox_password: Mapped[str | None] = mapped_column(String(255), nullable=True)
    webhook_secret: Mapped[str | None] = mapped_column(String(128), nullable=True)
    branch_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso, onupdate=utc_now_iso
    )
    completed_at: Mapped[str | None] = mapped_column(String(50), nullable=True)

    project: Mapped["Project"] = relationship("Project", back_populates="manifests")

    __table_args__ = (
        Index("idx_manifests_project_status", "project_id", "status"),
        Index("idx_manifests_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Manifest(id={self.id!r}, name={self.name!r}, status={self.status!r})>"
        )
