"""Task execution state machine.

Orchestrates one execution attempt of a task: authorize, claim the task,
build the agent prompt, decrypt the repository credential, spawn a
sandbox, then record the session, the task's new state and an audit
comment in a single commit.

The claim is an atomic conditional UPDATE (compare-and-swap on
execution_state), so two concurrent execute calls can never both spawn
a sandbox for the same task. Once claimed, the attempt is a small saga:

- a failure before or during spawn releases the claim;
- a failure while persisting rolls back, releases the claim and issues a
  compensating best-effort destroy of the sandbox that was just spawned.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import update
from sqlalchemy.orm import Session

from abraxas.config import Settings
from abraxas.db.models import (
    AgentModel,
    Comment,
    ExecutionMode,
    ExecutionState,
    SandboxPurpose,
    Task,
    TaskStatus,
    User,
    utc_now_iso,
)
from abraxas.errors.domain import ValidationError
from abraxas.services.authorization import resolve_session, resolve_task
from abraxas.services.comment_service import CommentService, load_task_comments
from abraxas.services.credential_vault import CredentialVault
from abraxas.services.sandbox_manager import SandboxManager, TaskSpawnRequest
from abraxas.services.session_ledger import SessionLedger, SessionUpdate
from abraxas.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)


# Valid execution state transitions. Every state but in_progress may
# start a new run; in_progress -> idle is the release of a failed claim
# (or an operator reset of a stuck run).
VALID_TRANSITIONS: dict[ExecutionState, list[ExecutionState]] = {
    ExecutionState.idle: [ExecutionState.in_progress],
    ExecutionState.in_progress: [
        ExecutionState.awaiting_review,
        ExecutionState.completed,
        ExecutionState.error,
        ExecutionState.idle,
    ],
    ExecutionState.awaiting_review: [ExecutionState.in_progress, ExecutionState.completed],
    ExecutionState.completed: [ExecutionState.in_progress],
    ExecutionState.error: [ExecutionState.in_progress, ExecutionState.idle],
}


class InvalidStateTransition(ValidationError):
    """Raised when a task's execution state change is not allowed.

    Attributes:
        current_state: The current execution state.
        attempted_state: The state that was attempted.
        allowed_transitions: Valid targets from the current state.
    """

    def __init__(
        self,
        current_state: ExecutionState,
        attempted_state: ExecutionState,
        allowed_transitions: list[ExecutionState],
    ) -> None:
        self.current_state = current_state
        self.attempted_state = attempted_state
        self.allowed_transitions = allowed_transitions
        allowed_str = ", ".join(s.value for s in allowed_transitions) or "none"
        super().__init__(
            "execution_state",
            f"Cannot transition from '{current_state.value}' to '{attempted_state.value}'. "
            f"Allowed transitions: {allowed_str}",
        )


def can_transition(current: ExecutionState | str, target: ExecutionState | str) -> bool:
    """Return True if moving from current to target is allowed."""
    return ExecutionState(target) in VALID_TRANSITIONS[ExecutionState(current)]


def check_transition(current: ExecutionState | str, target: ExecutionState | str) -> None:
    """Raise InvalidStateTransition unless current -> target is allowed.

    Staying in the same state is always accepted.
    """
    current_state = ExecutionState(current)
    target_state = ExecutionState(target)
    if current_state == target_state:
        return
    if not can_transition(current_state, target_state):
        raise InvalidStateTransition(
            current_state, target_state, VALID_TRANSITIONS[current_state]
        )


# Agent model identifiers -> provider-qualified model strings
AGENT_MODEL_MAP: dict[str, str] = {
    AgentModel.grok_1.value: "xai/grok-3-beta",
    AgentModel.claude_opus_4_5.value: "anthropic/claude-opus-4-5-20251101",
    AgentModel.claude_sonnet_4_5.value: "anthropic/claude-sonnet-4-5-20250929",
    AgentModel.claude_haiku_4_5.value: "anthropic/claude-haiku-4-5-20251001",
}
DEFAULT_AGENT_MODEL = "anthropic/claude-sonnet-4-5-20250929"


def resolve_agent_model(model: str | None) -> str:
    """Map a task's model identifier; unknown or missing falls back to the default."""
    return AGENT_MODEL_MAP.get(model or "", DEFAULT_AGENT_MODEL)


def build_prompt(
    task: Task,
    comments: list[Comment],
    agent_instructions: str | None = None,
) -> str:
    """Render the agent prompt for a task.

    Title first, then the description if present, then the comment
    transcript in creation order with each line attributed to "User" or
    "Agent (<name>)". Project agent instructions are appended last.
    """
    parts = [f"Task: {task.title}\n\n"]
    if task.description:
        parts.append(f"Description:\n{task.description}\n\n")
    if comments:
        parts.append("Comments:\n")
        for comment in comments:
            author = f"Agent ({comment.agent_name or 'unknown'})" if comment.is_agent else "User"
            parts.append(f"- {author}: {comment.content}\n")
        parts.append("\n")
    if agent_instructions:
        parts.append(f"Project instructions:\n{agent_instructions}\n")
    return "".join(parts)


@dataclass
class ExecutionResult:
    """Outcome of a successful execute call."""

    task_id: str
    session_id: str
    sandbox_name: str
    branch_name: str


class TaskExecutionService:
    """Runs tasks in sandboxes.

    Args:
        db: SQLAlchemy session.
        vault: Credential vault for the repository token and agent auth.
        sandboxes: Sandbox lifecycle manager bound to the same session.
        settings: Runtime settings.
    """

    def __init__(
        self,
        db: Session,
        vault: CredentialVault,
        sandboxes: SandboxManager,
        settings: Settings,
    ) -> None:
        self.db = db
        self.vault = vault
        self.sandboxes = sandboxes
        self.settings = settings
        self.ledger = SessionLedger(db)
        self.comments = CommentService(db, agent_name=settings.system_agent_name)

    def execute(self, task_id: str, caller: User) -> ExecutionResult:
        """Start one execution attempt of a task.

        Args:
            task_id: Task to execute.
            caller: Resolved caller; must own the task's project.

        Returns:
            ExecutionResult with the new session, sandbox and branch.

        Raises:
            NotFoundError: If the task or its project does not exist.
            UnauthorizedError: If the caller does not own the project.
            ValidationError: If the task is already executing, or the
                project has no usable repository URL.
            DecryptionError: If the stored credential cannot be decrypted.
            SandboxExecutionError: If the sandbox could not be started.
        """
        task, project = resolve_task(self.db, task_id, caller)
        previous_state = ExecutionState(task.execution_state)

        if not self._claim(task_id):
            raise ValidationError(
                "execution_state", "Task is already executing", code="E-2002"
            )
        logger.info("Claimed task %s for execution (was %s)", task_id, previous_state.value)

        try:
            prompt = build_prompt(
                task,
                load_task_comments(self.db, task_id),
                project.agents_md_content,
            )
            access_token = self.vault.decrypt(project.encrypted_token)
            agent_auth = (
                self.vault.decrypt(caller.encrypted_agent_auth)
                if caller.encrypted_agent_auth
                else None
            )
            spawn = self.sandboxes.spawn_for_task(
                TaskSpawnRequest(
                    task_id=task.id,
                    task_title=task.title,
                    task_description=task.description,
                    branch_name=task.branch_name,
                    model=task.model,
                    project_id=project.id,
                    repository_url=project.repository_url,
                    access_token=access_token,
                    prompt=prompt,
                    caller_id=caller.id,
                    agent_model=resolve_agent_model(task.model),
                    agent_auth=agent_auth,
                    local_setup_script=project.local_setup_script,
                )
            )
        except Exception:
            self._release(task_id, previous_state)
            raise

        try:
            session = self.ledger.create(
                task_id=task.id,
                correlation_id=task.id,
                execution_mode=ExecutionMode.sandbox,
                sandbox_name=spawn.sandbox_name,
                sandbox_url=spawn.sandbox_url,
                sandbox_password=spawn.sandbox_password,
                webhook_secret=spawn.webhook_secret,
                branch_name=spawn.branch_name,
            )
            task.execution_state = ExecutionState.in_progress.value
            task.status = TaskStatus.running.value
            task.branch_name = spawn.branch_name
            self.sandboxes.register(
                project_id=project.id,
                branch_name=spawn.branch_name,
                purpose=SandboxPurpose.task,
                sandbox_name=spawn.sandbox_name,
                sandbox_url=spawn.sandbox_url,
                webhook_secret=spawn.webhook_secret,
            )
            self.comments.add_agent_comment(
                task.id,
                f"Execution started on sandbox: {spawn.sandbox_name}\nBranch: {spawn.branch_name}",
                commit=False,
            )
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(
                "Persisting execution of task %s failed, destroying sandbox %s: %s",
                task_id, spawn.sandbox_name, sanitize_error_message(str(e)),
            )
            self._release(task_id, previous_state)
            self.sandboxes.destroy_sandbox(spawn.sandbox_name, reason="execute compensation")
            self.db.commit()
            raise

        logger.info(
            "Task %s executing in sandbox %s on branch %s",
            task_id, spawn.sandbox_name, spawn.branch_name,
        )
        return ExecutionResult(
            task_id=task.id,
            session_id=session.id,
            sandbox_name=spawn.sandbox_name,
            branch_name=spawn.branch_name,
        )

    def destroy_session_sandbox(self, session_id: str, caller: User):
        """Destroy the sandbox of an execution session and clear its handle.

        Authorization walks session -> task -> project. The destroy is
        best-effort; the session's sandbox name and url are cleared
        either way.

        Returns:
            The updated ExecutionSession.
        """
        session, _task, _project = resolve_session(self.db, session_id, caller)
        if session.sandbox_name:
            self.sandboxes.destroy_sandbox(session.sandbox_name, reason=f"session:{session.id}")
        session = self.ledger.update(
            session.id, SessionUpdate(sandbox_name=None, sandbox_url=None)
        )
        self.db.commit()
        return session

    def _claim(self, task_id: str) -> bool:
        result = self.db.execute(
            update(Task)
            .where(
                Task.id == task_id,
                Task.execution_state != ExecutionState.in_progress.value,
            )
            .values(
                execution_state=ExecutionState.in_progress.value,
                updated_at=utc_now_iso(),
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def _release(self, task_id: str, previous_state: ExecutionState) -> None:
        # Commits whatever is pending, including destroy retries queued by a
        # failed spawn.
        self.db.execute(
            update(Task)
            .where(
                Task.id == task_id,
                Task.execution_state == ExecutionState.in_progress.value,
            )
            .values(execution_state=previous_state.value, updated_at=utc_now_iso())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        logger.info("Released claim on task %s (back to %s)", task_id, previous_state.value)

    def tail_session_log(self, session_id: str, caller: User, lines: int = 20) -> str:
        """Return the tail of the run log of a session's live sandbox.

        Raises:
            ValidationError: If lines is out of range or the session has
                no live sandbox.
            SandboxExecutionError: If the provider call fails.
        """
        if not 1 <= lines <= 1000:
            raise ValidationError("lines", "lines must be between 1 and 1000")
        session, _task, _project = resolve_session(self.db, session_id, caller)
        if not session.sandbox_name:
            raise ValidationError("session_id", "Session has no live sandbox")
        return self.sandboxes.tail_log(session.sandbox_name, lines)
