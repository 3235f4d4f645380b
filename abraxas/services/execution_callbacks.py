"""Signed callbacks from task sandboxes.

The run script inside a sandbox reports its progress by POSTing JSON
events signed with the session's webhook secret
(X-Webhook-Signature: sha256=<hex>). Signatures are verified against
the raw request body before anything is parsed.

Event types:
    started    session in_progress, agent comment
    progress   session counters only
    completed  session completed, task -> review / awaiting_review,
               summary comment, sandbox destroyed
    error      session error, task -> failed / error, failure comment,
               sandbox destroyed
    question   agent comment carrying the question
"""

import hashlib
import hmac
import json
import logging
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from abraxas.config import Settings
from abraxas.db.models import (
    ExecutionSession,
    ExecutionState,
    SessionStatus,
    Task,
    TaskStatus,
    utc_now_iso,
)
from abraxas.errors.domain import NotFoundError, ValidationError, WebhookSignatureError
from abraxas.services.comment_service import CommentService
from abraxas.services.sandbox_manager import SandboxManager
from abraxas.services.session_ledger import SessionLedger, SessionUpdate

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
_SIGNATURE_PREFIX = "sha256="


def verify_signature(raw_body: bytes, signature: str | None, secret: str) -> bool:
    """Check an HMAC-SHA256 signature in constant time.

    Accepts both ``sha256=<hex>`` and bare hex.
    """
    if not signature or not secret:
        return False
    provided = signature[len(_SIGNATURE_PREFIX):] if signature.startswith(_SIGNATURE_PREFIX) else signature
    expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(provided.encode(), expected.encode())


# =============================================================================
# Payloads
# =============================================================================


class CallbackEvent(BaseModel):
    """Base for callback payloads; accepts camelCase or snake_case keys."""

    model_config = ConfigDict(populate_by_name=True)


class RunStats(CallbackEvent):
    """Agent usage counters reported by the run script."""

    message_count: int = Field(alias="messageCount", ge=0)
    input_tokens: int = Field(alias="inputTokens", ge=0)
    output_tokens: int = Field(alias="outputTokens", ge=0)


class ProgressData(RunStats):
    message: str | None = None


class StartedEvent(CallbackEvent):
    type: Literal["started"]
    message: str | None = None


class ProgressEvent(CallbackEvent):
    type: Literal["progress"]
    progress: ProgressData


class CompletedEvent(CallbackEvent):
    type: Literal["completed"]
    summary: str | None = None
    pull_request_url: str | None = Field(default=None, alias="pullRequestUrl")
    branch_name: str | None = Field(default=None, alias="branchName")
    stats: RunStats | None = None


class ErrorEvent(CallbackEvent):
    type: Literal["error"]
    error: str
    logs: str | None = None


class QuestionEvent(CallbackEvent):
    type: Literal["question"]
    question: str


SandboxEvent = Annotated[
    Union[StartedEvent, ProgressEvent, CompletedEvent, ErrorEvent, QuestionEvent],
    Field(discriminator="type"),
]

_sandbox_event_adapter = TypeAdapter(SandboxEvent)


def parse_event(adapter: TypeAdapter, raw_body: bytes):
    """Parse a verified callback body with the given pydantic adapter.

    Raises:
        ValidationError: If the body is not JSON or matches no event type.
    """
    try:
        return adapter.validate_python(json.loads(raw_body))
    except (json.JSONDecodeError, UnicodeDecodeError, PydanticValidationError) as e:
        logger.info("Rejected callback payload: %s", type(e).__name__)
        raise ValidationError("payload", "Invalid payload format") from e


# =============================================================================
# Service
# =============================================================================


class ExecutionCallbackService:
    """Applies signed sandbox events to sessions, tasks and comments.

    Args:
        db: SQLAlchemy session.
        sandboxes: Sandbox manager used to tear down finished sandboxes.
        settings: Runtime settings (system agent name).
    """

    def __init__(self, db: Session, sandboxes: SandboxManager, settings: Settings) -> None:
        self.db = db
        self.sandboxes = sandboxes
        self.ledger = SessionLedger(db)
        self.agent_name = settings.system_agent_name
        self.comments = CommentService(db, agent_name=self.agent_name)
        self._handlers = {
            "started": self._on_started,
            "progress": self._on_progress,
            "completed": self._on_completed,
            "error": self._on_error,
            "question": self._on_question,
        }

    def handle(self, task_id: str, raw_body: bytes, signature: str | None) -> str:
        """Verify and apply one event for a task's latest session.

        Args:
            task_id: Task the sandbox is running for.
            raw_body: Request body exactly as received.
            signature: Value of the X-Webhook-Signature header.

        Returns:
            The event type that was applied.

        Raises:
            WebhookSignatureError: If the signature is missing or invalid.
            NotFoundError: If the task has no session.
            ValidationError: If the verified body is not a known event.
        """
        if not signature:
            raise WebhookSignatureError(f"Missing {SIGNATURE_HEADER} header")

        session = self.ledger.get_latest(task_id)
        if not session.webhook_secret:
            raise WebhookSignatureError("No webhook secret found for session")
        if not verify_signature(raw_body, signature, session.webhook_secret):
            logger.warning("Rejected callback for task %s: invalid signature", task_id)
            raise WebhookSignatureError()

        event = parse_event(_sandbox_event_adapter, raw_body)
        task = self.db.get(Task, task_id)
        if task is None:
            raise NotFoundError("task", task_id)

        self._handlers[event.type](task, session, event)
        self.db.commit()
        logger.info("Applied %s event for task %s (session %s)", event.type, task_id, session.id)
        return event.type

    def _on_started(self, task: Task, session: ExecutionSession, event: StartedEvent) -> None:
        self.ledger.update(session.id, SessionUpdate(status=SessionStatus.in_progress))
        message = event.message or "Sandbox execution started"
        self.comments.add_agent_comment(task.id, f"Execution started\n\n{message}", commit=False)

    def _on_progress(self, task: Task, session: ExecutionSession, event: ProgressEvent) -> None:
        progress = event.progress
        self.ledger.update(
            session.id,
            SessionUpdate(
                message_count=str(progress.message_count),
                input_tokens=str(progress.input_tokens),
                output_tokens=str(progress.output_tokens),
            ),
        )

    def _on_completed(self, task: Task, session: ExecutionSession, event: CompletedEvent) -> None:
        now = utc_now_iso()
        changes = SessionUpdate(
            status=SessionStatus.completed,
            completed_at=now,
            pull_request_url=event.pull_request_url or None,
            branch_name=event.branch_name or session.branch_name,
        )
        if event.stats:
            changes.message_count = str(event.stats.message_count)
            changes.input_tokens = str(event.stats.input_tokens)
            changes.output_tokens = str(event.stats.output_tokens)
        self.ledger.update(session.id, changes)

        self._move_task(task, TaskStatus.review, ExecutionState.awaiting_review)
        task.completed_at = now
        if event.branch_name:
            task.branch_name = event.branch_name

        lines = [f"Execution completed\n\n{event.summary or 'Task execution completed successfully'}"]
        if event.pull_request_url:
            lines.append(f"PR: {event.pull_request_url}")
        if event.stats:
            lines.append(
                f"Stats: {event.stats.message_count} messages, "
                f"{event.stats.input_tokens} input tokens, "
                f"{event.stats.output_tokens} output tokens"
            )
        self.comments.add_agent_comment(task.id, "\n\n".join(lines), commit=False)
        self._teardown(session, reason="completed")

    def _on_error(self, task: Task, session: ExecutionSession, event: ErrorEvent) -> None:
        self.ledger.update(
            session.id,
            SessionUpdate(
                status=SessionStatus.error,
                error_message=event.error,
                logs=event.logs or event.error,
                completed_at=utc_now_iso(),
            ),
        )
        self._move_task(task, TaskStatus.failed, ExecutionState.error)
        self.comments.add_agent_comment(
            task.id,
            f"Execution failed\n\nError: {event.error}\n\nPlease review the error and try again.",
            commit=False,
        )
        self._teardown(session, reason="error")

    def _on_question(self, task: Task, session: ExecutionSession, event: QuestionEvent) -> None:
        self.comments.add_agent_comment(
            task.id,
            f"Question from {self.agent_name}:\n\n{event.question}\n\n"
            "Please respond in the comments to continue execution.",
            commit=False,
        )

    def _move_task(self, task: Task, status: TaskStatus, state: ExecutionState) -> None:
        # Applied even when the task is no longer in_progress.
        if task.execution_state != ExecutionState.in_progress.value:
            logger.warning(
                "Task %s received %s callback while %s",
                task.id, state.value, task.execution_state,
            )
        task.status = status.value
        task.execution_state = state.value
        task.updated_at = utc_now_iso()

    def _teardown(self, session: ExecutionSession, reason: str) -> None:
        if not session.sandbox_name:
            return
        self.sandboxes.destroy_sandbox(session.sandbox_name, reason=f"{reason}:{session.id}")
        self.ledger.update(session.id, SessionUpdate(sandbox_name=None, sandbox_url=None))
