"""Execution session ledger.

Append, query and partially update the record of each execution attempt.
One task may accumulate many sessions over time; the latest one is the
row with the greatest created_at.
"""

import logging

from pydantic import BaseModel
from sqlalchemy.orm import Session

from abraxas.db.models import (
    ExecutionMode,
    ExecutionSession,
    SessionStatus,
    generate_uuid,
    utc_now_iso,
)
from abraxas.errors.domain import NotFoundError

logger = logging.getLogger(__name__)


class SessionUpdate(BaseModel):
    """Partial update for an execution session.

    Only fields explicitly set on the model are written: an omitted field
    leaves the column untouched, while an explicit None clears it.
    """

    status: SessionStatus | None = None
    sandbox_name: str | None = None
    sandbox_url: str | None = None
    sandbox_password: str | None = None
    webhook_secret: str | None = None
    branch_name: str | None = None
    pull_request_url: str | None = None
    error_message: str | None = None
    logs: str | None = None
    message_count: str | None = None
    input_tokens: str | None = None
    output_tokens: str | None = None
    completed_at: str | None = None


class SessionLedger:
    """CRUD operations over execution sessions.

    create() and update() flush but do not commit, so callers can fold
    the write into a larger unit of work.

    Args:
        db: SQLAlchemy session.
    """

    def __init__(self, db: Session) -> None:
        self._db = db

    def create(
        self,
        task_id: str,
        correlation_id: str,
        execution_mode: ExecutionMode = ExecutionMode.sandbox,
        sandbox_name: str | None = None,
        sandbox_url: str | None = None,
        sandbox_password: str | None = None,
        webhook_secret: str | None = None,
        branch_name: str | None = None,
    ) -> ExecutionSession:
        """Stage a new pending session row.

        Args:
            task_id: Task the attempt belongs to.
            correlation_id: External correlation id.
            execution_mode: local or sandbox.
            sandbox_name: Provider-side sandbox handle.
            sandbox_url: Sandbox connection URL.
            sandbox_password: Sandbox connection password.
            webhook_secret: HMAC secret for completion callbacks.
            branch_name: Branch the run works on.

        Returns:
            The flushed ExecutionSession.
        """
        now = utc_now_iso()
        session = ExecutionSession(
            id=generate_uuid(),
            task_id=task_id,
            session_id=correlation_id,
            status=SessionStatus.pending.value,
            execution_mode=ExecutionMode(execution_mode).value,
            sandbox_name=sandbox_name,
            sandbox_url=sandbox_url,
            sandbox_password=sandbox_password,
            webhook_secret=webhook_secret,
            branch_name=branch_name,
            created_at=now,
            updated_at=now,
        )
        self._db.add(session)
        self._db.flush()
        return session

    def get(self, session_id: str) -> ExecutionSession:
        """Get a session by id.

        Raises:
            NotFoundError: If no such session exists.
        """
        session = self._db.get(ExecutionSession, session_id)
        if session is None:
            raise NotFoundError("session", session_id)
        return session

    def get_latest(self, task_id: str) -> ExecutionSession:
        """Return the most recently created session for a task.

        Raises:
            NotFoundError: If the task has no sessions.
        """
        session = (
            self._db.query(ExecutionSession)
            .filter(ExecutionSession.task_id == task_id)
            .order_by(ExecutionSession.created_at.desc(), ExecutionSession.id.desc())
            .first()
        )
        if session is None:
            raise NotFoundError("session", task_id)
        return session

    def get_for_tasks(self, task_ids: list[str]) -> list[ExecutionSession]:
        """Return all sessions for the given tasks, newest first.

        An empty id list returns an empty list without touching storage.
        """
        if not task_ids:
            return []
        return (
            self._db.query(ExecutionSession)
            .filter(ExecutionSession.task_id.in_(task_ids))
            .order_by(ExecutionSession.created_at.desc(), ExecutionSession.id.desc())
            .all()
        )

    def update(self, session_id: str, changes: SessionUpdate) -> ExecutionSession:
        """Merge explicitly provided fields into a session.

        Args:
            session_id: Session to update.
            changes: Partial update; only fields in model_fields_set are written.

        Returns:
            The updated session.

        Raises:
            NotFoundError: If no such session exists.
        """
        session = self.get(session_id)
        for field_name, value in changes.model_dump(exclude_unset=True).items():
            if isinstance(value, SessionStatus):
                value = value.value
            setattr(session, field_name, value)
        session.updated_at = utc_now_iso()
        self._db.flush()
        logger.debug(
            "Updated session %s fields=%s", session_id, sorted(changes.model_fields_set)
        )
        return session
