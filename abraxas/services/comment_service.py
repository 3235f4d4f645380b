"""Append-only task comments.

Comments are ordered by (created_at, sequence). The sequence is a
per-task counter assigned inside the inserting transaction, so two
comments landing within the same clock tick still have a strict order
that later reads (and prompt construction) agree on.
"""

import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from abraxas.db.models import Comment, User, generate_uuid, utc_now_iso
from abraxas.errors.domain import ValidationError
from abraxas.services.authorization import resolve_task

logger = logging.getLogger(__name__)

SYSTEM_AGENT_NAME = "Abraxas"


def load_task_comments(db: Session, task_id: str) -> list[Comment]:
    """Return a task's comments in creation order, without authorization."""
    return (
        db.query(Comment)
        .filter(Comment.task_id == task_id)
        .order_by(Comment.created_at.asc(), Comment.sequence.asc())
        .all()
    )


def _next_sequence(db: Session, task_id: str) -> int:
    # SELECT MAX + INSERT is safe under SQLite's single writer; the
    # (task_id, sequence) unique constraint rejects a lost race elsewhere.
    current = (
        db.query(func.max(Comment.sequence))
        .filter(Comment.task_id == task_id)
        .scalar()
    )
    return (current or 0) + 1


class CommentService:
    """Create and list comments on tasks.

    Args:
        db: SQLAlchemy session.
        agent_name: Default author name for agent comments.
    """

    def __init__(self, db: Session, agent_name: str = SYSTEM_AGENT_NAME) -> None:
        self._db = db
        self._agent_name = agent_name

    def add_user_comment(self, task_id: str, caller: User, content: str) -> Comment:
        """Append a comment authored by the caller.

        Raises:
            NotFoundError: If the task (or its project) does not exist.
            UnauthorizedError: If the caller does not own the project.
            ValidationError: If the content is blank.
        """
        resolve_task(self._db, task_id, caller)
        if not content or not content.strip():
            raise ValidationError("content", "Comment content is required")
        comment = self._append(task_id, content.strip(), user_id=caller.id)
        self._db.commit()
        return comment

    def add_agent_comment(
        self,
        task_id: str,
        content: str,
        agent_name: str | None = None,
        commit: bool = True,
    ) -> Comment:
        """Append a comment authored by an agent.

        Args:
            task_id: Task to comment on.
            content: Comment body.
            agent_name: Author; defaults to the system agent.
            commit: Set False to fold the insert into the caller's transaction.
        """
        comment = self._append(task_id, content, agent_name=agent_name or self._agent_name)
        if commit:
            self._db.commit()
        return comment

    def list_comments(self, task_id: str, caller: User) -> list[Comment]:
        """Return a task's comments in creation order after an owner check."""
        resolve_task(self._db, task_id, caller)
        return load_task_comments(self._db, task_id)

    def _append(
        self,
        task_id: str,
        content: str,
        user_id: str | None = None,
        agent_name: str | None = None,
    ) -> Comment:
        comment = Comment(
            id=generate_uuid(),
            task_id=task_id,
            user_id=user_id,
            agent_name=agent_name,
            content=content,
            sequence=_next_sequence(self._db, task_id),
            created_at=utc_now_iso(),
        )
        self._db.add(comment)
        self._db.flush()
        return comment
