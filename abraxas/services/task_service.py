"""Task CRUD.

Tasks carry no owner of their own; every operation authorizes through
the task's project. Manual execution_state changes are checked against
the execution state machine; the in_progress claim itself is only ever
taken by TaskExecutionService.
"""

import logging
from enum import Enum

from sqlalchemy.orm import Session

from abraxas.db.models import (
    AgentModel,
    ExecutionState,
    Task,
    TaskStatus,
    TaskType,
    User,
    generate_uuid,
    utc_now_iso,
)
from abraxas.errors.domain import ValidationError
from abraxas.services.authorization import resolve_project, resolve_task
from abraxas.services.task_execution import check_transition

logger = logging.getLogger(__name__)

# Field name -> enum the value must belong to
_ENUM_FIELDS: dict[str, type[Enum]] = {
    "type": TaskType,
    "status": TaskStatus,
    "model": AgentModel,
    "execution_state": ExecutionState,
}
_TEXT_FIELDS = ("title", "description", "branch_name")


def _enum_value(field_name: str, value) -> str:
    enum_cls = _ENUM_FIELDS[field_name]
    try:
        return enum_cls(value).value
    except ValueError as e:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(
            field_name, f"Invalid {field_name} '{value}'. Allowed: {allowed}"
        ) from e


class TaskService:
    """Owner-scoped operations on tasks.

    Args:
        db: SQLAlchemy session.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def create(
        self,
        project_id: str,
        caller: User,
        title: str,
        description: str | None = None,
        type: str = TaskType.feature.value,
        model: str = AgentModel.claude_sonnet_4_5.value,
        status: str = TaskStatus.backlog.value,
    ) -> Task:
        """Create a task in a project the caller owns.

        New tasks start idle; the board status defaults to backlog.
        """
        project = resolve_project(self.db, project_id, caller)
        if not title or not title.strip():
            raise ValidationError("title", "Task title is required")

        now = utc_now_iso()
        task = Task(
            id=generate_uuid(),
            project_id=project.id,
            title=title.strip(),
            description=description,
            type=_enum_value("type", type),
            status=_enum_value("status", status),
            model=_enum_value("model", model),
            execution_state=ExecutionState.idle.value,
            created_at=now,
            updated_at=now,
        )
        self.db.add(task)
        self.db.commit()
        logger.info("Created task %s in project %s", task.id, project.id)
        return task

    def get(self, task_id: str, caller: User) -> Task:
        task, _project = resolve_task(self.db, task_id, caller)
        return task

    def list_tasks(self, project_id: str, caller: User) -> list[Task]:
        """Return a project's tasks in creation order."""
        resolve_project(self.db, project_id, caller)
        return (
            self.db.query(Task)
            .filter(Task.project_id == project_id)
            .order_by(Task.created_at.asc(), Task.id.asc())
            .all()
        )

    def update(self, task_id: str, caller: User, **changes) -> Task:
        """Apply a partial update.

        Raises:
            ValidationError: For blank titles, unknown enum values, or an
                execution_state change the state machine does not allow.
        """
        task, _project = resolve_task(self.db, task_id, caller)

        for field_name in _TEXT_FIELDS:
            if field_name in changes:
                if field_name == "title" and not (changes["title"] or "").strip():
                    raise ValidationError("title", "Task title is required")
                setattr(task, field_name, changes[field_name])

        for field_name in _ENUM_FIELDS:
            if field_name not in changes or changes[field_name] is None:
                continue
            value = _enum_value(field_name, changes[field_name])
            if field_name == "execution_state":
                if value == ExecutionState.in_progress.value:
                    raise ValidationError("execution_state", "Use execute to start a run")
                check_transition(task.execution_state, value)
            setattr(task, field_name, value)

        task.updated_at = utc_now_iso()
        self.db.commit()
        return task

    def delete(self, task_id: str, caller: User) -> None:
        """Delete a task with its comments and sessions."""
        task, _project = resolve_task(self.db, task_id, caller)
        self.db.delete(task)
        self.db.commit()
        logger.info("Deleted task %s", task_id)
