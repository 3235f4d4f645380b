"""Ownership resolvers for projects and everything that hangs off them.

Only a project carries an owner. Tasks, comments, execution sessions and
manifests are authorized by walking up to their project and comparing
its owner with the caller. Every caller-facing operation goes through
these functions; there is no implicit relationship loading involved, so
a broken chain fails closed as NotFound.
"""

from sqlalchemy.orm import Session

from abraxas.db.models import Comment, ExecutionSession, Manifest, Project, Task, User
from abraxas.errors.domain import NotFoundError, UnauthorizedError


def _check_owner(project: Project, caller: User) -> None:
    if project.user_id != caller.id:
        raise UnauthorizedError()


def resolve_project(db: Session, project_id: str, caller: User) -> Project:
    """Load a project owned by the caller.

    Raises:
        NotFoundError: If the project does not exist.
        UnauthorizedError: If the caller is not the owner.
    """
    project = db.get(Project, project_id)
    if project is None:
        raise NotFoundError("project", project_id)
    _check_owner(project, caller)
    return project


def resolve_project_for_task(db: Session, task: Task) -> Project:
    """Load the project a task belongs to.

    Raises:
        NotFoundError: If the task's project no longer exists.
    """
    project = db.get(Project, task.project_id)
    if project is None:
        raise NotFoundError("project", task.project_id)
    return project


def resolve_task(db: Session, task_id: str, caller: User) -> tuple[Task, Project]:
    """Load a task and its project, checking the project owner.

    Raises:
        NotFoundError: If the task or its project does not exist.
        UnauthorizedError: If the caller does not own the project.
    """
    task = db.get(Task, task_id)
    if task is None:
        raise NotFoundError("task", task_id)
    project = resolve_project_for_task(db, task)
    _check_owner(project, caller)
    return task, project


def resolve_comment(
    db: Session, comment_id: str, caller: User
) -> tuple[Comment, Task, Project]:
    """Load a comment through its task and project."""
    comment = db.get(Comment, comment_id)
    if comment is None:
        raise NotFoundError("comment", comment_id)
    task, project = resolve_task(db, comment.task_id, caller)
    return comment, task, project


def resolve_session(
    db: Session, session_id: str, caller: User
) -> tuple[ExecutionSession, Task, Project]:
    """Load an execution session through its task and project."""
    session = db.get(ExecutionSession, session_id)
    if session is None:
        raise NotFoundError("session", session_id)
    task, project = resolve_task(db, session.task_id, caller)
    return session, task, project


def resolve_manifest(
    db: Session, manifest_id: str, caller: User
) -> tuple[Manifest, Project]:
    """Load a manifest and its project, checking the project owner."""
    manifest = db.get(Manifest, manifest_id)
    if manifest is None:
        raise NotFoundError("manifest", manifest_id)
    project = db.get(Project, manifest.project_id)
    if project is None:
        raise NotFoundError("project", manifest.project_id)
    _check_owner(project, caller)
    return manifest, project
