"""FastAPI routes for tasks, their comments and execution sessions.

Provides REST API endpoints for task CRUD, starting an execution,
the comment thread, the session history, and tearing down a session's
sandbox.
"""

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from abraxas.api.dependencies import (
    get_current_user,
    get_sandbox_manager,
    get_settings,
    get_vault,
)
from abraxas.api.schemas import (
    CommentCreate,
    CommentResponse,
    ExecuteResponse,
    SessionLogResponse,
    SessionResponse,
    TaskCreate,
    TaskResponse,
    TaskUpdate,
)
from abraxas.config import Settings
from abraxas.db.connection import get_db
from abraxas.db.models import Comment, ExecutionSession, Task, User
from abraxas.services.authorization import resolve_task
from abraxas.services.comment_service import CommentService
from abraxas.services.credential_vault import CredentialVault
from abraxas.services.sandbox_manager import SandboxManager
from abraxas.services.session_ledger import SessionLedger
from abraxas.services.task_execution import TaskExecutionService
from abraxas.services.task_service import TaskService

router = APIRouter(prefix="/tasks", tags=["tasks"])


def get_task_service(db: Session = Depends(get_db)) -> TaskService:
    """Dependency to get TaskService instance."""
    return TaskService(db)


def get_comment_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> CommentService:
    """Dependency to get CommentService instance."""
    return CommentService(db, agent_name=settings.system_agent_name)


def get_execution_service(
    db: Session = Depends(get_db),
    vault: CredentialVault = Depends(get_vault),
    sandboxes: SandboxManager = Depends(get_sandbox_manager),
    settings: Settings = Depends(get_settings),
) -> TaskExecutionService:
    """Dependency to get TaskExecutionService instance."""
    return TaskExecutionService(db, vault, sandboxes, settings)


@router.post("", response_model=TaskResponse, status_code=201)
def create_task(
    data: TaskCreate,
    caller: User = Depends(get_current_user),
    svc: TaskService = Depends(get_task_service),
) -> Task:
    return svc.create(
        data.project_id,
        caller,
        title=data.title,
        description=data.description,
        type=data.type.value,
        model=data.model.value,
        status=data.status.value,
    )


@router.get("", response_model=list[TaskResponse])
def list_tasks(
    project_id: str = Query(..., description="Project to list tasks for"),
    caller: User = Depends(get_current_user),
    svc: TaskService = Depends(get_task_service),
) -> list[Task]:
    return svc.list_tasks(project_id, caller)


@router.get("/{task_id}", response_model=TaskResponse)
def get_task(
    task_id: str,
    caller: User = Depends(get_current_user),
    svc: TaskService = Depends(get_task_service),
) -> Task:
    return svc.get(task_id, caller)


@router.patch("/{task_id}", response_model=TaskResponse)
def update_task(
    task_id: str,
    data: TaskUpdate,
    caller: User = Depends(get_current_user),
    svc: TaskService = Depends(get_task_service),
) -> Task:
    """Apply the fields present in the request body."""
    changes = {
        key: value.value if hasattr(value, "value") else value
        for key, value in data.model_dump(exclude_unset=True).items()
    }
    return svc.update(task_id, caller, **changes)


@router.delete("/{task_id}", status_code=204)
def delete_task(
    task_id: str,
    caller: User = Depends(get_current_user),
    svc: TaskService = Depends(get_task_service),
) -> Response:
    svc.delete(task_id, caller)
    return Response(status_code=204)


@router.post("/{task_id}/execute", response_model=ExecuteResponse, status_code=202)
def execute_task(
    task_id: str,
    caller: User = Depends(get_current_user),
    svc: TaskExecutionService = Depends(get_execution_service),
) -> ExecuteResponse:
    """Start an execution of the task in a fresh sandbox.

    Returns 400 with code E-2002 if the task is already executing.
    """
    result = svc.execute(task_id, caller)
    return ExecuteResponse(
        task_id=result.task_id,
        session_id=result.session_id,
        sandbox_name=result.sandbox_name,
        branch_name=result.branch_name,
    )


@router.get("/{task_id}/comments", response_model=list[CommentResponse])
def list_comments(
    task_id: str,
    caller: User = Depends(get_current_user),
    svc: CommentService = Depends(get_comment_service),
) -> list[Comment]:
    return svc.list_comments(task_id, caller)


@router.post("/{task_id}/comments", response_model=CommentResponse, status_code=201)
def add_comment(
    task_id: str,
    data: CommentCreate,
    caller: User = Depends(get_current_user),
    svc: CommentService = Depends(get_comment_service),
) -> Comment:
    return svc.add_user_comment(task_id, caller, data.content)


@router.get("/{task_id}/sessions", response_model=list[SessionResponse])
def list_sessions(
    task_id: str,
    caller: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[ExecutionSession]:
    """Return the task's execution sessions, newest first."""
    resolve_task(db, task_id, caller)
    return SessionLedger(db).get_for_tasks([task_id])


@router.get("/sessions/{session_id}/log", response_model=SessionLogResponse)
def tail_session_log(
    session_id: str,
    lines: int = Query(20, ge=1, le=1000),
    caller: User = Depends(get_current_user),
    svc: TaskExecutionService = Depends(get_execution_service),
) -> SessionLogResponse:
    """Return the last lines of the run log inside the session's sandbox."""
    return SessionLogResponse(
        session_id=session_id,
        output=svc.tail_session_log(session_id, caller, lines),
    )


@router.delete("/sessions/{session_id}/sandbox", response_model=SessionResponse)
def destroy_session_sandbox(
    session_id: str,
    caller: User = Depends(get_current_user),
    svc: TaskExecutionService = Depends(get_execution_service),
) -> ExecutionSession:
    """Destroy the session's sandbox (best-effort) and clear its handle."""
    return svc.destroy_session_sandbox(session_id, caller)
