"""FastAPI routes for project management.

Provides REST API endpoints for project CRUD, the local setup toggle,
and the caller's agent auth.json.
"""

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from abraxas.api.dependencies import get_current_user, get_vault
from abraxas.api.schemas import (
    AgentAuthRequest,
    AgentAuthStatusResponse,
    LocalSetupResponse,
    ProjectCreate,
    ProjectResponse,
    ProjectUpdate,
)
from abraxas.db.connection import get_db
from abraxas.db.models import Project, User
from abraxas.services.credential_vault import CredentialVault
from abraxas.services.project_service import ProjectService

router = APIRouter(prefix="/projects", tags=["projects"])


def get_project_service(
    db: Session = Depends(get_db),
    vault: CredentialVault = Depends(get_vault),
) -> ProjectService:
    """Dependency to get ProjectService instance."""
    return ProjectService(db, vault)


@router.post("", response_model=ProjectResponse, status_code=201)
def create_project(
    data: ProjectCreate,
    caller: User = Depends(get_current_user),
    svc: ProjectService = Depends(get_project_service),
) -> Project:
    """Register a repository for the caller. The token is stored encrypted."""
    return svc.create(
        caller,
        name=data.name,
        repository_url=data.repository_url,
        access_token=data.access_token,
        description=data.description,
        agents_md_content=data.agents_md_content,
    )


@router.get("", response_model=list[ProjectResponse])
def list_projects(
    caller: User = Depends(get_current_user),
    svc: ProjectService = Depends(get_project_service),
) -> list[Project]:
    return svc.list_projects(caller)


@router.get("/{project_id}", response_model=ProjectResponse)
def get_project(
    project_id: str,
    caller: User = Depends(get_current_user),
    svc: ProjectService = Depends(get_project_service),
) -> Project:
    return svc.get(project_id, caller)


@router.patch("/{project_id}", response_model=ProjectResponse)
def update_project(
    project_id: str,
    data: ProjectUpdate,
    caller: User = Depends(get_current_user),
    svc: ProjectService = Depends(get_project_service),
) -> Project:
    """Apply the fields present in the request body."""
    return svc.update(project_id, caller, **data.model_dump(exclude_unset=True))


@router.delete("/{project_id}", status_code=204)
def delete_project(
    project_id: str,
    caller: User = Depends(get_current_user),
    svc: ProjectService = Depends(get_project_service),
) -> Response:
    svc.delete(project_id, caller)
    return Response(status_code=204)


@router.post("/{project_id}/local-setup", response_model=LocalSetupResponse)
def toggle_local_setup(
    project_id: str,
    caller: User = Depends(get_current_user),
    svc: ProjectService = Depends(get_project_service),
) -> LocalSetupResponse:
    """Flip local setup between the default script and disabled."""
    return LocalSetupResponse(enabled=svc.toggle_local_setup(project_id, caller))


@router.put("/agent-auth", response_model=AgentAuthStatusResponse)
def save_agent_auth(
    data: AgentAuthRequest,
    caller: User = Depends(get_current_user),
    svc: ProjectService = Depends(get_project_service),
) -> AgentAuthStatusResponse:
    """Store the caller's opencode auth.json, encrypted."""
    svc.save_agent_auth(caller, data.auth_json)
    return AgentAuthStatusResponse(configured=True)


@router.get("/agent-auth/status", response_model=AgentAuthStatusResponse)
def agent_auth_status(
    caller: User = Depends(get_current_user),
    svc: ProjectService = Depends(get_project_service),
) -> AgentAuthStatusResponse:
    return AgentAuthStatusResponse(configured=svc.has_agent_auth(caller))
