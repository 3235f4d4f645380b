"""FastAPI routes for manifests.

A manifest runs a project's open tasks in one long-lived sandbox on a
shared branch. At most one manifest per project is active at a time.

PRD state is read from the repository's manifest-* branches; the task
loop inside the manifest sandbox works through that PRD.
"""

import httpx
from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from abraxas.api.dependencies import (
    get_current_user,
    get_github_transport,
    get_sandbox_manager,
    get_settings,
    get_vault,
)
from abraxas.api.schemas import (
    ManifestBranchResponse,
    ManifestCreate,
    ManifestResponse,
    PrdCreatorRequest,
    PrdCreatorResponse,
    PrdDataResponse,
    SandboxRecordResponse,
    StopSandboxRequest,
    StopSandboxResponse,
    UpdatePrdNameRequest,
)
from abraxas.config import Settings
from abraxas.db.connection import get_db
from abraxas.db.models import Manifest, SandboxRecord, User
from abraxas.services.credential_vault import CredentialVault
from abraxas.services.manifest_service import ManifestService
from abraxas.services.sandbox_manager import SandboxManager

router = APIRouter(prefix="/manifests", tags=["manifests"])


def get_manifest_service(
    db: Session = Depends(get_db),
    vault: CredentialVault = Depends(get_vault),
    sandboxes: SandboxManager = Depends(get_sandbox_manager),
    settings: Settings = Depends(get_settings),
    github_transport: httpx.BaseTransport | None = Depends(get_github_transport),
) -> ManifestService:
    """Dependency to get ManifestService instance."""
    return ManifestService(db, vault, sandboxes, settings, github_transport=github_transport)


@router.post("", response_model=ManifestResponse, status_code=201)
def create_manifest(
    data: ManifestCreate,
    caller: User = Depends(get_current_user),
    svc: ManifestService = Depends(get_manifest_service),
) -> Manifest:
    """Create a manifest and start its sandbox.

    Returns 400 with code E-2003 if the project already has an active
    manifest.
    """
    return svc.create_manifest(data.project_id, data.name, caller, prd_name=data.prd_name)


@router.get("", response_model=list[ManifestResponse])
def list_manifests(
    project_id: str = Query(..., description="Project to list manifests for"),
    caller: User = Depends(get_current_user),
    svc: ManifestService = Depends(get_manifest_service),
) -> list[Manifest]:
    return svc.list_manifests(project_id, caller)


@router.post("/stop-sandbox", response_model=StopSandboxResponse)
def stop_sandbox(
    data: StopSandboxRequest,
    caller: User = Depends(get_current_user),
    svc: ManifestService = Depends(get_manifest_service),
) -> StopSandboxResponse:
    """Destroy the manifest sandbox tracked for a branch, if any."""
    return StopSandboxResponse(
        stopped=svc.stop_sandbox(data.project_id, data.branch_name, caller)
    )


@router.get("/prd-data", response_model=dict[str, PrdDataResponse])
def get_prd_data(
    project_id: str = Query(...),
    caller: User = Depends(get_current_user),
    svc: ManifestService = Depends(get_manifest_service),
) -> dict[str, PrdDataResponse]:
    """PRD state per manifest id, read from GitHub.

    Running manifests whose PRD tasks all pass are completed as a side
    effect.
    """
    return {
        manifest_id: PrdDataResponse.model_validate(data)
        for manifest_id, data in svc.get_prd_data(project_id, caller).items()
    }


@router.get("/branches", response_model=list[ManifestBranchResponse])
def get_manifest_branches(
    project_id: str = Query(...),
    caller: User = Depends(get_current_user),
    svc: ManifestService = Depends(get_manifest_service),
) -> list[ManifestBranchResponse]:
    return [
        ManifestBranchResponse.model_validate(branch)
        for branch in svc.get_manifest_branches(project_id, caller)
    ]


@router.get("/orphaned-sandboxes", response_model=list[SandboxRecordResponse])
def get_orphaned_sandboxes(
    project_id: str = Query(...),
    branch_name: list[str] = Query(default=[]),
    caller: User = Depends(get_current_user),
    svc: ManifestService = Depends(get_manifest_service),
) -> list[SandboxRecord]:
    """Tracked manifest sandboxes on none of the given branch names."""
    return svc.get_orphaned_sandboxes(project_id, branch_name, caller)


@router.post("/prd-creator", response_model=PrdCreatorResponse, status_code=201)
def spawn_prd_creator(
    data: PrdCreatorRequest,
    caller: User = Depends(get_current_user),
    svc: ManifestService = Depends(get_manifest_service),
) -> PrdCreatorResponse:
    spawn = svc.spawn_prd_creator(data.project_id, caller)
    return PrdCreatorResponse(
        sandbox_name=spawn.sandbox_name,
        sandbox_url=spawn.sandbox_url,
        branch_name=spawn.branch_name,
    )


@router.get("/{manifest_id}", response_model=ManifestResponse)
def get_manifest(
    manifest_id: str,
    caller: User = Depends(get_current_user),
    svc: ManifestService = Depends(get_manifest_service),
) -> Manifest:
    return svc.get_manifest(manifest_id, caller)


@router.delete("/{manifest_id}", status_code=204)
def delete_manifest(
    manifest_id: str,
    caller: User = Depends(get_current_user),
    svc: ManifestService = Depends(get_manifest_service),
) -> Response:
    svc.delete_manifest(manifest_id, caller)
    return Response(status_code=204)


@router.post("/{manifest_id}/cancel", response_model=ManifestResponse)
def cancel_manifest(
    manifest_id: str,
    caller: User = Depends(get_current_user),
    svc: ManifestService = Depends(get_manifest_service),
) -> Manifest:
    return svc.cancel_manifest(manifest_id, caller)


@router.patch("/{manifest_id}/prd-name", response_model=ManifestResponse)
def update_prd_name(
    manifest_id: str,
    data: UpdatePrdNameRequest,
    caller: User = Depends(get_current_user),
    svc: ManifestService = Depends(get_manifest_service),
) -> Manifest:
    return svc.update_prd_name(manifest_id, data.prd_name, caller)


@router.post("/{manifest_id}/task-loop/start", response_model=ManifestResponse)
def start_task_loop(
    manifest_id: str,
    caller: User = Depends(get_current_user),
    svc: ManifestService = Depends(get_manifest_service),
) -> Manifest:
    """Start task-loop in the manifest sandbox. The manifest must be active."""
    return svc.start_task_loop(manifest_id, caller)


@router.post("/{manifest_id}/task-loop/stop", response_model=ManifestResponse)
def stop_task_loop(
    manifest_id: str,
    caller: User = Depends(get_current_user),
    svc: ManifestService = Depends(get_manifest_service),
) -> Manifest:
    return svc.stop_task_loop(manifest_id, caller)
