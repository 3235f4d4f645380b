"""Manifests: batch runs of a project's tasks under one long-lived sandbox.

A project may have at most one manifest whose status is pending, active
or running. Storage does not enforce this, so get_active() tolerates a
violation: it logs a warning and deterministically picks the earliest.

The manifest sandbox reports back through signed callbacks:
    started         manifest active
    branch_ready    manifest running, branch stored, sandbox registered
    task_completed  completed-task counter incremented
    completed       manifest completed, sandbox destroyed
    error           manifest failed, sandbox destroyed

Progress of a PRD-driven run is also read from GitHub: the PRD state on
the manifest-<prd name> branch decides when a running manifest is done.
"""

import logging
from dataclasses import dataclass
from typing import Annotated, Literal, Union

import httpx
from pydantic import Field, TypeAdapter
from sqlalchemy.orm import Session

from abraxas.config import Settings
from abraxas.db.models import (
    ACTIVE_MANIFEST_STATUSES,
    Manifest,
    ManifestStatus,
    Project,
    SandboxPurpose,
    SandboxRecord,
    Task,
    TaskStatus,
    User,
    generate_uuid,
    utc_now_iso,
)
from abraxas.errors.domain import (
    DomainError,
    GitHubFetchError,
    NotFoundError,
    ValidationError,
    WebhookSignatureError,
)
from abraxas.services.authorization import resolve_manifest, resolve_project
from abraxas.services.credential_vault import CredentialVault
from abraxas.services.execution_callbacks import (
    SIGNATURE_HEADER,
    CallbackEvent,
    parse_event,
    verify_signature,
)
from abraxas.services.github_client import GitHubClient, PrdData
from abraxas.services.sandbox_manager import (
    ManifestSpawnRequest,
    PrdCreatorSpawnRequest,
    SandboxManager,
    SpawnResult,
)
from abraxas.services.sandbox_scripts import (
    generate_webhook_secret,
    manifest_branch_name,
    render_task_loop_script,
    slugify,
    validate_prd_name,
)
from abraxas.services.task_execution import resolve_agent_model
from abraxas.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)


# =============================================================================
# Callback payloads
# =============================================================================


class ManifestStartedEvent(CallbackEvent):
    type: Literal["started"]
    message: str | None = None


class BranchReadyEvent(CallbackEvent):
    type: Literal["branch_ready"]
    branch_name: str = Field(alias="branchName", min_length=1)


class TaskCompletedEvent(CallbackEvent):
    type: Literal["task_completed"]
    task_id: str | None = Field(default=None, alias="taskId")


class ManifestCompletedEvent(CallbackEvent):
    type: Literal["completed"]
    summary: str | None = None


class ManifestErrorEvent(CallbackEvent):
    type: Literal["error"]
    error: str


ManifestEvent = Annotated[
    Union[
        ManifestStartedEvent,
        BranchReadyEvent,
        TaskCompletedEvent,
        ManifestCompletedEvent,
        ManifestErrorEvent,
    ],
    Field(discriminator="type"),
]

_manifest_event_adapter = TypeAdapter(ManifestEvent)


def build_manifest_prompt(name: str, tasks: list[Task]) -> str:
    """Render the instructions for a manifest sandbox."""
    parts = [f"Manifest: {name}\n\n"]
    parts.append(
        "Work through the following tasks in order. Commit and push after "
        "finishing each one.\n\n"
    )
    for index, task in enumerate(tasks, start=1):
        parts.append(f"{index}. {task.title}\n")
        if task.description:
            parts.append(f"   {task.description}\n")
    return "".join(parts)


def _default_prd_name(name: str) -> str | None:
    slug = slugify(name)
    try:
        return validate_prd_name(slug)
    except ValidationError:
        return None


@dataclass
class ManifestBranch:
    """A manifest-* branch of the repository.

    Attributes:
        branch_name: Full branch name, e.g. manifest-my-feature.
        prd_name: PRD name derived from the branch, e.g. my-feature.
        prd_data: PRD state on the branch, or None if it could not be read.
        sandbox: Tracked sandbox working on the branch, if any.
    """

    branch_name: str
    prd_name: str
    prd_data: PrdData | None = None
    sandbox: SandboxRecord | None = None


class ManifestService:
    """Creates, inspects and tears down manifests.

    Args:
        db: SQLAlchemy session.
        vault: Credential vault for the repository token and agent auth.
        sandboxes: Sandbox lifecycle manager bound to the same session.
        settings: Runtime settings.
        github_transport: Optional httpx transport for the GitHub client.
    """

    def __init__(
        self,
        db: Session,
        vault: CredentialVault,
        sandboxes: SandboxManager,
        settings: Settings,
        github_transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.db = db
        self.vault = vault
        self.sandboxes = sandboxes
        self.settings = settings
        self.github_transport = github_transport
        self._handlers = {
            "started": self._on_started,
            "branch_ready": self._on_branch_ready,
            "task_completed": self._on_task_completed,
            "completed": self._on_completed,
            "error": self._on_error,
        }

    def get_active(self, project_id: str) -> Manifest | None:
        """Return the project's pending, active or running manifest, if any.

        Does not check ownership; callers authorize separately.
        """
        active = (
            self.db.query(Manifest)
            .filter(
                Manifest.project_id == project_id,
                Manifest.status.in_(ACTIVE_MANIFEST_STATUSES),
            )
            .order_by(Manifest.created_at.asc(), Manifest.id.asc())
            .all()
        )
        if not active:
            return None
        if len(active) > 1:
            logger.warning(
                "Project %s has %d active manifests (%s); using %s",
                project_id, len(active), ", ".join(m.id for m in active), active[0].id,
            )
        return active[0]

    def create_manifest(
        self, project_id: str, name: str, caller: User, prd_name: str | None = None
    ) -> Manifest:
        """Create a manifest and start its sandbox.

        Without an explicit PRD name the slug of the manifest name is used
        when it is valid kebab-case. The branch is manifest-<prd name>.

        The manifest row (with its webhook secret) is committed before the
        sandbox is spawned so that early callbacks can be verified. If the
        spawn fails the manifest is marked failed and the error re-raised.

        Raises:
            NotFoundError: If the project does not exist.
            UnauthorizedError: If the caller does not own the project.
            ValidationError: If the name is blank, the PRD name is not
                kebab-case, or an active manifest exists.
            SandboxExecutionError: If the sandbox could not be started.
        """
        project = resolve_project(self.db, project_id, caller)
        name = (name or "").strip()
        if not name:
            raise ValidationError("name", "Manifest name is required")
        if prd_name:
            validate_prd_name(prd_name)
        else:
            prd_name = _default_prd_name(name)

        active = self.get_active(project_id)
        if active is not None:
            raise ValidationError(
                "project_id",
                f"An active manifest already exists for this project (status: {active.status})",
                code="E-2003",
            )

        now = utc_now_iso()
        manifest = Manifest(
            id=generate_uuid(),
            project_id=project.id,
            name=name,
            prd_name=prd_name,
            status=ManifestStatus.pending.value,
            webhook_secret=generate_webhook_secret(),
            branch_name=manifest_branch_name(prd_name or name),
            created_at=now,
            updated_at=now,
        )
        self.db.add(manifest)
        self.db.commit()
        logger.info("Created manifest %s for project %s", manifest.id, project.id)

        try:
            tasks = (
                self.db.query(Task)
                .filter(
                    Task.project_id == project.id,
                    Task.status.in_([TaskStatus.backlog.value, TaskStatus.todo.value]),
                )
                .order_by(Task.created_at.asc())
                .all()
            )
            spawn = self.sandboxes.spawn_for_manifest(
                ManifestSpawnRequest(
                    manifest_id=manifest.id,
                    project_id=project.id,
                    branch_name=manifest.branch_name,
                    repository_url=project.repository_url,
                    access_token=self.vault.decrypt(project.encrypted_token),
                    prompt=build_manifest_prompt(name, tasks),
                    webhook_secret=manifest.webhook_secret,
                    agent_model=resolve_agent_model(None),
                    agent_auth=(
                        self.vault.decrypt(caller.encrypted_agent_auth)
                        if caller.encrypted_agent_auth
                        else None
                    ),
                    local_setup_script=project.local_setup_script,
                )
            )
        except Exception as e:
            manifest.status = ManifestStatus.failed.value
            manifest.error_message = sanitize_error_message(getattr(e, "message", str(e)))
            manifest.updated_at = utc_now_iso()
            self.db.commit()
            logger.error("Manifest %s failed to start: %s", manifest.id, manifest.error_message)
            raise

        manifest.sandbox_name = spawn.sandbox_name
        manifest.sandbox_url = spawn.sandbox_url
        manifest.sandbox_password = spawn.sandbox_password
        manifest.updated_at = utc_now_iso()
        self.db.commit()
        return manifest

    def list_manifests(self, project_id: str, caller: User) -> list[Manifest]:
        """Return a project's manifests, newest first."""
        resolve_project(self.db, project_id, caller)
        return (
            self.db.query(Manifest)
            .filter(Manifest.project_id == project_id)
            .order_by(Manifest.created_at.desc(), Manifest.id.desc())
            .all()
        )

    def get_manifest(self, manifest_id: str, caller: User) -> Manifest:
        manifest, _project = resolve_manifest(self.db, manifest_id, caller)
        return manifest

    def delete_manifest(self, manifest_id: str, caller: User) -> None:
        """Destroy the manifest's sandbox (best-effort) and delete the row."""
        manifest, _project = resolve_manifest(self.db, manifest_id, caller)
        if manifest.sandbox_name:
            self.sandboxes.destroy_sandbox(manifest.sandbox_name, reason=f"manifest delete:{manifest.id}")
        self.db.delete(manifest)
        self.db.commit()
        logger.info("Deleted manifest %s", manifest_id)

    def cancel_manifest(self, manifest_id: str, caller: User) -> Manifest:
        """Mark a manifest cancelled and destroy its sandbox (best-effort)."""
        manifest, _project = resolve_manifest(self.db, manifest_id, caller)
        now = utc_now_iso()
        manifest.status = ManifestStatus.cancelled.value
        manifest.completed_at = now
        manifest.updated_at = now
        self._teardown(manifest, reason="cancelled")
        self.db.commit()
        logger.info("Cancelled manifest %s", manifest_id)
        return manifest

    def stop_sandbox(self, project_id: str, branch_name: str, caller: User) -> bool:
        """Destroy the manifest sandbox tracked for a branch.

        Returns:
            True if a sandbox was tracked for the branch, False for a no-op.
        """
        resolve_project(self.db, project_id, caller)
        stopped = self.sandboxes.destroy(branch_name, SandboxPurpose.manifest)
        self.db.commit()
        return stopped

    # =========================================================================
    # PRD and task loop
    # =========================================================================

    def update_prd_name(self, manifest_id: str, prd_name: str, caller: User) -> Manifest:
        """Point a manifest at a different PRD.

        Raises:
            ValidationError: If the name is not kebab-case, or the manifest
                is past the pending and active states.
        """
        validate_prd_name(prd_name)
        manifest, _project = resolve_manifest(self.db, manifest_id, caller)
        if manifest.status not in (ManifestStatus.pending.value, ManifestStatus.active.value):
            raise ValidationError(
                "status", f"Cannot update PRD name when manifest is {manifest.status}"
            )
        manifest.prd_name = prd_name
        manifest.updated_at = utc_now_iso()
        self.db.commit()
        logger.info("Updated PRD name to %s for manifest %s", prd_name, manifest_id)
        return manifest

    def start_task_loop(self, manifest_id: str, caller: User) -> Manifest:
        """Run task-loop for the manifest's PRD inside its sandbox.

        Raises:
            ValidationError: If the manifest is not active or lacks a
                sandbox, webhook secret or PRD name.
            SandboxExecutionError: If the provider fails.
        """
        manifest, project = resolve_manifest(self.db, manifest_id, caller)
        if manifest.status != ManifestStatus.active.value:
            raise ValidationError(
                "status",
                f"Manifest must be active to start task loop (current: {manifest.status})",
            )
        if not manifest.sandbox_name:
            raise ValidationError("sandbox_name", "Manifest has no sandbox associated")
        if not manifest.webhook_secret:
            raise ValidationError("webhook_secret", "Manifest has no webhook secret")
        if not manifest.prd_name:
            raise ValidationError("prd_name", "PRD name must be set before starting task loop")

        script = render_task_loop_script(
            prd_name=manifest.prd_name,
            webhook_url=f"{self.settings.webhook_base_url}/api/webhooks/manifest/{manifest.id}",
            webhook_secret=manifest.webhook_secret,
            has_local_setup=project.local_setup_enabled,
        )
        self.sandboxes.start_task_loop(manifest.sandbox_name, script)
        manifest.status = ManifestStatus.running.value
        manifest.updated_at = utc_now_iso()
        self.db.commit()
        return manifest

    def stop_task_loop(self, manifest_id: str, caller: User) -> Manifest:
        """Kill a running task loop and return the manifest to active.

        Raises:
            ValidationError: If the manifest is not running or has no sandbox.
            SandboxExecutionError: If the provider fails.
        """
        manifest, _project = resolve_manifest(self.db, manifest_id, caller)
        if manifest.status != ManifestStatus.running.value:
            raise ValidationError(
                "status",
                f"Manifest must be running to stop task loop (current: {manifest.status})",
            )
        if not manifest.sandbox_name:
            raise ValidationError("sandbox_name", "Manifest has no sandbox associated")

        self.sandboxes.stop_task_loop(manifest.sandbox_name)
        manifest.status = ManifestStatus.active.value
        manifest.updated_at = utc_now_iso()
        self.db.commit()
        return manifest

    def _github(self, project: Project) -> GitHubClient:
        return GitHubClient(
            self.vault.decrypt(project.encrypted_token),
            api_base=self.settings.github_api_base,
            timeout=self.settings.sandbox_timeout_seconds,
            transport=self.github_transport,
        )

    def get_prd_data(self, project_id: str, caller: User) -> dict[str, PrdData]:
        """Read PRD state from GitHub for every manifest with a PRD name.

        A running manifest whose PRD tasks all pass is marked completed.
        Fetch failures are logged and reported as empty PrdData.

        Returns:
            Manifest id -> PrdData.
        """
        project = resolve_project(self.db, project_id, caller)
        manifests = (
            self.db.query(Manifest)
            .filter(Manifest.project_id == project.id, Manifest.prd_name.isnot(None))
            .order_by(Manifest.created_at.desc())
            .all()
        )
        if not manifests:
            return {}

        try:
            client = self._github(project)
        except DomainError as e:
            logger.warning("Cannot read PRD data for project %s: %s", project.id, e.message)
            return {m.id: PrdData() for m in manifests}

        results: dict[str, PrdData] = {}
        completed = 0
        with client:
            for manifest in manifests:
                try:
                    data = client.fetch_prd(
                        project.repository_url,
                        manifest_branch_name(manifest.prd_name),
                        manifest.prd_name,
                    )
                except GitHubFetchError as e:
                    logger.warning("Failed to fetch PRD for manifest %s: %s", manifest.id, e.message)
                    data = PrdData()
                results[manifest.id] = data

                if manifest.status == ManifestStatus.running.value and data.all_tasks_pass:
                    now = utc_now_iso()
                    manifest.status = ManifestStatus.completed.value
                    manifest.completed_at = now
                    manifest.updated_at = now
                    completed += 1
                    logger.info("Manifest %s completed: all PRD tasks pass", manifest.id)

        if completed:
            self.db.commit()
        return results

    def get_manifest_branches(self, project_id: str, caller: User) -> list[ManifestBranch]:
        """List the repository's manifest-* branches with PRD state and sandbox.

        A tracked sandbox on a branch whose PRD tasks all pass is destroyed
        and dropped from the result. A failure to list branches yields an
        empty list; a failure to read one branch's PRD yields prd_data None.
        """
        project = resolve_project(self.db, project_id, caller)
        records = {
            r.branch_name: r
            for r in self.sandboxes.records_for_project(project.id, SandboxPurpose.manifest)
        }

        branches: list[ManifestBranch] = []
        try:
            client = self._github(project)
        except DomainError as e:
            logger.warning("Cannot list manifest branches for project %s: %s", project.id, e.message)
            return branches

        with client:
            try:
                listed = client.list_manifest_branches(project.repository_url)
            except GitHubFetchError as e:
                logger.warning("Failed to fetch manifest branches from GitHub: %s", e.message)
                listed = []
            for branch_name, prd_name in listed:
                try:
                    prd_data = client.fetch_prd(project.repository_url, branch_name, prd_name)
                except GitHubFetchError as e:
                    logger.warning("Failed to fetch PRD on %s: %s", branch_name, e.message)
                    prd_data = None
                branches.append(
                    ManifestBranch(
                        branch_name=branch_name,
                        prd_name=prd_name,
                        prd_data=prd_data,
                        sandbox=records.get(branch_name),
                    )
                )

        finished = [
            b for b in branches
            if b.sandbox is not None and b.prd_data is not None and b.prd_data.all_tasks_pass
        ]
        for branch in finished:
            logger.info(
                "PRD on %s is complete; destroying sandbox %s",
                branch.branch_name, branch.sandbox.sandbox_name,
            )
            self.sandboxes.destroy_sandbox(
                branch.sandbox.sandbox_name, reason=f"prd complete:{branch.branch_name}"
            )
            branch.sandbox = None
        if finished:
            self.db.commit()
        return branches

    def get_orphaned_sandboxes(
        self, project_id: str, branch_names: list[str], caller: User
    ) -> list[SandboxRecord]:
        """Return tracked manifest sandboxes on none of the given branches.

        PRD creator sandboxes always end up here, as their placeholder
        branch is never pushed.
        """
        resolve_project(self.db, project_id, caller)
        known = set(branch_names)
        return [
            r for r in self.sandboxes.records_for_project(project_id, SandboxPurpose.manifest)
            if r.branch_name not in known
        ]

    def spawn_prd_creator(self, project_id: str, caller: User) -> SpawnResult:
        """Start a sandbox for writing a new PRD.

        The sandbox does not run task-loop. The user writes the PRD, pushes
        it to a manifest-* branch and then destroys the sandbox.

        Raises:
            NotFoundError: If the project does not exist.
            UnauthorizedError: If the caller does not own the project.
            ValidationError: If the project has no repository URL.
            SandboxExecutionError: If the sandbox could not be started.
        """
        project = resolve_project(self.db, project_id, caller)
        spawn = self.sandboxes.spawn_prd_creator(
            PrdCreatorSpawnRequest(
                project_id=project.id,
                repository_url=project.repository_url,
                access_token=self.vault.decrypt(project.encrypted_token),
                agent_auth=(
                    self.vault.decrypt(caller.encrypted_agent_auth)
                    if caller.encrypted_agent_auth
                    else None
                ),
                local_setup_script=project.local_setup_script,
            )
        )
        self.db.commit()
        return spawn

    def handle_callback(self, manifest_id: str, raw_body: bytes, signature: str | None) -> str:
        """Verify and apply one event from a manifest sandbox.

        Returns:
            The event type that was applied.

        Raises:
            WebhookSignatureError: If the signature is missing or invalid.
            NotFoundError: If the manifest does not exist.
            ValidationError: If the verified body is not a known event.
        """
        if not signature:
            raise WebhookSignatureError(f"Missing {SIGNATURE_HEADER} header")
        manifest = self.db.get(Manifest, manifest_id)
        if manifest is None:
            raise NotFoundError("manifest", manifest_id)
        if not manifest.webhook_secret:
            raise WebhookSignatureError("No webhook secret found for manifest")
        if not verify_signature(raw_body, signature, manifest.webhook_secret):
            logger.warning("Rejected callback for manifest %s: invalid signature", manifest_id)
            raise WebhookSignatureError()

        event = parse_event(_manifest_event_adapter, raw_body)
        self._handlers[event.type](manifest, event)
        manifest.updated_at = utc_now_iso()
        self.db.commit()
        logger.info("Applied %s event for manifest %s", event.type, manifest_id)
        return event.type

    def _on_started(self, manifest: Manifest, event: ManifestStartedEvent) -> None:
        manifest.status = ManifestStatus.active.value

    def _on_branch_ready(self, manifest: Manifest, event: BranchReadyEvent) -> None:
        manifest.status = ManifestStatus.running.value
        manifest.branch_name = event.branch_name
        if manifest.sandbox_name and self.sandboxes.find(event.branch_name, SandboxPurpose.manifest) is None:
            self.sandboxes.register(
                project_id=manifest.project_id,
                branch_name=event.branch_name,
                purpose=SandboxPurpose.manifest,
                sandbox_name=manifest.sandbox_name,
                sandbox_url=manifest.sandbox_url,
                webhook_secret=manifest.webhook_secret,
            )

    def _on_task_completed(self, manifest: Manifest, event: TaskCompletedEvent) -> None:
        manifest.completed_tasks = (manifest.completed_tasks or 0) + 1

    def _on_completed(self, manifest: Manifest, event: ManifestCompletedEvent) -> None:
        manifest.status = ManifestStatus.completed.value
        manifest.completed_at = utc_now_iso()
        self._teardown(manifest, reason="completed")

    def _on_error(self, manifest: Manifest, event: ManifestErrorEvent) -> None:
        manifest.status = ManifestStatus.failed.value
        manifest.error_message = sanitize_error_message(event.error)
        manifest.completed_at = utc_now_iso()
        self._teardown(manifest, reason="error")

    def _teardown(self, manifest: Manifest, reason: str) -> None:
        tracked = bool(manifest.branch_name) and self.sandboxes.destroy(
            manifest.branch_name, SandboxPurpose.manifest
        )
        if not tracked and manifest.sandbox_name:
            # Not registered yet (no branch_ready); destroy by handle.
            self.sandboxes.destroy_sandbox(manifest.sandbox_name, reason=f"manifest {reason}:{manifest.id}")
        manifest.sandbox_name = None
        manifest.sandbox_url = None
