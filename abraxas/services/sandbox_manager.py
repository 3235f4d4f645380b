"""Sandbox lifecycle manager.

Provisions sandboxes for tasks and manifests (including PRD creator
sandboxes), runs the manifest task loop, tracks sandboxes as
SandboxRecord rows keyed by (branch name, purpose), and destroys them.

Destroy is best-effort: a provider failure is logged as a warning and
never propagated, and the ledger row is removed regardless. Failed
destroys are not lost, though; they are written to the
sandbox_destroy_retries queue, which drain_destroy_queue() works off
with per-entry retry and dead-letter semantics.

Methods flush but do not commit, except drain_destroy_queue(), which
owns its own unit of work.
"""

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from abraxas.config import Settings
from abraxas.db.models import (
    DestroyRetryStatus,
    SandboxDestroyRetry,
    SandboxPurpose,
    SandboxRecord,
    utc_now_iso,
)
from abraxas.errors.domain import (
    SandboxExecutionError,
    SandboxNotFoundError,
    ValidationError,
)
from abraxas.services.sandbox_provider import SandboxProvider
from abraxas.services.sandbox_scripts import (
    AGENT_AUTH_PATH,
    LOG_PATH,
    SCRIPT_PATH,
    TASK_LOOP_LOG_PATH,
    TASK_LOOP_SCRIPT_PATH,
    PrdCreatorScriptConfig,
    RunScriptConfig,
    generate_sandbox_password,
    generate_webhook_secret,
    manifest_sandbox_name,
    prd_creator_branch_name,
    render_prd_creator_script,
    render_run_script,
    task_branch_name,
    task_sandbox_name,
)
from abraxas.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)

# Maximum destroy attempts from the retry queue before dead-lettering
MAX_RETRIES = 3


@dataclass
class TaskSpawnRequest:
    """Everything needed to start a sandbox for one task execution."""

    task_id: str
    task_title: str
    task_description: str | None
    branch_name: str | None
    model: str | None
    project_id: str
    repository_url: str | None
    access_token: str
    prompt: str
    caller_id: str
    agent_model: str
    agent_auth: str | None = None
    local_setup_script: str | None = None


@dataclass
class ManifestSpawnRequest:
    """Everything needed to start the long-lived sandbox of a manifest."""

    manifest_id: str
    project_id: str
    branch_name: str
    repository_url: str | None
    access_token: str
    prompt: str
    webhook_secret: str
    agent_model: str
    agent_auth: str | None = None
    local_setup_script: str | None = None


@dataclass
class PrdCreatorSpawnRequest:
    """Everything needed to start a sandbox for writing a PRD."""

    project_id: str
    repository_url: str | None
    access_token: str
    agent_auth: str | None = None
    local_setup_script: str | None = None


@dataclass
class SpawnResult:
    """Connection info for a freshly started sandbox."""

    sandbox_name: str
    sandbox_url: str | None
    sandbox_password: str
    webhook_secret: str
    branch_name: str


class SandboxManager:
    """Creates, tracks and destroys sandboxes.

    Args:
        db: SQLAlchemy session.
        provider: Remote sandbox capability.
        settings: Runtime settings (webhook base URL, git identity, retries).
    """

    def __init__(self, db: Session, provider: SandboxProvider, settings: Settings) -> None:
        self._db = db
        self._provider = provider
        self._settings = settings

    # =========================================================================
    # Spawn
    # =========================================================================

    def spawn_for_task(self, request: TaskSpawnRequest) -> SpawnResult:
        """Start a sandbox running the agent for one task.

        Generates a branch name when the task has none. The script is
        rendered before any remote call, so input errors have no side
        effects; after the sandbox exists, any failure destroys it before
        the error propagates.

        Raises:
            ValidationError: If the project has no usable repository URL.
            SandboxExecutionError: If the provider fails.
        """
        if not request.repository_url:
            raise ValidationError("repository_url", "Project has no repository URL configured")

        branch_name = request.branch_name or task_branch_name(request.task_id, request.task_title)
        webhook_secret = generate_webhook_secret()
        script = render_run_script(
            RunScriptConfig(
                webhook_url=f"{self._settings.webhook_base_url}/api/webhooks/sandbox/{request.task_id}",
                webhook_secret=webhook_secret,
                prompt=request.prompt,
                repository_url=request.repository_url,
                access_token=request.access_token,
                branch_name=branch_name,
                agent_model=request.agent_model,
                git_user_name=self._settings.git_user_name,
                git_user_email=self._settings.git_user_email,
                setup_script=self._settings.agent_setup_script,
                local_setup_script=request.local_setup_script,
            )
        )
        name = task_sandbox_name(request.task_id)
        url = self._start(name, script, request.agent_auth)
        logger.info(
            "Spawned sandbox %s for task %s on branch %s",
            name, request.task_id, branch_name,
        )
        return SpawnResult(
            sandbox_name=name,
            sandbox_url=url,
            sandbox_password=generate_sandbox_password(),
            webhook_secret=webhook_secret,
            branch_name=branch_name,
        )

    def spawn_for_manifest(self, request: ManifestSpawnRequest) -> SpawnResult:
        """Start the long-lived sandbox that works through a manifest.

        Raises:
            ValidationError: If the project has no usable repository URL.
            SandboxExecutionError: If the provider fails.
        """
        if not request.repository_url:
            raise ValidationError("repository_url", "Project has no repository URL configured")

        script = render_run_script(
            RunScriptConfig(
                webhook_url=f"{self._settings.webhook_base_url}/api/webhooks/manifest/{request.manifest_id}",
                webhook_secret=request.webhook_secret,
                prompt=request.prompt,
                repository_url=request.repository_url,
                access_token=request.access_token,
                branch_name=request.branch_name,
                agent_model=request.agent_model,
                git_user_name=self._settings.git_user_name,
                git_user_email=self._settings.git_user_email,
                setup_script=self._settings.agent_setup_script,
                local_setup_script=request.local_setup_script,
                manifest=True,
            )
        )
        name = manifest_sandbox_name(request.project_id)
        url = self._start(name, script, request.agent_auth)
        logger.info(
            "Spawned manifest sandbox %s for manifest %s", name, request.manifest_id
        )
        return SpawnResult(
            sandbox_name=name,
            sandbox_url=url,
            sandbox_password=generate_sandbox_password(),
            webhook_secret=request.webhook_secret,
            branch_name=request.branch_name,
        )

    def spawn_prd_creator(self, request: PrdCreatorSpawnRequest) -> SpawnResult:
        """Start a setup-only sandbox for writing a new PRD by hand.

        The sandbox is tracked as a manifest sandbox under a placeholder
        branch that is never pushed, so it shows up as orphaned until the
        user destroys it.

        Raises:
            ValidationError: If the project has no usable repository URL.
            SandboxExecutionError: If the provider fails.
        """
        if not request.repository_url:
            raise ValidationError("repository_url", "Project has no repository URL configured")

        script = render_prd_creator_script(
            PrdCreatorScriptConfig(
                repository_url=request.repository_url,
                access_token=request.access_token,
                git_user_name=self._settings.git_user_name,
                git_user_email=self._settings.git_user_email,
                setup_script=self._settings.agent_setup_script,
                local_setup_script=request.local_setup_script,
            )
        )
        branch_name = prd_creator_branch_name()
        webhook_secret = generate_webhook_secret()
        name = manifest_sandbox_name(request.project_id)
        url = self._start(name, script, request.agent_auth)
        self.register(
            project_id=request.project_id,
            branch_name=branch_name,
            purpose=SandboxPurpose.manifest,
            sandbox_name=name,
            sandbox_url=url,
            webhook_secret=webhook_secret,
        )
        logger.info("Spawned PRD creator sandbox %s for project %s", name, request.project_id)
        return SpawnResult(
            sandbox_name=name,
            sandbox_url=url,
            sandbox_password=generate_sandbox_password(),
            webhook_secret=webhook_secret,
            branch_name=branch_name,
        )

    def start_task_loop(self, sandbox_name: str, script: str) -> None:
        """Upload the task-loop wrapper and start it detached.

        Raises:
            SandboxExecutionError: If the provider fails.
        """
        self._provider.exec(
            sandbox_name,
            ["bash", "-c", f"cat > {TASK_LOOP_SCRIPT_PATH} && chmod +x {TASK_LOOP_SCRIPT_PATH}"],
            stdin=script,
        )
        self._provider.exec_detached(sandbox_name, TASK_LOOP_SCRIPT_PATH, TASK_LOOP_LOG_PATH)
        logger.info("Started task loop in sandbox %s", sandbox_name)

    def stop_task_loop(self, sandbox_name: str) -> None:
        """Kill the task-loop processes in a sandbox.

        Raises:
            SandboxExecutionError: If the provider fails.
        """
        self._provider.exec(sandbox_name, ["pkill", "-f", "task-loop"])
        logger.info("Stopped task loop in sandbox %s", sandbox_name)

    def _start(self, name: str, script: str, agent_auth: str | None) -> str | None:
        info = self._provider.create(name, url_auth="public")
        try:
            if agent_auth:
                auth_dir = AGENT_AUTH_PATH.rsplit("/", 1)[0]
                self._provider.exec(
                    name,
                    ["bash", "-c", f"mkdir -p {auth_dir} && cat > {AGENT_AUTH_PATH} && chmod 600 {AGENT_AUTH_PATH}"],
                    stdin=agent_auth,
                )
            self._provider.exec(
                name,
                ["bash", "-c", f"cat > {SCRIPT_PATH} && chmod +x {SCRIPT_PATH}"],
                stdin=script,
            )
            self._provider.exec_detached(name, SCRIPT_PATH, LOG_PATH)
        except Exception as e:
            logger.error(
                "Sandbox %s failed to start, destroying: %s",
                name, sanitize_error_message(str(e)),
            )
            self.destroy_sandbox(name, reason="spawn cleanup")
            if isinstance(e, SandboxExecutionError):
                raise
            raise SandboxExecutionError(
                sanitize_error_message(f"Failed to start sandbox: {e}") or "", name
            ) from e
        return info.url

    # =========================================================================
    # Records
    # =========================================================================

    def register(
        self,
        project_id: str,
        branch_name: str,
        purpose: SandboxPurpose,
        sandbox_name: str,
        sandbox_url: str | None = None,
        webhook_secret: str | None = None,
    ) -> SandboxRecord:
        """Track a live sandbox under (branch name, purpose).

        At most one sandbox is tracked per key. Re-registering the same
        sandbox refreshes its row; registering a different one destroys
        the sandbox previously tracked there first.
        """
        purpose_value = SandboxPurpose(purpose).value
        existing = (
            self._db.query(SandboxRecord)
            .filter(
                SandboxRecord.branch_name == branch_name,
                SandboxRecord.type == purpose_value,
            )
            .all()
        )
        for old in existing:
            if old.sandbox_name == sandbox_name:
                old.project_id = project_id
                old.sandbox_url = sandbox_url
                old.webhook_secret = webhook_secret
                self._db.flush()
                return old
        for old in existing:
            logger.info(
                "Replacing %s sandbox %s on branch %s with %s",
                purpose_value, old.sandbox_name, branch_name, sandbox_name,
            )
            self.destroy_sandbox(old.sandbox_name, reason=f"replaced:{purpose_value}:{branch_name}")

        record = SandboxRecord(
            project_id=project_id,
            branch_name=branch_name,
            type=purpose_value,
            sandbox_name=sandbox_name,
            sandbox_url=sandbox_url,
            webhook_secret=webhook_secret,
        )
        self._db.add(record)
        self._db.flush()
        return record

    def find(self, branch_name: str, purpose: SandboxPurpose) -> SandboxRecord | None:
        """Return the record matching both branch name and purpose exactly."""
        return (
            self._db.query(SandboxRecord)
            .filter(
                SandboxRecord.branch_name == branch_name,
                SandboxRecord.type == SandboxPurpose(purpose).value,
            )
            .order_by(SandboxRecord.created_at.desc())
            .first()
        )

    def records_for_project(self, project_id: str, purpose: SandboxPurpose) -> list[SandboxRecord]:
        """Return a project's tracked sandboxes of one purpose, oldest first."""
        return (
            self._db.query(SandboxRecord)
            .filter(
                SandboxRecord.project_id == project_id,
                SandboxRecord.type == SandboxPurpose(purpose).value,
            )
            .order_by(SandboxRecord.created_at.asc())
            .all()
        )

    def tail_log(self, sandbox_name: str, lines: int = 20) -> str:
        """Return the last lines of the run script log inside a sandbox.

        Raises:
            SandboxExecutionError: If the sandbox is gone or the call fails.
        """
        return self._provider.exec(sandbox_name, ["tail", "-n", str(lines), LOG_PATH])

    # =========================================================================
    # Destroy
    # =========================================================================

    def destroy(self, branch_name: str, purpose: SandboxPurpose) -> bool:
        """Destroy the sandbox tracked for (branch name, purpose).

        Idempotent: with no matching record this is a successful no-op.

        Returns:
            True if a record was found and removed, False for the no-op case.
        """
        record = self.find(branch_name, purpose)
        if record is None:
            logger.info(
                "No %s sandbox recorded for branch %s; nothing to destroy",
                SandboxPurpose(purpose).value, branch_name,
            )
            return False
        self.destroy_sandbox(record.sandbox_name, reason=f"{SandboxPurpose(purpose).value}:{branch_name}")
        return True

    def destroy_sandbox(self, sandbox_name: str, reason: str) -> bool:
        """Best-effort destroy of a sandbox by name.

        Any record for the sandbox is deleted whatever the outcome. A
        failed provider call is logged and queued for the reaper.

        Returns:
            True if the sandbox is known to be gone, False if a retry was queued.
        """
        destroyed = True
        try:
            self._provider.destroy(sandbox_name)
        except SandboxNotFoundError:
            logger.info("Sandbox %s was already gone", sandbox_name)
        except Exception as e:
            destroyed = False
            message = sanitize_error_message(str(e))
            logger.warning(
                "Failed to destroy sandbox %s (%s), queued for retry: %s",
                sandbox_name, reason, message,
            )
            enqueue_destroy_retry(self._db, sandbox_name, reason, message)

        (
            self._db.query(SandboxRecord)
            .filter(SandboxRecord.sandbox_name == sandbox_name)
            .delete(synchronize_session="fetch")
        )
        self._db.flush()
        return destroyed

    def drain_destroy_queue(self, max_retries: int | None = None) -> dict[str, int]:
        """Retry queued destroys. See drain_destroy_queue()."""
        return drain_destroy_queue(
            self._db,
            self._provider,
            max_retries or self._settings.destroy_max_retries,
        )


def enqueue_destroy_retry(
    db: Session,
    sandbox_name: str,
    reason: str,
    last_error: str | None = None,
) -> SandboxDestroyRetry:
    """Add a failed destroy to the durable retry queue.

    Does nothing new if the sandbox is already pending in the queue.
    """
    existing = (
        db.query(SandboxDestroyRetry)
        .filter(
            SandboxDestroyRetry.sandbox_name == sandbox_name,
            SandboxDestroyRetry.status == DestroyRetryStatus.pending.value,
        )
        .first()
    )
    if existing is not None:
        existing.last_error = last_error
        db.flush()
        return existing

    entry = SandboxDestroyRetry(
        sandbox_name=sandbox_name,
        reason=reason,
        status=DestroyRetryStatus.pending.value,
        retry_count=0,
        last_error=last_error,
    )
    db.add(entry)
    db.flush()
    return entry


def get_pending_destroys(db: Session) -> list[SandboxDestroyRetry]:
    """Return queued destroys that still need an attempt, oldest first."""
    return (
        db.query(SandboxDestroyRetry)
        .filter(SandboxDestroyRetry.status == DestroyRetryStatus.pending.value)
        .order_by(SandboxDestroyRetry.created_at)
        .all()
    )


def drain_destroy_queue(
    db: Session,
    provider: SandboxProvider,
    max_retries: int = MAX_RETRIES,
) -> dict[str, int]:
    """Attempt every pending destroy once.

    Each entry is processed independently. A sandbox the provider no
    longer knows counts as destroyed. Failures increment retry_count;
    entries reaching max_retries move to dead_letter.

    Args:
        db: Database session for state updates.
        provider: Remote sandbox capability.
        max_retries: Attempts before an entry is dead-lettered.

    Returns:
        Dict with destroyed, failed, and dead_letter counts.
    """
    destroyed = 0
    failed = 0
    dead_letter = 0

    for entry in get_pending_destroys(db):
        try:
            provider.destroy(entry.sandbox_name)
            entry.status = DestroyRetryStatus.completed.value
            destroyed += 1
        except SandboxNotFoundError:
            entry.status = DestroyRetryStatus.completed.value
            destroyed += 1
        except Exception as e:
            entry.retry_count = (entry.retry_count or 0) + 1
            entry.last_error = sanitize_error_message(str(e))
            if entry.retry_count >= max_retries:
                entry.status = DestroyRetryStatus.dead_letter.value
                dead_letter += 1
                logger.warning(
                    "Sandbox destroy dead-lettered: sandbox=%s reason=%s retries=%d error=%s",
                    entry.sandbox_name, entry.reason, entry.retry_count, entry.last_error,
                )
            else:
                failed += 1
                logger.info(
                    "Sandbox destroy failed (will retry): sandbox=%s retry=%d/%d error=%s",
                    entry.sandbox_name, entry.retry_count, max_retries, entry.last_error,
                )
        entry.updated_at = utc_now_iso()

    db.commit()

    return {
        "destroyed": destroyed,
        "failed": failed,
        "dead_letter": dead_letter,
    }
