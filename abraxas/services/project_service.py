"""Project CRUD, local setup toggling and agent auth storage.

Repository tokens and agent auth blobs are encrypted with the credential
vault before they reach the database and never leave this layer in
plaintext except on their way into a sandbox.
"""

import json
import logging
from typing import Literal

from pydantic import BaseModel, RootModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from abraxas.db.models import Project, User, generate_uuid, utc_now_iso
from abraxas.errors.domain import ValidationError
from abraxas.services.authorization import resolve_project
from abraxas.services.credential_vault import CredentialVault
from abraxas.services.sandbox_scripts import DEFAULT_LOCAL_SETUP_SCRIPT

logger = logging.getLogger(__name__)

# Fields a caller may change through update()
_UPDATABLE_FIELDS = ("name", "description", "repository_url", "agents_md_content")


class AgentAuthEntry(BaseModel):
    """One provider entry of an opencode auth.json."""

    type: Literal["api", "oauth"]
    key: str | None = None
    refresh: str | None = None
    access: str | None = None
    expires: int | None = None


class AgentAuth(RootModel[dict[str, AgentAuthEntry]]):
    """opencode auth.json: provider name -> credentials."""


def _check_repository_url(repository_url: str) -> str:
    repository_url = (repository_url or "").strip()
    if not repository_url.startswith("https://"):
        raise ValidationError("repository_url", "Repository URL must start with https://")
    return repository_url


class ProjectService:
    """Owner-scoped operations on projects.

    Args:
        db: SQLAlchemy session.
        vault: Credential vault used for tokens and agent auth.
    """

    def __init__(self, db: Session, vault: CredentialVault) -> None:
        self.db = db
        self.vault = vault

    def create(
        self,
        caller: User,
        name: str,
        repository_url: str,
        access_token: str,
        description: str | None = None,
        agents_md_content: str | None = None,
    ) -> Project:
        """Register a repository for the caller.

        Raises:
            ValidationError: If the name, URL or token is missing or malformed.
            CryptoConfigError: If no encryption key is configured.
        """
        if not name or not name.strip():
            raise ValidationError("name", "Project name is required")
        if not access_token:
            raise ValidationError("access_token", "Access token is required")

        now = utc_now_iso()
        project = Project(
            id=generate_uuid(),
            user_id=caller.id,
            name=name.strip(),
            description=description,
            repository_url=_check_repository_url(repository_url),
            encrypted_token=self.vault.encrypt(access_token),
            agents_md_content=agents_md_content,
            created_at=now,
            updated_at=now,
        )
        self.db.add(project)
        self.db.commit()
        logger.info("Created project %s for user %s", project.id, caller.id)
        return project

    def get(self, project_id: str, caller: User) -> Project:
        return resolve_project(self.db, project_id, caller)

    def list_projects(self, caller: User) -> list[Project]:
        """Return the caller's projects, newest first."""
        return (
            self.db.query(Project)
            .filter(Project.user_id == caller.id)
            .order_by(Project.created_at.desc())
            .all()
        )

    def update(self, project_id: str, caller: User, **changes) -> Project:
        """Apply a partial update.

        Keyword arguments that are absent are left untouched. A new
        ``access_token`` is re-encrypted before it is stored.
        """
        project = resolve_project(self.db, project_id, caller)
        for field_name in _UPDATABLE_FIELDS:
            if field_name not in changes:
                continue
            value = changes[field_name]
            if field_name == "repository_url":
                value = _check_repository_url(value)
            elif field_name == "name" and not (value or "").strip():
                raise ValidationError("name", "Project name is required")
            setattr(project, field_name, value)
        if changes.get("access_token"):
            project.encrypted_token = self.vault.encrypt(changes["access_token"])
        project.updated_at = utc_now_iso()
        self.db.commit()
        return project

    def delete(self, project_id: str, caller: User) -> None:
        """Delete a project with its tasks, comments, sessions and manifests."""
        project = resolve_project(self.db, project_id, caller)
        self.db.delete(project)
        self.db.commit()
        logger.info("Deleted project %s", project_id)

    def toggle_local_setup(self, project_id: str, caller: User) -> bool:
        """Enable local setup with the default script, or disable it.

        Returns:
            True if local setup is now enabled.
        """
        project = resolve_project(self.db, project_id, caller)
        enabled = project.local_setup_script is None
        project.local_setup_script = DEFAULT_LOCAL_SETUP_SCRIPT if enabled else None
        project.updated_at = utc_now_iso()
        self.db.commit()
        logger.info(
            "Local setup %s for project %s", "enabled" if enabled else "disabled", project_id
        )
        return enabled

    def save_agent_auth(self, caller: User, auth_json: str) -> None:
        """Validate an opencode auth.json and store it encrypted on the caller.

        Raises:
            ValidationError: If the content is not a valid auth.json.
        """
        try:
            auth = AgentAuth.model_validate(json.loads(auth_json))
        except (json.JSONDecodeError, TypeError, PydanticValidationError) as e:
            raise ValidationError(
                "auth_json",
                "Invalid auth.json format. Expected opencode auth.json structure.",
            ) from e
        normalized = auth.model_dump_json(exclude_none=True)
        caller.encrypted_agent_auth = self.vault.encrypt(normalized)
        self.db.commit()
        logger.info("Saved agent auth for user %s (%d providers)", caller.id, len(auth.root))

    def has_agent_auth(self, caller: User) -> bool:
        return caller.encrypted_agent_auth is not None
