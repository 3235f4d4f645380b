"""Read-only GitHub client for manifest PRD state.

A manifest branch carries its PRD under .opencode/state/<prd name>/:
prd.json (the task list with pass flags) and progress.txt (free-form
notes from the task loop). The orchestrator polls these files instead
of relying on callbacks to track batch-run progress.

Uses the GitHub REST contents API with the project's access token. A
missing file or branch (404) is reported as None; any other non-2xx
status, timeout or transport failure raises GitHubFetchError.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, StrictBool, ValidationError

from abraxas.errors.domain import GitHubFetchError
from abraxas.services.sandbox_scripts import MANIFEST_BRANCH_PREFIX
from abraxas.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)

GITHUB_API_BASE = "https://api.github.com"
GITHUB_API_VERSION = "2022-11-28"
PRD_STATE_DIR = ".opencode/state"
BRANCH_PAGE_SIZE = 100

_REPOSITORY_PATTERN = re.compile(r"github\.com[/:]([^/]+)/([^/.]+)")


class PrdTask(BaseModel):
    """One task entry of a prd.json file."""

    id: str
    passes: StrictBool
    category: str | None = None
    description: str | None = None
    title: str | None = None
    steps: list[str] = Field(default_factory=list)


class PrdDocument(BaseModel):
    """Parsed prd.json."""

    model_config = ConfigDict(populate_by_name=True)

    prd_name: str = Field(alias="prdName")
    tasks: list[PrdTask]
    context: Any = None


@dataclass
class PrdData:
    """PRD state read from a manifest branch.

    Attributes:
        prd: Parsed prd.json, or None if absent or malformed.
        progress: Contents of progress.txt, or None if absent.
    """

    prd: PrdDocument | None = None
    progress: str | None = None

    @property
    def all_tasks_pass(self) -> bool:
        """True when the PRD has tasks and every one of them passes."""
        return bool(self.prd and self.prd.tasks) and all(t.passes for t in self.prd.tasks)


def parse_repository(repository_url: str) -> tuple[str, str]:
    """Extract (owner, repo) from a GitHub URL.

    Raises:
        GitHubFetchError: If the URL does not point at a GitHub repository.
    """
    match = _REPOSITORY_PATTERN.search(repository_url or "")
    if match is None:
        raise GitHubFetchError(f"Invalid GitHub repository URL: {repository_url}")
    return match.group(1), match.group(2)


def parse_prd_document(raw: str) -> PrdDocument | None:
    """Parse prd.json text.

    Returns:
        The document, or None when it does not match the prd.json shape.

    Raises:
        GitHubFetchError: If the text is not JSON at all.
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise GitHubFetchError("Failed to parse prd.json") from e
    try:
        return PrdDocument.model_validate(data)
    except ValidationError:
        logger.warning("prd.json does not match the expected shape; ignoring it")
        return None


class GitHubClient:
    """Minimal GitHub REST client.

    Args:
        token: GitHub access token (decrypted).
        api_base: API base URL, without trailing slash.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        token: str,
        api_base: str = GITHUB_API_BASE,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=api_base,
            headers={
                "Authorization": f"Bearer {token}",
                "X-GitHub-Api-Version": GITHUB_API_VERSION,
            },
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        self._client.close()

    def __enter__(self) -> "GitHubClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _get(self, path: str, **kwargs) -> httpx.Response | None:
        try:
            response = self._client.get(path, **kwargs)
        except httpx.TimeoutException as e:
            raise GitHubFetchError(f"GitHub API timed out during GET {path}") from e
        except httpx.HTTPError as e:
            raise GitHubFetchError(
                sanitize_error_message(f"Failed to fetch from GitHub: {e}") or ""
            ) from e

        if response.status_code == 404:
            return None
        if response.is_error:
            raise GitHubFetchError(
                f"GitHub API error: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )
        return response

    def fetch_file(self, owner: str, repo: str, branch: str, path: str) -> str | None:
        """Return the raw contents of a file on a branch, or None if absent."""
        response = self._get(
            f"/repos/{owner}/{repo}/contents/{path}",
            params={"ref": branch},
            headers={"Accept": "application/vnd.github.raw+json"},
        )
        return None if response is None else response.text

    def list_branches(self, owner: str, repo: str) -> list[str]:
        """Return every branch name of a repository."""
        names: list[str] = []
        page = 1
        while True:
            response = self._get(
                f"/repos/{owner}/{repo}/branches",
                params={"per_page": BRANCH_PAGE_SIZE, "page": page},
                headers={"Accept": "application/vnd.github+json"},
            )
            if response is None:
                raise GitHubFetchError(f"Repository {owner}/{repo} not found", status_code=404)
            batch = response.json()
            names.extend(item["name"] for item in batch)
            if len(batch) < BRANCH_PAGE_SIZE:
                return names
            page += 1

    def list_manifest_branches(self, repository_url: str) -> list[tuple[str, str]]:
        """Return (branch name, PRD name) for each manifest-* branch."""
        owner, repo = parse_repository(repository_url)
        return [
            (name, name[len(MANIFEST_BRANCH_PREFIX):])
            for name in self.list_branches(owner, repo)
            if name.startswith(MANIFEST_BRANCH_PREFIX) and len(name) > len(MANIFEST_BRANCH_PREFIX)
        ]

    def fetch_prd(self, repository_url: str, branch_name: str, prd_name: str) -> PrdData:
        """Read prd.json and progress.txt for a PRD from a branch.

        Raises:
            GitHubFetchError: On a bad URL, an API failure, or prd.json
                that is not valid JSON.
        """
        owner, repo = parse_repository(repository_url)
        base_path = f"{PRD_STATE_DIR}/{prd_name}"
        prd_raw = self.fetch_file(owner, repo, branch_name, f"{base_path}/prd.json")
        progress = self.fetch_file(owner, repo, branch_name, f"{base_path}/progress.txt")
        prd = parse_prd_document(prd_raw) if prd_raw else None
        return PrdData(prd=prd, progress=progress)
