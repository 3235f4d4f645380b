"""Sandbox provider client.

SandboxProvider is the capability the orchestrator consumes: create a
remote sandbox by name, run commands in it, and destroy it. SpritesClient
implements it against the Sprites HTTP API with httpx. Every call is
bounded by the configured timeout; timeouts and transport failures are
raised as SandboxExecutionError rather than retried here.
"""

import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

from abraxas.errors.domain import SandboxExecutionError, SandboxNotFoundError
from abraxas.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)


@dataclass
class SandboxInfo:
    """Provider-side description of a sandbox."""

    name: str
    url: str | None = None
    status: str | None = None
    id: str | None = None


class SandboxProvider(Protocol):
    """Remote sandbox capability."""

    def create(self, name: str, url_auth: str = "sprite") -> SandboxInfo:
        """Create a sandbox and return its connection info."""
        ...

    def destroy(self, name: str) -> None:
        """Destroy a sandbox. Raises SandboxNotFoundError if it is already gone."""
        ...

    def exec(
        self,
        name: str,
        command: list[str],
        stdin: str | None = None,
        env: dict[str, str] | None = None,
    ) -> str:
        """Run a command to completion and return its output."""
        ...

    def exec_detached(self, name: str, script_path: str, log_path: str) -> None:
        """Start a script that keeps running after the request returns."""
        ...


class SpritesClient:
    """SandboxProvider backed by the Sprites HTTP API.

    Args:
        token: Sprites API bearer token.
        api_base: API base URL, without trailing slash.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        token: str,
        api_base: str = "https://api.sprites.dev/v1",
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not token:
            raise SandboxExecutionError("Sprites API token is not configured")
        self._client = httpx.Client(
            base_url=api_base,
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        self._client.close()

    def _request(
        self,
        method: str,
        path: str,
        name: str,
        **kwargs,
    ) -> httpx.Response:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise SandboxExecutionError(
                f"Sprites API timed out during {method} {path}", name
            ) from e
        except httpx.HTTPError as e:
            raise SandboxExecutionError(
                sanitize_error_message(f"Sprites API request failed: {e}") or "",
                name,
            ) from e

        if response.status_code == 404:
            raise SandboxNotFoundError(name)
        if response.is_error:
            detail = response.text or response.reason_phrase
            raise SandboxExecutionError(
                sanitize_error_message(
                    f"Sprites API returned {response.status_code}: {detail}"
                ) or "",
                name,
            )
        return response

    @staticmethod
    def _to_info(name: str, data: dict | None) -> SandboxInfo:
        data = data or {}
        return SandboxInfo(
            name=data.get("name", name),
            url=data.get("url"),
            status=data.get("status"),
            id=data.get("id"),
        )

    def create(self, name: str, url_auth: str = "sprite") -> SandboxInfo:
        response = self._request(
            "POST",
            "/sprites",
            name,
            json={"name": name, "url_settings": {"auth": url_auth}},
        )
        if not response.content:
            raise SandboxExecutionError("Create sandbox returned no data", name)
        logger.info("Created sandbox %s", name)
        return self._to_info(name, response.json())

    def list_sandboxes(self, prefix: str | None = None) -> list[SandboxInfo]:
        """List sandboxes, optionally filtered by name prefix."""
        params = {"prefix": prefix} if prefix else None
        response = self._request("GET", "/sprites", prefix or "*", params=params)
        data = response.json() if response.content else {}
        return [self._to_info(item.get("name", ""), item) for item in data.get("sprites", [])]

    def destroy(self, name: str) -> None:
        self._request("DELETE", f"/sprites/{name}", name)
        logger.info("Destroyed sandbox %s", name)

    def exec(
        self,
        name: str,
        command: list[str],
        stdin: str | None = None,
        env: dict[str, str] | None = None,
    ) -> str:
        params: list[tuple[str, str]] = [("cmd", part) for part in command]
        if stdin is not None:
            params.append(("stdin", "true"))
        for key, value in (env or {}).items():
            params.append(("env", f"{key}={value}"))
        response = self._request(
            "POST",
            f"/sprites/{name}/exec",
            name,
            params=params,
            content=stdin.encode("utf-8") if stdin is not None else None,
            headers={"Content-Type": "application/octet-stream"},
        )
        return response.text

    def exec_detached(self, name: str, script_path: str, log_path: str) -> None:
        self._request(
            "POST",
            f"/sprites/{name}/exec",
            name,
            params=[
                ("cmd", "bash"),
                ("cmd", "-c"),
                ("cmd", f"nohup bash {script_path} > {log_path} 2>&1 &"),
                ("max_run_after_disconnect", "0"),
            ],
        )
        logger.info("Started %s detached in sandbox %s", script_path, name)
