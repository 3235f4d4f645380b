"""FastAPI dependencies shared by the route modules.

Settings, the credential vault and the sandbox provider are process-wide
and built on first use. Services are built per request around the
request-scoped SQLAlchemy session from get_db().
"""

import os
import threading

import httpx
from fastapi import Depends, Header
from sqlalchemy.orm import Session

from abraxas.config import Settings, load_settings
from abraxas.db.connection import get_db
from abraxas.db.models import User
from abraxas.services.credential_vault import CredentialVault
from abraxas.services.identity import USER_HEADER, HeaderIdentityProvider
from abraxas.services.sandbox_manager import SandboxManager
from abraxas.services.sandbox_provider import SandboxProvider, SpritesClient

_lock = threading.Lock()
_settings: Settings | None = None
_vault: CredentialVault | None = None
_provider: SandboxProvider | None = None


def get_settings() -> Settings:
    """Load settings once, honouring ABRAXAS_CONFIG_PATH."""
    global _settings
    with _lock:
        if _settings is None:
            _settings = load_settings(os.environ.get("ABRAXAS_CONFIG_PATH") or None)
        return _settings


def get_vault() -> CredentialVault:
    """Return the process-wide vault.

    Raises:
        CryptoConfigError: If no encryption key is configured.
    """
    global _vault
    with _lock:
        if _vault is None:
            _vault = CredentialVault()
        return _vault


def get_sandbox_provider(settings: Settings = Depends(get_settings)) -> SandboxProvider:
    """Return the process-wide Sprites client.

    Raises:
        SandboxExecutionError: If no Sprites token is configured.
    """
    global _provider
    with _lock:
        if _provider is None:
            _provider = SpritesClient(
                token=settings.sprites_token,
                api_base=settings.sprites_api_base,
                timeout=settings.sandbox_timeout_seconds,
            )
        return _provider


def get_github_transport() -> httpx.BaseTransport | None:
    """Transport for GitHub API calls; None selects httpx's default."""
    return None


def reset_dependencies() -> None:
    """Drop cached singletons, closing the provider's connection pool."""
    global _settings, _vault, _provider
    with _lock:
        if isinstance(_provider, SpritesClient):
            _provider.close()
        _settings = None
        _vault = None
        _provider = None


def get_current_user(
    db: Session = Depends(get_db),
    user_ref: str | None = Header(None, alias=USER_HEADER),
) -> User:
    """Resolve the caller from the identity header.

    Raises:
        UnauthenticatedError: If the header is absent or matches no user.
    """
    return HeaderIdentityProvider(db, user_ref).get_current_caller()


def get_sandbox_manager(
    db: Session = Depends(get_db),
    provider: SandboxProvider = Depends(get_sandbox_provider),
    settings: Settings = Depends(get_settings),
) -> SandboxManager:
    """Dependency to get a SandboxManager bound to the request session."""
    return SandboxManager(db, provider, settings)
