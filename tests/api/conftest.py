"""Pytest fixtures for API tests.

Provides a TestClient whose database, vault, settings, sandbox provider
and GitHub transport are swapped for the test doubles from the root conftest.
"""

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from abraxas.api.dependencies import (
    get_github_transport,
    get_sandbox_provider,
    get_settings,
    get_vault,
)
from abraxas.api.main import app
from abraxas.db.connection import get_db
from abraxas.services.identity import USER_HEADER


@pytest.fixture
def client(test_db: Session, vault, settings, provider, github) -> Generator[TestClient, None, None]:
    """Create a TestClient with overridden dependencies.

    Yields:
        TestClient configured for testing.
    """

    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_vault] = lambda: vault
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_sandbox_provider] = lambda: provider
    app.dependency_overrides[get_github_transport] = lambda: github.transport
    with TestClient(app, follow_redirects=False) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def owner_headers(owner) -> dict[str, str]:
    return {USER_HEADER: owner.id}


@pytest.fixture
def stranger_headers(stranger) -> dict[str, str]:
    return {USER_HEADER: stranger.email}
