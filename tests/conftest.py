"""Root-level pytest fixtures for all tests.

Provides shared fixtures:
- In-memory SQLite session
- Users, a project and a task owned by the first user
- A credential vault with a fixed key
- Settings and a SandboxManager over FakeSandboxProvider
"""

import os
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

TEST_ENCRYPTION_KEY = "11" * 32


def pytest_configure(config):
    """Register markers and point the app at throwaway storage."""
    config.addinivalue_line(
        "markers", "integration: marks tests requiring external services"
    )
    # Must be set before abraxas.db.connection is imported.
    os.environ.setdefault("DATABASE_URL", "sqlite://")
    os.environ.setdefault("ABRAXAS_ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def test_db() -> Generator[Session, None, None]:
    """Create an in-memory SQLite database for testing.

    Creates all tables, yields a session, and cleans up after test.
    """
    from abraxas.db.models import Base

    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


# ============================================================================
# Service Fixtures
# ============================================================================


@pytest.fixture
def vault():
    from abraxas.services.credential_vault import CredentialVault

    return CredentialVault(bytes.fromhex(TEST_ENCRYPTION_KEY))


@pytest.fixture
def settings():
    from abraxas.config import Settings

    return Settings(
        sprites_token="test-token",
        webhook_base_url="https://abraxas.test",
        agent_setup_script="echo setup",
    )


@pytest.fixture
def provider():
    from tests.helpers import FakeSandboxProvider

    return FakeSandboxProvider()


@pytest.fixture
def sandbox_manager(test_db, provider, settings):
    from abraxas.services.sandbox_manager import SandboxManager

    return SandboxManager(test_db, provider, settings)


# ============================================================================
# Data Fixtures
# ============================================================================


@pytest.fixture
def owner(test_db: Session):
    """The user who owns the sample project."""
    from abraxas.db.models import User

    user = User(name="Owner", email="owner@example.com")
    test_db.add(user)
    test_db.commit()
    return user


@pytest.fixture
def stranger(test_db: Session):
    """A user with no projects."""
    from abraxas.db.models import User

    user = User(name="Stranger", email="stranger@example.com")
    test_db.add(user)
    test_db.commit()
    return user


@pytest.fixture
def project(test_db: Session, owner, vault):
    """A project owned by ``owner`` with an encrypted token."""
    from abraxas.db.models import Project

    project = Project(
        user_id=owner.id,
        name="Demo",
        repository_url="https://github.com/acme/demo.git",
        encrypted_token=vault.encrypt("ghp_secret_token"),
        agents_md_content="Run the test suite before pushing.",
    )
    test_db.add(project)
    test_db.commit()
    return project


@pytest.fixture
def task(test_db: Session, project):
    """An idle backlog task in ``project``."""
    from abraxas.db.models import Task

    task = Task(
        project_id=project.id,
        title="Fix login redirect",
        description="Users land on a 404 after signing in.",
    )
    test_db.add(task)
    test_db.commit()
    return task


@pytest.fixture
def github():
    """Fake GitHub API for the ``project`` repository (acme/demo)."""
    from tests.helpers import FakeGitHub

    return FakeGitHub()
