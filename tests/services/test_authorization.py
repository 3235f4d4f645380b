"""Tests for ownership resolution through the project chain."""

import pytest

from abraxas.db.models import Comment, ExecutionSession, Manifest
from abraxas.errors import NotFoundError, UnauthorizedError
from abraxas.services.authorization import (
    resolve_comment,
    resolve_manifest,
    resolve_project,
    resolve_session,
    resolve_task,
)


class TestResolveProject:
    def test_owner_gets_project(self, test_db, owner, project):
        assert resolve_project(test_db, project.id, owner).id == project.id

    def test_stranger_is_unauthorized(self, test_db, stranger, project):
        with pytest.raises(UnauthorizedError):
            resolve_project(test_db, project.id, stranger)

    def test_missing_project_is_not_found(self, test_db, owner):
        with pytest.raises(NotFoundError) as exc_info:
            resolve_project(test_db, "nope", owner)
        assert exc_info.value.entity == "project"


class TestResolveChildren:
    """Tasks, comments, sessions and manifests authorize via their project."""

    def test_task(self, test_db, owner, stranger, task, project):
        found, found_project = resolve_task(test_db, task.id, owner)
        assert found.id == task.id
        assert found_project.id == project.id
        with pytest.raises(UnauthorizedError):
            resolve_task(test_db, task.id, stranger)

    def test_missing_task(self, test_db, owner):
        with pytest.raises(NotFoundError):
            resolve_task(test_db, "missing", owner)

    def test_comment(self, test_db, owner, stranger, task):
        comment = Comment(task_id=task.id, user_id=owner.id, content="hi", sequence=1)
        test_db.add(comment)
        test_db.commit()
        found, found_task, _project = resolve_comment(test_db, comment.id, owner)
        assert found.id == comment.id
        assert found_task.id == task.id
        with pytest.raises(UnauthorizedError):
            resolve_comment(test_db, comment.id, stranger)

    def test_session(self, test_db, owner, stranger, task):
        session = ExecutionSession(task_id=task.id, session_id=task.id)
        test_db.add(session)
        test_db.commit()
        found, _task, _project = resolve_session(test_db, session.id, owner)
        assert found.id == session.id
        with pytest.raises(UnauthorizedError):
            resolve_session(test_db, session.id, stranger)

    def test_missing_session(self, test_db, owner):
        with pytest.raises(NotFoundError) as exc_info:
            resolve_session(test_db, "missing", owner)
        assert exc_info.value.entity == "session"

    def test_manifest(self, test_db, owner, stranger, project):
        manifest = Manifest(project_id=project.id, name="Q3 PRD")
        test_db.add(manifest)
        test_db.commit()
        found, found_project = resolve_manifest(test_db, manifest.id, owner)
        assert found.id == manifest.id
        assert found_project.id == project.id
        with pytest.raises(UnauthorizedError):
            resolve_manifest(test_db, manifest.id, stranger)
