"""Tests for ORM model defaults and relationships."""

import pytest
from sqlalchemy.exc import IntegrityError

from abraxas.db.models import (
    Comment,
    ExecutionState,
    Project,
    Task,
    TaskStatus,
    TaskType,
    User,
)


class TestTaskDefaults:
    def test_new_task_is_idle_backlog(self, task):
        assert task.execution_state == ExecutionState.idle.value
        assert task.status == TaskStatus.backlog.value
        assert task.type == TaskType.feature.value
        assert task.branch_name is None
        assert task.created_at


class TestProject:
    def test_local_setup_enabled_tracks_script(self, project):
        assert project.local_setup_enabled is False
        project.local_setup_script = ""
        assert project.local_setup_enabled is True

    def test_delete_cascades_to_tasks(self, test_db, project, task):
        test_db.delete(project)
        test_db.commit()
        assert test_db.query(Task).count() == 0


class TestComment:
    def test_is_agent(self, task, owner):
        assert Comment(task_id=task.id, agent_name="Abraxas", content="x", sequence=1).is_agent
        assert not Comment(task_id=task.id, user_id=owner.id, content="x", sequence=1).is_agent

    def test_sequence_unique_per_task(self, test_db, task):
        test_db.add_all([
            Comment(task_id=task.id, agent_name="Abraxas", content="a", sequence=1),
            Comment(task_id=task.id, agent_name="Abraxas", content="b", sequence=1),
        ])
        with pytest.raises(IntegrityError):
            test_db.commit()

    def test_comment_needs_an_author(self, test_db, task):
        test_db.add(Comment(task_id=task.id, content="orphan", sequence=1))
        with pytest.raises(IntegrityError):
            test_db.commit()

    def test_comment_cannot_have_two_authors(self, test_db, task, owner):
        test_db.add(
            Comment(task_id=task.id, user_id=owner.id, agent_name="Abraxas", content="x", sequence=1)
        )
        with pytest.raises(IntegrityError):
            test_db.commit()

    def test_user_comments_go_with_the_user(self):
        (foreign_key,) = Comment.__table__.c.user_id.foreign_keys
        assert foreign_key.ondelete == "CASCADE"


class TestUser:
    def test_email_unique(self, test_db, owner):
        test_db.add(User(name="Again", email=owner.email))
        with pytest.raises(IntegrityError):
            test_db.commit()

    def test_repr_does_not_leak_token(self, project):
        assert "ghp_" not in repr(project)
        assert isinstance(project, Project)
