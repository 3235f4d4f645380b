"""Tests for the execution session ledger."""

import pytest

from abraxas.db.models import ExecutionMode, ExecutionSession, SessionStatus
from abraxas.errors import NotFoundError
from abraxas.services.session_ledger import SessionLedger, SessionUpdate


def _session(test_db, task_id, created_at):
    session = ExecutionSession(task_id=task_id, session_id=task_id, created_at=created_at)
    test_db.add(session)
    test_db.commit()
    return session


class TestCreateAndGet:
    def test_create_defaults_to_pending(self, test_db, task):
        ledger = SessionLedger(test_db)
        session = ledger.create(
            task_id=task.id,
            correlation_id=task.id,
            execution_mode=ExecutionMode.sandbox,
            sandbox_name="abraxas-1",
            webhook_secret="s3cret",
            branch_name="abraxas/abc",
        )
        test_db.commit()
        loaded = ledger.get(session.id)
        assert loaded.status == SessionStatus.pending.value
        assert loaded.execution_mode == "sandbox"
        assert loaded.sandbox_name == "abraxas-1"

    def test_get_missing_raises(self, test_db):
        with pytest.raises(NotFoundError):
            SessionLedger(test_db).get("missing")


class TestLatest:
    def test_latest_is_greatest_created_at(self, test_db, task):
        _session(test_db, task.id, "2026-01-01T00:00:00+00:00")
        newest = _session(test_db, task.id, "2026-03-01T00:00:00+00:00")
        _session(test_db, task.id, "2026-02-01T00:00:00+00:00")
        assert SessionLedger(test_db).get_latest(task.id).id == newest.id

    def test_latest_without_sessions_raises(self, test_db, task):
        with pytest.raises(NotFoundError):
            SessionLedger(test_db).get_latest(task.id)

    def test_get_for_tasks_empty_list(self, test_db):
        assert SessionLedger(test_db).get_for_tasks([]) == []

    def test_get_for_tasks_newest_first(self, test_db, task):
        old = _session(test_db, task.id, "2026-01-01T00:00:00+00:00")
        new = _session(test_db, task.id, "2026-02-01T00:00:00+00:00")
        sessions = SessionLedger(test_db).get_for_tasks([task.id])
        assert [s.id for s in sessions] == [new.id, old.id]


class TestUpdate:
    def test_only_set_fields_are_written(self, test_db, task):
        ledger = SessionLedger(test_db)
        session = ledger.create(task.id, task.id, sandbox_name="box", branch_name="b")
        ledger.update(session.id, SessionUpdate(status=SessionStatus.in_progress))
        assert session.status == "in_progress"
        assert session.sandbox_name == "box"
        assert session.branch_name == "b"

    def test_explicit_none_clears(self, test_db, task):
        ledger = SessionLedger(test_db)
        session = ledger.create(task.id, task.id, sandbox_name="box", sandbox_url="https://x")
        ledger.update(session.id, SessionUpdate(sandbox_name=None, sandbox_url=None))
        assert session.sandbox_name is None
        assert session.sandbox_url is None

    def test_update_missing_raises(self, test_db):
        with pytest.raises(NotFoundError):
            SessionLedger(test_db).update("missing", SessionUpdate(error_message="x"))
