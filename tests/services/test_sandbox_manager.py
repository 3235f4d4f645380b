"""Tests for the sandbox lifecycle manager and its destroy retry queue."""

import pytest

from abraxas.db.models import (
    DestroyRetryStatus,
    SandboxDestroyRetry,
    SandboxPurpose,
    SandboxRecord,
)
from abraxas.errors import SandboxExecutionError, ValidationError
from abraxas.services.sandbox_manager import (
    ManifestSpawnRequest,
    PrdCreatorSpawnRequest,
    TaskSpawnRequest,
    drain_destroy_queue,
    enqueue_destroy_retry,
)
from abraxas.services.sandbox_scripts import (
    LOG_PATH,
    SCRIPT_PATH,
    TASK_LOOP_LOG_PATH,
    TASK_LOOP_SCRIPT_PATH,
)


def _task_request(task, **overrides) -> TaskSpawnRequest:
    values = dict(
        task_id=task.id,
        task_title=task.title,
        task_description=task.description,
        branch_name=None,
        model=task.model,
        project_id=task.project_id,
        repository_url="https://github.com/acme/demo.git",
        access_token="ghp_secret_token",
        prompt="Task: Fix login redirect",
        caller_id="user-1",
        agent_model="anthropic/claude-sonnet-4-5-20250929",
    )
    values.update(overrides)
    return TaskSpawnRequest(**values)


class TestSpawnForTask:
    def test_spawn_uploads_script_and_runs_detached(self, sandbox_manager, provider, task):
        result = sandbox_manager.spawn_for_task(_task_request(task))

        assert result.sandbox_name in provider.sandboxes
        assert result.sandbox_name.startswith("abraxas-")
        assert len(result.sandbox_name) <= 63
        assert result.branch_name.startswith("abraxas/")
        assert "fix-login-redirect" in result.branch_name
        assert len(result.webhook_secret) == 64
        assert len(result.sandbox_password) == 32
        assert provider.detached == [(result.sandbox_name, SCRIPT_PATH, LOG_PATH)]

        script = provider.uploaded_script(result.sandbox_name)
        assert f"https://abraxas.test/api/webhooks/sandbox/{task.id}" in script
        assert result.webhook_secret in script
        assert "echo setup" in script

    def test_existing_branch_is_reused(self, sandbox_manager, task):
        result = sandbox_manager.spawn_for_task(_task_request(task, branch_name="feature/x"))
        assert result.branch_name == "feature/x"

    def test_agent_auth_uploaded_when_present(self, sandbox_manager, provider, task):
        result = sandbox_manager.spawn_for_task(_task_request(task, agent_auth='{"a":1}'))
        stdins = [stdin for name, _cmd, stdin in provider.exec_calls if name == result.sandbox_name]
        assert '{"a":1}' in stdins

    def test_missing_repository_url_has_no_side_effects(self, sandbox_manager, provider, task):
        with pytest.raises(ValidationError):
            sandbox_manager.spawn_for_task(_task_request(task, repository_url=None))
        assert provider.created == []

    def test_create_failure_propagates(self, sandbox_manager, provider, task):
        provider.fail_on.add("create")
        with pytest.raises(SandboxExecutionError):
            sandbox_manager.spawn_for_task(_task_request(task))

    def test_failure_after_create_destroys_sandbox(self, sandbox_manager, provider, task):
        provider.fail_on.add("exec_detached")
        with pytest.raises(SandboxExecutionError):
            sandbox_manager.spawn_for_task(_task_request(task))
        assert len(provider.created) == 1
        assert provider.destroyed == provider.created
        assert provider.sandboxes == {}


class TestSpawnForManifest:
    def test_manifest_script_reports_branch_ready(self, sandbox_manager, provider, project):
        result = sandbox_manager.spawn_for_manifest(
            ManifestSpawnRequest(
                manifest_id="m-1",
                project_id=project.id,
                branch_name="manifest-q3",
                repository_url=project.repository_url,
                access_token="tok",
                prompt="Manifest: q3",
                webhook_secret="f" * 64,
                agent_model="anthropic/claude-sonnet-4-5-20250929",
            )
        )
        assert result.sandbox_name.startswith("manifest-")
        assert result.webhook_secret == "f" * 64
        script = provider.uploaded_script(result.sandbox_name)
        assert "/api/webhooks/manifest/m-1" in script
        assert "branch_ready" in script


class TestPrdCreator:
    def test_spawn_registers_placeholder_branch(self, test_db, sandbox_manager, provider, project):
        result = sandbox_manager.spawn_prd_creator(
            PrdCreatorSpawnRequest(
                project_id=project.id,
                repository_url=project.repository_url,
                access_token="tok",
                local_setup_script="make deps",
            )
        )
        assert result.branch_name.startswith("manifest-creator-")
        assert result.sandbox_name in provider.sandboxes
        script = provider.uploaded_script(result.sandbox_name)
        assert "PRD Creator Ready" in script
        assert "make deps" in script

        record = sandbox_manager.find(result.branch_name, SandboxPurpose.manifest)
        assert record.sandbox_name == result.sandbox_name
        assert record.project_id == project.id

    def test_missing_repository_url(self, sandbox_manager, provider, project):
        with pytest.raises(ValidationError):
            sandbox_manager.spawn_prd_creator(
                PrdCreatorSpawnRequest(project_id=project.id, repository_url="", access_token="tok")
            )
        assert provider.created == []


class TestTaskLoop:
    def test_start_uploads_wrapper_and_runs_detached(self, sandbox_manager, provider):
        provider.create("box-1")
        sandbox_manager.start_task_loop("box-1", "#!/bin/bash\ntask-loop x\n")

        _name, command, stdin = provider.exec_calls[-1]
        assert TASK_LOOP_SCRIPT_PATH in command[-1]
        assert stdin == "#!/bin/bash\ntask-loop x\n"
        assert provider.detached == [("box-1", TASK_LOOP_SCRIPT_PATH, TASK_LOOP_LOG_PATH)]

    def test_stop_kills_task_loop(self, sandbox_manager, provider):
        provider.create("box-1")
        sandbox_manager.stop_task_loop("box-1")
        assert provider.exec_calls[-1][1] == ["pkill", "-f", "task-loop"]

    def test_provider_failure_propagates(self, sandbox_manager, provider):
        provider.create("box-1")
        provider.fail_on.add("exec")
        with pytest.raises(SandboxExecutionError):
            sandbox_manager.start_task_loop("box-1", "script")
        assert provider.detached == []

class TestRecords:
    def test_find_matches_branch_and_purpose(self, test_db, sandbox_manager, project):
        sandbox_manager.register(project.id, "feature/x", SandboxPurpose.task, "box-1")
        assert sandbox_manager.find("feature/x", SandboxPurpose.task).sandbox_name == "box-1"
        assert sandbox_manager.find("feature/x", SandboxPurpose.manifest) is None
        assert sandbox_manager.find("feature/y", SandboxPurpose.task) is None

    def test_reregistering_same_sandbox_refreshes_row(self, test_db, sandbox_manager, project):
        sandbox_manager.register(project.id, "feature/x", SandboxPurpose.task, "box-1")
        record = sandbox_manager.register(
            project.id, "feature/x", SandboxPurpose.task, "box-1", sandbox_url="https://box-1"
        )
        assert record.sandbox_url == "https://box-1"
        assert test_db.query(SandboxRecord).count() == 1

    def test_registering_new_sandbox_replaces_old_one(self, test_db, sandbox_manager, provider, project):
        provider.create("box-1")
        provider.create("box-2")
        sandbox_manager.register(project.id, "feature/x", SandboxPurpose.task, "box-1")
        sandbox_manager.register(project.id, "feature/x", SandboxPurpose.task, "box-2")

        assert provider.destroyed == ["box-1"]
        assert [r.sandbox_name for r in test_db.query(SandboxRecord).all()] == ["box-2"]
        assert sandbox_manager.destroy("feature/x", SandboxPurpose.task) is True
        assert sandbox_manager.destroy("feature/x", SandboxPurpose.task) is False
        assert provider.sandboxes == {}

    def test_other_purpose_is_left_alone(self, test_db, sandbox_manager, provider, project):
        provider.create("box-1")
        sandbox_manager.register(project.id, "feature/x", SandboxPurpose.task, "box-1")
        sandbox_manager.register(project.id, "feature/x", SandboxPurpose.manifest, "box-2")
        assert provider.destroyed == []
        assert test_db.query(SandboxRecord).count() == 2

    def test_records_for_project_oldest_first(self, test_db, sandbox_manager, project):
        test_db.add_all([
            SandboxRecord(project_id=project.id, branch_name="manifest-b", type="manifest",
                          sandbox_name="box-b", created_at="2026-02-01T00:00:00+00:00"),
            SandboxRecord(project_id=project.id, branch_name="manifest-a", type="manifest",
                          sandbox_name="box-a", created_at="2026-01-01T00:00:00+00:00"),
            SandboxRecord(project_id=project.id, branch_name="feature/x", type="task",
                          sandbox_name="box-t"),
        ])
        test_db.commit()
        records = sandbox_manager.records_for_project(project.id, SandboxPurpose.manifest)
        assert [r.sandbox_name for r in records] == ["box-a", "box-b"]

    def test_tail_log(self, sandbox_manager, provider, project):
        provider.create("box-1")
        provider.exec_output = "line 1\nline 2\n"
        assert sandbox_manager.tail_log("box-1", 2) == "line 1\nline 2\n"
        assert provider.exec_calls[-1][1] == ["tail", "-n", "2", LOG_PATH]


class TestDestroy:
    def test_destroy_without_record_is_noop(self, sandbox_manager, provider):
        assert sandbox_manager.destroy("feature/x", SandboxPurpose.task) is False
        assert provider.destroyed == []

    def test_destroy_removes_record(self, test_db, sandbox_manager, provider, project):
        provider.create("box-1")
        sandbox_manager.register(project.id, "feature/x", SandboxPurpose.task, "box-1")
        assert sandbox_manager.destroy("feature/x", SandboxPurpose.task) is True
        assert provider.destroyed == ["box-1"]
        assert test_db.query(SandboxRecord).count() == 0

    def test_destroy_twice_is_idempotent(self, sandbox_manager, provider, project):
        provider.create("box-1")
        sandbox_manager.register(project.id, "feature/x", SandboxPurpose.task, "box-1")
        sandbox_manager.destroy("feature/x", SandboxPurpose.task)
        assert sandbox_manager.destroy("feature/x", SandboxPurpose.task) is False

    def test_already_gone_counts_as_destroyed(self, test_db, sandbox_manager):
        assert sandbox_manager.destroy_sandbox("ghost", reason="test") is True
        assert test_db.query(SandboxDestroyRetry).count() == 0

    def test_provider_failure_is_queued_not_raised(self, test_db, sandbox_manager, provider, project):
        provider.create("box-1")
        sandbox_manager.register(project.id, "feature/x", SandboxPurpose.task, "box-1")
        provider.fail_on.add("destroy")

        assert sandbox_manager.destroy_sandbox("box-1", reason="test") is False

        entry = test_db.query(SandboxDestroyRetry).one()
        assert entry.sandbox_name == "box-1"
        assert entry.status == DestroyRetryStatus.pending.value
        # The record goes regardless of the outcome.
        assert test_db.query(SandboxRecord).count() == 0


class TestDestroyQueue:
    def test_enqueue_is_deduplicated(self, test_db):
        enqueue_destroy_retry(test_db, "box-1", "test", "boom")
        enqueue_destroy_retry(test_db, "box-1", "test", "boom again")
        entries = test_db.query(SandboxDestroyRetry).all()
        assert len(entries) == 1
        assert entries[0].last_error == "boom again"

    def test_drain_destroys_and_completes(self, test_db, provider):
        provider.create("box-1")
        enqueue_destroy_retry(test_db, "box-1", "test")
        enqueue_destroy_retry(test_db, "ghost", "test")

        result = drain_destroy_queue(test_db, provider, max_retries=3)

        assert result == {"destroyed": 2, "failed": 0, "dead_letter": 0}
        statuses = {e.sandbox_name: e.status for e in test_db.query(SandboxDestroyRetry)}
        assert statuses == {"box-1": "completed", "ghost": "completed"}

    def test_drain_dead_letters_after_max_retries(self, test_db, provider):
        provider.create("box-1")
        provider.fail_on.add("destroy")
        enqueue_destroy_retry(test_db, "box-1", "test")

        assert drain_destroy_queue(test_db, provider, max_retries=2)["failed"] == 1
        assert drain_destroy_queue(test_db, provider, max_retries=2)["dead_letter"] == 1
        entry = test_db.query(SandboxDestroyRetry).one()
        assert entry.status == DestroyRetryStatus.dead_letter.value
        assert entry.retry_count == 2
        # Dead-lettered entries are not retried again.
        assert drain_destroy_queue(test_db, provider, max_retries=2) == {
            "destroyed": 0, "failed": 0, "dead_letter": 0,
        }

    def test_manager_drain_uses_settings_retries(self, test_db, sandbox_manager, provider):
        provider.create("box-1")
        enqueue_destroy_retry(test_db, "box-1", "test")
        assert sandbox_manager.drain_destroy_queue()["destroyed"] == 1
