"""Tests for signed task sandbox callbacks."""

import json

import pytest

from abraxas.db.models import Comment, ExecutionSession, SandboxRecord, Task
from abraxas.errors import NotFoundError, ValidationError, WebhookSignatureError
from abraxas.services.execution_callbacks import ExecutionCallbackService, verify_signature
from abraxas.services.sandbox_scripts import sign_payload
from abraxas.services.task_execution import TaskExecutionService


@pytest.fixture
def running(test_db, vault, sandbox_manager, settings, task, owner):
    """A task that has been executed and has a live sandbox."""
    result = TaskExecutionService(test_db, vault, sandbox_manager, settings).execute(task.id, owner)
    return test_db.get(ExecutionSession, result.session_id)


@pytest.fixture
def service(test_db, sandbox_manager, settings):
    return ExecutionCallbackService(test_db, sandbox_manager, settings)


def _send(service, session, payload: dict, secret: str | None = None):
    body = json.dumps(payload).encode()
    signature = sign_payload(body, secret or session.webhook_secret)
    return service.handle(session.task_id, body, signature)


def _comments(test_db, task_id) -> list[str]:
    return [
        c.content
        for c in test_db.query(Comment)
        .filter(Comment.task_id == task_id)
        .order_by(Comment.sequence)
    ]


class TestVerifySignature:
    def test_prefixed_and_bare_hex(self):
        body = b'{"type":"started"}'
        signature = sign_payload(body, "secret")
        assert verify_signature(body, signature, "secret")
        assert verify_signature(body, signature.removeprefix("sha256="), "secret")

    def test_wrong_secret(self):
        body = b"{}"
        assert not verify_signature(body, sign_payload(body, "a"), "b")

    def test_body_must_match_exactly(self):
        signature = sign_payload(b'{"a": 1}', "secret")
        assert not verify_signature(b'{"a":1}', signature, "secret")

    def test_missing_inputs(self):
        assert not verify_signature(b"{}", None, "secret")
        assert not verify_signature(b"{}", "sha256=00", "")


class TestRejection:
    def test_missing_signature(self, service, running):
        with pytest.raises(WebhookSignatureError):
            service.handle(running.task_id, b'{"type":"started"}', None)

    def test_bad_signature_changes_nothing(self, test_db, service, running):
        with pytest.raises(WebhookSignatureError):
            _send(service, running, {"type": "error", "error": "x"}, secret="wrong")
        test_db.expire_all()
        assert test_db.get(Task, running.task_id).execution_state == "in_progress"

    def test_unknown_task(self, service):
        with pytest.raises(NotFoundError):
            service.handle("missing", b"{}", "sha256=00")

    def test_signed_garbage_is_invalid_payload(self, service, running):
        body = b"not json"
        with pytest.raises(ValidationError, match="Invalid payload format"):
            service.handle(running.task_id, body, sign_payload(body, running.webhook_secret))

    def test_unknown_event_type(self, service, running):
        with pytest.raises(ValidationError):
            _send(service, running, {"type": "exploded"})


class TestEvents:
    def test_started(self, test_db, service, running):
        assert _send(service, running, {"type": "started", "message": "Booted"}) == "started"
        assert running.status == "in_progress"
        assert _comments(test_db, running.task_id)[-1] == "Execution started\n\nBooted"

    def test_progress_updates_counters(self, service, running):
        _send(service, running, {
            "type": "progress",
            "progress": {"messageCount": 3, "inputTokens": 1200, "outputTokens": 340},
        })
        assert running.message_count == "3"
        assert running.input_tokens == "1200"
        assert running.output_tokens == "340"

    def test_completed(self, test_db, service, provider, running):
        sandbox_name = running.sandbox_name
        _send(service, running, {
            "type": "completed",
            "summary": "Fixed the redirect",
            "pullRequestUrl": "https://github.com/acme/demo/pull/7",
            "branchName": "abraxas/fix",
            "stats": {"messageCount": 4, "inputTokens": 10, "outputTokens": 5},
        })

        test_db.expire_all()
        session = test_db.get(ExecutionSession, running.id)
        task = test_db.get(Task, running.task_id)
        assert session.status == "completed"
        assert session.pull_request_url == "https://github.com/acme/demo/pull/7"
        assert session.completed_at is not None
        assert session.sandbox_name is None
        assert task.status == "review"
        assert task.execution_state == "awaiting_review"
        assert task.branch_name == "abraxas/fix"
        assert task.completed_at is not None
        assert _comments(test_db, task.id)[-1] == (
            "Execution completed\n\nFixed the redirect\n\n"
            "PR: https://github.com/acme/demo/pull/7\n\n"
            "Stats: 4 messages, 10 input tokens, 5 output tokens"
        )
        assert sandbox_name in provider.destroyed
        assert test_db.query(SandboxRecord).count() == 0

    def test_error(self, test_db, service, provider, running):
        sandbox_name = running.sandbox_name
        _send(service, running, {"type": "error", "error": "Tests failed", "logs": "FAIL x"})

        test_db.expire_all()
        session = test_db.get(ExecutionSession, running.id)
        task = test_db.get(Task, running.task_id)
        assert session.status == "error"
        assert session.error_message == "Tests failed"
        assert session.logs == "FAIL x"
        assert task.status == "failed"
        assert task.execution_state == "error"
        assert _comments(test_db, task.id)[-1] == (
            "Execution failed\n\nError: Tests failed\n\nPlease review the error and try again."
        )
        assert sandbox_name in provider.destroyed

    def test_question(self, test_db, service, running):
        _send(service, running, {"type": "question", "question": "Which auth library?"})
        assert _comments(test_db, running.task_id)[-1] == (
            "Question from Abraxas:\n\nWhich auth library?\n\n"
            "Please respond in the comments to continue execution."
        )
        assert test_db.get(Task, running.task_id).execution_state == "in_progress"

    def test_completed_after_manual_reset_still_applies(self, test_db, service, running):
        task = test_db.get(Task, running.task_id)
        task.execution_state = "idle"
        test_db.commit()
        _send(service, running, {"type": "completed"})
        test_db.expire_all()
        assert test_db.get(Task, running.task_id).execution_state == "awaiting_review"

    def test_destroy_failure_does_not_fail_callback(self, test_db, service, provider, running):
        provider.fail_on.add("destroy")
        assert _send(service, running, {"type": "error", "error": "boom"}) == "error"
        test_db.expire_all()
        assert test_db.get(Task, running.task_id).execution_state == "error"
