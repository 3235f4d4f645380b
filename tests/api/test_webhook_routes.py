"""Tests for the signed sandbox webhook routes."""

import asyncio
import json

import pytest

from abraxas.db.models import ExecutionSession, Manifest, Task
from abraxas.services.execution_callbacks import SIGNATURE_HEADER, ExecutionCallbackService
from abraxas.services.manifest_service import ManifestService
from abraxas.services.sandbox_scripts import sign_payload


@pytest.fixture
def executed(client, task, owner_headers, test_db):
    """Execute the task through the API and return its session."""
    data = client.post(f"/api/v1/tasks/{task.id}/execute", headers=owner_headers).json()
    return test_db.get(ExecutionSession, data["session_id"])


def _post(client, url, payload: dict, secret: str):
    body = json.dumps(payload).encode()
    return client.post(
        url,
        content=body,
        headers={"Content-Type": "application/json", SIGNATURE_HEADER: sign_payload(body, secret)},
    )


class TestSandboxWebhook:
    def test_completed(self, client, test_db, executed):
        response = _post(
            client,
            f"/api/webhooks/sandbox/{executed.task_id}",
            {"type": "completed", "summary": "Done"},
            executed.webhook_secret,
        )
        assert response.status_code == 200
        assert response.json() == {"success": True, "type": "completed"}
        test_db.expire_all()
        assert test_db.get(Task, executed.task_id).execution_state == "awaiting_review"

    def test_no_identity_header_needed(self, client, executed):
        response = _post(
            client,
            f"/api/webhooks/sandbox/{executed.task_id}",
            {"type": "started"},
            executed.webhook_secret,
        )
        assert response.status_code == 200

    def test_invalid_signature_is_401_json(self, client, executed):
        response = _post(
            client,
            f"/api/webhooks/sandbox/{executed.task_id}",
            {"type": "started"},
            "wrong-secret",
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "E-3002"

    def test_missing_signature_is_401(self, client, executed):
        response = client.post(
            f"/api/webhooks/sandbox/{executed.task_id}", content=b'{"type":"started"}'
        )
        assert response.status_code == 401

    def test_invalid_payload_is_400(self, client, executed):
        response = _post(
            client,
            f"/api/webhooks/sandbox/{executed.task_id}",
            {"type": "nonsense"},
            executed.webhook_secret,
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid payload format"

    def test_unknown_task_is_404(self, client):
        response = _post(client, "/api/webhooks/sandbox/missing", {"type": "started"}, "x")
        assert response.status_code == 404


class TestManifestWebhook:
    def test_signed_events(self, client, test_db, project, owner_headers):
        manifest_id = client.post(
            "/api/v1/manifests",
            json={"project_id": project.id, "name": "Q3"},
            headers=owner_headers,
        ).json()["id"]
        manifest = test_db.get(Manifest, manifest_id)
        url = f"/api/webhooks/manifest/{manifest_id}"

        response = _post(client, url, {"type": "started"}, manifest.webhook_secret)
        assert response.json() == {"success": True, "type": "started"}
        fetched = client.get(f"/api/v1/manifests/{manifest_id}", headers=owner_headers)
        assert fetched.json()["status"] == "active"

        bad = _post(client, url, {"type": "completed"}, "nope")
        assert bad.status_code == 401
        assert bad.json()["error"]["code"] == "E-3002"

    def test_unknown_manifest_is_404(self, client):
        response = _post(client, "/api/webhooks/manifest/missing", {"type": "started"}, "x")
        assert response.status_code == 404


class TestWebhookThreading:
    """The synchronous callback services must not run on the event loop."""

    @staticmethod
    def _loop_running() -> bool:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return False
        return True

    def test_sandbox_callback_runs_off_loop(self, client, executed, monkeypatch):
        seen = []
        original = ExecutionCallbackService.handle

        def recording_handle(self, *args):
            seen.append(TestWebhookThreading._loop_running())
            return original(self, *args)

        monkeypatch.setattr(ExecutionCallbackService, "handle", recording_handle)
        response = _post(
            client,
            f"/api/webhooks/sandbox/{executed.task_id}",
            {"type": "started"},
            executed.webhook_secret,
        )
        assert response.status_code == 200
        assert seen == [False]

    def test_manifest_callback_runs_off_loop(self, client, test_db, project, owner_headers, monkeypatch):
        manifest_id = client.post(
            "/api/v1/manifests",
            json={"project_id": project.id, "name": "Q3"},
            headers=owner_headers,
        ).json()["id"]
        manifest = test_db.get(Manifest, manifest_id)
        seen = []
        original = ManifestService.handle_callback

        def recording_handle(self, *args):
            seen.append(TestWebhookThreading._loop_running())
            return original(self, *args)

        monkeypatch.setattr(ManifestService, "handle_callback", recording_handle)
        response = _post(
            client, f"/api/webhooks/manifest/{manifest_id}", {"type": "started"}, manifest.webhook_secret
        )
        assert response.status_code == 200
        assert seen == [False]
