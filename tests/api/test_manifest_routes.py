"""Tests for the manifest API routes."""

import json

from abraxas.db.models import Manifest
from abraxas.services.execution_callbacks import SIGNATURE_HEADER
from abraxas.services.sandbox_scripts import sign_payload


def _create(client, project, headers, name="Q3 PRD"):
    return client.post(
        "/api/v1/manifests", json={"project_id": project.id, "name": name}, headers=headers
    )


class TestManifestRoutes:
    def test_create(self, client, provider, project, owner_headers):
        response = _create(client, project, owner_headers)
        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "pending"
        assert data["branch_name"] == "manifest-q3-prd"
        assert data["sandbox_name"] in provider.sandboxes

    def test_second_active_rejected(self, client, project, owner_headers):
        _create(client, project, owner_headers, "First")
        response = _create(client, project, owner_headers, "Second")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "E-2003"

    def test_list_and_get(self, client, project, owner_headers):
        manifest_id = _create(client, project, owner_headers).json()["id"]
        listed = client.get(f"/api/v1/manifests?project_id={project.id}", headers=owner_headers)
        assert [m["id"] for m in listed.json()] == [manifest_id]
        fetched = client.get(f"/api/v1/manifests/{manifest_id}", headers=owner_headers)
        assert fetched.json()["name"] == "Q3 PRD"

    def test_cancel(self, client, provider, project, owner_headers):
        manifest_id = _create(client, project, owner_headers).json()["id"]
        response = client.post(f"/api/v1/manifests/{manifest_id}/cancel", headers=owner_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert provider.sandboxes == {}

    def test_delete(self, client, project, owner_headers):
        manifest_id = _create(client, project, owner_headers).json()["id"]
        assert client.delete(f"/api/v1/manifests/{manifest_id}", headers=owner_headers).status_code == 204
        assert client.get(f"/api/v1/manifests/{manifest_id}", headers=owner_headers).status_code == 404

    def test_stranger_forbidden(self, client, project, stranger_headers):
        response = _create(client, project, stranger_headers)
        assert response.status_code == 403


class TestStopSandboxRoute:
    def test_stop_after_branch_ready(self, client, test_db, provider, project, owner_headers):
        manifest_id = _create(client, project, owner_headers).json()["id"]
        manifest = test_db.get(Manifest, manifest_id)
        body = json.dumps({"type": "branch_ready", "branchName": "manifest-q3-prd"}).encode()
        client.post(
            f"/api/webhooks/manifest/{manifest_id}",
            content=body,
            headers={SIGNATURE_HEADER: sign_payload(body, manifest.webhook_secret)},
        )

        response = client.post(
            "/api/v1/manifests/stop-sandbox",
            json={"project_id": project.id, "branch_name": "manifest-q3-prd"},
            headers=owner_headers,
        )
        assert response.json() == {"stopped": True}
        assert provider.sandboxes == {}

    def test_stop_untracked(self, client, project, owner_headers):
        response = client.post(
            "/api/v1/manifests/stop-sandbox",
            json={"project_id": project.id, "branch_name": "nothing"},
            headers=owner_headers,
        )
        assert response.status_code == 200
        assert response.json() == {"stopped": False}


def _start(client, test_db, manifest_id):
    manifest = test_db.get(Manifest, manifest_id)
    body = json.dumps({"type": "started"}).encode()
    client.post(
        f"/api/webhooks/manifest/{manifest_id}",
        content=body,
        headers={SIGNATURE_HEADER: sign_payload(body, manifest.webhook_secret)},
    )


class TestPrdRoutes:
    def test_create_with_prd_name(self, client, project, owner_headers):
        response = client.post(
            "/api/v1/manifests",
            json={"project_id": project.id, "name": "Q3", "prd_name": "checkout-v2"},
            headers=owner_headers,
        )
        assert response.status_code == 201
        assert response.json()["prd_name"] == "checkout-v2"
        assert response.json()["branch_name"] == "manifest-checkout-v2"

    def test_update_prd_name(self, client, project, owner_headers):
        manifest_id = _create(client, project, owner_headers).json()["id"]
        response = client.patch(
            f"/api/v1/manifests/{manifest_id}/prd-name",
            json={"prd_name": "login-flow"},
            headers=owner_headers,
        )
        assert response.status_code == 200
        assert response.json()["prd_name"] == "login-flow"

    def test_update_prd_name_rejects_bad_name(self, client, project, owner_headers):
        manifest_id = _create(client, project, owner_headers).json()["id"]
        response = client.patch(
            f"/api/v1/manifests/{manifest_id}/prd-name",
            json={"prd_name": "Login Flow"},
            headers=owner_headers,
        )
        assert response.status_code == 400

    def test_prd_data(self, client, github, project, owner_headers):
        manifest_id = _create(client, project, owner_headers).json()["id"]
        github.add_prd("manifest-q3-prd", "q3-prd", [True], progress="done")

        response = client.get(f"/api/v1/manifests/prd-data?project_id={project.id}", headers=owner_headers)
        assert response.status_code == 200
        data = response.json()[manifest_id]
        assert data["prd"]["prd_name"] == "q3-prd"
        assert data["prd"]["tasks"][0]["passes"] is True
        assert data["progress"] == "done"

    def test_branches(self, client, github, project, owner_headers):
        github.add_prd("manifest-login-flow", "login-flow", [False])
        response = client.get(f"/api/v1/manifests/branches?project_id={project.id}", headers=owner_headers)
        assert response.status_code == 200
        [branch] = response.json()
        assert branch["branch_name"] == "manifest-login-flow"
        assert branch["prd_name"] == "login-flow"
        assert branch["sandbox"] is None

    def test_prd_creator_and_orphans(self, client, provider, project, owner_headers):
        response = client.post(
            "/api/v1/manifests/prd-creator", json={"project_id": project.id}, headers=owner_headers
        )
        assert response.status_code == 201
        created = response.json()
        assert created["sandbox_name"] in provider.sandboxes

        orphans = client.get(
            f"/api/v1/manifests/orphaned-sandboxes?project_id={project.id}&branch_name=manifest-other",
            headers=owner_headers,
        )
        assert [r["sandbox_name"] for r in orphans.json()] == [created["sandbox_name"]]


class TestTaskLoopRoutes:
    def test_start_and_stop(self, client, test_db, provider, project, owner_headers):
        manifest_id = _create(client, project, owner_headers).json()["id"]
        _start(client, test_db, manifest_id)

        started = client.post(f"/api/v1/manifests/{manifest_id}/task-loop/start", headers=owner_headers)
        assert started.status_code == 200
        assert started.json()["status"] == "running"

        stopped = client.post(f"/api/v1/manifests/{manifest_id}/task-loop/stop", headers=owner_headers)
        assert stopped.json()["status"] == "active"
        assert provider.exec_calls[-1][1] == ["pkill", "-f", "task-loop"]

    def test_start_while_pending(self, client, project, owner_headers):
        manifest_id = _create(client, project, owner_headers).json()["id"]
        response = client.post(f"/api/v1/manifests/{manifest_id}/task-loop/start", headers=owner_headers)
        assert response.status_code == 400
        assert response.json()["error"]["kind"] == "validation"
