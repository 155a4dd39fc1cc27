import base64
import dataclasses

import pytest
from fastapi.testclient import TestClient

import main
from gsr import db, docker_ops

from conftest import game_spec


def _basic_auth(user: str, password: str) -> dict:
    token = base64.b64encode(f"{user}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


@pytest.fixture
def api(store, configure, monkeypatch):
    """TestClient against an isolated store, with the controller threads disabled."""

    def _client(**overrides):
        new = configure(start_controller=False, log_json=False, **overrides)
        monkeypatch.setattr(main, "settings", new)
        return TestClient(main.app)

    return _client


def _create(client, deployment_id="dep-1", **extra):
    body = {
        "id": deployment_id,
        "template_name": "arena",
        "namespace": "eu1",
        "desired_spec": game_spec(),
        **extra,
    }
    return client.post("/deployments", json=body)


def test_api_requires_basic_auth_when_configured(api):
    with api(api_user="ops", api_password="s3cret") as client:
        assert client.get("/deployments").status_code == 401
        assert client.get("/deployments", headers=_basic_auth("ops", "wrong")).status_code == 401
        r = client.get("/deployments", headers=_basic_auth("ops", "s3cret"))
        assert r.status_code == 200
        assert r.json() == []
        # Liveness stays open.
        assert client.get("/healthz").json() == {"status": "ok"}


def test_create_and_get_deployment(api):
    with api() as client:
        r = _create(client)
        assert r.status_code == 201
        body = r.json()
        assert body["generation"] == 1
        assert body["last_applied_generation"] == 0
        assert body["status_summary"] == "Progressing"
        assert body["schedule_state"] == "Queued"
        assert body["drift_policy"] == "enforce"

        r = client.get("/deployments/dep-1")
        assert r.status_code == 200
        status = r.json()
        assert status["job"]["state"] == "queued"
        assert status["resources"] == []
        assert status["pending_approvals"] == []
        assert [d["id"] for d in client.get("/deployments").json()] == ["dep-1"]


def test_invalid_specs_are_rejected_before_the_store(api):
    with api() as client:
        dup = {"resources": [{"kind": "Config", "name": "a", "data": "1"}, {"kind": "Config", "name": "a", "data": "2"}]}
        assert _create(client, desired_spec=dup).status_code == 422
        no_image = {"resources": [{"kind": "Workload", "name": "arena"}]}
        assert _create(client, desired_spec=no_image).status_code == 422
        task = {"resources": [{"kind": "Task", "name": "t"}]}
        assert _create(client, desired_spec=task).status_code == 422
        assert _create(client, namespace="EU_1").status_code == 422
        assert client.get("/deployments").json() == []


def test_duplicate_id_conflicts(api):
    with api() as client:
        assert _create(client).status_code == 201
        assert _create(client).status_code == 409


def test_update_spec_with_optimistic_concurrency(api):
    with api() as client:
        _create(client)
        spec = game_spec(replicas=4)
        r = client.put("/deployments/dep-1/spec", json={"desired_spec": spec, "expected_generation": 1})
        assert r.status_code == 200
        assert r.json()["generation"] == 2

        r = client.put("/deployments/dep-1/spec", json={"desired_spec": spec, "expected_generation": 1})
        assert r.status_code == 409
        assert db.get_deployment("dep-1").generation == 2


def test_unknown_deployment_is_404(api):
    with api() as client:
        assert client.get("/deployments/nope").status_code == 404
        assert client.put("/deployments/nope/spec", json={"desired_spec": {"resources": []}}).status_code == 404
        assert client.post("/deployments/nope/reconcile").status_code == 404
        assert client.get("/deployments/nope/events").status_code == 404


def test_pause_resume_and_delete(api):
    with api() as client:
        _create(client)
        r = client.post("/deployments/dep-1/pause")
        assert r.json()["desired_lifecycle_state"] == "Paused"
        r = client.post("/deployments/dep-1/resume", json={"expected_generation": 2})
        assert r.json()["desired_lifecycle_state"] == "Active"
        assert r.json()["generation"] == 3

        r = client.delete("/deployments/dep-1")
        assert r.status_code == 202
        assert r.json()["desired_lifecycle_state"] == "Deleted"
        # Deleted is terminal.
        assert client.post("/deployments/dep-1/resume").status_code == 409


def test_manual_reconcile_and_event_feed(api):
    with api() as client:
        _create(client)
        assert client.post("/deployments/dep-1/reconcile").status_code == 202

        page = client.get("/deployments/dep-1/events", params={"limit": 1}).json()
        assert [e["type"] for e in page["events"]] == ["DeploymentCreated"]
        rest = client.get("/deployments/dep-1/events", params={"after": page["next_after"]}).json()
        assert [e["type"] for e in rest["events"]] == ["ReconcileTriggered"]
        assert rest["events"][0]["source"] == "user"


def test_snapshot_before_first_reconcile_is_empty(api):
    with api() as client:
        _create(client)
        assert client.get("/deployments/dep-1/snapshot").json() == {
            "deployment_id": "dep-1",
            "observed_generation": 0,
            "snapshot": {},
        }


def test_templates_and_approval_decisions(api):
    with api() as client:
        r = client.post("/templates", json={"name": "arena", "allowed_mutations": ["Workload.*.replicas"]})
        assert r.status_code == 201
        assert r.json()["allowed_mutations"] == ["Workload.*.replicas"]

        _create(client, drift_policy="adopt")
        approval, _ = db.create_approval("dep-1", "Workload", "arena", "replicas", 5)

        (listed,) = client.get("/approvals", params={"state": "pending"}).json()
        assert listed["id"] == approval.id and listed["observed_value"] == 5

        r = client.post(f"/approvals/{approval.id}/approve")
        assert r.status_code == 200 and r.json()["state"] == "approved"
        assert client.post(f"/approvals/{approval.id}/reject").status_code == 409
        assert client.post("/approvals/9999/approve").status_code == 404


def test_store_outage_fails_closed(api, monkeypatch):
    with api() as client:
        def broken(*a, **kw):
            raise db.StoreUnavailable("disk I/O error")

        monkeypatch.setattr(db, "create_deployment", broken)
        r = _create(client)
        assert r.status_code == 503
        assert r.json() == {"detail": "state store unavailable"}


def test_lifespan_starts_and_stops_the_controller(api, monkeypatch):
    calls = []

    class RecordingController:
        def __init__(self, cluster):
            calls.append(("init", cluster))

        def start(self):
            calls.append("start")

        def stop(self):
            calls.append("stop")

    client = api()
    monkeypatch.setattr(main, "settings", dataclasses.replace(main.settings, start_controller=True))
    monkeypatch.setattr(docker_ops, "DockerCluster", lambda: "swarm")
    monkeypatch.setattr(main, "Controller", RecordingController)

    with client:
        assert calls == [("init", "swarm"), "start"]
        assert main.controller is not None
    assert calls[-1] == "stop"
    assert main.controller is None
