import dataclasses
import os
import sys

import pytest

# Ensure project root is importable (so `import gsr` / `import main` work without installing)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)
# ...and the tests dir, for the in-memory cluster
_tests_dir = os.path.dirname(__file__)
if _tests_dir not in sys.path:
    sys.path.insert(0, _tests_dir)

from gsr import alerts, db, ingest, reconciler, scheduler, service  # noqa: E402
from gsr.settings import settings as _base_settings  # noqa: E402

from cluster_mock import FakeCluster  # noqa: E402

_SETTINGS_USERS = (alerts, db, ingest, reconciler, scheduler, service)


@pytest.fixture
def configure(monkeypatch):
    """Swap the settings every module reads for a copy with the given overrides."""
    current = {"value": None}

    def _apply(**overrides):
        base = current["value"] or _base_settings
        new = dataclasses.replace(base, **overrides)
        for mod in _SETTINGS_USERS:
            monkeypatch.setattr(mod, "settings", new)
        current["value"] = new
        return new

    return _apply


@pytest.fixture
def store(tmp_path, configure):
    """Fresh sqlite store per test, no email, no probes, no retry limit."""
    configure(
        db_path=str(tmp_path / "gsr.db"),
        enable_email=False,
        probe_host=None,
        max_attempts=0,
        max_plan_restarts=3,
        worker_id="test-worker",
        watch_retry_s=0.0,
    )
    db.init_db()
    return db


@pytest.fixture
def cluster():
    return FakeCluster()


def game_spec(replicas=2, image="registry.local/arena:1.0", env=None, with_secret=True):
    """A typical game server stack: network, config, optional secret, workload."""
    resources = [
        {"kind": "Network", "name": "backend"},
        {"kind": "Config", "name": "server-cfg", "data": "tickrate=64\nmaxplayers=16\n"},
    ]
    workload = {
        "kind": "Workload",
        "name": "arena",
        "image": image,
        "replicas": replicas,
        "env": env or {"MODE": "ranked"},
        "ports": [{"published": 27015, "target": 27015, "protocol": "udp"}],
        "networks": ["backend"],
        "configs": ["server-cfg"],
    }
    if with_secret:
        resources.append({"kind": "Secret", "name": "rcon", "data": "hunter2"})
        workload["secrets"] = ["rcon"]
    resources.append(workload)
    return {"resources": resources}


@pytest.fixture
def spec_factory():
    return game_spec


def event_types(deployment_id):
    return [e.type for e in db.list_events(deployment_id, limit=1000)]
