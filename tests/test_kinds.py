import pytest

from gsr.cluster import LiveObject
from gsr.kinds import Kind, ResourceHealth, handler_for, normalize_image, normalize_value
from gsr.ownership import markers_for, parse_markers, user_labels


def _workload(spec=None, status=None, labels=None):
    return LiveObject(
        kind=Kind.WORKLOAD,
        namespace="ns",
        name="arena",
        uid="u1",
        labels=labels or {},
        spec=spec or {},
        status=status or {},
    )


def test_normalize_value_treats_empty_values_alike():
    assert normalize_value(None) is None
    assert normalize_value("") is None
    assert normalize_value([]) is None
    assert normalize_value({}) is None
    assert normalize_value({"b": 1, "a": "", "c": None}) == {"b": 1}


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("nginx", "nginx:latest"),
        ("nginx:1.25", "nginx:1.25"),
        ("registry.local:5000/arena", "registry.local:5000/arena:latest"),
        ("arena:1.0@sha256:abc", "arena:1.0"),
    ],
)
def test_normalize_image(raw, expected):
    assert normalize_image(raw) == expected


def test_workload_diff_ignores_platform_defaulting():
    h = handler_for(Kind.WORKLOAD)
    desired = {
        "image": "arena:1.0",
        "replicas": 2,
        "env": {"MODE": "ranked"},
        "ports": [27015],
        "networks": ["b", "a"],
    }
    live = _workload(
        spec={
            "image": "arena:1.0@sha256:deadbeef",
            "replicas": 2,
            "env": ["MODE=ranked"],
            "ports": [{"published": "27015", "target": 27015, "protocol": "TCP"}],
            "networks": ["a", "b"],
            "command": [],
        }
    )
    assert h.diff(desired, live) == []


def test_workload_diff_reports_changed_fields_only():
    h = handler_for(Kind.WORKLOAD)
    live = _workload(spec={"image": "arena:1.0", "replicas": 5, "env": {"MODE": "casual"}})
    assert h.diff({"image": "arena:1.0", "replicas": 2, "env": {"MODE": "ranked"}}, live) == ["env", "replicas"]


def test_replicas_default_applies_when_omitted():
    h = handler_for(Kind.WORKLOAD)
    assert h.diff({"image": "arena:1.0"}, _workload(spec={"image": "arena:1.0", "replicas": 3})) == ["replicas"]


def test_labels_compare_without_markers():
    h = handler_for(Kind.WORKLOAD)
    labels = {"team": "red", **markers_for("dep-1", 4), "com.docker.stack.namespace": "ns"}
    live = _workload(spec={"image": "arena:1.0", "replicas": 1}, labels=labels)
    assert h.diff({"image": "arena:1.0", "labels": {"team": "red"}}, live) == []
    assert h.diff({"image": "arena:1.0", "labels": {"team": "blue"}}, live) == ["labels"]


def test_config_data_compared_by_digest():
    h = handler_for(Kind.CONFIG)
    live = LiveObject(Kind.CONFIG, "ns", "cfg", "u2", spec={"data": "a=1"})
    assert h.diff({"data": "a=1"}, live) == []
    assert h.diff({"data": "a=2"}, live) == ["data"]


def test_secret_compared_by_stored_digest():
    h = handler_for(Kind.SECRET)
    digest = h.normalize("data", "hunter2")
    live = LiveObject(Kind.SECRET, "ns", "rcon", "u3", spec={"data_sha256": digest})
    assert h.diff({"data": "hunter2"}, live) == []
    assert h.diff({"data": "hunter3"}, live) == ["data"]


def test_network_defaults_and_immutability():
    h = handler_for(Kind.NETWORK)
    live = LiveObject(Kind.NETWORK, "ns", "backend", "u4", spec={"driver": "overlay", "attachable": True, "internal": False})
    assert h.diff({}, live) == []
    assert "driver" in h.immutable_fields
    assert handler_for(Kind.CONFIG).immutable_fields == frozenset({"data", "labels"})
    assert not handler_for(Kind.WORKLOAD).immutable_fields


def test_workload_references():
    refs = handler_for(Kind.WORKLOAD).references(
        {"networks": ["backend"], "configs": ["cfg", {"name": "motd", "target": "/etc/motd"}], "secrets": ["rcon"]}
    )
    assert refs == [
        (Kind.NETWORK, "backend"),
        (Kind.CONFIG, "cfg"),
        (Kind.CONFIG, "motd"),
        (Kind.SECRET, "rcon"),
    ]


@pytest.mark.parametrize(
    "status,expected",
    [
        ({"desired_replicas": 2, "running_replicas": 2}, ResourceHealth(ready=True, message="2/2 running")),
        ({"desired_replicas": 2, "running_replicas": 1}, ResourceHealth(ready=False, progressing=True, message="1/2 running")),
        (
            {"desired_replicas": 2, "running_replicas": 1, "failed_tasks": 3},
            ResourceHealth(ready=False, degraded=True, message="1/2 running, 3 failed tasks"),
        ),
        (
            {"desired_replicas": 2, "running_replicas": 2, "update_state": "rollback_completed"},
            ResourceHealth(ready=False, degraded=True, message="update rollback_completed"),
        ),
    ],
)
def test_workload_status(status, expected):
    assert handler_for(Kind.WORKLOAD).extract_status(_workload(status=status)) == expected


def test_task_status():
    h = handler_for(Kind.TASK)
    running = LiveObject(Kind.TASK, "ns", "t1", "t1", status={"state": "running"})
    failed = LiveObject(Kind.TASK, "ns", "t2", "t2", status={"state": "failed", "message": "exit 1"})
    assert h.extract_status(running).ready
    assert h.extract_status(failed).degraded
    assert not h.planned


def test_parse_markers_rejects_partial_markers():
    assert parse_markers({"gsr.managed-by": "gsr"}) is None
    assert parse_markers({"gsr.deployment-id": "d"}) is None
    owner = parse_markers(markers_for("d", 7))
    assert owner.deployment_id == "d" and owner.generation == 7
    assert parse_markers({**markers_for("d", 1), "gsr.generation": "x"}).generation == 0


def test_user_labels_strips_reserved_keys():
    labels = {"team": "red", **markers_for("d", 1), "com.docker.stack.namespace": "ns", "gsr.data-sha256": "x"}
    assert user_labels(labels) == {"team": "red"}
