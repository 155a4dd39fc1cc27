from gsr import db
from gsr.applier import Applier, FailureClass, OwnershipConflict, classify_failure
from gsr.cluster import ImmutableFieldError, InvalidObjectError, TransientClusterError, VersionConflict
from gsr.kinds import Kind
from gsr.ownership import DEPLOYMENT_LABEL, GENERATION_LABEL, NAMESPACE_LABEL, markers_for
from gsr.planner import Action, ActionType, Plan, plan
from gsr.runtime import RuntimeState

from conftest import event_types, game_spec


def _deployment(store, spec=None):
    return store.create_deployment("arena", "v1", "eu1", spec or game_spec(), deployment_id="dep-1")


def _full_plan(dep):
    return plan(dep.desired_spec, [], {}, deployment_id=dep.id, namespace=dep.namespace, generation=dep.generation)


def test_apply_creates_objects_with_markers_and_rows(store, cluster):
    dep = _deployment(store)
    result = Applier(cluster).apply(dep, _full_plan(dep))
    assert result.ok
    assert len(result.applied) == 4

    arena = cluster.objects[(Kind.WORKLOAD, "eu1", "arena")]
    assert arena.labels[DEPLOYMENT_LABEL] == "dep-1"
    assert arena.labels[GENERATION_LABEL] == "1"
    assert arena.labels[NAMESPACE_LABEL] == "eu1"

    rows = store.list_managed_resources(deployment_id="dep-1")
    assert sorted((r.kind, r.name) for r in rows) == [
        ("Config", "server-cfg"),
        ("Network", "backend"),
        ("Secret", "rcon"),
        ("Workload", "arena"),
    ]
    assert event_types("dep-1").count("ResourceCreated") == 4


def test_apply_stops_at_first_failure(store, cluster):
    dep = _deployment(store)
    cluster.fail_next("create", Kind.SECRET, "rcon", TransientClusterError("deadline exceeded"))
    result = Applier(cluster).apply(dep, _full_plan(dep))
    assert not result.ok
    assert result.failed_action.name == "rcon"
    assert result.failure == FailureClass.TRANSIENT
    assert [a.name for a in result.applied] == ["backend", "server-cfg"]
    assert (Kind.WORKLOAD, "eu1", "arena") not in cluster.objects


def test_retry_after_partial_apply_does_not_duplicate(store, cluster):
    dep = _deployment(store)
    p = _full_plan(dep)
    cluster.fail_next("create", Kind.WORKLOAD, "arena", TransientClusterError("timeout"))
    assert not Applier(cluster).apply(dep, p).ok

    # Re-running the same plan: existing objects are ours, so Create converges instead of failing.
    result = Applier(cluster).apply(dep, p)
    assert result.ok
    assert len(cluster.objects) == 4
    uids = {o.uid for o in cluster.objects.values()}
    assert len(uids) == 4


def test_create_over_foreign_object_is_a_conflict(store, cluster):
    dep = _deployment(store)
    cluster.external_create(Kind.CONFIG, "eu1", "server-cfg", {"data": "someone else"})
    result = Applier(cluster).apply(dep, _full_plan(dep))
    assert result.failure == FailureClass.CONFLICT
    assert result.failed_action.name == "server-cfg"
    # The foreign object is untouched.
    assert cluster.objects[(Kind.CONFIG, "eu1", "server-cfg")].spec == {"data": "someone else"}
    assert "ResourceConflict" in event_types("dep-1")


def test_create_over_other_deployments_object_is_a_conflict(store, cluster):
    dep = _deployment(store)
    cluster.external_create(Kind.NETWORK, "eu1", "backend", {}, labels=markers_for("dep-2", 1))
    result = Applier(cluster).apply(dep, _full_plan(dep))
    assert result.failure == FailureClass.CONFLICT
    assert "dep-2" in result.error


def test_update_of_immutable_kind_is_fatal(store, cluster):
    dep = _deployment(store, {"resources": [{"kind": "Config", "name": "cfg", "data": "v1"}]})
    Applier(cluster).apply(dep, _full_plan(dep))
    live = cluster.objects[(Kind.CONFIG, "eu1", "cfg")]
    p = Plan("dep-1", 2, (Action(ActionType.UPDATE, Kind.CONFIG, "eu1", "cfg", spec={"data": "v2"}, uid=live.uid),))
    result = Applier(cluster).apply(dep, p)
    assert result.failure == FailureClass.FATAL


def test_update_is_guarded_by_uid(store, cluster):
    dep = _deployment(store, {"resources": [{"kind": "Workload", "name": "arena", "image": "a:1"}]})
    Applier(cluster).apply(dep, _full_plan(dep))
    p = Plan("dep-1", 2, (Action(ActionType.UPDATE, Kind.WORKLOAD, "eu1", "arena", spec={"replicas": 3}, uid="stale"),))
    result = Applier(cluster).apply(dep, p)
    assert not result.ok
    assert result.failure == FailureClass.TRANSIENT
    assert cluster.objects[(Kind.WORKLOAD, "eu1", "arena")].spec["replicas"] == 1


def test_update_rewrites_generation_marker(store, cluster):
    dep = _deployment(store, {"resources": [{"kind": "Workload", "name": "arena", "image": "a:1"}]})
    Applier(cluster).apply(dep, _full_plan(dep))
    live = cluster.objects[(Kind.WORKLOAD, "eu1", "arena")]
    p = Plan("dep-1", 2, (Action(ActionType.UPDATE, Kind.WORKLOAD, "eu1", "arena", spec={"replicas": 3}, uid=live.uid),))
    assert Applier(cluster).apply(dep, p).ok
    updated = cluster.objects[(Kind.WORKLOAD, "eu1", "arena")]
    assert updated.uid == live.uid
    assert updated.labels[GENERATION_LABEL] == "2"
    assert store.get_managed_resource("Workload", "eu1", "arena").generation_marker == 2


def test_delete_treats_missing_object_as_done(store, cluster):
    dep = _deployment(store, {"resources": []})
    store.upsert_managed_resource("dep-1", "Config", "eu1", "old", "c-old")
    runtime = RuntimeState()
    p = Plan("dep-1", 1, (Action(ActionType.DELETE, Kind.CONFIG, "eu1", "old", uid="c-old"),))
    assert Applier(cluster, runtime).apply(dep, p).ok
    assert store.get_managed_resource("Config", "eu1", "old") is None
    assert "ResourceDeleted" in event_types("dep-1")


def test_delete_marks_expected_deletion(store, cluster):
    dep = _deployment(store, {"resources": [{"kind": "Network", "name": "backend"}]})
    runtime = RuntimeState()
    applier = Applier(cluster, runtime)
    applier.apply(dep, _full_plan(dep))
    uid = cluster.objects[(Kind.NETWORK, "eu1", "backend")].uid
    p = Plan("dep-1", 2, (Action(ActionType.DELETE, Kind.NETWORK, "eu1", "backend", uid=uid),))
    assert applier.apply(dep, p).ok
    assert runtime.consume_expected_delete(uid)


def test_failed_delete_forgets_expectation(store, cluster):
    dep = _deployment(store, {"resources": [{"kind": "Network", "name": "backend"}]})
    runtime = RuntimeState()
    applier = Applier(cluster, runtime)
    applier.apply(dep, _full_plan(dep))
    uid = cluster.objects[(Kind.NETWORK, "eu1", "backend")].uid
    cluster.fail_next("delete", Kind.NETWORK, "backend", TransientClusterError("boom"))
    p = Plan("dep-1", 2, (Action(ActionType.DELETE, Kind.NETWORK, "eu1", "backend", uid=uid),))
    assert not applier.apply(dep, p).ok
    assert not runtime.consume_expected_delete(uid)
    assert store.get_managed_resource("Network", "eu1", "backend") is not None


def test_heartbeat_called_per_action(store, cluster):
    dep = _deployment(store)
    beats = []
    Applier(cluster).apply(dep, _full_plan(dep), heartbeat=lambda: beats.append(1))
    assert len(beats) == 4


def test_store_failure_during_apply_is_transient(store, cluster, monkeypatch):
    dep = _deployment(store, {"resources": [{"kind": "Network", "name": "backend"}]})

    def broken(*a, **kw):
        raise db.StoreUnavailable("database is locked")

    monkeypatch.setattr(db, "upsert_managed_resource", broken)
    result = Applier(cluster).apply(dep, _full_plan(dep))
    assert result.failure == FailureClass.TRANSIENT


def test_classify_failure():
    assert classify_failure(None, OwnershipConflict("x")) == FailureClass.CONFLICT
    assert classify_failure(None, ImmutableFieldError("x")) == FailureClass.FATAL
    assert classify_failure(None, InvalidObjectError("x")) == FailureClass.FATAL
    assert classify_failure(None, VersionConflict("x")) == FailureClass.TRANSIENT
    assert classify_failure(None, db.StoreUnavailable("x")) == FailureClass.TRANSIENT
