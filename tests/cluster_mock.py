"""In-memory Cluster used by the tests.

Behaves like a small swarm: objects keyed by (kind, namespace, name), fresh
UIDs on every create, a version counter bumped on every write. Tests can
inject failures per call and simulate other actors editing, deleting or
creating objects behind our back. Like swarm, it refuses to remove a
network, config or secret a workload still uses. Every change is also
recorded as a Notification so it can be fed to the ingest.
"""
from __future__ import annotations

import itertools
import threading
from typing import Any, Iterator

from gsr.cluster import (
    AlreadyExists,
    Cluster,
    ImmutableFieldError,
    InvalidObjectError,
    LiveObject,
    Notification,
    ObjectNotFound,
    TransientClusterError,
    WatchEventType,
)
from gsr.kinds import Kind, handler_for
from gsr.ownership import parse_markers, user_labels

Key = tuple[Kind, str, str]


class FakeCluster(Cluster):
    def __init__(self, workloads_ready: bool = True):
        self.objects: dict[Key, LiveObject] = {}
        self.calls: list[tuple[str, Kind, str]] = []
        self.notifications: list[Notification] = []
        self.watch_script: list[list[Notification] | Exception] = []
        self.workloads_ready = workloads_ready
        self._failures: dict[tuple[str, Kind, str], list[Exception]] = {}
        self._uids = itertools.count(1)
        self._versions = itertools.count(1)
        self._lock = threading.RLock()

    # --- failure injection --------------------------------------------------

    def fail_next(self, op: str, kind: Kind, name: str, exc: Exception, times: int = 1) -> None:
        self._failures.setdefault((op, kind, name), []).extend([exc] * times)

    def _maybe_fail(self, op: str, kind: Kind, name: str) -> None:
        queue = self._failures.get((op, kind, name))
        if queue:
            raise queue.pop(0)

    # --- helpers ------------------------------------------------------------

    def _store_spec(self, kind: Kind, spec: dict[str, Any]) -> dict[str, Any]:
        h = handler_for(kind)
        out = {f: spec[f] for f in h.fields if f in spec and f != "labels"}
        for f, v in h.defaults.items():
            out.setdefault(f, v)
        if kind == Kind.SECRET:
            out = {"data_sha256": h.normalize("data", spec.get("data", ""))}
        return out

    def _status(self, kind: Kind, spec: dict[str, Any]) -> dict[str, Any]:
        if kind != Kind.WORKLOAD:
            return {}
        replicas = int(spec.get("replicas") or 0)
        return {
            "desired_replicas": replicas,
            "running_replicas": replicas if self.workloads_ready else 0,
            "failed_tasks": 0,
            "update_state": None,
        }

    def _emit(self, event_type: WatchEventType, obj: LiveObject) -> Notification:
        n = Notification(event_type, obj, float(next(self._versions)))
        self.notifications.append(n)
        return n

    def _put(self, obj: LiveObject) -> LiveObject:
        self.objects[(obj.kind, obj.namespace, obj.name)] = obj
        return obj

    def drain(self) -> list[Notification]:
        out, self.notifications = self.notifications, []
        return out

    # --- Cluster --------------------------------------------------------------

    def get(self, kind: Kind, namespace: str, name: str) -> LiveObject | None:
        with self._lock:
            self.calls.append(("get", kind, name))
            self._maybe_fail("get", kind, name)
            return self.objects.get((kind, namespace, name))

    def list(
        self,
        kind: Kind,
        namespace: str | None = None,
        deployment_id: str | None = None,
        managed_only: bool = True,
    ) -> list[LiveObject]:
        with self._lock:
            self.calls.append(("list", kind, namespace or ""))
            self._maybe_fail("list", kind, "")
            out = []
            for (k, ns, _name), obj in sorted(self.objects.items(), key=lambda kv: (kv[0][0].value, kv[0][1], kv[0][2])):
                if k != kind or (namespace is not None and ns != namespace):
                    continue
                owner = parse_markers(obj.labels)
                if (managed_only or deployment_id) and owner is None:
                    continue
                if deployment_id and owner.deployment_id != deployment_id:
                    continue
                out.append(obj)
            return out

    def create(self, kind: Kind, namespace: str, name: str, spec: dict[str, Any], labels: dict[str, str]) -> LiveObject:
        with self._lock:
            self.calls.append(("create", kind, name))
            self._maybe_fail("create", kind, name)
            if (kind, namespace, name) in self.objects:
                raise AlreadyExists(f"{kind.value}/{namespace}/{name} exists")
            stored = self._store_spec(kind, spec)
            obj = LiveObject(
                kind=kind,
                namespace=namespace,
                name=name,
                uid=f"uid-{next(self._uids)}",
                resource_version=next(self._versions),
                labels=dict(labels),
                spec=stored,
                status=self._status(kind, stored),
            )
            self._put(obj)
            self._emit(WatchEventType.ADD, obj)
            return obj

    def update(
        self,
        kind: Kind,
        namespace: str,
        name: str,
        patch: dict[str, Any],
        labels: dict[str, str],
        uid: str | None = None,
    ) -> LiveObject:
        with self._lock:
            self.calls.append(("update", kind, name))
            self._maybe_fail("update", kind, name)
            current = self.objects.get((kind, namespace, name))
            if current is None or (uid and current.uid != uid):
                raise ObjectNotFound(f"{kind.value}/{namespace}/{name} not found")
            if kind != Kind.WORKLOAD and patch:
                raise ImmutableFieldError(f"{kind.value} cannot be changed in place", sorted(patch))
            new_labels = dict(current.labels)
            if "labels" in patch:
                for k in user_labels(current.labels):
                    new_labels.pop(k, None)
            new_labels.update(labels)
            spec = dict(current.spec)
            spec.update({k: v for k, v in patch.items() if k != "labels"})
            obj = LiveObject(
                kind=kind,
                namespace=namespace,
                name=name,
                uid=current.uid,
                resource_version=next(self._versions),
                labels=new_labels,
                spec=spec,
                status=self._status(kind, spec),
            )
            self._put(obj)
            self._emit(WatchEventType.UPDATE, obj)
            return obj

    def delete(self, kind: Kind, namespace: str, name: str, uid: str | None = None) -> None:
        with self._lock:
            self.calls.append(("delete", kind, name))
            self._maybe_fail("delete", kind, name)
            current = self.objects.get((kind, namespace, name))
            if current is None or (uid and current.uid != uid):
                raise ObjectNotFound(f"{kind.value}/{namespace}/{name} not found")
            users = sorted(
                o.name
                for o in self.objects.values()
                if o.kind == Kind.WORKLOAD
                and o.namespace == namespace
                and (kind, name) in handler_for(Kind.WORKLOAD).references(o.spec)
            )
            if users:
                # Swarm answers 400 for removing a network, config or secret in use.
                raise InvalidObjectError(f"{kind.value}/{namespace}/{name} is in use by {users}")
            del self.objects[(kind, namespace, name)]
            self._emit(WatchEventType.DELETE, current)

    def watch(self, since: float | None = None) -> Iterator[Notification]:
        if not self.watch_script:
            return
        step = self.watch_script.pop(0)
        if isinstance(step, Exception):
            raise step
        yield from step

    # --- other actors -----------------------------------------------------------

    def external_edit(self, kind: Kind, namespace: str, name: str, labels: dict[str, str] | None = None, **fields: Any) -> Notification:
        with self._lock:
            current = self.objects[(kind, namespace, name)]
            spec = dict(current.spec)
            spec.update(fields)
            obj = LiveObject(
                kind=kind,
                namespace=namespace,
                name=name,
                uid=current.uid,
                resource_version=next(self._versions),
                labels=dict(labels) if labels is not None else dict(current.labels),
                spec=spec,
                status=self._status(kind, spec),
            )
            self._put(obj)
            return self._emit(WatchEventType.UPDATE, obj)

    def external_delete(self, kind: Kind, namespace: str, name: str) -> Notification:
        with self._lock:
            current = self.objects.pop((kind, namespace, name))
            return self._emit(WatchEventType.DELETE, current)

    def external_create(
        self, kind: Kind, namespace: str, name: str, spec: dict[str, Any] | None = None, labels: dict[str, str] | None = None
    ) -> Notification:
        with self._lock:
            stored = self._store_spec(kind, spec or {})
            obj = LiveObject(
                kind=kind,
                namespace=namespace,
                name=name,
                uid=f"foreign-{next(self._uids)}",
                resource_version=next(self._versions),
                labels=dict(labels or {}),
                spec=stored,
                status=self._status(kind, stored),
            )
            self._put(obj)
            return self._emit(WatchEventType.ADD, obj)

    def set_status(self, kind: Kind, namespace: str, name: str, **status: Any) -> Notification:
        with self._lock:
            current = self.objects[(kind, namespace, name)]
            obj = LiveObject(
                kind=kind,
                namespace=namespace,
                name=name,
                uid=current.uid,
                resource_version=next(self._versions),
                labels=dict(current.labels),
                spec=dict(current.spec),
                status={**current.status, **status},
            )
            self._put(obj)
            return self._emit(WatchEventType.UPDATE, obj)

    def unavailable(self, times: int = 1) -> None:
        """Make the next ``times`` list calls for every planned kind time out."""
        for kind in (Kind.NETWORK, Kind.CONFIG, Kind.SECRET, Kind.WORKLOAD):
            self._failures.setdefault(("list", kind, ""), []).extend([TransientClusterError("timeout")] * times)
