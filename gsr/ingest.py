"""Observation ingest: turns platform notifications into store updates and triggers.

Two inputs feed the same handlers. The watch stream delivers Add, Update and
Delete notifications as they happen; a periodic resync lists every watched
kind and catches whatever the stream missed while it was disconnected.
Handlers are idempotent, so seeing the same object twice is harmless.
"""
from __future__ import annotations

import logging
import threading
from typing import Callable, Iterator

from . import db
from .cluster import Cluster, LiveObject, Notification, TransientClusterError, WatchEventType
from .db import DeploymentRow, EventSource, EventType, LifecycleState, ManagedResourceRow, StatusSummary
from .drift import (
    NO_DRIFT,
    DriftKind,
    DriftVerdict,
    PolicyResolver,
    adopt_into_spec,
    classify,
    find_resource,
    resolve_response,
)
from .kinds import PLANNED_KINDS, Kind, ResourceHealth, handler_for
from .runtime import RuntimeState
from .settings import settings
from .status import resource_key, snapshot_entry

logger = logging.getLogger(__name__)

Trigger = Callable[[str, str], None]


def _enqueue(deployment_id: str, reason: str) -> None:
    db.enqueue_job(deployment_id, reason=reason)


class ObservationIngest:
    def __init__(self, cluster: Cluster, runtime: RuntimeState | None = None, trigger: Trigger | None = None):
        self.cluster = cluster
        self.runtime = runtime or RuntimeState()
        self.trigger = trigger or _enqueue
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    # --- lifecycle ----------------------------------------------------------

    def start(self) -> None:
        if any(t.is_alive() for t in self._threads):
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._watch_loop, name="gsr-watch", daemon=True),
            threading.Thread(target=self._resync_loop, name="gsr-resync", daemon=True),
        ]
        for t in self._threads:
            t.start()

    def stop(self) -> None:
        self._stop.set()

    def _watch_loop(self) -> None:
        logger.info("Watch loop started")
        for item in self.notifications(self._stop):
            try:
                if item is None:
                    self.resync()
                else:
                    self.handle(item)
            except Exception:
                logger.exception("Failed to process notification")

    def _resync_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.resync()
            except Exception:
                logger.exception("Resync failed")
            self._stop.wait(settings.resync_interval_s)

    def notifications(self, stop: threading.Event) -> Iterator[Notification | None]:
        """Restartable stream of notifications.

        Yields None after every reconnect; callers resync on it since events
        may have been lost while the stream was down.
        """
        since: float | None = None
        while not stop.is_set():
            try:
                self.runtime.mark_watch(True)
                for n in self.cluster.watch(since=since):
                    yield n
                    if n.time is not None:
                        since = n.time
                    if stop.is_set():
                        return
            except TransientClusterError as e:
                logger.warning("Watch stream dropped", extra={"error": str(e)})
            self.runtime.mark_watch(False)
            if stop.wait(settings.watch_retry_s):
                return
            yield None

    # --- handlers -------------------------------------------------------------

    def handle(self, n: Notification) -> None:
        self.runtime.mark_watch(True, n.time)
        obj = n.object
        if obj.kind == Kind.TASK:
            self._handle_task(obj)
        elif n.event_type == WatchEventType.DELETE:
            self._handle_delete(obj)
        else:
            self._handle_present(obj)

    def resync(self) -> None:
        """Full list of every planned kind, reconciled against the mapping rows."""
        for kind in PLANNED_KINDS:
            # Rows first: anything created after this read shows up in the listing.
            rows = db.list_managed_resources(kind=kind.value)
            live = self.cluster.list(kind, managed_only=False)
            seen = {(o.namespace, o.name) for o in live}
            for obj in live:
                self._handle_present(obj)
            for row in rows:
                if (row.namespace, row.name) in seen:
                    continue
                if self.runtime.consume_expected_delete(row.uid):
                    db.delete_managed_resource(row.kind, row.namespace, row.name, uid=row.uid)
                    continue
                current = db.get_managed_resource(row.kind, row.namespace, row.name)
                if current is not None and current.uid == row.uid:
                    self._lost(current)
        self.runtime.mark_resync()

    def _handle_task(self, task: LiveObject) -> None:
        owner = task.ownership
        workload = task.spec.get("workload")
        if owner is None or not workload:
            return
        live = self.cluster.get(Kind.WORKLOAD, task.namespace, str(workload))
        if live is not None:
            self._handle_present(live)

    def _handle_delete(self, obj: LiveObject) -> None:
        if self.runtime.consume_expected_delete(obj.uid):
            db.delete_managed_resource(obj.kind.value, obj.namespace, obj.name, uid=obj.uid)
            return
        row = db.get_managed_resource(obj.kind.value, obj.namespace, obj.name)
        if row is None or row.uid != obj.uid:
            # Untracked, or a stale event for an object we already replaced.
            return
        self._lost(row)

    def _handle_present(self, obj: LiveObject) -> None:
        row = db.get_managed_resource(obj.kind.value, obj.namespace, obj.name)
        owner = obj.ownership

        if row is not None and row.uid != obj.uid:
            if self.runtime.consume_expected_delete(row.uid):
                db.delete_managed_resource(row.kind, row.namespace, row.name, uid=row.uid)
            else:
                # The object we tracked is gone and something else holds its name.
                self._lost(row, replacement=obj)
            row = None

        if owner is None:
            return
        dep = db.get_deployment(owner.deployment_id)
        if dep is None or dep.archived_at:
            logger.info(
                "Object carries markers of an unknown deployment",
                extra={"ref": str(obj.ref), "deployment_id": owner.deployment_id},
            )
            return

        first_sighting = row is None
        row, previous_uid = db.upsert_managed_resource(
            dep.id,
            obj.kind.value,
            obj.namespace,
            obj.name,
            obj.uid,
            resource_version=obj.resource_version,
            generation_marker=owner.generation,
        )
        if first_sighting and previous_uid is None:
            db.log_event(
                dep.id,
                EventSource.PLATFORM_WATCH,
                EventType.RESOURCE_OBSERVED,
                {"kind": obj.kind.value, "name": obj.name, "uid": obj.uid, "generation_marker": owner.generation},
            )

        health = handler_for(obj.kind).extract_status(obj)
        db.put_snapshot_resource(dep.id, resource_key(obj.kind, obj.name), snapshot_entry(obj, health))
        if dep.desired_lifecycle_state != LifecycleState.DELETED:
            self._check_drift(dep, row, obj)
        self._check_readiness(dep, row, obj, health)

    def _lost(self, row: ManagedResourceRow, replacement: LiveObject | None = None) -> None:
        if not db.delete_managed_resource(row.kind, row.namespace, row.name, uid=row.uid):
            # Another thread already handled this loss.
            return
        dep = db.get_deployment(row.deployment_id)
        if dep is None or dep.archived_at:
            return
        db.put_snapshot_resource(dep.id, resource_key(row.kind, row.name), None)
        desired = find_resource(dep.desired_spec, row.kind, row.name) is not None
        db.log_event(
            dep.id,
            EventSource.PLATFORM_WATCH,
            EventType.RESOURCE_DELETED_EXTERNALLY,
            {
                "kind": row.kind,
                "name": row.name,
                "uid": row.uid,
                "replacement_uid": replacement.uid if replacement else None,
                "desired": desired,
            },
        )
        if replacement is not None and replacement.ownership is None:
            db.log_event(
                dep.id,
                EventSource.PLATFORM_WATCH,
                EventType.UNMANAGED_OBJECT_DETECTED,
                {"kind": row.kind, "name": row.name, "uid": replacement.uid},
            )
        if dep.desired_lifecycle_state == LifecycleState.DELETED:
            self.trigger(dep.id, "deleted-externally")
        elif desired:
            db.set_status(dep.id, StatusSummary.PROGRESSING, f"{row.kind}/{row.name} deleted externally, recreating")
            self.trigger(dep.id, "deleted-externally")

    def _spec_for_drift(self, dep: DeploymentRow, marker_generation: int) -> dict:
        """Desired spec the object is supposed to reflect."""
        generation = max(marker_generation, dep.last_applied_generation)
        if generation <= 0:
            return dep.desired_spec
        spec = db.get_generation_spec(dep.id, generation)
        return spec if spec is not None else dep.desired_spec

    def _check_drift(self, dep: DeploymentRow, row: ManagedResourceRow, obj: LiveObject) -> None:
        spec = self._spec_for_drift(dep, row.generation_marker)
        desired = find_resource(spec, obj.kind, obj.name)
        resolver = PolicyResolver.for_deployment(dep)
        verdict = classify(
            desired,
            row,
            obj,
            deployment_id=dep.id,
            lifecycle=dep.desired_lifecycle_state,
            resolver=resolver,
        )
        if verdict.kind == DriftKind.MODIFIED_EXTERNALLY:
            verdict = self._outstanding(dep, obj, verdict)
        if verdict.kind != DriftKind.MODIFIED_EXTERNALLY:
            if row.last_drift:
                db.set_resource_drift(row.id, None)
            return
        self._on_modified(dep, row, obj, verdict, resolver)

    def _outstanding(self, dep: DeploymentRow, obj: LiveObject, verdict: DriftVerdict) -> DriftVerdict:
        """Narrow a verdict to fields the current desired spec does not already hold.

        After an adoption the desired spec moves ahead of the applied one, and
        the live value it came from is no longer drift.
        """
        current = find_resource(dep.desired_spec, obj.kind, obj.name)
        if current is None:
            return verdict
        differs = set(handler_for(obj.kind).diff(current, obj))
        fields = tuple(f for f in verdict.fields if f in differs)
        if fields == verdict.fields:
            return verdict
        if not fields:
            return NO_DRIFT
        return DriftVerdict(verdict.kind, fields=fields, observed={f: verdict.observed.get(f) for f in fields})

    def _on_modified(
        self,
        dep: DeploymentRow,
        row: ManagedResourceRow,
        obj: LiveObject,
        verdict: DriftVerdict,
        resolver: PolicyResolver,
    ) -> None:
        kind, name = obj.kind, obj.name
        template = db.get_template(dep.template_name, dep.template_version)
        rules = template.allowed_mutations if template else []

        def approval_state(field_name: str) -> str | None:
            a = db.find_approval(dep.id, kind.value, name, field_name, ("approved", "rejected"))
            if a is None or a.observed_value != verdict.observed.get(field_name):
                return None
            return a.state

        response = resolve_response(verdict, kind, name, resolver, rules, dep.auto_adopt, approval_state)
        new_fields = sorted(verdict.fields) != sorted(row.last_drift or [])
        if new_fields:
            db.set_resource_drift(row.id, list(verdict.fields))
            db.log_event(
                dep.id,
                EventSource.PLATFORM_WATCH,
                EventType.DRIFT_DETECTED,
                {
                    "kind": kind.value,
                    "name": name,
                    "uid": obj.uid,
                    "fields": list(verdict.fields),
                    "policy": resolver.policy_for(kind, name).value,
                    "enforce": response.enforce,
                    "adopt": response.adopt,
                    "pending": response.pending,
                },
            )

        if response.adopt:
            self._adopt(dep, obj, verdict, response.adopt)
        for f in response.pending:
            approval, created = db.create_approval(dep.id, kind.value, name, f, verdict.observed.get(f))
            if created:
                db.log_event(
                    dep.id,
                    EventSource.PLATFORM_WATCH,
                    EventType.ADOPTION_PENDING,
                    {"approval_id": approval.id, "kind": kind.value, "name": name, "field": f},
                )
        if response.enforce:
            db.set_status(dep.id, StatusSummary.PROGRESSING, "externally modified, reverting")
            self.trigger(dep.id, "drift")

    def _adopt(self, dep: DeploymentRow, obj: LiveObject, verdict: DriftVerdict, fields: list[str]) -> None:
        values = {f: verdict.observed.get(f) for f in fields}
        approvals = [
            a.id
            for f in fields
            if (a := db.find_approval(dep.id, obj.kind.value, obj.name, f, ("approved",))) is not None
        ]
        try:
            new_spec = adopt_into_spec(dep.desired_spec, obj.kind, obj.name, values)
            db.adopt_desired_spec(
                dep.id,
                new_spec,
                expected_generation=dep.generation,
                adopted=[{"kind": obj.kind.value, "name": obj.name, "field": f} for f in fields],
                approval_ids=approvals,
            )
        except KeyError:
            # No longer in the current desired spec; the next reconcile removes it.
            self.trigger(dep.id, "drift")
        except (db.ConflictError, db.LifecycleError) as e:
            # Desired state moved underneath us; the next observation re-evaluates.
            logger.info("Adoption skipped", extra={"deployment_id": dep.id, "ref": str(obj.ref), "error": str(e)})
            self.trigger(dep.id, "drift")

    def _check_readiness(self, dep: DeploymentRow, row: ManagedResourceRow, obj: LiveObject, health: ResourceHealth) -> None:
        if row.last_ready == health.ready:
            return
        db.set_resource_ready(row.id, health.ready)
        if row.last_ready is None:
            return
        db.log_event(
            dep.id,
            EventSource.PLATFORM_WATCH,
            EventType.READINESS_CHANGED,
            {"kind": obj.kind.value, "name": obj.name, "ready": health.ready, "message": health.message},
        )
        if dep.desired_lifecycle_state == LifecycleState.ACTIVE:
            self.trigger(dep.id, "readiness-changed")
