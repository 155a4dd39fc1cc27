"""One reconcile pass for one deployment.

observe -> plan -> apply -> summarize. Desired state is re-read right before
planning, and if it moved while a plan was being applied the pass plans again
against the new generation (up to ``max_plan_restarts`` times). The pass never
raises; every outcome is reported through ``ReconcileOutcome`` and the event
log so the scheduler can decide about retries.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from . import db, planner
from .alerts import status_alert
from .applier import Applier, ApplyResult, FailureClass, LeaseLost
from .cluster import Cluster, ClusterError, LiveObject
from .db import DeploymentRow, EventSource, EventType, LifecycleState, StatusSummary
from .drift import PolicyResolver, adopt_into_spec
from .health import ProbeResult, check_health, probe_url
from .kinds import PLANNED_KINDS, Kind, ResourceHealth, handler_for
from .planner import Action, Plan, PlanningError, ResourceKey
from .runtime import RuntimeState
from .settings import settings
from .status import build_snapshot, resource_key, summarize

logger = logging.getLogger(__name__)


@dataclass
class ReconcileOutcome:
    deployment_id: str
    result: str  # succeeded | failed | skipped | aborted
    generation: int = 0
    status: StatusSummary | None = None
    failure: FailureClass | None = None
    error: str | None = None
    plan: Plan | None = None

    @property
    def ok(self) -> bool:
        return self.result != "failed"

    @property
    def needs_recheck(self) -> bool:
        return self.result == "succeeded" and self.status == StatusSummary.PROGRESSING


class Reconciler:
    def __init__(
        self,
        cluster: Cluster,
        runtime: RuntimeState | None = None,
        probe: Callable[[str, float], ProbeResult] = check_health,
    ):
        self.cluster = cluster
        self.runtime = runtime or RuntimeState()
        self.applier = Applier(cluster, self.runtime)
        self.probe = probe

    def reconcile(self, deployment_id: str, heartbeat: Callable[[], None] | None = None) -> ReconcileOutcome:
        try:
            return self._reconcile(deployment_id, heartbeat)
        except LeaseLost as e:
            # The new holder runs its own reconcile; leave the job and status to it.
            logger.warning("Reconcile abandoned, lease lost", extra={"deployment_id": deployment_id, "error": str(e)})
            return ReconcileOutcome(deployment_id, "aborted", error=str(e))
        except Exception as e:
            # Store outages and bugs alike end up here; the scheduler retries.
            logger.exception("Reconcile crashed", extra={"deployment_id": deployment_id})
            error = f"{type(e).__name__}: {e}"
            try:
                db.log_event(
                    deployment_id,
                    EventSource.RECONCILER,
                    EventType.RECONCILE_FAILED,
                    {"failure": FailureClass.TRANSIENT.value, "error": error},
                )
            except db.StoreError:
                pass
            return ReconcileOutcome(deployment_id, "failed", failure=FailureClass.TRANSIENT, error=error)

    def _reconcile(self, deployment_id: str, heartbeat: Callable[[], None] | None) -> ReconcileOutcome:
        dep = db.get_deployment(deployment_id)
        if dep is None or dep.archived_at:
            return ReconcileOutcome(deployment_id, "skipped", error="not found")
        if dep.desired_lifecycle_state == LifecycleState.PAUSED:
            db.log_event(
                dep.id, EventSource.RECONCILER, EventType.RECONCILE_SKIPPED, {"reason": "paused", "generation": dep.generation}
            )
            return ReconcileOutcome(dep.id, "skipped", generation=dep.generation, status=dep.status_summary)

        db.log_event(dep.id, EventSource.RECONCILER, EventType.RECONCILE_STARTED, {"generation": dep.generation})
        initial_status = dep.status_summary
        restarts = 0
        while True:
            dep = db.get_deployment(deployment_id)
            if dep is None or dep.archived_at:
                return ReconcileOutcome(deployment_id, "skipped", error="not found")
            if dep.desired_lifecycle_state == LifecycleState.PAUSED:
                db.log_event(
                    dep.id,
                    EventSource.RECONCILER,
                    EventType.RECONCILE_SKIPPED,
                    {"reason": "paused", "generation": dep.generation},
                )
                return ReconcileOutcome(dep.id, "skipped", generation=dep.generation, status=dep.status_summary)

            try:
                desired = (
                    {}
                    if dep.desired_lifecycle_state == LifecycleState.DELETED
                    else planner.desired_resources(dep.desired_spec)
                )
            except PlanningError as e:
                return self._fail(dep, initial_status, None, FailureClass.FATAL, str(e))

            try:
                observed = self._observe(dep, desired)
            except ClusterError as e:
                return self._fail(dep, initial_status, None, FailureClass.TRANSIENT, f"{type(e).__name__}: {e}")

            if restarts < settings.max_plan_restarts and self._adopt_approved(dep, observed):
                # Desired state moved; plan against the new generation.
                restarts += 1
                continue

            try:
                p = planner.plan(
                    dep.desired_spec,
                    db.list_managed_resources(deployment_id=dep.id),
                    observed,
                    deployment_id=dep.id,
                    namespace=dep.namespace,
                    generation=dep.generation,
                    lifecycle=dep.desired_lifecycle_state,
                    resolver=PolicyResolver.for_deployment(dep),
                    recreate_on_immutable=dep.recreate_on_immutable,
                    held_fields=self._held_fields(dep),
                )
            except PlanningError as e:
                return self._fail(dep, initial_status, None, FailureClass.FATAL, str(e))

            if not p.empty:
                logger.info(
                    "Applying plan",
                    extra={"deployment_id": dep.id, "generation": dep.generation, "actions": p.summary()},
                )
            result = self.applier.apply(dep, p, heartbeat)
            if not result.ok:
                return self._fail_apply(dep, initial_status, p, result)

            current = db.get_deployment(deployment_id)
            if (
                current is not None
                and current.generation != dep.generation
                and restarts < settings.max_plan_restarts
            ):
                restarts += 1
                db.log_event(
                    dep.id,
                    EventSource.RECONCILER,
                    EventType.RECONCILE_RESTARTED,
                    {"from_generation": dep.generation, "to_generation": current.generation, "restart": restarts},
                )
                continue
            break

        if dep.desired_lifecycle_state == LifecycleState.DELETED:
            return self._finish_teardown(dep, p)
        return self._finish(dep, initial_status, p)

    # --- observe ----------------------------------------------------------------

    def _observe(self, dep: DeploymentRow, desired: dict[ResourceKey, dict]) -> dict[ResourceKey, LiveObject]:
        """Live objects relevant to this deployment: everything it owns plus whatever holds a desired name."""
        observed: dict[ResourceKey, LiveObject] = {}
        for kind in PLANNED_KINDS:
            for obj in self.cluster.list(kind, namespace=dep.namespace, deployment_id=dep.id):
                observed[(kind, obj.name)] = obj
        for key in desired:
            if key in observed:
                continue
            live = self.cluster.get(key[0], dep.namespace, key[1])
            if live is not None:
                observed[key] = live
        return observed

    def _held_fields(self, dep: DeploymentRow) -> frozenset[tuple[Kind, str, str]]:
        return frozenset(
            (Kind(a.kind), a.name, a.field)
            for state in ("pending", "approved")
            for a in db.list_approvals(deployment_id=dep.id, state=state)
        )

    def _adopt_approved(self, dep: DeploymentRow, observed: dict[ResourceKey, LiveObject]) -> bool:
        """Fold approved adoptions into desired state. True if a new generation was written."""
        approvals = db.list_approvals(deployment_id=dep.id, state="approved")
        if not approvals or dep.desired_lifecycle_state != LifecycleState.ACTIVE:
            return False
        spec = dep.desired_spec
        adopted: list[dict] = []
        ids: list[int] = []
        for a in approvals:
            live = observed.get((Kind(a.kind), a.name))
            if live is None:
                continue
            h = handler_for(a.kind)
            current = h.live_value(live, a.field)
            if h.normalize(a.field, current) != h.normalize(a.field, a.observed_value):
                # Live value moved on since the request was opened.
                continue
            try:
                spec = adopt_into_spec(spec, a.kind, a.name, {a.field: current})
            except KeyError:
                continue
            adopted.append({"kind": a.kind, "name": a.name, "field": a.field})
            ids.append(a.id)
        if not ids:
            return False
        try:
            db.adopt_desired_spec(dep.id, spec, expected_generation=dep.generation, adopted=adopted, approval_ids=ids)
        except db.ConflictError:
            # Someone else wrote a generation; the loop re-reads it.
            return True
        return True

    # --- finish -----------------------------------------------------------------

    def _healths(self, dep: DeploymentRow, observed: dict[ResourceKey, LiveObject]) -> dict[str, ResourceHealth]:
        healths: dict[str, ResourceHealth] = {}
        for (kind, name), body in planner.desired_resources(dep.desired_spec).items():
            key = resource_key(kind, name)
            live = observed.get((kind, name))
            if live is None:
                healths[key] = ResourceHealth(ready=False, progressing=True, message="not created yet")
                continue
            health = handler_for(kind).extract_status(live)
            if kind == Kind.WORKLOAD and health.ready:
                url = probe_url(body, settings.probe_host)
                if url:
                    res = self.probe(url, settings.probe_timeout_s)
                    if not res.ok:
                        health = ResourceHealth(ready=False, degraded=True, message=f"health probe: {res.message}")
            healths[key] = health
        return healths

    def _finish(self, dep: DeploymentRow, initial_status: StatusSummary, p: Plan) -> ReconcileOutcome:
        try:
            observed = self._observe(dep, planner.desired_resources(dep.desired_spec))
        except ClusterError as e:
            # Everything was applied; status is only unknown. Re-check soon.
            observed = {}
            logger.warning("Post-apply observation failed", extra={"deployment_id": dep.id, "error": str(e)})
        healths = self._healths(dep, observed)
        status, detail = summarize(healths)
        db.put_snapshot(dep.id, build_snapshot(observed.values(), healths, dep.generation), dep.generation)
        db.mark_applied(dep.id, dep.generation, status, detail)
        self._status_changed(dep, initial_status, status, detail)
        db.log_event(
            dep.id,
            EventSource.RECONCILER,
            EventType.RECONCILE_SUCCEEDED,
            {"generation": dep.generation, "actions": p.summary(), "status": status.value},
        )
        return ReconcileOutcome(dep.id, "succeeded", generation=dep.generation, status=status, plan=p)

    def _finish_teardown(self, dep: DeploymentRow, p: Plan) -> ReconcileOutcome:
        remaining = db.list_managed_resources(deployment_id=dep.id)
        if remaining:
            detail = f"{len(remaining)} resources left to delete"
            db.set_status(dep.id, StatusSummary.PROGRESSING, detail)
            db.log_event(
                dep.id,
                EventSource.RECONCILER,
                EventType.RECONCILE_SUCCEEDED,
                {"generation": dep.generation, "actions": p.summary(), "status": StatusSummary.PROGRESSING.value},
            )
            return ReconcileOutcome(dep.id, "succeeded", generation=dep.generation, status=StatusSummary.PROGRESSING, plan=p)
        db.mark_applied(dep.id, dep.generation, StatusSummary.HEALTHY, "deleted")
        db.log_event(
            dep.id,
            EventSource.RECONCILER,
            EventType.RECONCILE_SUCCEEDED,
            {"generation": dep.generation, "actions": p.summary(), "status": "Deleted"},
        )
        db.archive_deployment(dep.id)
        logger.info("Deployment torn down and archived", extra={"deployment_id": dep.id})
        return ReconcileOutcome(dep.id, "succeeded", generation=dep.generation, status=StatusSummary.HEALTHY, plan=p)

    def _fail_apply(
        self, dep: DeploymentRow, initial_status: StatusSummary, p: Plan, result: ApplyResult
    ) -> ReconcileOutcome:
        outcome = self._fail(
            dep, initial_status, result.failed_action, result.failure or FailureClass.TRANSIENT, result.error or ""
        )
        outcome.plan = p
        return outcome

    def _fail(
        self,
        dep: DeploymentRow,
        initial_status: StatusSummary,
        action: Action | None,
        failure: FailureClass,
        error: str,
    ) -> ReconcileOutcome:
        status = StatusSummary.PROGRESSING if failure == FailureClass.TRANSIENT else StatusSummary.ERROR
        detail = f"{action.describe()}: {error}" if action else error
        db.set_status(dep.id, status, detail)
        db.log_event(
            dep.id,
            EventSource.RECONCILER,
            EventType.RECONCILE_FAILED,
            {
                "generation": dep.generation,
                "action": action.to_dict() if action else None,
                "failure": failure.value,
                "error": error,
            },
        )
        self._status_changed(dep, initial_status, status, detail)
        logger.warning(
            "Reconcile failed",
            extra={"deployment_id": dep.id, "generation": dep.generation, "failure": failure.value, "error": error},
        )
        return ReconcileOutcome(dep.id, "failed", generation=dep.generation, status=status, failure=failure, error=error)

    def _status_changed(
        self, dep: DeploymentRow, previous: StatusSummary, current: StatusSummary, detail: str
    ) -> None:
        if previous == current:
            return
        db.log_event(
            dep.id,
            EventSource.RECONCILER,
            EventType.STATUS_CHANGED,
            {"from": previous.value, "to": current.value, "detail": detail},
        )
        status_alert(dep.id, dep.namespace, previous, current, detail)
