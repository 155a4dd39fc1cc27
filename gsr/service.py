"""Operations behind the HTTP API.

Each write is a single store transaction that validates, bumps the
generation and enqueues a reconcile. Store errors propagate unchanged so the
API can map them (ConflictError/LifecycleError -> 409, NotFound -> 404,
StoreUnavailable -> 503).
"""
from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Mapping

from . import db
from .api_models import DeploymentCreate, DesiredSpec, TemplateCreate
from .db import DeploymentRow, EventSource, EventType, LifecycleState, NotFound
from .scheduler import schedule_state
from .settings import settings

logger = logging.getLogger(__name__)


def _require(deployment_id: str) -> DeploymentRow:
    dep = db.get_deployment(deployment_id)
    if dep is None or dep.archived_at:
        raise NotFound(f"deployment {deployment_id} not found")
    return dep


def _validated(spec: DesiredSpec | Mapping[str, Any]) -> dict[str, Any]:
    if not isinstance(spec, DesiredSpec):
        spec = DesiredSpec.model_validate(spec)
    return spec.to_store()


def register_template(req: TemplateCreate) -> db.TemplateRow:
    return db.register_template(req.name, req.version, req.allowed_mutations)


def create_deployment(req: DeploymentCreate) -> DeploymentRow:
    dep = db.create_deployment(
        template_name=req.template_name,
        template_version=req.template_version,
        namespace=req.namespace,
        desired_spec=_validated(req.desired_spec),
        deployment_id=req.id,
        drift_policy=req.drift_policy or settings.default_drift_policy,
        policy_overrides=dict(req.policy_overrides),
        ignore_fields=list(req.ignore_fields),
        auto_adopt=req.auto_adopt,
        recreate_on_immutable=req.recreate_on_immutable,
    )
    logger.info("Deployment created", extra={"deployment_id": dep.id, "namespace": dep.namespace})
    return dep


def update_desired_spec(
    deployment_id: str, spec: DesiredSpec | Mapping[str, Any], expected_generation: int | None = None
) -> DeploymentRow:
    return db.write_desired_spec(deployment_id, _validated(spec), expected_generation=expected_generation)


def set_lifecycle(
    deployment_id: str, state: LifecycleState | str, expected_generation: int | None = None
) -> DeploymentRow:
    return db.set_lifecycle(deployment_id, LifecycleState(state), expected_generation=expected_generation)


def pause(deployment_id: str, expected_generation: int | None = None) -> DeploymentRow:
    return set_lifecycle(deployment_id, LifecycleState.PAUSED, expected_generation)


def resume(deployment_id: str, expected_generation: int | None = None) -> DeploymentRow:
    return set_lifecycle(deployment_id, LifecycleState.ACTIVE, expected_generation)


def delete_deployment(deployment_id: str, expected_generation: int | None = None) -> DeploymentRow:
    """Request teardown. The deployment is archived once its objects are gone."""
    return set_lifecycle(deployment_id, LifecycleState.DELETED, expected_generation)


def trigger_reconcile(deployment_id: str, reason: str = "manual") -> None:
    dep = _require(deployment_id)
    with db.connect(immediate=True) as conn:
        db.log_event(dep.id, EventSource.USER, EventType.RECONCILE_TRIGGERED, {"reason": reason}, conn=conn)
        db.enqueue_job(dep.id, reason=reason, conn=conn)


def approve_adoption(approval_id: int) -> db.ApprovalRow:
    return db.decide_approval(approval_id, "approved")


def reject_adoption(approval_id: int) -> db.ApprovalRow:
    return db.decide_approval(approval_id, "rejected")


def deployment_view(dep: DeploymentRow) -> dict[str, Any]:
    out = asdict(dep)
    out["desired_lifecycle_state"] = dep.desired_lifecycle_state.value
    out["status_summary"] = dep.status_summary.value
    out["converged"] = dep.converged
    out["schedule_state"] = schedule_state(dep.id).value
    return out


def deployment_status(deployment_id: str) -> dict[str, Any]:
    dep = _require(deployment_id)
    out = deployment_view(dep)
    job = db.get_job(dep.id)
    out["job"] = (
        {"state": job.state, "attempts": job.attempts, "next_run_at": job.next_run_at, "last_error": job.last_error}
        if job
        else None
    )
    out["resources"] = [
        {
            "kind": r.kind,
            "name": r.name,
            "uid": r.uid,
            "generation_marker": r.generation_marker,
            "ready": r.last_ready,
            "drift": r.last_drift,
        }
        for r in db.list_managed_resources(deployment_id=dep.id)
    ]
    out["pending_approvals"] = [asdict(a) for a in db.list_approvals(deployment_id=dep.id, state="pending")]
    return out


def snapshot(deployment_id: str) -> dict[str, Any]:
    _require(deployment_id)
    snap = db.get_snapshot(deployment_id)
    if snap is None:
        return {"deployment_id": deployment_id, "observed_generation": 0, "snapshot": {}}
    return asdict(snap)


def event_feed(deployment_id: str, after: int = 0, limit: int = 100) -> dict[str, Any]:
    """Events in time order; pass ``next_after`` back as ``after`` for the next page."""
    if db.get_deployment(deployment_id) is None:
        raise NotFound(f"deployment {deployment_id} not found")
    events = db.list_events(deployment_id, after_id=after, limit=limit)
    return {
        "events": [asdict(e) for e in events],
        "next_after": events[-1].id if events else after,
    }
