from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from . import db
from .cluster import (
    AlreadyExists,
    Cluster,
    ClusterError,
    ImmutableFieldError,
    InvalidObjectError,
    LiveObject,
    ObjectNotFound,
)
from .db import DeploymentRow, EventSource, EventType
from .kinds import handler_for
from .ownership import NAMESPACE_LABEL, is_owned_by, markers_for, parse_markers
from .planner import Action, ActionType, Plan
from .runtime import RuntimeState

logger = logging.getLogger(__name__)


class OwnershipConflict(ClusterError):
    """An object we meant to create already exists and is not ours."""


class LeaseLost(Exception):
    """Another worker took over the reconcile job while a plan was being applied."""


class FailureClass(str, Enum):
    TRANSIENT = "transient"
    CONFLICT = "conflict"
    FATAL = "fatal"


def classify_failure(action: Action | None, exc: BaseException) -> FailureClass:
    if isinstance(exc, OwnershipConflict):
        return FailureClass.CONFLICT
    if isinstance(exc, (ImmutableFieldError, InvalidObjectError)):
        return FailureClass.FATAL
    # Everything else (timeouts, version races, vanished objects, store
    # hiccups) is retried with backoff.
    return FailureClass.TRANSIENT


@dataclass
class ApplyResult:
    applied: list[Action] = field(default_factory=list)
    failed_action: Action | None = None
    error: str | None = None
    failure: FailureClass | None = None

    @property
    def ok(self) -> bool:
        return self.failed_action is None


class Applier:
    """Executes a plan one action at a time; stops at the first failure.

    Create treats "exists and is ours" as done, Delete treats "already gone"
    as done and Update sends a merge patch that is a no-op when re-applied.
    Managed resource rows are written right after each successful action.
    The heartbeat runs before every action and raises LeaseLost to abandon
    the rest of the plan.
    """

    def __init__(self, cluster: Cluster, runtime: RuntimeState | None = None):
        self.cluster = cluster
        self.runtime = runtime or RuntimeState()

    def apply(
        self,
        deployment: DeploymentRow,
        plan: Plan,
        heartbeat: Callable[[], None] | None = None,
    ) -> ApplyResult:
        result = ApplyResult()
        for action in plan.actions:
            if heartbeat is not None:
                heartbeat()
            try:
                self._execute(deployment, plan.generation, action)
            except (ClusterError, db.StoreError) as e:
                result.failed_action = action
                result.error = f"{type(e).__name__}: {e}"
                result.failure = classify_failure(action, e)
                logger.warning(
                    "Action failed, aborting plan",
                    extra={
                        "deployment_id": deployment.id,
                        "action": action.describe(),
                        "failure": result.failure.value,
                        "error": str(e),
                    },
                )
                if isinstance(e, OwnershipConflict):
                    db.log_event(
                        deployment.id,
                        EventSource.RECONCILER,
                        EventType.RESOURCE_CONFLICT,
                        {"action": action.to_dict(), "error": str(e)},
                    )
                return result
            result.applied.append(action)
        return result

    def _execute(self, deployment: DeploymentRow, generation: int, action: Action) -> None:
        if action.type == ActionType.CREATE:
            live = self._create(deployment, generation, action)
            self._record(deployment, live, EventType.RESOURCE_CREATED, action)
        elif action.type == ActionType.UPDATE:
            live = self._update(deployment, generation, action)
            self._record(deployment, live, EventType.RESOURCE_UPDATED, action)
        else:
            self._delete(deployment, action)

    def _labels(self, deployment: DeploymentRow, generation: int, spec_labels: dict | None) -> dict[str, str]:
        labels = {str(k): str(v) for k, v in (spec_labels or {}).items()}
        labels.update(markers_for(deployment.id, generation))
        labels[NAMESPACE_LABEL] = deployment.namespace
        return labels

    def _create(self, deployment: DeploymentRow, generation: int, action: Action) -> LiveObject:
        labels = self._labels(deployment, generation, action.spec.get("labels"))
        try:
            return self.cluster.create(action.kind, action.namespace, action.name, dict(action.spec), labels)
        except AlreadyExists:
            live = self.cluster.get(action.kind, action.namespace, action.name)
            if live is None:
                # Gone again between the two calls; let the retry create it.
                raise
            if not is_owned_by(live.labels, deployment.id):
                owner = parse_markers(live.labels)
                who = f"deployment {owner.deployment_id}" if owner else "an unmanaged actor"
                raise OwnershipConflict(f"{action.kind.value}/{action.name} already exists, owned by {who}")
            # Ours from an earlier, interrupted attempt. Bring it up to date.
            fields = handler_for(action.kind).diff(action.spec, live)
            if not fields:
                return live
            patch = handler_for(action.kind).patch_for(action.spec, fields)
            return self.cluster.update(action.kind, action.namespace, action.name, patch, labels, uid=live.uid)

    def _update(self, deployment: DeploymentRow, generation: int, action: Action) -> LiveObject:
        labels = markers_for(deployment.id, generation)
        labels[NAMESPACE_LABEL] = deployment.namespace
        if "labels" in action.spec:
            labels.update({str(k): str(v) for k, v in (action.spec.get("labels") or {}).items()})
        return self.cluster.update(action.kind, action.namespace, action.name, dict(action.spec), labels, uid=action.uid)

    def _delete(self, deployment: DeploymentRow, action: Action) -> None:
        if action.uid:
            self.runtime.expect_delete(action.uid)
        try:
            self.cluster.delete(action.kind, action.namespace, action.name, uid=action.uid)
        except ObjectNotFound:
            pass
        except BaseException:
            if action.uid:
                self.runtime.forget_delete(action.uid)
            raise
        db.delete_managed_resource(action.kind.value, action.namespace, action.name, deployment_id=deployment.id)
        db.log_event(
            deployment.id,
            EventSource.RECONCILER,
            EventType.RESOURCE_DELETED,
            {"kind": action.kind.value, "name": action.name, "uid": action.uid, "reason": action.reason},
        )

    def _record(self, deployment: DeploymentRow, live: LiveObject, event: EventType, action: Action) -> None:
        owner = parse_markers(live.labels)
        db.upsert_managed_resource(
            deployment.id,
            live.kind.value,
            live.namespace,
            live.name,
            live.uid,
            resource_version=live.resource_version,
            generation_marker=owner.generation if owner else 0,
        )
        db.log_event(
            deployment.id,
            EventSource.RECONCILER,
            event,
            {"kind": live.kind.value, "name": live.name, "uid": live.uid, "fields": list(action.fields)},
        )
