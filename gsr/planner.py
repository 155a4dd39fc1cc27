"""Compute the actions that take the live set to a desired spec.

``plan`` is a pure function: same inputs, same plan, in the same order.
Creates and updates come first, ordered so that referenced objects (networks,
configs, secrets) precede the workloads that use them. Deletions come last,
in reverse order, and only ever target objects this deployment owns.
Replacing a referenced object in place detaches the workloads using it first.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping

from .cluster import LiveObject
from .db import LifecycleState, ManagedResourceRow
from .drift import PolicyResolver, compared_fields
from .kinds import Kind, handler_for
from .ownership import is_owned_by

ResourceKey = tuple[Kind, str]


class PlanningError(Exception):
    pass


class CyclicReferenceError(PlanningError):
    pass


class ActionType(str, Enum):
    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"


@dataclass(frozen=True)
class Action:
    type: ActionType
    kind: Kind
    namespace: str
    name: str
    # Create: full resource body. Update: patch of the differing fields.
    spec: Mapping[str, Any] = field(default_factory=dict)
    uid: str | None = None
    fields: tuple[str, ...] = ()
    reason: str = ""

    @property
    def key(self) -> ResourceKey:
        return (self.kind, self.name)

    def describe(self) -> str:
        s = f"{self.type.value} {self.kind.value}/{self.namespace}/{self.name}"
        if self.fields:
            s += f" [{', '.join(self.fields)}]"
        return s

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "kind": self.kind.value,
            "namespace": self.namespace,
            "name": self.name,
            "uid": self.uid,
            "fields": list(self.fields),
            "reason": self.reason,
        }


@dataclass(frozen=True)
class Plan:
    deployment_id: str
    generation: int
    actions: tuple[Action, ...] = ()

    @property
    def empty(self) -> bool:
        return not self.actions

    def summary(self) -> dict[str, int]:
        out = {t.value: 0 for t in ActionType}
        for a in self.actions:
            out[a.type.value] += 1
        return out


def desired_resources(spec: Mapping[str, Any]) -> dict[ResourceKey, dict[str, Any]]:
    """Index the desired spec's resources by (kind, name), rejecting duplicates and unplannable kinds."""
    out: dict[ResourceKey, dict[str, Any]] = {}
    for r in spec.get("resources") or []:
        try:
            kind = Kind(r["kind"])
            name = str(r["name"])
        except (KeyError, ValueError) as e:
            raise PlanningError(f"invalid resource entry: {r!r}") from e
        if not handler_for(kind).planned:
            raise PlanningError(f"{kind.value} objects cannot be declared")
        if (kind, name) in out:
            raise PlanningError(f"duplicate resource {kind.value}/{name}")
        out[(kind, name)] = {k: v for k, v in r.items() if k not in ("kind", "name")}
    return out


def _sort_key(key: ResourceKey) -> tuple[int, str, str]:
    return (handler_for(key[0]).rank, key[0].value, key[1])


def dependency_order(resources: Mapping[ResourceKey, Mapping[str, Any]]) -> list[ResourceKey]:
    """Referenced objects first (Kahn's algorithm, ties broken by rank, kind, name)."""
    depends_on: dict[ResourceKey, set[ResourceKey]] = {}
    for key, body in resources.items():
        refs = {r for r in handler_for(key[0]).references(body) if r in resources and r != key}
        depends_on[key] = refs

    dependents: dict[ResourceKey, list[ResourceKey]] = {k: [] for k in resources}
    in_degree = {k: len(v) for k, v in depends_on.items()}
    for key, deps in depends_on.items():
        for d in deps:
            dependents[d].append(key)

    ready = sorted((k for k, n in in_degree.items() if n == 0), key=_sort_key)
    result: list[ResourceKey] = []
    while ready:
        current = ready.pop(0)
        result.append(current)
        for dep in dependents[current]:
            in_degree[dep] -= 1
            if in_degree[dep] == 0:
                ready.append(dep)
        ready.sort(key=_sort_key)

    if len(result) != len(resources):
        cycle = sorted(f"{k[0].value}/{k[1]}" for k, n in in_degree.items() if n > 0)
        raise CyclicReferenceError(f"circular references between: {cycle}")
    return result


def _detach_users(
    kind: Kind, name: str, observed: Mapping[ResourceKey, LiveObject], deployment_id: str, namespace: str
) -> list[Action]:
    """Updates unhooking our live workloads from an object about to be replaced.

    The platform refuses to remove a network, config or secret still in use.
    The workloads get the reference back once the replacement exists.
    """
    workloads = handler_for(Kind.WORKLOAD)
    out = []
    for (k, wname), live in sorted(observed.items(), key=lambda item: item[0][1]):
        if k != Kind.WORKLOAD or not is_owned_by(live.labels, deployment_id):
            continue
        if (kind, name) not in workloads.references(live.spec):
            continue
        patch = workloads.detach_patch(live.spec, kind, name)
        out.append(
            Action(
                ActionType.UPDATE,
                Kind.WORKLOAD,
                namespace,
                wname,
                spec=patch,
                uid=live.uid,
                fields=tuple(patch),
                reason=f"detach {kind.value}/{name}",
            )
        )
    return out


def plan(
    desired_spec: Mapping[str, Any],
    managed: Iterable[ManagedResourceRow],
    observed: Mapping[ResourceKey, LiveObject],
    *,
    deployment_id: str,
    namespace: str,
    generation: int,
    lifecycle: LifecycleState = LifecycleState.ACTIVE,
    resolver: PolicyResolver | None = None,
    recreate_on_immutable: bool = False,
    held_fields: frozenset[tuple[Kind, str, str]] = frozenset(),
) -> Plan:
    """Actions converging ``observed`` to ``desired_spec`` at ``generation``.

    ``held_fields`` are (kind, name, field) triples waiting on an adoption
    decision; they are left as they are.
    """
    desired = {} if lifecycle == LifecycleState.DELETED else desired_resources(desired_spec)
    actions: list[Action] = []
    # Workload fields emptied of a reference while its target is replaced.
    detached: dict[ResourceKey, set[str]] = {}

    for key in dependency_order(desired):
        kind, name = key
        body = desired[key]
        live = observed.get(key)
        if live is None:
            actions.append(Action(ActionType.CREATE, kind, namespace, name, spec=body, reason="missing"))
            continue
        if not is_owned_by(live.labels, deployment_id):
            # The Applier turns this into a conflict; we never take over foreign objects.
            actions.append(
                Action(ActionType.CREATE, kind, namespace, name, spec=body, reason="name held by another object")
            )
            continue
        fields = [f for f in compared_fields(body, live, resolver) if (kind, name, f) not in held_fields]
        reattach = detached.get(key, set())
        fields = sorted(set(fields) | reattach)
        if not fields:
            continue
        h = handler_for(kind)
        if recreate_on_immutable and any(f in h.immutable_fields for f in fields):
            for detach in _detach_users(kind, name, observed, deployment_id, namespace):
                detached.setdefault(detach.key, set()).update(detach.fields)
                actions.append(detach)
            actions.append(
                Action(ActionType.DELETE, kind, namespace, name, uid=live.uid, fields=tuple(fields), reason="replace")
            )
            actions.append(Action(ActionType.CREATE, kind, namespace, name, spec=body, reason="replace"))
            continue
        if reattach:
            reason = "reattach"
        elif live.ownership and live.ownership.generation >= generation:
            reason = "drift"
        else:
            reason = "converge"
        actions.append(
            Action(
                ActionType.UPDATE,
                kind,
                namespace,
                name,
                spec=h.patch_for(body, fields),
                uid=live.uid,
                fields=tuple(fields),
                reason=reason,
            )
        )

    # Deletion candidates: everything we own that is no longer desired.
    owned: dict[ResourceKey, str] = {}
    for row in managed:
        if row.managed and row.deployment_id == deployment_id:
            owned[(Kind(row.kind), row.name)] = row.uid
    for key, live in observed.items():
        if handler_for(key[0]).planned and is_owned_by(live.labels, deployment_id):
            owned[key] = live.uid

    stale = [k for k in owned if k not in desired]
    stale.sort(key=lambda k: (-handler_for(k[0]).rank, k[0].value, k[1]))
    for kind, name in stale:
        actions.append(Action(ActionType.DELETE, kind, namespace, name, uid=owned[(kind, name)], reason="not desired"))

    return Plan(deployment_id=deployment_id, generation=generation, actions=tuple(actions))
