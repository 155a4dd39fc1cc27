"""Drift classification and the policy that decides what to do about it.

Only fields GSR manages are compared (see ``kinds``); anything the platform
fills in on its own never shows up as drift. Field paths have the form
``<Kind>.<name>.<field>`` and rules may use ``*`` (one segment) and ``**``
(any number of segments), e.g. ``Workload.*.replicas`` or ``**.labels``.
"""
from __future__ import annotations

import copy
import fnmatch
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping

from .cluster import LiveObject
from .db import DeploymentRow, LifecycleState, ManagedResourceRow
from .kinds import Kind, handler_for

logger = logging.getLogger(__name__)


class DriftKind(str, Enum):
    NO_DRIFT = "NoDrift"
    MODIFIED_EXTERNALLY = "ModifiedExternally"
    DELETED_EXTERNALLY = "DeletedExternally"
    UNMANAGED = "Unmanaged"


class DriftPolicy(str, Enum):
    ENFORCE = "enforce"
    ADOPT = "adopt"
    IGNORE = "ignore"


@dataclass(frozen=True)
class DriftVerdict:
    kind: DriftKind
    fields: tuple[str, ...] = ()
    # Raw live values of the drifted fields, used when adopting them.
    observed: Mapping[str, Any] = field(default_factory=dict)
    # Set on DeletedExternally when the name is now held by a different object.
    replacement_uid: str | None = None

    @property
    def is_drift(self) -> bool:
        return self.kind != DriftKind.NO_DRIFT


NO_DRIFT = DriftVerdict(DriftKind.NO_DRIFT)


def field_path(kind: Kind | str, name: str, field_name: str) -> str:
    return f"{Kind(kind).value}.{name}.{field_name}"


def path_matches(path: str, pattern: str) -> bool:
    return _match_parts(path.split("."), pattern.split("."))


def _match_parts(path_parts: list[str], pattern_parts: list[str]) -> bool:
    if not pattern_parts:
        return not path_parts
    if not path_parts:
        return all(p == "**" for p in pattern_parts)
    if pattern_parts[0] == "**":
        if len(pattern_parts) == 1:
            return True
        return any(_match_parts(path_parts[i:], pattern_parts[1:]) for i in range(len(path_parts) + 1))
    if pattern_parts[0] == "*" or fnmatch.fnmatchcase(path_parts[0], pattern_parts[0]):
        return _match_parts(path_parts[1:], pattern_parts[1:])
    return False


def mutation_allowed(rules: list[str], kind: Kind | str, name: str, field_name: str) -> bool:
    """True if a template's allowed-mutation rules permit changing this field out of band."""
    if field_name in handler_for(kind).immutable_fields:
        return False
    path = field_path(kind, name, field_name)
    return any(path_matches(path, rule) for rule in rules)


class PolicyResolver:
    """Effective drift policy for a resource and its fields.

    Resolution order: ``<Kind>/<name>`` override, then ``<Kind>`` override,
    then the deployment's policy.
    """

    def __init__(
        self,
        default: DriftPolicy | str = DriftPolicy.ENFORCE,
        overrides: Mapping[str, str] | None = None,
        ignore_fields: list[str] | None = None,
    ) -> None:
        self.default = DriftPolicy(default)
        self.overrides = {k: DriftPolicy(v) for k, v in (overrides or {}).items()}
        self.ignore_fields = list(ignore_fields or [])

    @classmethod
    def for_deployment(cls, deployment: DeploymentRow) -> "PolicyResolver":
        return cls(deployment.drift_policy, deployment.policy_overrides, deployment.ignore_fields)

    def policy_for(self, kind: Kind | str, name: str) -> DriftPolicy:
        kind_s = Kind(kind).value
        return self.overrides.get(f"{kind_s}/{name}") or self.overrides.get(kind_s) or self.default

    def is_ignored(self, kind: Kind | str, name: str, field_name: str | None = None) -> bool:
        if self.policy_for(kind, name) == DriftPolicy.IGNORE:
            return True
        if field_name is None:
            return False
        path = field_path(kind, name, field_name)
        return any(path_matches(path, p) for p in self.ignore_fields)


def compared_fields(
    spec: Mapping[str, Any], live: LiveObject, resolver: PolicyResolver | None = None
) -> list[str]:
    """Managed fields whose live value differs from ``spec``, minus ignored ones."""
    diff = handler_for(live.kind).diff(spec, live)
    if resolver is None:
        return diff
    return [f for f in diff if not resolver.is_ignored(live.kind, live.name, f)]


def classify(
    desired: Mapping[str, Any] | None,
    row: ManagedResourceRow | None,
    live: LiveObject | None,
    *,
    deployment_id: str,
    lifecycle: LifecycleState = LifecycleState.ACTIVE,
    resolver: PolicyResolver | None = None,
    kind: Kind | None = None,
    name: str | None = None,
) -> DriftVerdict:
    """Compare one desired resource against what the platform reports.

    ``desired`` is the resource as of the generation we last applied (None if
    it is not desired), ``row`` the mapping we hold for that identity and
    ``live`` the object currently occupying it.
    """
    kind = kind or (live.kind if live else Kind(row.kind) if row else None)
    name = name or (live.name if live else row.name if row else None)
    if kind is not None and name is not None and resolver and resolver.is_ignored(kind, name):
        return NO_DRIFT

    tracked = row is not None and row.managed and row.deployment_id == deployment_id
    expects_object = tracked and desired is not None and lifecycle != LifecycleState.DELETED

    if live is None:
        return DriftVerdict(DriftKind.DELETED_EXTERNALLY) if expects_object else NO_DRIFT

    if expects_object and row is not None and row.uid != live.uid:
        # Same name, different object: ours is gone, whoever holds the name now
        # gets classified on its own afterwards.
        return DriftVerdict(DriftKind.DELETED_EXTERNALLY, replacement_uid=live.uid)

    owner = live.ownership
    if owner is None or owner.deployment_id != deployment_id:
        return DriftVerdict(DriftKind.UNMANAGED)

    if desired is None:
        return NO_DRIFT

    fields = compared_fields(desired, live, resolver)
    if not fields:
        return NO_DRIFT
    h = handler_for(live.kind)
    observed = {f: h.live_value(live, f) for f in fields}
    return DriftVerdict(DriftKind.MODIFIED_EXTERNALLY, fields=tuple(fields), observed=observed)


@dataclass
class DriftResponse:
    enforce: list[str] = field(default_factory=list)
    adopt: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)


def resolve_response(
    verdict: DriftVerdict,
    kind: Kind | str,
    name: str,
    resolver: PolicyResolver,
    allowed_mutations: list[str],
    auto_adopt: bool = False,
    approval_state: Callable[[str], str | None] = lambda _field: None,
) -> DriftResponse:
    """Split drifted fields by what to do with them.

    Under Adopt, a field is adopted only when the template allows mutating it
    and adoption is automatic or a user approved it. Allowed fields without a
    decision wait for one; a rejection, or a field outside the rules, is
    enforced like under Enforce.
    """
    out = DriftResponse()
    if verdict.kind != DriftKind.MODIFIED_EXTERNALLY:
        return out
    policy = resolver.policy_for(kind, name)
    for f in verdict.fields:
        if policy != DriftPolicy.ADOPT or not mutation_allowed(allowed_mutations, kind, name, f):
            out.enforce.append(f)
            continue
        state = approval_state(f)
        if auto_adopt or state == "approved":
            out.adopt.append(f)
        elif state == "rejected":
            out.enforce.append(f)
        else:
            out.pending.append(f)
    return out


def find_resource(spec: Mapping[str, Any], kind: Kind | str, name: str) -> dict[str, Any] | None:
    kind_s = Kind(kind).value
    for r in spec.get("resources") or []:
        if r.get("kind") == kind_s and r.get("name") == name:
            return r
    return None


def adopt_into_spec(
    spec: Mapping[str, Any], kind: Kind | str, name: str, values: Mapping[str, Any]
) -> dict[str, Any]:
    """Return a copy of ``spec`` with the resource's fields set to ``values``."""
    new_spec = copy.deepcopy(dict(spec))
    resource = find_resource(new_spec, kind, name)
    if resource is None:
        raise KeyError(f"{Kind(kind).value}/{name} is not in the desired spec")
    for f, v in values.items():
        resource[f] = copy.deepcopy(v)
    return new_spec
