"""Per-kind field extraction and comparison.

Each watched kind is a fixed variant with its own handler. Callers never
inspect platform objects directly; they go through ``handler_for(kind)``.
All values are normalized before comparison so that platform defaulting
(digest-pinned images, empty lists vs. missing keys, "27015" vs 27015) is not
mistaken for drift.
"""
from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping

from .ownership import user_labels

if TYPE_CHECKING:
    from .cluster import LiveObject


class Kind(str, Enum):
    NETWORK = "Network"
    CONFIG = "Config"
    SECRET = "Secret"
    WORKLOAD = "Workload"
    TASK = "Task"


@dataclass(frozen=True)
class ResourceHealth:
    ready: bool
    progressing: bool = False
    degraded: bool = False
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "ready": self.ready,
            "progressing": self.progressing,
            "degraded": self.degraded,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ResourceHealth":
        return cls(
            ready=bool(data.get("ready")),
            progressing=bool(data.get("progressing")),
            degraded=bool(data.get("degraded")),
            message=str(data.get("message") or ""),
        )


def normalize_value(value: Any) -> Any:
    """Empty equivalence plus key ordering: None, "", [] and {} all compare equal."""
    if value is None:
        return None
    if isinstance(value, str):
        return value if value != "" else None
    if isinstance(value, Mapping):
        out = {}
        for k in sorted(value):
            v = normalize_value(value[k])
            if v is not None:
                out[str(k)] = v
        return out or None
    if isinstance(value, (list, tuple)):
        items = [normalize_value(v) for v in value]
        return items or None
    return value


def _unordered(items: list[Any] | None) -> list[Any] | None:
    if not items:
        return None
    return sorted(items, key=lambda x: json.dumps(x, sort_keys=True, default=str))


def _sha256(data: str | bytes) -> str:
    if isinstance(data, str):
        data = data.encode()
    return hashlib.sha256(data).hexdigest()


def normalize_image(image: str | None) -> str | None:
    if not image:
        return None
    # Swarm pins the resolved digest onto the service spec.
    ref = image.split("@", 1)[0]
    last = ref.rsplit("/", 1)[-1]
    if ":" not in last:
        ref = f"{ref}:latest"
    return ref


class KindHandler:
    kind: Kind
    rank: int = 0
    planned: bool = True
    fields: tuple[str, ...] = ("labels",)
    defaults: Mapping[str, Any] = {}
    immutable_fields: frozenset[str] = frozenset()

    def normalize(self, field: str, value: Any) -> Any:
        return normalize_value(value)

    def managed_fields(self, spec: Mapping[str, Any]) -> dict[str, Any]:
        """Normalized values of the fields the desired spec sets (or defaults)."""
        out: dict[str, Any] = {}
        for f in self.fields:
            if f in spec:
                out[f] = self.normalize(f, spec[f])
            elif f in self.defaults:
                out[f] = self.normalize(f, self.defaults[f])
        return out

    def live_value(self, live: "LiveObject", field: str) -> Any:
        if field == "labels":
            return user_labels(live.labels)
        return live.spec.get(field)

    def extract_managed_fields(self, live: "LiveObject") -> dict[str, Any]:
        return {f: self.normalize(f, self.live_value(live, f)) for f in self.fields}

    def diff(self, spec: Mapping[str, Any], live: "LiveObject") -> list[str]:
        desired = self.managed_fields(spec)
        observed = self.extract_managed_fields(live)
        return sorted(f for f, v in desired.items() if observed.get(f) != v)

    def patch_for(self, spec: Mapping[str, Any], fields: list[str]) -> dict[str, Any]:
        return {f: spec.get(f, self.defaults.get(f)) for f in fields}

    def references(self, spec: Mapping[str, Any]) -> list[tuple[Kind, str]]:
        return []

    def extract_status(self, live: "LiveObject") -> ResourceHealth:
        return ResourceHealth(ready=True, message="present")


class NetworkHandler(KindHandler):
    kind = Kind.NETWORK
    rank = 0
    fields = ("driver", "attachable", "internal", "labels")
    defaults = {"driver": "overlay", "attachable": True, "internal": False}
    # Networks cannot be updated in place.
    immutable_fields = frozenset(fields)


class ConfigHandler(KindHandler):
    kind = Kind.CONFIG
    rank = 1
    fields = ("data", "labels")
    # Swarm configs and secrets accept no in-place updates at all.
    immutable_fields = frozenset(fields)

    def normalize(self, field: str, value: Any) -> Any:
        if field == "data":
            if value is None:
                return None
            if isinstance(value, (dict, list)):
                value = json.dumps(value, sort_keys=True)
            return _sha256(value)
        return normalize_value(value)


class SecretHandler(ConfigHandler):
    kind = Kind.SECRET
    rank = 1

    def live_value(self, live: "LiveObject", field: str) -> Any:
        # The platform never returns secret payloads; compare digests instead.
        if field == "data" and "data" not in live.spec:
            return _DigestValue(live.spec.get("data_sha256"))
        return super().live_value(live, field)

    def normalize(self, field: str, value: Any) -> Any:
        if isinstance(value, _DigestValue):
            return value.digest
        return super().normalize(field, value)


class _DigestValue:
    __slots__ = ("digest",)

    def __init__(self, digest: str | None):
        self.digest = digest


def _port_entry(p: Any) -> dict[str, Any]:
    if isinstance(p, (int, str)):
        return {"published": int(p), "target": int(p), "protocol": "tcp"}
    target = int(p.get("target") or p.get("published"))
    published = p.get("published")
    return {
        "published": int(published) if published is not None else target,
        "target": target,
        "protocol": str(p.get("protocol") or "tcp").lower(),
    }


def _mount_entry(m: Any, default_target: str) -> dict[str, Any]:
    if isinstance(m, str):
        return {"name": m, "target": default_target.format(name=m)}
    name = str(m["name"])
    return {"name": name, "target": str(m.get("target") or default_target.format(name=name))}


def _reference_name(m: Any) -> str:
    return m if isinstance(m, str) else str(m["name"])


class WorkloadHandler(KindHandler):
    kind = Kind.WORKLOAD
    rank = 2
    fields = ("image", "replicas", "env", "command", "ports", "networks", "configs", "secrets", "labels")
    defaults = {"replicas": 1, "env": {}, "command": [], "ports": [], "networks": [], "configs": [], "secrets": []}
    reference_fields = {Kind.NETWORK: "networks", Kind.CONFIG: "configs", Kind.SECRET: "secrets"}

    def normalize(self, field: str, value: Any) -> Any:
        if field == "image":
            return normalize_image(value)
        if field == "replicas":
            return int(value) if value is not None else None
        if field == "env":
            if not value:
                return None
            if isinstance(value, (list, tuple)):
                value = dict(item.split("=", 1) for item in value if "=" in item)
            return {str(k): str(v) for k, v in sorted(value.items())} or None
        if field == "command":
            if not value:
                return None
            if isinstance(value, str):
                return value.split()
            return [str(x) for x in value]
        if field == "ports":
            return _unordered([_port_entry(p) for p in value or []])
        if field == "networks":
            return _unordered([str(n) for n in value or []])
        if field == "configs":
            return _unordered([_mount_entry(m, "/{name}") for m in value or []])
        if field == "secrets":
            return _unordered([_mount_entry(m, "{name}") for m in value or []])
        return normalize_value(value)

    def references(self, spec: Mapping[str, Any]) -> list[tuple[Kind, str]]:
        refs: list[tuple[Kind, str]] = []
        for kind, f in self.reference_fields.items():
            refs.extend((kind, _reference_name(m)) for m in spec.get(f) or [])
        return refs

    def detach_patch(self, spec: Mapping[str, Any], kind: Kind, name: str) -> dict[str, Any]:
        """Patch that drops one network, config or secret reference from ``spec``."""
        f = self.reference_fields[Kind(kind)]
        return {f: [m for m in spec.get(f) or [] if _reference_name(m) != name]}

    def extract_status(self, live: "LiveObject") -> ResourceHealth:
        st = live.status
        desired = int(st.get("desired_replicas", live.spec.get("replicas") or 0))
        running = int(st.get("running_replicas", 0))
        failed = int(st.get("failed_tasks", 0))
        update_state = st.get("update_state")

        if update_state in {"paused", "rollback_started", "rollback_paused", "rollback_completed"}:
            return ResourceHealth(ready=False, degraded=True, message=f"update {update_state}")
        if running >= desired and update_state in (None, "completed"):
            return ResourceHealth(ready=True, message=f"{running}/{desired} running")
        if failed > 0 and running < desired:
            return ResourceHealth(
                ready=False, degraded=True, message=f"{running}/{desired} running, {failed} failed tasks"
            )
        return ResourceHealth(ready=False, progressing=True, message=f"{running}/{desired} running")


class TaskHandler(KindHandler):
    kind = Kind.TASK
    rank = 3
    planned = False
    fields = ()

    def extract_status(self, live: "LiveObject") -> ResourceHealth:
        state = live.status.get("state")
        message = live.status.get("message") or str(state)
        if state == "running":
            return ResourceHealth(ready=True, message=message)
        if state in {"failed", "rejected", "orphaned"}:
            return ResourceHealth(ready=False, degraded=True, message=message)
        return ResourceHealth(ready=False, progressing=True, message=message)


HANDLERS: dict[Kind, KindHandler] = {
    Kind.NETWORK: NetworkHandler(),
    Kind.CONFIG: ConfigHandler(),
    Kind.SECRET: SecretHandler(),
    Kind.WORKLOAD: WorkloadHandler(),
    Kind.TASK: TaskHandler(),
}

PLANNED_KINDS: tuple[Kind, ...] = tuple(k for k, h in HANDLERS.items() if h.planned)


def handler_for(kind: Kind | str) -> KindHandler:
    return HANDLERS[Kind(kind)]
