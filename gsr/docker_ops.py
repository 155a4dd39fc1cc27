"""Docker swarm implementation of the ``Cluster`` contract.

Object names on the swarm are ``<namespace>_<name>`` (the same convention
``docker stack deploy`` uses) and every object we create carries the stack
namespace label plus the GSR ownership markers.
"""
from __future__ import annotations

import base64
import json
import logging
import re
from contextlib import contextmanager
from typing import Any, Iterator

import docker
import requests
from docker.errors import APIError, DockerException, NotFound
from docker.types import ConfigReference, EndpointSpec, SecretReference, ServiceMode

from .cluster import (
    AlreadyExists,
    Cluster,
    ClusterError,
    ImmutableFieldError,
    InvalidObjectError,
    LiveObject,
    Notification,
    ObjectNotFound,
    TransientClusterError,
    VersionConflict,
    WatchEventType,
)
from .kinds import Kind, handler_for
from .ownership import DEPLOYMENT_LABEL, MANAGED_BY_LABEL, MANAGED_BY_VALUE, NAMESPACE_LABEL, markers_for, parse_markers, user_labels
from .settings import settings

logger = logging.getLogger(__name__)

OBJECT_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9\-_.]{0,62}$")
# Secrets never come back from the API; this label lets us compare payloads.
DATA_DIGEST_LABEL = "gsr.data-sha256"

SERVICE_LABEL = "com.docker.swarm.service.name"
TASK_ID_LABEL = "com.docker.swarm.task.id"

_EVENT_KINDS = {
    "network": Kind.NETWORK,
    "config": Kind.CONFIG,
    "secret": Kind.SECRET,
    "service": Kind.WORKLOAD,
    "container": Kind.TASK,
}

_CONTAINER_STATES = {
    "start": "running",
    "die": "failed",
    "oom": "failed",
    "kill": "shutdown",
    "stop": "shutdown",
    "create": "starting",
}


def validate_object_name(full_name: str) -> None:
    # Swarm rejects longer names and DNS-unsafe characters.
    if not OBJECT_NAME_RE.match(full_name):
        raise InvalidObjectError(
            f"Invalid object name '{full_name}'. Use lowercase letters, numbers, '-', '_' and '.' (max 63 chars)."
        )


def platform_name(namespace: str, name: str) -> str:
    return f"{namespace}_{name}" if namespace else name


def split_name(full_name: str, labels: dict[str, str] | None = None) -> tuple[str, str]:
    ns = (labels or {}).get(NAMESPACE_LABEL)
    if ns and full_name.startswith(ns + "_"):
        return ns, full_name[len(ns) + 1 :]
    if "_" in full_name:
        ns, _, name = full_name.partition("_")
        return ns, name
    return "", full_name


@contextmanager
def platform_errors(what: str) -> Iterator[None]:
    """Map docker-py / requests failures onto the cluster error taxonomy."""
    try:
        yield
    except NotFound as e:
        raise ObjectNotFound(f"{what}: {e.explanation or e}") from e
    except APIError as e:
        msg = str(e.explanation or e)
        code = e.status_code or 0
        if "out of sequence" in msg:
            raise VersionConflict(f"{what}: {msg}") from e
        if code == 409:
            raise AlreadyExists(f"{what}: {msg}") from e
        if code == 400:
            raise InvalidObjectError(f"{what}: {msg}") from e
        if code >= 500 or code == 0:
            raise TransientClusterError(f"{what}: {msg}") from e
        raise ClusterError(f"{what}: HTTP {code}: {msg}") from e
    except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
        raise TransientClusterError(f"{what}: {type(e).__name__}: {e}") from e
    except DockerException as e:
        raise TransientClusterError(f"{what}: {e}") from e


def _client(timeout: int | None) -> docker.DockerClient:
    if settings.docker_base_url:
        return docker.DockerClient(base_url=settings.docker_base_url, timeout=timeout)
    return docker.from_env(timeout=timeout)


def _data_bytes(data: Any) -> bytes:
    if isinstance(data, (dict, list)):
        data = json.dumps(data, sort_keys=True)
    if isinstance(data, str):
        return data.encode()
    return bytes(data)


class DockerCluster(Cluster):
    def __init__(self, client: docker.DockerClient | None = None, watch_client: docker.DockerClient | None = None):
        self._c = client
        self._watch_c = watch_client

    @property
    def client(self) -> docker.DockerClient:
        if self._c is None:
            with platform_errors("connect"):
                self._c = _client(settings.api_timeout_s)
        return self._c

    @property
    def watch_client(self) -> docker.DockerClient:
        if self._watch_c is None:
            # The event stream is long-lived and may stay quiet for a long time.
            with platform_errors("connect"):
                self._watch_c = _client(None)
        return self._watch_c

    def ping(self) -> bool:
        try:
            with platform_errors("ping"):
                return bool(self.client.ping())
        except ClusterError:
            return False

    # --- reads ------------------------------------------------------------------

    def get(self, kind: Kind, namespace: str, name: str) -> LiveObject | None:
        full = platform_name(namespace, name)
        with platform_errors(f"get {kind.value}/{full}"):
            if kind == Kind.NETWORK:
                found = [n for n in self.client.networks.list(names=[full]) if n.name == full]
                return self._network(found[0]) if found else None
            if kind == Kind.CONFIG:
                found = [c for c in self.client.configs.list(filters={"name": full}) if c.name == full]
                return self._config(found[0]) if found else None
            if kind == Kind.SECRET:
                found = [s for s in self.client.secrets.list(filters={"name": full}) if s.name == full]
                return self._secret(found[0]) if found else None
            if kind == Kind.WORKLOAD:
                found = [s for s in self.client.services.list(filters={"name": full}) if s.name == full]
                return self._service(found[0]) if found else None
        raise InvalidObjectError(f"{kind.value} objects cannot be read by name")

    def list(
        self,
        kind: Kind,
        namespace: str | None = None,
        deployment_id: str | None = None,
        managed_only: bool = True,
    ) -> list[LiveObject]:
        labels: list[str] = []
        if managed_only or deployment_id:
            labels.append(f"{MANAGED_BY_LABEL}={MANAGED_BY_VALUE}")
        if deployment_id:
            labels.append(f"{DEPLOYMENT_LABEL}={deployment_id}")
        filters: dict[str, Any] = {"label": labels} if labels else {}
        with platform_errors(f"list {kind.value}"):
            if kind == Kind.NETWORK:
                objs = [self._network(n) for n in self.client.networks.list(filters=filters) if n.attrs.get("Scope") == "swarm"]
            elif kind == Kind.CONFIG:
                objs = [self._config(c) for c in self.client.configs.list(filters=filters)]
            elif kind == Kind.SECRET:
                objs = [self._secret(s) for s in self.client.secrets.list(filters=filters)]
            elif kind == Kind.WORKLOAD:
                objs = [self._service(s) for s in self.client.services.list(filters=filters)]
            else:
                objs = [self._task(t) for t in self.client.api.tasks(filters=filters)]
        if namespace is not None:
            objs = [o for o in objs if o.namespace == namespace]
        return objs

    # --- writes -----------------------------------------------------------------

    def create(self, kind: Kind, namespace: str, name: str, spec: dict[str, Any], labels: dict[str, str]) -> LiveObject:
        full = platform_name(namespace, name)
        validate_object_name(full)
        labels = dict(labels)
        labels.setdefault(NAMESPACE_LABEL, namespace)
        what = f"create {kind.value}/{full}"
        if kind == Kind.NETWORK:
            # Docker tolerates duplicate network names; we do not.
            if self.get(kind, namespace, name) is not None:
                raise AlreadyExists(f"{what}: name in use")
            d = handler_for(kind).defaults
            with platform_errors(what):
                net = self.client.networks.create(
                    full,
                    driver=spec.get("driver") or d["driver"],
                    attachable=bool(spec.get("attachable", d["attachable"])),
                    internal=bool(spec.get("internal", d["internal"])),
                    labels=labels,
                    scope="swarm",
                )
                net.reload()
            return self._network(net)
        if kind == Kind.CONFIG:
            with platform_errors(what):
                cfg = self.client.configs.create(name=full, data=_data_bytes(spec.get("data", "")), labels=labels)
                cfg.reload()
            return self._config(cfg)
        if kind == Kind.SECRET:
            labels[DATA_DIGEST_LABEL] = handler_for(kind).normalize("data", spec.get("data", ""))
            with platform_errors(what):
                sec = self.client.secrets.create(name=full, data=_data_bytes(spec.get("data", "")), labels=labels)
                sec.reload()
            return self._secret(sec)
        if kind == Kind.WORKLOAD:
            kwargs = self._service_kwargs(namespace, spec)
            owner = parse_markers(labels)
            with platform_errors(what):
                svc = self.client.services.create(
                    name=full,
                    labels=labels,
                    # Copied onto containers so tasks can be attributed to their deployment.
                    container_labels=markers_for(owner.deployment_id, owner.generation) if owner else {},
                    **kwargs,
                )
                svc.reload()
            return self._service(svc)
        raise InvalidObjectError(f"{kind.value} objects cannot be created")

    def update(
        self,
        kind: Kind,
        namespace: str,
        name: str,
        patch: dict[str, Any],
        labels: dict[str, str],
        uid: str | None = None,
    ) -> LiveObject:
        full = platform_name(namespace, name)
        what = f"update {kind.value}/{full}"
        if kind != Kind.WORKLOAD:
            current = self._require(kind, namespace, name, uid)
            if patch:
                raise ImmutableFieldError(f"{what}: {kind.value} objects cannot be changed in place", sorted(patch))
            return current
        with platform_errors(what):
            svc = self.client.services.get(full)
            if uid and svc.id != uid:
                raise ObjectNotFound(f"{what}: uid {uid} no longer holds this name")
            current = self._service(svc)
            current_labels = dict(current.labels)
            if "labels" in patch:
                current_labels = {k: v for k, v in current_labels.items() if k not in user_labels(current_labels)}
            current_labels.update(labels)
            # Resend every managed field so the update does not depend on server-side merging.
            merged = {k: v for k, v in current.spec.items() if v is not None}
            merged.update(patch)
            cs = svc.attrs["Spec"].get("TaskTemplate", {}).get("ContainerSpec", {})
            svc.update(
                labels=current_labels,
                container_labels=dict(cs.get("Labels") or {}),
                **self._service_kwargs(namespace, merged),
            )
            svc.reload()
        return self._service(svc)

    def delete(self, kind: Kind, namespace: str, name: str, uid: str | None = None) -> None:
        full = platform_name(namespace, name)
        with platform_errors(f"delete {kind.value}/{full}"):
            obj = self._raw(kind, full)
            if obj is None or (uid and obj.id != uid):
                raise ObjectNotFound(f"delete {kind.value}/{full}: not found")
            obj.remove()

    def _raw(self, kind: Kind, full: str) -> Any:
        if kind == Kind.NETWORK:
            found = [n for n in self.client.networks.list(names=[full]) if n.name == full]
        elif kind == Kind.CONFIG:
            found = [c for c in self.client.configs.list(filters={"name": full}) if c.name == full]
        elif kind == Kind.SECRET:
            found = [s for s in self.client.secrets.list(filters={"name": full}) if s.name == full]
        elif kind == Kind.WORKLOAD:
            found = [s for s in self.client.services.list(filters={"name": full}) if s.name == full]
        else:
            raise InvalidObjectError(f"{kind.value} objects cannot be deleted")
        return found[0] if found else None

    def _require(self, kind: Kind, namespace: str, name: str, uid: str | None) -> LiveObject:
        live = self.get(kind, namespace, name)
        if live is None or (uid and live.uid != uid):
            raise ObjectNotFound(f"{kind.value}/{platform_name(namespace, name)} not found")
        return live

    def _service_kwargs(self, namespace: str, spec: dict[str, Any]) -> dict[str, Any]:
        """docker-py ``services.create``/``Service.update`` kwargs for the fields present in ``spec``."""
        h = handler_for(Kind.WORKLOAD)
        kwargs: dict[str, Any] = {}
        if "image" in spec:
            kwargs["image"] = spec["image"]
        replicas = spec.get("replicas")
        kwargs["mode"] = ServiceMode("replicated", replicas=int(h.defaults["replicas"] if replicas is None else replicas))
        if "env" in spec:
            env = h.normalize("env", spec["env"]) or {}
            kwargs["env"] = [f"{k}={v}" for k, v in env.items()]
        if "command" in spec:
            kwargs["command"] = h.normalize("command", spec["command"])
        if "ports" in spec:
            ports = h.normalize("ports", spec["ports"]) or []
            kwargs["endpoint_spec"] = EndpointSpec(
                ports={p["published"]: (p["target"], p["protocol"]) for p in ports}
            )
        if "networks" in spec:
            kwargs["networks"] = [platform_name(namespace, n) for n in h.normalize("networks", spec["networks"]) or []]
        if "configs" in spec:
            refs = []
            for m in h.normalize("configs", spec["configs"]) or []:
                cfg = self._require(Kind.CONFIG, namespace, m["name"], None)
                refs.append(ConfigReference(cfg.uid, platform_name(namespace, m["name"]), filename=m["target"]))
            kwargs["configs"] = refs
        if "secrets" in spec:
            refs = []
            for m in h.normalize("secrets", spec["secrets"]) or []:
                sec = self._require(Kind.SECRET, namespace, m["name"], None)
                refs.append(SecretReference(sec.uid, platform_name(namespace, m["name"]), filename=m["target"]))
            kwargs["secrets"] = refs
        return kwargs

    # --- translation --------------------------------------------------------------

    def _network(self, net: Any) -> LiveObject:
        a = net.attrs
        labels = dict(a.get("Labels") or {})
        ns, name = split_name(a.get("Name") or net.name, labels)
        return LiveObject(
            kind=Kind.NETWORK,
            namespace=ns,
            name=name,
            uid=a.get("Id") or net.id,
            resource_version=0,
            labels=labels,
            spec={"driver": a.get("Driver"), "attachable": bool(a.get("Attachable")), "internal": bool(a.get("Internal"))},
        )

    def _config(self, cfg: Any) -> LiveObject:
        a = cfg.attrs
        spec = a.get("Spec") or {}
        labels = dict(spec.get("Labels") or {})
        ns, name = split_name(spec.get("Name", ""), labels)
        raw = spec.get("Data")
        data = base64.b64decode(raw).decode("utf-8", errors="replace") if raw else None
        return LiveObject(
            kind=Kind.CONFIG,
            namespace=ns,
            name=name,
            uid=a.get("ID") or cfg.id,
            resource_version=int((a.get("Version") or {}).get("Index", 0)),
            labels=labels,
            spec={"data": data},
        )

    def _secret(self, sec: Any) -> LiveObject:
        a = sec.attrs
        spec = a.get("Spec") or {}
        labels = dict(spec.get("Labels") or {})
        ns, name = split_name(spec.get("Name", ""), labels)
        return LiveObject(
            kind=Kind.SECRET,
            namespace=ns,
            name=name,
            uid=a.get("ID") or sec.id,
            resource_version=int((a.get("Version") or {}).get("Index", 0)),
            labels=labels,
            spec={"data_sha256": labels.get(DATA_DIGEST_LABEL)},
        )

    def _network_name(self, network_id: str) -> str:
        try:
            return self.client.networks.get(network_id).name
        except NotFound:
            return network_id

    def _service(self, svc: Any) -> LiveObject:
        a = svc.attrs
        spec = a.get("Spec") or {}
        labels = dict(spec.get("Labels") or {})
        ns, name = split_name(spec.get("Name", ""), labels)
        task = spec.get("TaskTemplate") or {}
        cs = task.get("ContainerSpec") or {}
        prefix = f"{ns}_" if ns else ""

        def local(n: str) -> str:
            return n[len(prefix) :] if prefix and n.startswith(prefix) else n

        env = dict(item.split("=", 1) for item in cs.get("Env") or [] if "=" in item)
        ports = [
            {"published": p.get("PublishedPort"), "target": p.get("TargetPort"), "protocol": p.get("Protocol", "tcp")}
            for p in (spec.get("EndpointSpec") or {}).get("Ports") or []
        ]
        networks = [local(self._network_name(n["Target"])) for n in task.get("Networks") or spec.get("Networks") or []]
        configs = [
            {"name": local(c.get("ConfigName", "")), "target": (c.get("File") or {}).get("Name")}
            for c in cs.get("Configs") or []
        ]
        secrets = [
            {"name": local(s.get("SecretName", "")), "target": (s.get("File") or {}).get("Name")}
            for s in cs.get("Secrets") or []
        ]
        replicas = ((spec.get("Mode") or {}).get("Replicated") or {}).get("Replicas")
        return LiveObject(
            kind=Kind.WORKLOAD,
            namespace=ns,
            name=name,
            uid=a.get("ID") or svc.id,
            resource_version=int((a.get("Version") or {}).get("Index", 0)),
            labels=labels,
            spec={
                "image": cs.get("Image"),
                "replicas": replicas,
                "env": env,
                "command": cs.get("Command"),
                "ports": ports,
                "networks": networks,
                "configs": configs,
                "secrets": secrets,
            },
            status=self._service_status(svc, replicas),
        )

    def _service_status(self, svc: Any, replicas: int | None) -> dict[str, Any]:
        try:
            tasks = svc.tasks()
        except (APIError, requests.exceptions.RequestException) as e:
            logger.warning("Could not list tasks", extra={"service": svc.name, "error": str(e)})
            tasks = []
        running = sum(
            1
            for t in tasks
            if (t.get("Status") or {}).get("State") == "running" and t.get("DesiredState") == "running"
        )
        failed = sum(1 for t in tasks if (t.get("Status") or {}).get("State") in {"failed", "rejected"})
        return {
            "desired_replicas": int(replicas or 0),
            "running_replicas": running,
            "failed_tasks": failed,
            "update_state": (svc.attrs.get("UpdateStatus") or {}).get("State"),
        }

    def _task(self, t: dict[str, Any]) -> LiveObject:
        cs = ((t.get("Spec") or {}).get("ContainerSpec") or {})
        labels = dict(cs.get("Labels") or {})
        service_name = (t.get("ServiceID") and self._service_name(t["ServiceID"])) or ""
        ns, workload = split_name(service_name, labels)
        status = t.get("Status") or {}
        return LiveObject(
            kind=Kind.TASK,
            namespace=ns,
            name=t.get("ID", ""),
            uid=t.get("ID", ""),
            resource_version=int((t.get("Version") or {}).get("Index", 0)),
            labels=labels,
            spec={"workload": workload},
            status={"state": status.get("State"), "message": status.get("Err") or status.get("Message")},
        )

    def _service_name(self, service_id: str) -> str:
        try:
            return self.client.services.get(service_id).name
        except NotFound:
            return ""

    # --- watch ------------------------------------------------------------------

    def watch(self, since: float | None = None) -> Iterator[Notification]:
        filters = {"type": list(_EVENT_KINDS)}
        with platform_errors("watch"):
            stream = self.watch_client.events(since=int(since) if since else None, decode=True, filters=filters)
        try:
            for ev in stream:
                n = self._notification(ev)
                if n is not None:
                    yield n
        except (requests.exceptions.RequestException, DockerException) as e:
            raise TransientClusterError(f"watch stream: {type(e).__name__}: {e}") from e
        finally:
            close = getattr(stream, "close", None)
            if close:
                close()

    def _notification(self, ev: dict[str, Any]) -> Notification | None:
        kind = _EVENT_KINDS.get(ev.get("Type", ""))
        if kind is None:
            return None
        action = str(ev.get("Action", ""))
        actor = ev.get("Actor") or {}
        attrs = dict(actor.get("Attributes") or {})
        ts = ev.get("timeNano")
        ts = ts / 1e9 if ts else ev.get("time")

        if kind == Kind.TASK:
            service = attrs.get(SERVICE_LABEL)
            state = _CONTAINER_STATES.get(action.split(":", 1)[0])
            if not service or state is None:
                return None
            ns, workload = split_name(service, attrs)
            task_id = attrs.get(TASK_ID_LABEL, actor.get("ID", ""))
            obj = LiveObject(
                kind=Kind.TASK,
                namespace=ns,
                name=task_id,
                uid=task_id,
                labels=attrs,
                spec={"workload": workload},
                status={"state": state},
            )
            return Notification(WatchEventType.UPDATE, obj, ts)

        full = attrs.get("name", "")
        if action in {"remove", "destroy"}:
            ns, name = split_name(full)
            obj = LiveObject(kind=kind, namespace=ns, name=name, uid=actor.get("ID", ""))
            return Notification(WatchEventType.DELETE, obj, ts)
        if action not in {"create", "update"}:
            return None
        ns, name = split_name(full)
        try:
            live = self.get(kind, ns, name)
        except ObjectNotFound:
            live = None
        if live is None or live.uid != actor.get("ID", live.uid):
            # Gone again (or replaced) before we could read it; a later event covers it.
            return None
        event_type = WatchEventType.ADD if action == "create" else WatchEventType.UPDATE
        return Notification(event_type, live, ts)
