"""Contract between GSR and the orchestration platform.

Everything above this module speaks in normalized ``LiveObject`` values; the
concrete client (see ``docker_ops``) is responsible for translating to and from
the platform's own object shapes and for mapping its errors onto the taxonomy
below.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator

from .kinds import Kind
from .ownership import Ownership, parse_markers


class ClusterError(Exception):
    """Base class for platform failures."""


class TransientClusterError(ClusterError):
    """Unreachable API, deadline exceeded, 5xx. Safe to retry later."""


class AlreadyExists(ClusterError):
    pass


class ObjectNotFound(ClusterError):
    pass


class VersionConflict(TransientClusterError):
    """The object changed between our read and our write."""


class ImmutableFieldError(ClusterError):
    """The requested change cannot be applied in place."""

    def __init__(self, message: str, fields: list[str] | None = None):
        super().__init__(message)
        self.fields = list(fields or [])


class InvalidObjectError(ClusterError):
    """The platform rejected the object itself (bad image ref, bad port...)."""


class WatchEventType(str, Enum):
    ADD = "Add"
    UPDATE = "Update"
    DELETE = "Delete"


@dataclass(frozen=True)
class ObjectRef:
    kind: Kind
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.namespace}/{self.name}"


@dataclass(frozen=True)
class LiveObject:
    kind: Kind
    namespace: str
    name: str
    uid: str
    resource_version: int = 0
    labels: dict[str, str] = field(default_factory=dict)
    spec: dict[str, Any] = field(default_factory=dict)
    status: dict[str, Any] = field(default_factory=dict)

    @property
    def ref(self) -> ObjectRef:
        return ObjectRef(self.kind, self.namespace, self.name)

    @property
    def ownership(self) -> Ownership | None:
        return parse_markers(self.labels)


@dataclass(frozen=True)
class Notification:
    event_type: WatchEventType
    object: LiveObject
    # Platform timestamp (epoch seconds), used to resume a watch.
    time: float | None = None


class Cluster(ABC):
    """Client for one cluster connection."""

    @abstractmethod
    def get(self, kind: Kind, namespace: str, name: str) -> LiveObject | None:
        ...

    @abstractmethod
    def list(
        self,
        kind: Kind,
        namespace: str | None = None,
        deployment_id: str | None = None,
        managed_only: bool = True,
    ) -> list[LiveObject]:
        ...

    @abstractmethod
    def create(self, kind: Kind, namespace: str, name: str, spec: dict[str, Any], labels: dict[str, str]) -> LiveObject:
        """Create an object with its ownership labels in a single call.

        Raises AlreadyExists when (kind, namespace, name) is taken.
        """

    @abstractmethod
    def update(
        self,
        kind: Kind,
        namespace: str,
        name: str,
        patch: dict[str, Any],
        labels: dict[str, str],
        uid: str | None = None,
    ) -> LiveObject:
        """Merge ``patch`` and ``labels`` into the live object.

        Only the given fields are written; everything else stays as the
        platform or other actors left it. Re-issuing the same patch is a
        no-op. When ``uid`` is given and the live object has a different UID,
        ObjectNotFound is raised.
        """

    @abstractmethod
    def delete(self, kind: Kind, namespace: str, name: str, uid: str | None = None) -> None:
        """Delete the object. Raises ObjectNotFound if it is absent (or has another UID)."""

    @abstractmethod
    def watch(self, since: float | None = None) -> Iterator[Notification]:
        """Lazy, unbounded stream of notifications for managed kinds.

        A dropped connection surfaces as TransientClusterError; callers reopen
        the stream and resync.
        """
