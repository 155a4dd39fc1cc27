from __future__ import annotations

import json
import logging
import os
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Iterator

from .settings import settings

logger = logging.getLogger(__name__)

_BUSY_TIMEOUT_S = 10.0


class StoreError(Exception):
    """Base class for state store failures."""


class StoreUnavailable(StoreError):
    """The database could not be reached or is locked. Callers fail closed."""


class ConflictError(StoreError):
    """Optimistic concurrency collision, or a duplicate identity."""


class LifecycleError(StoreError):
    """Write rejected because of the deployment's lifecycle state."""


class NotFound(StoreError):
    pass


class LifecycleState(str, Enum):
    ACTIVE = "Active"
    PAUSED = "Paused"
    DELETED = "Deleted"


class StatusSummary(str, Enum):
    HEALTHY = "Healthy"
    PROGRESSING = "Progressing"
    DEGRADED = "Degraded"
    ERROR = "Error"


class EventSource(str, Enum):
    USER = "user"
    RECONCILER = "reconciler"
    PLATFORM_WATCH = "platform-watch"
    SYSTEM = "system"


class EventType(str, Enum):
    DEPLOYMENT_CREATED = "DeploymentCreated"
    DESIRED_SPEC_UPDATED = "DesiredSpecUpdated"
    LIFECYCLE_CHANGED = "LifecycleChanged"
    RECONCILE_TRIGGERED = "ReconcileTriggered"
    RECONCILE_STARTED = "ReconcileStarted"
    RECONCILE_RESTARTED = "ReconcileRestarted"
    RECONCILE_SUCCEEDED = "ReconcileSucceeded"
    RECONCILE_FAILED = "ReconcileFailed"
    RECONCILE_DEFERRED = "ReconcileDeferred"
    RECONCILE_SKIPPED = "ReconcileSkipped"
    RESOURCE_CREATED = "ResourceCreated"
    RESOURCE_UPDATED = "ResourceUpdated"
    RESOURCE_DELETED = "ResourceDeleted"
    RESOURCE_OBSERVED = "ResourceObserved"
    RESOURCE_CONFLICT = "ResourceConflict"
    RESOURCE_DELETED_EXTERNALLY = "ResourceDeletedExternally"
    UNMANAGED_OBJECT_DETECTED = "UnmanagedObjectDetected"
    READINESS_CHANGED = "ReadinessChanged"
    DRIFT_DETECTED = "DriftDetected"
    ADOPTION_PENDING = "AdoptionPending"
    DRIFT_ADOPTED = "DriftAdopted"
    ADOPTION_REJECTED = "AdoptionRejected"
    STATUS_CHANGED = "StatusChanged"
    DEPLOYMENT_PURGED = "DeploymentPurged"


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def _loads(raw: str | None, default: Any = None) -> Any:
    if raw is None or raw == "":
        return default
    return json.loads(raw)


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one for a missing
    bind-mounted file), the DB file is placed inside it.
    """
    p = os.path.abspath(settings.db_path)
    if os.path.isdir(p):
        p = os.path.join(p, "gsr.db")
    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)
    return p


@contextmanager
def connect(immediate: bool = False) -> Iterator[sqlite3.Connection]:
    """One transaction on a short-lived connection.

    ``immediate`` takes the write lock up front; use it for read-modify-write
    sequences so two writers cannot both read the same generation.
    """
    try:
        conn = sqlite3.connect(
            _resolve_db_path(), timeout=_BUSY_TIMEOUT_S, check_same_thread=False, isolation_level=None
        )
    except (sqlite3.Error, OSError) as e:
        raise StoreUnavailable(f"cannot open state store: {e}") from e
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
        yield conn
        conn.execute("COMMIT")
    except sqlite3.IntegrityError:
        _rollback(conn)
        raise
    except sqlite3.DatabaseError as e:
        # Locked, read-only, I/O failure or a file that is not a database.
        _rollback(conn)
        raise StoreUnavailable(str(e)) from e
    except BaseException:
        _rollback(conn)
        raise
    finally:
        conn.close()


def _rollback(conn: sqlite3.Connection) -> None:
    try:
        conn.execute("ROLLBACK")
    except sqlite3.Error:
        pass


def init_db() -> None:
    """Create tables if they do not exist."""
    try:
        conn = sqlite3.connect(_resolve_db_path(), timeout=_BUSY_TIMEOUT_S)
    except (sqlite3.Error, OSError) as e:
        raise StoreUnavailable(f"cannot open state store: {e}") from e
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS templates (
              name TEXT NOT NULL,
              version TEXT NOT NULL,
              allowed_mutations TEXT NOT NULL DEFAULT '[]',
              created_at TEXT NOT NULL,
              PRIMARY KEY (name, version)
            );

            CREATE TABLE IF NOT EXISTS deployments (
              id TEXT PRIMARY KEY,
              template_name TEXT NOT NULL,
              template_version TEXT NOT NULL,
              namespace TEXT NOT NULL,
              desired_spec TEXT NOT NULL,
              generation INTEGER NOT NULL,
              last_applied_generation INTEGER NOT NULL DEFAULT 0,
              desired_lifecycle_state TEXT NOT NULL, -- Active|Paused|Deleted
              status_summary TEXT NOT NULL,          -- Healthy|Progressing|Degraded|Error
              status_detail TEXT NOT NULL DEFAULT '',
              drift_policy TEXT NOT NULL DEFAULT 'enforce',
              policy_overrides TEXT NOT NULL DEFAULT '{}',
              ignore_fields TEXT NOT NULL DEFAULT '[]',
              auto_adopt INTEGER NOT NULL DEFAULT 0,
              recreate_on_immutable INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL,
              archived_at TEXT,
              CHECK (last_applied_generation <= generation)
            );

            CREATE TABLE IF NOT EXISTS deployment_generations (
              deployment_id TEXT NOT NULL,
              generation INTEGER NOT NULL,
              desired_spec TEXT NOT NULL,
              lifecycle_state TEXT NOT NULL,
              source TEXT NOT NULL,
              created_at TEXT NOT NULL,
              PRIMARY KEY (deployment_id, generation),
              FOREIGN KEY(deployment_id) REFERENCES deployments(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS managed_resources (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              deployment_id TEXT NOT NULL,
              kind TEXT NOT NULL,
              namespace TEXT NOT NULL,
              name TEXT NOT NULL,
              uid TEXT NOT NULL,
              resource_version INTEGER NOT NULL DEFAULT 0,
              generation_marker INTEGER NOT NULL DEFAULT 0,
              last_seen_at TEXT NOT NULL,
              managed INTEGER NOT NULL DEFAULT 1,
              last_drift TEXT,
              last_ready INTEGER,
              UNIQUE(kind, namespace, name),
              FOREIGN KEY(deployment_id) REFERENCES deployments(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS observed_snapshots (
              deployment_id TEXT PRIMARY KEY,
              snapshot TEXT NOT NULL,
              observed_generation INTEGER NOT NULL DEFAULT 0,
              updated_at TEXT NOT NULL,
              FOREIGN KEY(deployment_id) REFERENCES deployments(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              deployment_id TEXT,
              source TEXT NOT NULL,
              type TEXT NOT NULL,
              payload TEXT NOT NULL DEFAULT '{}',
              ts TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS reconcile_jobs (
              deployment_id TEXT PRIMARY KEY,
              job_type TEXT NOT NULL DEFAULT 'reconcile',
              payload TEXT NOT NULL DEFAULT '{}',
              state TEXT NOT NULL,                   -- queued|running|dead
              attempts INTEGER NOT NULL DEFAULT 0,
              next_run_at REAL NOT NULL,
              lock_holder TEXT,
              locked_at REAL,
              requeue INTEGER NOT NULL DEFAULT 0,
              last_error TEXT,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL,
              FOREIGN KEY(deployment_id) REFERENCES deployments(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS adoption_approvals (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              deployment_id TEXT NOT NULL,
              kind TEXT NOT NULL,
              name TEXT NOT NULL,
              field TEXT NOT NULL,
              observed_value TEXT,
              state TEXT NOT NULL,                   -- pending|approved|rejected|applied
              created_at TEXT NOT NULL,
              decided_at TEXT,
              FOREIGN KEY(deployment_id) REFERENCES deployments(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_generations_deployment ON deployment_generations(deployment_id);
            CREATE INDEX IF NOT EXISTS idx_resources_deployment ON managed_resources(deployment_id);
            CREATE INDEX IF NOT EXISTS idx_resources_uid ON managed_resources(uid);
            CREATE INDEX IF NOT EXISTS idx_events_deployment ON events(deployment_id, id);
            CREATE INDEX IF NOT EXISTS idx_jobs_due ON reconcile_jobs(state, next_run_at);
            CREATE INDEX IF NOT EXISTS idx_approvals_deployment ON adoption_approvals(deployment_id);
            """
        )
        conn.commit()
    except (sqlite3.Error, OSError) as e:
        raise StoreUnavailable(f"cannot initialize state store: {e}") from e
    finally:
        conn.close()


# --- rows ---------------------------------------------------------------


@dataclass(frozen=True)
class TemplateRow:
    name: str
    version: str
    allowed_mutations: list[str]
    created_at: str


@dataclass(frozen=True)
class DeploymentRow:
    id: str
    template_name: str
    template_version: str
    namespace: str
    desired_spec: dict[str, Any]
    generation: int
    last_applied_generation: int
    desired_lifecycle_state: LifecycleState
    status_summary: StatusSummary
    status_detail: str
    drift_policy: str
    policy_overrides: dict[str, str]
    ignore_fields: list[str]
    auto_adopt: bool
    recreate_on_immutable: bool
    created_at: str
    updated_at: str
    archived_at: str | None

    @property
    def converged(self) -> bool:
        return (
            self.last_applied_generation == self.generation
            and self.status_summary == StatusSummary.HEALTHY
        )


@dataclass(frozen=True)
class ManagedResourceRow:
    id: int
    deployment_id: str
    kind: str
    namespace: str
    name: str
    uid: str
    resource_version: int
    generation_marker: int
    last_seen_at: str
    managed: bool
    last_drift: list[str] | None
    last_ready: bool | None


@dataclass(frozen=True)
class SnapshotRow:
    deployment_id: str
    snapshot: dict[str, Any]
    observed_generation: int
    updated_at: str


@dataclass(frozen=True)
class EventRow:
    id: int
    deployment_id: str | None
    source: str
    type: str
    payload: dict[str, Any]
    ts: str


@dataclass(frozen=True)
class JobRow:
    deployment_id: str
    job_type: str
    payload: dict[str, Any]
    state: str
    attempts: int
    next_run_at: float
    lock_holder: str | None
    locked_at: float | None
    requeue: bool
    last_error: str | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class ApprovalRow:
    id: int
    deployment_id: str
    kind: str
    name: str
    field: str
    observed_value: Any
    state: str
    created_at: str
    decided_at: str | None


def _deployment(r: sqlite3.Row) -> DeploymentRow:
    d = dict(r)
    d["desired_spec"] = _loads(d["desired_spec"], {})
    d["policy_overrides"] = _loads(d["policy_overrides"], {})
    d["ignore_fields"] = _loads(d["ignore_fields"], [])
    d["desired_lifecycle_state"] = LifecycleState(d["desired_lifecycle_state"])
    d["status_summary"] = StatusSummary(d["status_summary"])
    d["auto_adopt"] = bool(d["auto_adopt"])
    d["recreate_on_immutable"] = bool(d["recreate_on_immutable"])
    return DeploymentRow(**d)


def _resource(r: sqlite3.Row) -> ManagedResourceRow:
    d = dict(r)
    d["managed"] = bool(d["managed"])
    d["last_drift"] = _loads(d["last_drift"])
    d["last_ready"] = None if d["last_ready"] is None else bool(d["last_ready"])
    return ManagedResourceRow(**d)


def _job(r: sqlite3.Row) -> JobRow:
    d = dict(r)
    d["payload"] = _loads(d["payload"], {})
    d["requeue"] = bool(d["requeue"])
    return JobRow(**d)


def _approval(r: sqlite3.Row) -> ApprovalRow:
    d = dict(r)
    d["observed_value"] = _loads(d["observed_value"])
    return ApprovalRow(**d)


def _event(r: sqlite3.Row) -> EventRow:
    d = dict(r)
    d["payload"] = _loads(d["payload"], {})
    return EventRow(**d)


def _rows(rows: Iterable[sqlite3.Row], conv: Callable[[sqlite3.Row], Any]) -> list[Any]:
    return [conv(r) for r in rows]


# --- events -------------------------------------------------------------


def log_event(
    deployment_id: str | None,
    source: EventSource | str,
    type_: EventType | str,
    payload: dict[str, Any] | None = None,
    conn: sqlite3.Connection | None = None,
) -> int:
    """Append an audit event. Pass ``conn`` to make it part of a larger transaction."""
    src = EventSource(source).value
    typ = type_.value if isinstance(type_, EventType) else str(type_)
    params = (deployment_id, src, typ, _dumps(payload or {}), utc_now())
    sql = "INSERT INTO events (deployment_id, source, type, payload, ts) VALUES (?, ?, ?, ?, ?)"
    if conn is not None:
        return int(conn.execute(sql, params).lastrowid)
    with connect() as c:
        return int(c.execute(sql, params).lastrowid)


def list_events(deployment_id: str, after_id: int = 0, limit: int = 100) -> list[EventRow]:
    """Events of one deployment in time order, paginated by id cursor."""
    limit = max(1, min(1000, int(limit)))
    with connect() as conn:
        rows = conn.execute(
            "SELECT * FROM events WHERE deployment_id=? AND id>? ORDER BY id LIMIT ?",
            (deployment_id, int(after_id), limit),
        ).fetchall()
        return _rows(rows, _event)


def latest_events(limit: int = 100) -> list[EventRow]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return _rows(rows, _event)


# --- templates ----------------------------------------------------------


def register_template(name: str, version: str, allowed_mutations: list[str]) -> TemplateRow:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO templates (name, version, allowed_mutations, created_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(name, version) DO UPDATE SET allowed_mutations=excluded.allowed_mutations
            """,
            (name, version, _dumps(sorted(set(allowed_mutations))), utc_now()),
        )
        row = conn.execute("SELECT * FROM templates WHERE name=? AND version=?", (name, version)).fetchone()
    return TemplateRow(
        name=row["name"],
        version=row["version"],
        allowed_mutations=_loads(row["allowed_mutations"], []),
        created_at=row["created_at"],
    )


def get_template(name: str, version: str) -> TemplateRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM templates WHERE name=? AND version=?", (name, version)).fetchone()
    if not row:
        return None
    return TemplateRow(
        name=row["name"],
        version=row["version"],
        allowed_mutations=_loads(row["allowed_mutations"], []),
        created_at=row["created_at"],
    )


# --- deployments --------------------------------------------------------


def _get_deployment(conn: sqlite3.Connection, deployment_id: str) -> DeploymentRow | None:
    row = conn.execute("SELECT * FROM deployments WHERE id=?", (deployment_id,)).fetchone()
    return _deployment(row) if row else None


def _record_generation(
    conn: sqlite3.Connection,
    deployment_id: str,
    generation: int,
    desired_spec: dict[str, Any],
    lifecycle: LifecycleState,
    source: EventSource | str,
) -> None:
    conn.execute(
        """
        INSERT INTO deployment_generations (deployment_id, generation, desired_spec, lifecycle_state, source, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (deployment_id, generation, _dumps(desired_spec), lifecycle.value, EventSource(source).value, utc_now()),
    )


def create_deployment(
    template_name: str,
    template_version: str,
    namespace: str,
    desired_spec: dict[str, Any],
    deployment_id: str | None = None,
    drift_policy: str = "enforce",
    policy_overrides: dict[str, str] | None = None,
    ignore_fields: list[str] | None = None,
    auto_adopt: bool = False,
    recreate_on_immutable: bool = False,
    source: EventSource | str = EventSource.USER,
) -> DeploymentRow:
    """Insert a deployment at generation 1 and enqueue its first reconcile."""
    deployment_id = deployment_id or uuid.uuid4().hex
    now = utc_now()
    with connect(immediate=True) as conn:
        try:
            conn.execute(
                """
                INSERT INTO deployments (
                  id, template_name, template_version, namespace, desired_spec, generation,
                  last_applied_generation, desired_lifecycle_state, status_summary, status_detail,
                  drift_policy, policy_overrides, ignore_fields, auto_adopt, recreate_on_immutable,
                  created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, 1, 0, ?, ?, '', ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    deployment_id,
                    template_name,
                    template_version,
                    namespace,
                    _dumps(desired_spec),
                    LifecycleState.ACTIVE.value,
                    StatusSummary.PROGRESSING.value,
                    drift_policy,
                    _dumps(policy_overrides or {}),
                    _dumps(ignore_fields or []),
                    int(auto_adopt),
                    int(recreate_on_immutable),
                    now,
                    now,
                ),
            )
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"deployment {deployment_id} already exists") from e
        _record_generation(conn, deployment_id, 1, desired_spec, LifecycleState.ACTIVE, source)
        log_event(deployment_id, source, EventType.DEPLOYMENT_CREATED, {"generation": 1}, conn=conn)
        enqueue_job(deployment_id, reason="created", conn=conn)
        row = _get_deployment(conn, deployment_id)
    assert row is not None
    return row


def get_deployment(deployment_id: str) -> DeploymentRow | None:
    with connect() as conn:
        return _get_deployment(conn, deployment_id)


def list_deployments(include_archived: bool = False) -> list[DeploymentRow]:
    with connect() as conn:
        if include_archived:
            rows = conn.execute("SELECT * FROM deployments ORDER BY created_at, id").fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM deployments WHERE archived_at IS NULL ORDER BY created_at, id"
            ).fetchall()
        return _rows(rows, _deployment)


def _bump_generation(
    conn: sqlite3.Connection,
    current: DeploymentRow,
    desired_spec: dict[str, Any],
    lifecycle: LifecycleState,
    source: EventSource | str,
    reason: str,
) -> int:
    """Write a new generation guarded by the generation we read. Returns it."""
    new_generation = current.generation + 1
    cur = conn.execute(
        """
        UPDATE deployments
        SET desired_spec=?, desired_lifecycle_state=?, generation=?, updated_at=?
        WHERE id=? AND generation=?
        """,
        (_dumps(desired_spec), lifecycle.value, new_generation, utc_now(), current.id, current.generation),
    )
    if cur.rowcount != 1:
        raise ConflictError(f"deployment {current.id} changed concurrently")
    _record_generation(conn, current.id, new_generation, desired_spec, lifecycle, source)
    enqueue_job(current.id, reason=reason, conn=conn)
    return new_generation


def _load_for_write(
    conn: sqlite3.Connection, deployment_id: str, expected_generation: int | None
) -> DeploymentRow:
    current = _get_deployment(conn, deployment_id)
    if current is None or current.archived_at:
        raise NotFound(f"deployment {deployment_id} not found")
    if expected_generation is not None and current.generation != expected_generation:
        raise ConflictError(
            f"deployment {deployment_id} is at generation {current.generation}, expected {expected_generation}"
        )
    return current


def write_desired_spec(
    deployment_id: str,
    desired_spec: dict[str, Any],
    expected_generation: int | None = None,
    source: EventSource | str = EventSource.USER,
) -> DeploymentRow:
    """Accept a new desired spec: one transaction bumps generation and enqueues a reconcile."""
    with connect(immediate=True) as conn:
        current = _load_for_write(conn, deployment_id, expected_generation)
        if current.desired_lifecycle_state == LifecycleState.DELETED:
            raise LifecycleError(f"deployment {deployment_id} is being deleted")
        generation = _bump_generation(
            conn, current, desired_spec, current.desired_lifecycle_state, source, "desired-spec"
        )
        log_event(deployment_id, source, EventType.DESIRED_SPEC_UPDATED, {"generation": generation}, conn=conn)
        row = _get_deployment(conn, deployment_id)
    assert row is not None
    return row


def set_lifecycle(
    deployment_id: str,
    state: LifecycleState,
    expected_generation: int | None = None,
    source: EventSource | str = EventSource.USER,
) -> DeploymentRow:
    """Change desired lifecycle. Counts as a desired-state change (new generation).

    Deleted is terminal: setting it again is a no-op, leaving it is rejected.
    """
    state = LifecycleState(state)
    with connect(immediate=True) as conn:
        current = _load_for_write(conn, deployment_id, expected_generation)
        if current.desired_lifecycle_state == state:
            return current
        if current.desired_lifecycle_state == LifecycleState.DELETED:
            raise LifecycleError(f"deployment {deployment_id} is being deleted")
        generation = _bump_generation(conn, current, current.desired_spec, state, source, f"lifecycle-{state.value}")
        log_event(
            deployment_id,
            source,
            EventType.LIFECYCLE_CHANGED,
            {"generation": generation, "from": current.desired_lifecycle_state.value, "to": state.value},
            conn=conn,
        )
        row = _get_deployment(conn, deployment_id)
    assert row is not None
    return row


def get_generation_spec(deployment_id: str, generation: int) -> dict[str, Any] | None:
    with connect() as conn:
        row = conn.execute(
            "SELECT desired_spec FROM deployment_generations WHERE deployment_id=? AND generation=?",
            (deployment_id, generation),
        ).fetchone()
    return _loads(row["desired_spec"], {}) if row else None


def mark_applied(deployment_id: str, generation: int, status: StatusSummary, detail: str = "") -> bool:
    """Record a successful converge of ``generation``.

    Never moves last_applied_generation backwards or past generation.
    """
    with connect(immediate=True) as conn:
        cur = conn.execute(
            """
            UPDATE deployments
            SET last_applied_generation=?, status_summary=?, status_detail=?, updated_at=?
            WHERE id=? AND ? <= generation AND last_applied_generation <= ?
            """,
            (generation, StatusSummary(status).value, detail, utc_now(), deployment_id, generation, generation),
        )
        return cur.rowcount == 1


def set_status(deployment_id: str, status: StatusSummary, detail: str = "") -> StatusSummary | None:
    """Set the status summary. Returns the previous value (None if unknown deployment)."""
    with connect(immediate=True) as conn:
        row = conn.execute("SELECT status_summary FROM deployments WHERE id=?", (deployment_id,)).fetchone()
        if not row:
            return None
        conn.execute(
            "UPDATE deployments SET status_summary=?, status_detail=?, updated_at=? WHERE id=?",
            (StatusSummary(status).value, detail, utc_now(), deployment_id),
        )
        return StatusSummary(row["status_summary"])


def archive_deployment(deployment_id: str) -> None:
    """Retire a torn-down deployment. Events and generation history are kept."""
    with connect(immediate=True) as conn:
        conn.execute(
            "UPDATE deployments SET archived_at=?, updated_at=? WHERE id=? AND archived_at IS NULL",
            (utc_now(), utc_now(), deployment_id),
        )
        conn.execute("DELETE FROM reconcile_jobs WHERE deployment_id=?", (deployment_id,))
        conn.execute("DELETE FROM observed_snapshots WHERE deployment_id=?", (deployment_id,))
        log_event(deployment_id, EventSource.RECONCILER, EventType.DEPLOYMENT_PURGED, {}, conn=conn)


# --- managed resources --------------------------------------------------


def upsert_managed_resource(
    deployment_id: str,
    kind: str,
    namespace: str,
    name: str,
    uid: str,
    resource_version: int = 0,
    generation_marker: int = 0,
) -> tuple[ManagedResourceRow, str | None]:
    """Insert or refresh the mapping row for one live object, keyed by identity.

    Returns (row, previous_uid). previous_uid differs from uid when the name
    was reused by a new object.
    """
    with connect(immediate=True) as conn:
        prev = conn.execute(
            "SELECT uid FROM managed_resources WHERE kind=? AND namespace=? AND name=?",
            (kind, namespace, name),
        ).fetchone()
        conn.execute(
            """
            INSERT INTO managed_resources
              (deployment_id, kind, namespace, name, uid, resource_version, generation_marker, last_seen_at, managed)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1)
            ON CONFLICT(kind, namespace, name) DO UPDATE SET
              deployment_id=excluded.deployment_id,
              uid=excluded.uid,
              resource_version=excluded.resource_version,
              generation_marker=excluded.generation_marker,
              last_seen_at=excluded.last_seen_at,
              managed=1,
              last_drift=CASE WHEN managed_resources.uid = excluded.uid THEN managed_resources.last_drift END,
              last_ready=CASE WHEN managed_resources.uid = excluded.uid THEN managed_resources.last_ready END
            """,
            (deployment_id, kind, namespace, name, uid, int(resource_version), int(generation_marker), utc_now()),
        )
        row = conn.execute(
            "SELECT * FROM managed_resources WHERE kind=? AND namespace=? AND name=?", (kind, namespace, name)
        ).fetchone()
    return _resource(row), (prev["uid"] if prev else None)


def get_managed_resource(kind: str, namespace: str, name: str) -> ManagedResourceRow | None:
    with connect() as conn:
        row = conn.execute(
            "SELECT * FROM managed_resources WHERE kind=? AND namespace=? AND name=?", (kind, namespace, name)
        ).fetchone()
    return _resource(row) if row else None


def get_managed_resource_by_uid(uid: str) -> ManagedResourceRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM managed_resources WHERE uid=?", (uid,)).fetchone()
    return _resource(row) if row else None


def list_managed_resources(deployment_id: str | None = None, kind: str | None = None) -> list[ManagedResourceRow]:
    sql = "SELECT * FROM managed_resources WHERE 1=1"
    params: list[Any] = []
    if deployment_id is not None:
        sql += " AND deployment_id=?"
        params.append(deployment_id)
    if kind is not None:
        sql += " AND kind=?"
        params.append(kind)
    sql += " ORDER BY kind, namespace, name"
    with connect() as conn:
        return _rows(conn.execute(sql, params).fetchall(), _resource)


def delete_managed_resource(
    kind: str, namespace: str, name: str, uid: str | None = None, deployment_id: str | None = None
) -> bool:
    """Drop the mapping row, optionally only if it still tracks ``uid`` / belongs to ``deployment_id``."""
    sql = "DELETE FROM managed_resources WHERE kind=? AND namespace=? AND name=?"
    params: list[Any] = [kind, namespace, name]
    if uid is not None:
        sql += " AND uid=?"
        params.append(uid)
    if deployment_id is not None:
        sql += " AND deployment_id=?"
        params.append(deployment_id)
    with connect(immediate=True) as conn:
        return conn.execute(sql, params).rowcount > 0


def set_resource_drift(resource_id: int, fields: list[str] | None) -> None:
    with connect() as conn:
        conn.execute(
            "UPDATE managed_resources SET last_drift=? WHERE id=?",
            (_dumps(sorted(fields)) if fields else None, resource_id),
        )


def set_resource_ready(resource_id: int, ready: bool) -> None:
    with connect() as conn:
        conn.execute("UPDATE managed_resources SET last_ready=? WHERE id=?", (int(ready), resource_id))


# --- observed snapshots -------------------------------------------------


def get_snapshot(deployment_id: str) -> SnapshotRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM observed_snapshots WHERE deployment_id=?", (deployment_id,)).fetchone()
    if not row:
        return None
    return SnapshotRow(
        deployment_id=row["deployment_id"],
        snapshot=_loads(row["snapshot"], {}),
        observed_generation=row["observed_generation"],
        updated_at=row["updated_at"],
    )


def put_snapshot(deployment_id: str, snapshot: dict[str, Any], observed_generation: int) -> None:
    """Overwrite the snapshot wholesale."""
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO observed_snapshots (deployment_id, snapshot, observed_generation, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(deployment_id) DO UPDATE SET
              snapshot=excluded.snapshot,
              observed_generation=excluded.observed_generation,
              updated_at=excluded.updated_at
            """,
            (deployment_id, _dumps(snapshot), int(observed_generation), utc_now()),
        )


def put_snapshot_resource(deployment_id: str, key: str, entry: dict[str, Any] | None) -> bool:
    """Replace one resource entry of the snapshot, or drop it when ``entry`` is None.

    Returns False when the snapshot already said the same thing.
    """
    with connect(immediate=True) as conn:
        row = conn.execute(
            "SELECT snapshot, observed_generation FROM observed_snapshots WHERE deployment_id=?", (deployment_id,)
        ).fetchone()
        data = _loads(row["snapshot"], {}) if row else {}
        resources = dict(data.get("resources") or {})
        if entry is None:
            if resources.pop(key, None) is None:
                return False
        elif resources.get(key) == entry:
            return False
        else:
            resources[key] = entry
        data.setdefault("generation", 0)
        data["observed_at"] = utc_now()
        data["resources"] = resources
        conn.execute(
            """
            INSERT INTO observed_snapshots (deployment_id, snapshot, observed_generation, updated_at)
            VALUES (?, ?, 0, ?)
            ON CONFLICT(deployment_id) DO UPDATE SET
              snapshot=excluded.snapshot,
              updated_at=excluded.updated_at
            """,
            (deployment_id, _dumps(data), utc_now()),
        )
    return True


# --- reconcile jobs -----------------------------------------------------


def enqueue_job(
    deployment_id: str,
    reason: str,
    delay_s: float = 0.0,
    if_idle: bool = False,
    conn: sqlite3.Connection | None = None,
    now: float | None = None,
) -> None:
    """Queue a reconcile for a deployment, coalescing with any existing job.

    - idle (no row): a queued job is inserted
    - queued / queued-with-backoff: next_run_at is pulled forward
    - running: the job is flagged to run again once the current run ends
    - dead: revived with a fresh attempt counter

    ``if_idle`` only inserts when no job exists (timer ticks use this so they
    never cut a backoff short).
    """
    now = time.time() if now is None else now
    run_at = now + max(0.0, delay_s)
    payload = _dumps({"reason": reason})
    ts = utc_now()
    if if_idle:
        sql = """
            INSERT OR IGNORE INTO reconcile_jobs (deployment_id, payload, state, next_run_at, created_at, updated_at)
            VALUES (?, ?, 'queued', ?, ?, ?)
        """
        params: tuple[Any, ...] = (deployment_id, payload, run_at, ts, ts)
    else:
        sql = """
            INSERT INTO reconcile_jobs (deployment_id, payload, state, next_run_at, created_at, updated_at)
            VALUES (?, ?, 'queued', ?, ?, ?)
            ON CONFLICT(deployment_id) DO UPDATE SET
              payload=excluded.payload,
              requeue=CASE WHEN reconcile_jobs.state='running' THEN 1 ELSE reconcile_jobs.requeue END,
              attempts=CASE WHEN reconcile_jobs.state='dead' THEN 0 ELSE reconcile_jobs.attempts END,
              next_run_at=CASE
                WHEN reconcile_jobs.state='running' THEN reconcile_jobs.next_run_at
                WHEN reconcile_jobs.state='dead' THEN excluded.next_run_at
                ELSE MIN(reconcile_jobs.next_run_at, excluded.next_run_at)
              END,
              state=CASE WHEN reconcile_jobs.state='running' THEN 'running' ELSE 'queued' END,
              updated_at=excluded.updated_at
        """
        params = (deployment_id, payload, run_at, ts, ts)
    if conn is not None:
        conn.execute(sql, params)
        return
    with connect() as c:
        c.execute(sql, params)


def get_job(deployment_id: str) -> JobRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM reconcile_jobs WHERE deployment_id=?", (deployment_id,)).fetchone()
    return _job(row) if row else None


def due_jobs(limit: int, lease_s: float, now: float | None = None) -> list[str]:
    """Deployment ids whose job is runnable now, including expired leases."""
    now = time.time() if now is None else now
    with connect() as conn:
        rows = conn.execute(
            """
            SELECT deployment_id FROM reconcile_jobs
            WHERE (state='queued' AND next_run_at<=?) OR (state='running' AND locked_at<?)
            ORDER BY next_run_at, deployment_id
            LIMIT ?
            """,
            (now, now - lease_s, int(limit)),
        ).fetchall()
    return [r["deployment_id"] for r in rows]


def claim_job(deployment_id: str, holder: str, lease_s: float, now: float | None = None) -> JobRow | None:
    """Take the single-flight lock for a deployment's job.

    Succeeds for a due queued job or a running job whose lease has expired.
    """
    now = time.time() if now is None else now
    with connect(immediate=True) as conn:
        cur = conn.execute(
            """
            UPDATE reconcile_jobs
            SET state='running', lock_holder=?, locked_at=?, requeue=0, updated_at=?
            WHERE deployment_id=?
              AND ((state='queued' AND next_run_at<=?) OR (state='running' AND locked_at<?))
            """,
            (holder, now, utc_now(), deployment_id, now, now - lease_s),
        )
        if cur.rowcount != 1:
            return None
        row = conn.execute("SELECT * FROM reconcile_jobs WHERE deployment_id=?", (deployment_id,)).fetchone()
    return _job(row)


def renew_lease(deployment_id: str, holder: str, now: float | None = None) -> bool:
    now = time.time() if now is None else now
    with connect() as conn:
        cur = conn.execute(
            "UPDATE reconcile_jobs SET locked_at=? WHERE deployment_id=? AND state='running' AND lock_holder=?",
            (now, deployment_id, holder),
        )
        return cur.rowcount == 1


def complete_job(
    deployment_id: str, holder: str, recheck_after_s: float | None = None, now: float | None = None
) -> None:
    """Release the lock after a successful run.

    The job goes back to queued if a trigger arrived meanwhile or a recheck is
    wanted; otherwise it is removed (Idle).
    """
    now = time.time() if now is None else now
    with connect(immediate=True) as conn:
        row = conn.execute(
            "SELECT * FROM reconcile_jobs WHERE deployment_id=? AND lock_holder=? AND state='running'",
            (deployment_id, holder),
        ).fetchone()
        if not row:
            return
        if row["requeue"] or recheck_after_s is not None:
            run_at = now if row["requeue"] else now + float(recheck_after_s or 0)
            conn.execute(
                """
                UPDATE reconcile_jobs
                SET state='queued', attempts=0, next_run_at=?, lock_holder=NULL, locked_at=NULL,
                    requeue=0, last_error=NULL, updated_at=?
                WHERE deployment_id=?
                """,
                (run_at, utc_now(), deployment_id),
            )
        else:
            conn.execute("DELETE FROM reconcile_jobs WHERE deployment_id=?", (deployment_id,))


def defer_job(deployment_id: str, holder: str, delay_s: float, error: str, now: float | None = None) -> int:
    """Queued-with-backoff after a failed run. Returns the new attempt count."""
    now = time.time() if now is None else now
    with connect(immediate=True) as conn:
        conn.execute(
            """
            UPDATE reconcile_jobs
            SET state='queued', attempts=attempts+1, next_run_at=?, lock_holder=NULL, locked_at=NULL,
                requeue=0, last_error=?, updated_at=?
            WHERE deployment_id=? AND lock_holder=?
            """,
            (now + max(0.0, delay_s), error, utc_now(), deployment_id, holder),
        )
        row = conn.execute("SELECT attempts FROM reconcile_jobs WHERE deployment_id=?", (deployment_id,)).fetchone()
    return int(row["attempts"]) if row else 0


def kill_job(deployment_id: str, holder: str, error: str) -> None:
    """Halt retries until a new trigger revives the job."""
    with connect(immediate=True) as conn:
        conn.execute(
            """
            UPDATE reconcile_jobs
            SET state='dead', attempts=attempts+1, lock_holder=NULL, locked_at=NULL, requeue=0,
                last_error=?, updated_at=?
            WHERE deployment_id=? AND lock_holder=?
            """,
            (error, utc_now(), deployment_id, holder),
        )


# --- adoption approvals -------------------------------------------------


def find_approval(deployment_id: str, kind: str, name: str, field: str, states: Iterable[str]) -> ApprovalRow | None:
    states = list(states)
    marks = ",".join("?" for _ in states)
    with connect() as conn:
        row = conn.execute(
            f"""
            SELECT * FROM adoption_approvals
            WHERE deployment_id=? AND kind=? AND name=? AND field=? AND state IN ({marks})
            ORDER BY id DESC LIMIT 1
            """,
            (deployment_id, kind, name, field, *states),
        ).fetchone()
    return _approval(row) if row else None


def create_approval(deployment_id: str, kind: str, name: str, field: str, observed_value: Any) -> tuple[ApprovalRow, bool]:
    """Open (or refresh) a pending adoption request. Returns (row, created)."""
    with connect(immediate=True) as conn:
        row = conn.execute(
            """
            SELECT * FROM adoption_approvals
            WHERE deployment_id=? AND kind=? AND name=? AND field=? AND state='pending'
            """,
            (deployment_id, kind, name, field),
        ).fetchone()
        if row:
            conn.execute(
                "UPDATE adoption_approvals SET observed_value=? WHERE id=?", (_dumps(observed_value), row["id"])
            )
            approval_id, created = row["id"], False
        else:
            approval_id = conn.execute(
                """
                INSERT INTO adoption_approvals (deployment_id, kind, name, field, observed_value, state, created_at)
                VALUES (?, ?, ?, ?, ?, 'pending', ?)
                """,
                (deployment_id, kind, name, field, _dumps(observed_value), utc_now()),
            ).lastrowid
            created = True
        out = conn.execute("SELECT * FROM adoption_approvals WHERE id=?", (approval_id,)).fetchone()
    return _approval(out), created


def get_approval(approval_id: int) -> ApprovalRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM adoption_approvals WHERE id=?", (approval_id,)).fetchone()
    return _approval(row) if row else None


def list_approvals(deployment_id: str | None = None, state: str | None = None) -> list[ApprovalRow]:
    sql = "SELECT * FROM adoption_approvals WHERE 1=1"
    params: list[Any] = []
    if deployment_id is not None:
        sql += " AND deployment_id=?"
        params.append(deployment_id)
    if state is not None:
        sql += " AND state=?"
        params.append(state)
    with connect() as conn:
        return _rows(conn.execute(sql + " ORDER BY id", params).fetchall(), _approval)


def decide_approval(approval_id: int, state: str) -> ApprovalRow:
    if state not in {"approved", "rejected"}:
        raise ValueError("state must be 'approved' or 'rejected'")
    with connect(immediate=True) as conn:
        row = conn.execute("SELECT * FROM adoption_approvals WHERE id=?", (approval_id,)).fetchone()
        if not row:
            raise NotFound(f"approval {approval_id} not found")
        if row["state"] != "pending":
            raise ConflictError(f"approval {approval_id} is already {row['state']}")
        conn.execute(
            "UPDATE adoption_approvals SET state=?, decided_at=? WHERE id=?", (state, utc_now(), approval_id)
        )
        if state == "rejected":
            log_event(
                row["deployment_id"],
                EventSource.USER,
                EventType.ADOPTION_REJECTED,
                {"approval_id": approval_id, "kind": row["kind"], "name": row["name"], "field": row["field"]},
                conn=conn,
            )
        enqueue_job(row["deployment_id"], reason=f"approval-{state}", conn=conn)
        out = conn.execute("SELECT * FROM adoption_approvals WHERE id=?", (approval_id,)).fetchone()
    return _approval(out)


def adopt_desired_spec(
    deployment_id: str,
    desired_spec: dict[str, Any],
    expected_generation: int,
    adopted: list[dict[str, Any]],
    approval_ids: list[int],
) -> DeploymentRow:
    """Fold observed values into desired state.

    New generation and approval bookkeeping commit together or not at all.
    """
    with connect(immediate=True) as conn:
        current = _load_for_write(conn, deployment_id, expected_generation)
        if current.desired_lifecycle_state == LifecycleState.DELETED:
            raise LifecycleError(f"deployment {deployment_id} is being deleted")
        generation = _bump_generation(
            conn, current, desired_spec, current.desired_lifecycle_state, EventSource.RECONCILER, "drift-adopted"
        )
        for approval_id in approval_ids:
            conn.execute(
                "UPDATE adoption_approvals SET state='applied', decided_at=COALESCE(decided_at, ?) WHERE id=?",
                (utc_now(), approval_id),
            )
        log_event(
            deployment_id,
            EventSource.RECONCILER,
            EventType.DRIFT_ADOPTED,
            {"generation": generation, "fields": adopted, "approvals": approval_ids},
            conn=conn,
        )
        row = _get_deployment(conn, deployment_id)
    assert row is not None
    return row
