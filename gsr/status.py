from __future__ import annotations

from typing import Any, Iterable, Mapping

from .cluster import LiveObject
from .db import StatusSummary, utc_now
from .kinds import Kind, ResourceHealth, handler_for

# Highest first.
PRECEDENCE: tuple[StatusSummary, ...] = (
    StatusSummary.ERROR,
    StatusSummary.DEGRADED,
    StatusSummary.PROGRESSING,
    StatusSummary.HEALTHY,
)


def worst(statuses: Iterable[StatusSummary]) -> StatusSummary:
    present = set(statuses)
    for s in PRECEDENCE:
        if s in present:
            return s
    return StatusSummary.HEALTHY


def health_status(h: ResourceHealth) -> StatusSummary:
    if h.degraded:
        return StatusSummary.DEGRADED
    if h.ready:
        return StatusSummary.HEALTHY
    return StatusSummary.PROGRESSING


def summarize(
    healths: Mapping[str, ResourceHealth], apply_failed: bool = False
) -> tuple[StatusSummary, str]:
    """Aggregate per-resource health into one deployment summary and a detail line.

    A failed apply is Error regardless of what the resources report. An empty
    set of resources (e.g. an empty desired spec) is Healthy.
    """
    if apply_failed:
        return StatusSummary.ERROR, "last reconcile failed"
    by_status: dict[StatusSummary, list[str]] = {}
    for ref, h in sorted(healths.items()):
        by_status.setdefault(health_status(h), []).append(ref)
    overall = worst(by_status)
    if overall == StatusSummary.HEALTHY:
        return overall, f"{len(healths)} resources ready"
    culprits = by_status[overall]
    detail = ", ".join(f"{ref}: {healths[ref].message}" for ref in culprits[:5])
    if len(culprits) > 5:
        detail += f" (+{len(culprits) - 5} more)"
    return overall, detail


def resource_key(kind: Kind | str, name: str) -> str:
    return f"{Kind(kind).value}/{name}"


def snapshot_entry(obj: LiveObject, health: ResourceHealth | None = None) -> dict[str, Any]:
    h = health or handler_for(obj.kind).extract_status(obj)
    return {
        "kind": obj.kind.value,
        "name": obj.name,
        "uid": obj.uid,
        "resource_version": obj.resource_version,
        "generation_marker": obj.ownership.generation if obj.ownership else None,
        "health": h.to_dict(),
    }


def build_snapshot(
    live: Iterable[LiveObject],
    healths: Mapping[str, ResourceHealth],
    generation: int,
) -> dict[str, Any]:
    """Per-resource view persisted as the deployment's observed snapshot."""
    resources: dict[str, Any] = {}
    for obj in live:
        key = resource_key(obj.kind, obj.name)
        resources[key] = snapshot_entry(obj, healths.get(key))
    return {"generation": generation, "observed_at": utc_now(), "resources": resources}
