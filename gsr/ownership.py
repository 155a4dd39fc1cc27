"""Ownership markers carried by every platform object GSR creates.

Markers are plain labels. They are the only mechanism used to decide whether
an object belongs to a deployment, and they are written in the same call that
creates the object.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

MANAGED_BY_LABEL = "gsr.managed-by"
MANAGED_BY_VALUE = "gsr"
DEPLOYMENT_LABEL = "gsr.deployment-id"
GENERATION_LABEL = "gsr.generation"
# Swarm stack namespace label, so `docker stack ls` groups our objects too.
NAMESPACE_LABEL = "com.docker.stack.namespace"

MARKER_LABELS = frozenset({MANAGED_BY_LABEL, DEPLOYMENT_LABEL, GENERATION_LABEL})


@dataclass(frozen=True)
class Ownership:
    deployment_id: str
    generation: int


def markers_for(deployment_id: str, generation: int) -> dict[str, str]:
    return {
        MANAGED_BY_LABEL: MANAGED_BY_VALUE,
        DEPLOYMENT_LABEL: deployment_id,
        GENERATION_LABEL: str(int(generation)),
    }


def parse_markers(labels: Mapping[str, str] | None) -> Ownership | None:
    """Return the ownership recorded in ``labels`` or None for foreign objects.

    An object with the managed-by marker but no usable deployment id is
    treated as foreign: we never guess an owner.
    """
    if not labels or labels.get(MANAGED_BY_LABEL) != MANAGED_BY_VALUE:
        return None
    deployment_id = labels.get(DEPLOYMENT_LABEL)
    if not deployment_id:
        return None
    try:
        generation = int(labels.get(GENERATION_LABEL, "0"))
    except ValueError:
        generation = 0
    return Ownership(deployment_id=deployment_id, generation=generation)


def is_owned_by(labels: Mapping[str, str] | None, deployment_id: str) -> bool:
    owner = parse_markers(labels)
    return owner is not None and owner.deployment_id == deployment_id


def user_labels(labels: Mapping[str, str] | None) -> dict[str, str]:
    """Labels minus the ones GSR or the platform writes on its own."""
    if not labels:
        return {}
    return {
        k: v
        for k, v in labels.items()
        if k not in MARKER_LABELS and k != NAMESPACE_LABEL and not k.startswith("gsr.")
    }
