from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .kinds import Kind

_NAME_PATTERN = r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$"

PLANNED = {k.value for k in Kind if k != Kind.TASK}


class ResourceSpec(BaseModel):
    """One declared object. Kind-specific fields ride along as extras."""

    model_config = ConfigDict(extra="allow")

    kind: str = Field(..., description="Network|Config|Secret|Workload")
    name: str = Field(..., pattern=_NAME_PATTERN, description="dns-safe object name")

    @field_validator("kind")
    @classmethod
    def _kind(cls, v: str) -> str:
        if v not in PLANNED:
            raise ValueError(f"kind must be one of {sorted(PLANNED)}")
        return v

    @model_validator(mode="after")
    def _workload_fields(self) -> "ResourceSpec":
        extra = self.model_extra or {}
        if self.kind == Kind.WORKLOAD.value:
            if not extra.get("image"):
                raise ValueError(f"Workload {self.name} needs an image")
            replicas = extra.get("replicas", 1)
            if not isinstance(replicas, int) or isinstance(replicas, bool) or not 0 <= replicas <= 100:
                raise ValueError(f"Workload {self.name}: replicas must be an integer in 0..100")
        if self.kind in (Kind.CONFIG.value, Kind.SECRET.value) and extra.get("data") is None:
            raise ValueError(f"{self.kind} {self.name} needs data")
        return self


class DesiredSpec(BaseModel):
    resources: list[ResourceSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique(self) -> "DesiredSpec":
        seen: set[tuple[str, str]] = set()
        for r in self.resources:
            key = (r.kind, r.name)
            if key in seen:
                raise ValueError(f"duplicate resource {r.kind}/{r.name}")
            seen.add(key)
        return self

    def to_store(self) -> dict[str, Any]:
        return {"resources": [r.model_dump(exclude_none=False) for r in self.resources]}


class DeploymentCreate(BaseModel):
    id: str | None = Field(None, pattern=r"^[A-Za-z0-9_.-]{1,64}$")
    template_name: str = Field(..., min_length=1)
    template_version: str = Field("v1", min_length=1)
    namespace: str = Field(..., pattern=_NAME_PATTERN, description="Stack namespace; prefixes object names")
    desired_spec: DesiredSpec = Field(default_factory=DesiredSpec)
    drift_policy: Literal["enforce", "adopt", "ignore"] | None = None
    policy_overrides: dict[str, Literal["enforce", "adopt", "ignore"]] = Field(
        default_factory=dict, description='Keys are "<Kind>" or "<Kind>/<name>"'
    )
    ignore_fields: list[str] = Field(default_factory=list, description="Field path globs, e.g. Workload.*.replicas")
    auto_adopt: bool = False
    recreate_on_immutable: bool = False


class SpecUpdate(BaseModel):
    desired_spec: DesiredSpec
    expected_generation: int | None = Field(None, ge=1)


class LifecycleRequest(BaseModel):
    expected_generation: int | None = Field(None, ge=1)


class TemplateCreate(BaseModel):
    name: str = Field(..., min_length=1)
    version: str = Field("v1", min_length=1)
    allowed_mutations: list[str] = Field(default_factory=list, description="Field path globs")
