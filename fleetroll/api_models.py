from __future__ import annotations

from pydantic import BaseModel, Field

from .runtime import ReplicaSpec, ScalingPolicy, UpdatePolicy


class SpecModel(BaseModel):
    image: str = Field(..., min_length=1, description="Image reference (name:tag)")
    size_class: str = Field("medium", description="small|medium|large")
    zones: list[str] = Field(default_factory=list, description="Placement zones")

    def to_spec(self, default_zones: tuple[str, ...] = ()) -> ReplicaSpec:
        zones = tuple(sorted(set(self.zones))) or default_zones
        return ReplicaSpec(image=self.image, size_class=self.size_class, zones=zones)


class CreateFleetRequest(SpecModel):
    desired_capacity: int = Field(6, ge=0, le=1000)


class CapacityRequest(BaseModel):
    desired: int = Field(..., ge=0, le=1000)


class UpdatePolicyModel(BaseModel):
    min_in_service: int = Field(3, description="Replicas that must stay in service and healthy")
    max_batch_size: int = Field(3, description="Replicas replaced per batch")
    health_timeout_s: float = Field(120.0, description="Max seconds for a new replica to become healthy")
    drain_grace_s: float = Field(30.0, description="Seconds between deregistering and destroying a replica")

    def to_policy(self) -> UpdatePolicy:
        return UpdatePolicy(
            min_in_service=self.min_in_service,
            max_batch_size=self.max_batch_size,
            health_timeout_s=self.health_timeout_s,
            drain_grace_s=self.drain_grace_s,
        )


class UpdateRequest(SpecModel):
    policy: UpdatePolicyModel = Field(default_factory=UpdatePolicyModel)


class ScalingPolicyModel(BaseModel):
    min: int = 6
    max: int = 15
    adjustment: int = 1
    cooldown_s: float = 120.0
    threshold: float = Field(60.0, description="Scale out when the metric is above this value")
    evaluation_periods: int = 1
    period_s: float = 60.0

    def to_policy(self) -> ScalingPolicy:
        return ScalingPolicy(**self.model_dump())


class MetricRequest(BaseModel):
    metric: float = Field(..., description="Aggregated metric sample, e.g. mean CPU percent")
