from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from threading import Lock
from typing import Any, Callable, Iterable

from .errors import ConflictingUpdate, InvalidPolicy, ResultCode, StaleFleetVersion


def utc_now() -> str:
    return datetime.utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")


class Lifecycle(str, Enum):
    LAUNCHING = "launching"
    IN_SERVICE = "in_service"
    DRAINING = "draining"
    TERMINATED = "terminated"


class Health(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class ProbeResult(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNREACHABLE = "unreachable"


class UpdateState(str, Enum):
    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    ROLLED_BACK = "rolled_back"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATES = frozenset({UpdateState.IN_PROGRESS, UpdateState.PAUSED})
TERMINAL_STATES = frozenset({UpdateState.ROLLED_BACK, UpdateState.COMPLETED, UpdateState.FAILED})

ALLOWED_TRANSITIONS: dict[UpdateState, frozenset[UpdateState]] = {
    UpdateState.IDLE: frozenset({UpdateState.IN_PROGRESS}),
    UpdateState.IN_PROGRESS: frozenset({UpdateState.PAUSED, UpdateState.COMPLETED, UpdateState.FAILED}),
    # Cancel while paused: ROLLED_BACK if nothing was swapped yet, FAILED otherwise.
    UpdateState.PAUSED: frozenset({UpdateState.IN_PROGRESS, UpdateState.ROLLED_BACK, UpdateState.FAILED}),
}


def check_transition(current: UpdateState, new: UpdateState) -> None:
    if new not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise ConflictingUpdate(f"cannot move update from {current.value} to {new.value}")


@dataclass(frozen=True)
class ReplicaSpec:
    image: str
    size_class: str = "medium"
    zones: tuple[str, ...] = ()

    @property
    def label(self) -> str:
        return f"{self.image}@{self.size_class}"

    def to_dict(self) -> dict[str, Any]:
        return {"image": self.image, "size_class": self.size_class, "zones": list(self.zones)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReplicaSpec":
        return cls(image=data["image"], size_class=data.get("size_class", "medium"), zones=tuple(data.get("zones") or ()))


@dataclass(frozen=True)
class Replica:
    id: str
    zone: str
    spec: ReplicaSpec
    lifecycle: Lifecycle = Lifecycle.LAUNCHING
    health: Health = Health.UNKNOWN
    created_at: float = field(default_factory=time.time)
    address: str | None = None
    update_id: str | None = None  # rolling update that launched it

    @property
    def live(self) -> bool:
        return self.lifecycle in (Lifecycle.LAUNCHING, Lifecycle.IN_SERVICE)

    @property
    def serving(self) -> bool:
        return self.lifecycle == Lifecycle.IN_SERVICE and self.health == Health.HEALTHY

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "zone": self.zone,
            "spec": self.spec.to_dict(),
            "lifecycle": self.lifecycle.value,
            "health": self.health.value,
            "created_at": self.created_at,
            "address": self.address,
            "update_id": self.update_id,
        }


@dataclass(frozen=True)
class UpdatePolicy:
    min_in_service: int
    max_batch_size: int
    health_timeout_s: float = 120.0
    drain_grace_s: float = 30.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "min_in_service": self.min_in_service,
            "max_batch_size": self.max_batch_size,
            "health_timeout_s": self.health_timeout_s,
            "drain_grace_s": self.drain_grace_s,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UpdatePolicy":
        return cls(**data)


@dataclass(frozen=True)
class ScalingPolicy:
    """Bounds and trigger for automatic scale-out. There is no scale-in trigger."""

    min: int = 6
    max: int = 15
    adjustment: int = 1
    cooldown_s: float = 120.0
    threshold: float = 60.0
    evaluation_periods: int = 1
    period_s: float = 60.0

    def validate(self) -> None:
        if self.min < 0:
            raise InvalidPolicy("min must be >= 0")
        if self.max < self.min:
            raise InvalidPolicy(f"max ({self.max}) must be >= min ({self.min})")
        if self.adjustment < 1:
            raise InvalidPolicy("adjustment must be >= 1")
        if self.cooldown_s < 0:
            raise InvalidPolicy("cooldown must be >= 0")
        if self.evaluation_periods < 1:
            raise InvalidPolicy("evaluation_periods must be >= 1")
        if self.period_s <= 0:
            raise InvalidPolicy("period_s must be > 0")

    def bound(self, desired: int) -> int:
        return max(self.min, min(self.max, desired))

    def to_dict(self) -> dict[str, Any]:
        return {
            "min": self.min,
            "max": self.max,
            "adjustment": self.adjustment,
            "cooldown_s": self.cooldown_s,
            "threshold": self.threshold,
            "evaluation_periods": self.evaluation_periods,
            "period_s": self.period_s,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScalingPolicy":
        return cls(**data)


@dataclass(frozen=True)
class Batch:
    retire: tuple[str, ...]
    zones: tuple[str, ...]  # one entry per replacement to launch

    def to_dict(self) -> dict[str, Any]:
        return {"retire": list(self.retire), "zones": list(self.zones)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Batch":
        return cls(retire=tuple(data["retire"]), zones=tuple(data["zones"]))


@dataclass(frozen=True)
class UpdatePlan:
    batches: tuple[Batch, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {"batches": [b.to_dict() for b in self.batches]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UpdatePlan":
        return cls(batches=tuple(Batch.from_dict(b) for b in data.get("batches", [])))


@dataclass
class BatchRecord:
    index: int
    launched: list[str]
    retired: list[str]
    deferred: list[str] = field(default_factory=list)
    completed_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "launched": list(self.launched),
            "retired": list(self.retired),
            "deferred": list(self.deferred),
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BatchRecord":
        return cls(**data)


@dataclass
class UpdateStatus:
    id: str
    fleet: str
    spec: ReplicaSpec
    policy: UpdatePolicy
    state: UpdateState = UpdateState.IDLE
    previous_spec: ReplicaSpec | None = None  # launch spec before the update
    plan: UpdatePlan = field(default_factory=UpdatePlan)
    batches: list[BatchRecord] = field(default_factory=list)
    batch_index: int = 0  # completed batches
    total_batches: int = 0
    last_good_batch: int | None = None
    pause_requested: bool = False
    cancel_requested: bool = False
    result: ResultCode | None = None
    message: str = ""
    composition: dict[str, dict[str, int]] = field(default_factory=dict)
    started_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "fleet": self.fleet,
            "spec": self.spec.to_dict(),
            "policy": self.policy.to_dict(),
            "previous_spec": self.previous_spec.to_dict() if self.previous_spec else None,
            "state": self.state.value,
            "plan": self.plan.to_dict(),
            "batches": [b.to_dict() for b in self.batches],
            "batch_index": self.batch_index,
            "total_batches": self.total_batches,
            "last_good_batch": self.last_good_batch,
            "pause_requested": self.pause_requested,
            "cancel_requested": self.cancel_requested,
            "result": self.result.value if self.result else None,
            "message": self.message,
            "composition": self.composition,
            "started_at": self.started_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UpdateStatus":
        return cls(
            id=data["id"],
            fleet=data["fleet"],
            spec=ReplicaSpec.from_dict(data["spec"]),
            policy=UpdatePolicy.from_dict(data["policy"]),
            previous_spec=ReplicaSpec.from_dict(data["previous_spec"]) if data.get("previous_spec") else None,
            state=UpdateState(data["state"]),
            plan=UpdatePlan.from_dict(data.get("plan") or {}),
            batches=[BatchRecord.from_dict(b) for b in data.get("batches", [])],
            batch_index=data.get("batch_index", 0),
            total_batches=data.get("total_batches", 0),
            last_good_batch=data.get("last_good_batch"),
            pause_requested=data.get("pause_requested", False),
            cancel_requested=data.get("cancel_requested", False),
            result=ResultCode(data["result"]) if data.get("result") else None,
            message=data.get("message", ""),
            composition=data.get("composition") or {},
            started_at=data.get("started_at", utc_now()),
            updated_at=data.get("updated_at", utc_now()),
        )


@dataclass(frozen=True)
class FleetSnapshot:
    """Immutable view of a fleet at one version."""

    name: str
    version: int = 0
    desired_capacity: int = 0
    launch_spec: ReplicaSpec | None = None
    replicas: tuple[Replica, ...] = ()

    def get(self, replica_id: str) -> Replica | None:
        for r in self.replicas:
            if r.id == replica_id:
                return r
        return None

    def live(self) -> list[Replica]:
        return [r for r in self.replicas if r.live]

    def in_service(self) -> list[Replica]:
        return [r for r in self.replicas if r.lifecycle == Lifecycle.IN_SERVICE]

    def serving_count(self) -> int:
        return sum(1 for r in self.replicas if r.serving)

    def zone_counts(self, zones: Iterable[str] = ()) -> dict[str, int]:
        counts = {z: 0 for z in zones}
        for r in self.live():
            counts[r.zone] = counts.get(r.zone, 0) + 1
        return counts

    def composition(self) -> dict[str, dict[str, int]]:
        """spec label -> lifecycle -> replica count."""
        out: dict[str, Counter] = {}
        for r in self.replicas:
            out.setdefault(r.spec.label, Counter())[r.lifecycle.value] += 1
        return {label: dict(c) for label, c in sorted(out.items())}

    def with_replica(self, replica: Replica) -> "FleetSnapshot":
        replicas = list(self.replicas)
        for i, r in enumerate(replicas):
            if r.id == replica.id:
                replicas[i] = replica
                break
        else:
            replicas.append(replica)
        return replace(self, replicas=tuple(replicas))

    def without(self, replica_id: str) -> "FleetSnapshot":
        return replace(self, replicas=tuple(r for r in self.replicas if r.id != replica_id))

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "desired_capacity": self.desired_capacity,
            "launch_spec": self.launch_spec.to_dict() if self.launch_spec else None,
            "replicas": [r.to_dict() for r in self.replicas],
            "zones": self.zone_counts(self.launch_spec.zones if self.launch_spec else ()),
            "serving": self.serving_count(),
            "composition": self.composition(),
        }


def format_composition(composition: dict[str, dict[str, int]]) -> str:
    if not composition:
        return "empty"
    parts = []
    for label, states in composition.items():
        inner = ", ".join(f"{k}={v}" for k, v in sorted(states.items()))
        parts.append(f"{label} [{inner}]")
    return "; ".join(parts)


class Fleet:
    """Versioned fleet record shared by the orchestrator and capacity controller.

    Every mutation produces a new FleetSnapshot with version + 1. ``update``
    serializes writers on a single mutex; ``compare_and_swap`` additionally
    refuses to apply when the caller's view is stale. ``on_commit`` runs under
    the lock so persisted versions are written in order.
    """

    def __init__(
        self,
        snapshot: FleetSnapshot,
        on_commit: Callable[[FleetSnapshot], None] | None = None,
    ) -> None:
        self._lock = Lock()
        self._snap = snapshot
        self._on_commit = on_commit

    @property
    def name(self) -> str:
        return self._snap.name

    def snapshot(self) -> FleetSnapshot:
        with self._lock:
            return self._snap

    def get(self, replica_id: str) -> Replica | None:
        return self.snapshot().get(replica_id)

    def update(self, fn: Callable[[FleetSnapshot], FleetSnapshot]) -> FleetSnapshot:
        with self._lock:
            return self._commit(fn(self._snap))

    def compare_and_swap(self, expected_version: int, fn: Callable[[FleetSnapshot], FleetSnapshot]) -> FleetSnapshot:
        with self._lock:
            if self._snap.version != expected_version:
                raise StaleFleetVersion(f"fleet is at version {self._snap.version}, expected {expected_version}")
            return self._commit(fn(self._snap))

    def _commit(self, new: FleetSnapshot) -> FleetSnapshot:
        new = replace(new, version=self._snap.version + 1)
        if self._on_commit:
            self._on_commit(new)
        self._snap = new
        return new

    def put(self, replica: Replica) -> FleetSnapshot:
        return self.update(lambda s: s.with_replica(replica))

    def remove(self, replica_id: str) -> FleetSnapshot:
        return self.update(lambda s: s.without(replica_id))

    def set_lifecycle(self, replica_id: str, lifecycle: Lifecycle) -> Replica | None:
        return self._modify(replica_id, lifecycle=lifecycle)

    def set_health(self, replica_id: str, health: Health) -> Replica | None:
        return self._modify(replica_id, health=health)

    def _modify(self, replica_id: str, **changes: Any) -> Replica | None:
        # Replicas removed concurrently are skipped.
        with self._lock:
            current = self._snap.get(replica_id)
            if current is None:
                return None
            updated = replace(current, **changes)
            self._commit(self._snap.with_replica(updated))
            return updated
