from __future__ import annotations

from threading import Lock

import pytest

from fleetroll import db
from fleetroll.errors import ReplicaNotFound
from fleetroll.health import HealthProber
from fleetroll.providers import FleetProvider, TrafficDirector
from fleetroll.rollouts import UpdateOrchestrator
from fleetroll.runtime import (
    Fleet,
    FleetSnapshot,
    Health,
    Lifecycle,
    ProbeResult,
    Replica,
    ReplicaSpec,
)
from fleetroll.settings import Settings

ZONES = ("eu-west-1a", "eu-west-1b", "eu-west-1c")
OLD = ReplicaSpec(image="web:v1", size_class="medium", zones=ZONES)
NEW = ReplicaSpec(image="web:v2", size_class="medium", zones=ZONES)
BROKEN = ReplicaSpec(image="web:broken", size_class="medium", zones=ZONES)


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Every test gets its own sqlite file."""
    monkeypatch.setattr(db, "settings", Settings(db_path=str(tmp_path / "fleetroll.db")))
    db.init_db()
    return tmp_path / "fleetroll.db"


class FakeClock:
    """Monotonic clock whose sleep() just advances time."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self._lock = Lock()
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        with self._lock:
            return self.now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self.now += max(0.0, seconds)

    def advance(self, seconds: float) -> None:
        self.sleep(seconds)


class FakeProvider(FleetProvider):
    def __init__(self, clock: FakeClock):
        self.clock = clock
        self._lock = Lock()
        self._n = 0
        self.replicas: dict[str, Replica] = {}
        self.created: list[str] = []
        self.destroyed: list[str] = []
        self.create_calls = 0
        self.create_errors: list[Exception] = []  # raised in order by create_replica
        self.cpu: dict[str, float] = {}

    def create_replica(self, spec: ReplicaSpec, zone: str) -> str:
        with self._lock:
            self.create_calls += 1
            if self.create_errors:
                raise self.create_errors.pop(0)
            self._n += 1
            rid = f"r-{self._n:03d}"
            self.replicas[rid] = Replica(
                id=rid,
                zone=zone,
                spec=spec,
                created_at=self.clock() + self._n / 1000.0,
                address=f"{rid}:8080",
            )
            self.created.append(rid)
            return rid

    def destroy_replica(self, replica_id: str) -> None:
        with self._lock:
            if replica_id not in self.replicas:
                raise ReplicaNotFound(replica_id)
            del self.replicas[replica_id]
            self.destroyed.append(replica_id)

    def describe_replica(self, replica_id: str) -> Replica:
        with self._lock:
            if replica_id not in self.replicas:
                raise ReplicaNotFound(replica_id)
            return self.replicas[replica_id]

    def replica_cpu(self, replica_id: str) -> float | None:
        return self.cpu.get(replica_id)


class FakeDirector(TrafficDirector):
    """Records the in-service healthy count after every membership change."""

    def __init__(self):
        self.fleet: Fleet | None = None
        self.in_service: set[str] = set()
        self.observations: list[int] = []

    def register(self, replica_id: str) -> None:
        self.in_service.add(replica_id)
        self._observe()

    def deregister(self, replica_id: str) -> None:
        self.in_service.discard(replica_id)
        self._observe()

    def list_in_service(self) -> set[str]:
        return set(self.in_service)

    def _observe(self) -> None:
        if self.fleet is None:
            return
        snap = self.fleet.snapshot()
        healthy = 0
        for rid in self.in_service:
            r = snap.get(rid)
            if r is not None and r.health == Health.HEALTHY:
                healthy += 1
        self.observations.append(healthy)


def probe_by_image(replica: Replica) -> ProbeResult:
    if replica.spec.image == BROKEN.image:
        return ProbeResult.UNREACHABLE
    return ProbeResult.HEALTHY


class Rig:
    """A fleet wired to fake collaborators, driven synchronously."""

    def __init__(self, per_zone: int = 2, zones=ZONES, probe_fn=probe_by_image, healthy_threshold: int = 2):
        self.clock = FakeClock()
        self.provider = FakeProvider(self.clock)
        self.director = FakeDirector()
        spec = ReplicaSpec(image=OLD.image, size_class=OLD.size_class, zones=tuple(zones))
        replicas = []
        for zone in zones:
            for _ in range(per_zone):
                rid = self.provider.create_replica(spec, zone)
                replicas.append(
                    Replica(
                        id=rid,
                        zone=zone,
                        spec=spec,
                        lifecycle=Lifecycle.IN_SERVICE,
                        health=Health.HEALTHY,
                        created_at=self.provider.replicas[rid].created_at,
                        address=f"{rid}:8080",
                    )
                )
        snap = FleetSnapshot(
            name="web",
            desired_capacity=len(replicas),
            launch_spec=spec,
            replicas=tuple(replicas),
        )
        self.fleet = Fleet(snap, on_commit=db.save_fleet)
        self.director.fleet = self.fleet
        for r in replicas:
            self.director.in_service.add(r.id)
        self.initial_ids = [r.id for r in replicas]
        self.prober = HealthProber(
            self.fleet,
            probe_fn=probe_fn,
            healthy_threshold=healthy_threshold,
            unhealthy_threshold=3,
            interval_s=15.0,
        )
        self.orchestrator = UpdateOrchestrator(
            self.fleet,
            self.provider,
            self.director,
            self.prober,
            clock=self.clock,
            sleep=self.clock.sleep,
            max_attempts=3,
            backoff_s=1.0,
            backoff_max_s=4.0,
        )


@pytest.fixture
def rig():
    return Rig()


@pytest.fixture
def clock():
    return FakeClock()
