from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, replace
from threading import Lock, Thread
from typing import Callable

from . import db
from .errors import ConflictingUpdate, InvalidPolicy, ReplicaNotFound, StaleFleetVersion
from .health import HealthProber
from .planner import distribute, select_for_shrink
from .providers import FleetProvider, TrafficDirector, retry_provider_call
from .runtime import Fleet, FleetSnapshot, Health, Lifecycle, Replica, ReplicaSpec, ScalingPolicy
from .settings import settings


@dataclass(frozen=True)
class ScalingAction:
    id: str
    previous: int
    desired: int
    adjustment: int
    reason: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "previous": self.previous,
            "desired": self.desired,
            "adjustment": self.adjustment,
            "reason": self.reason,
        }


class CapacityController:
    """Keeps the fleet at its desired size and scales out on sustained load.

    Scale-out only: once the metric exceeds the threshold for
    ``evaluation_periods`` consecutive evaluations and the cooldown since the
    previous action has passed, desired capacity grows by ``adjustment``
    (bounded by ``max``). Shrinking happens only through ``set_desired``.
    """

    CAS_ATTEMPTS = 5

    def __init__(
        self,
        fleet: Fleet,
        provider: FleetProvider,
        director: TrafficDirector,
        prober: HealthProber,
        policy: ScalingPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        metric_fn: Callable[[], float | None] | None = None,
        active_update: Callable[[], str | None] = lambda: None,
        drain_grace_s: float | None = None,
    ):
        self.fleet = fleet
        self.provider = provider
        self.director = director
        self.prober = prober
        self.policy = policy or ScalingPolicy()
        self.policy.validate()
        self.metric_fn = metric_fn
        self.active_update = active_update
        self.drain_grace_s = settings.drain_grace_s if drain_grace_s is None else drain_grace_s
        self._clock = clock
        self._sleep = sleep
        self._lock = Lock()
        self._breaches = 0
        self._last_action_at: float | None = None
        self._applied: set[str] = set()
        self._stop = False
        self._thr: Thread | None = None

    # -- policy -----------------------------------------------------------

    def set_policy(self, policy: ScalingPolicy) -> FleetSnapshot:
        """Install a new policy and pull desired capacity into its bounds."""
        policy.validate()
        with self._lock:
            self.policy = policy
            self._breaches = 0
        db.save_scaling_policy(self.fleet.name, policy)
        db.log_event("INFO", f"Scaling policy set: {policy.to_dict()}", fleet=self.fleet.name)
        snap = self.fleet.snapshot()
        if snap.launch_spec is None or policy.bound(snap.desired_capacity) == snap.desired_capacity:
            return snap
        # Raising to a new minimum launches; a lower maximum only lowers the
        # target, surplus replicas stay until an explicit resize.
        snap = self._cas(lambda s: replace(s, desired_capacity=policy.bound(s.desired_capacity)))
        self.reconcile()
        return snap

    # -- evaluation -------------------------------------------------------

    def aggregate_metric(self) -> float | None:
        """Mean CPU percent across in-service replicas."""
        samples = [self.provider.replica_cpu(r.id) for r in self.fleet.snapshot().in_service()]
        values = [v for v in samples if v is not None]
        if not values:
            return None
        return sum(values) / len(values)

    def evaluate(self, metric: float | None) -> ScalingAction | None:
        with self._lock:
            p = self.policy
            if metric is None:
                return None
            if metric <= p.threshold:
                self._breaches = 0
                return None
            self._breaches += 1
            if self._breaches < p.evaluation_periods:
                return None
            now = self._clock()
            if self._last_action_at is not None and now - self._last_action_at < p.cooldown_s:
                return None

            current = self.fleet.snapshot().desired_capacity
            desired = p.bound(current + p.adjustment)
            if desired <= current:
                return None
            self._last_action_at = now
            return ScalingAction(
                id=secrets.token_hex(6),
                previous=current,
                desired=desired,
                adjustment=desired - current,
                reason=f"metric {metric:.1f} > {p.threshold:g} for {self._breaches} period(s)",
            )

    def apply(self, action: ScalingAction) -> bool:
        """Raise desired capacity to the action's target and launch replicas.

        Returns False when the action was already applied.
        """
        with self._lock:
            if action.id in self._applied:
                return False
            self._applied.add(action.id)
            bound = self.policy.bound

        # max() keeps a concurrent larger target; an action computed from a
        # stale view never lowers capacity.
        snap = self._cas(lambda s: replace(s, desired_capacity=bound(max(s.desired_capacity, action.desired))))
        db.log_event(
            "INFO",
            f"Scale-out {action.previous} -> {snap.desired_capacity} ({action.reason})",
            fleet=self.fleet.name,
        )
        self.reconcile()
        return True

    def tick(self) -> ScalingAction | None:
        self.reconcile()
        metric = self.metric_fn() if self.metric_fn else self.aggregate_metric()
        action = self.evaluate(metric)
        if action:
            self.apply(action)
        return action

    # -- membership -------------------------------------------------------

    def reconcile(self) -> list[str]:
        """Admit healthy capacity launches, then launch up to desired capacity."""
        self._admit_ready()
        snap = self.fleet.snapshot()
        spec = snap.launch_spec
        if spec is None:
            return []
        missing = snap.desired_capacity - len(snap.live())
        launched: list[str] = []
        counts = snap.zone_counts(spec.zones)
        # Even split; the remainder lands in the lexicographically-first zones.
        target = distribute(snap.desired_capacity, spec.zones or counts.keys())
        for _ in range(max(0, missing)):
            zone = min(sorted(target), key=lambda z: counts.get(z, 0) - target[z])
            counts[zone] = counts.get(zone, 0) + 1
            launched.append(self._launch(spec, zone))
        return launched

    def set_desired(self, desired: int) -> FleetSnapshot:
        """Explicit resize. The only way the fleet ever shrinks."""
        if self.active_update() is not None:
            raise ConflictingUpdate("cannot resize while a rolling update is active")
        p = self.policy
        if desired < p.min or desired > p.max:
            raise InvalidPolicy(f"desired capacity {desired} outside [{p.min}, {p.max}]")
        snap = self._cas(lambda s: replace(s, desired_capacity=desired))
        db.log_event("INFO", f"Desired capacity set to {desired}", fleet=self.fleet.name)
        surplus = len(snap.live()) - desired
        if surplus > 0:
            self._shrink(select_for_shrink(snap, surplus))
        else:
            self.reconcile()
        return self.fleet.snapshot()

    def _admit_ready(self) -> None:
        # The running update gates its own launches; leftovers from a finished
        # or failed update are admitted here like any other launch.
        gated = self.active_update()
        for r in self.fleet.snapshot().replicas:
            if r.lifecycle != Lifecycle.LAUNCHING or (gated is not None and r.update_id == gated):
                continue
            try:
                health = self.prober.observe(r.id)
            except ReplicaNotFound:
                continue
            if health == Health.HEALTHY:
                self.director.register(r.id)
                self.fleet.set_lifecycle(r.id, Lifecycle.IN_SERVICE)
                db.log_event("INFO", f"Admitted {r.id} ({r.zone})", fleet=self.fleet.name)

    def _launch(self, spec: ReplicaSpec, zone: str) -> str:
        rid = self._provider_call(lambda: self.provider.create_replica(spec, zone), f"create replica in {zone}")
        described = self._provider_call(lambda: self.provider.describe_replica(rid), f"describe replica {rid}")
        self.fleet.put(replace(described, zone=zone, spec=spec, lifecycle=Lifecycle.LAUNCHING, health=Health.UNKNOWN))
        db.log_event("INFO", f"Launched {rid} ({spec.label}) in {zone}", fleet=self.fleet.name)
        return rid

    def _shrink(self, victims: list[Replica]) -> None:
        for r in victims:
            self.director.deregister(r.id)
            self.fleet.set_lifecycle(r.id, Lifecycle.DRAINING)
        if victims:
            self._sleep(self.drain_grace_s)
        for r in victims:
            try:
                self._provider_call(lambda: self.provider.destroy_replica(r.id), f"destroy replica {r.id}")
            except ReplicaNotFound:
                pass
            self.fleet.remove(r.id)
            self.prober.forget(r.id)
            self.director.forget(r.id)
            db.log_event("INFO", f"Removed {r.id} ({r.zone}) on resize", fleet=self.fleet.name)

    def _cas(self, fn: Callable[[FleetSnapshot], FleetSnapshot]) -> FleetSnapshot:
        for _ in range(self.CAS_ATTEMPTS):
            snap = self.fleet.snapshot()
            try:
                return self.fleet.compare_and_swap(snap.version, fn)
            except StaleFleetVersion:
                continue
        raise StaleFleetVersion(f"fleet kept changing; gave up after {self.CAS_ATTEMPTS} attempts")

    def _provider_call(self, fn, what: str):
        return retry_provider_call(
            fn,
            what=what,
            attempts=settings.provider_max_attempts,
            backoff_s=settings.provider_backoff_s,
            backoff_max_s=settings.provider_backoff_max_s,
            sleep=self._sleep,
        )

    # -- background loop --------------------------------------------------

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop = False
        self._thr = Thread(target=self._loop, daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop = True

    def _loop(self) -> None:
        db.log_event("INFO", "Capacity controller started", fleet=self.fleet.name)
        while not self._stop:
            try:
                self.tick()
            except Exception as e:
                db.log_event("ERROR", f"Capacity tick failed: {type(e).__name__}: {e}", fleet=self.fleet.name)
            time.sleep(max(1.0, self.policy.period_s))
