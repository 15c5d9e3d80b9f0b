from __future__ import annotations

import time
from dataclasses import replace
from typing import Callable

from . import db
from .capacity import CapacityController, ScalingAction
from .errors import ConflictingUpdate, InvalidPolicy, NotFound
from .health import HealthProber
from .providers import FleetProvider, TrafficDirector
from .rollouts import UpdateOrchestrator
from .runtime import (
    Fleet,
    FleetSnapshot,
    ProbeResult,
    Replica,
    ReplicaSpec,
    ScalingPolicy,
    UpdatePolicy,
    UpdateState,
    UpdateStatus,
)
from .settings import settings


class Controller:
    """Owns one fleet and everything that acts on it.

    State is loaded from SQLite on construction; ``start`` launches the
    background prober and capacity loops and resumes an interrupted update.
    With ``autorun=False`` nothing runs in the background and callers drive
    updates with ``orchestrator.run``.
    """

    def __init__(
        self,
        provider: FleetProvider,
        director: TrafficDirector,
        fleet_name: str | None = None,
        probe_fn: Callable[[Replica], ProbeResult] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        autorun: bool = True,
        healthy_threshold: int | None = None,
        unhealthy_threshold: int | None = None,
        probe_interval_s: float | None = None,
    ):
        db.init_db()
        self.provider = provider
        self.director = director
        self.autorun = autorun
        name = fleet_name or settings.fleet_name
        snap = db.load_fleet(name) or FleetSnapshot(name=name)
        self.fleet = Fleet(snap, on_commit=db.save_fleet)

        self.prober = HealthProber(
            self.fleet,
            probe_fn=probe_fn,
            healthy_threshold=healthy_threshold,
            unhealthy_threshold=unhealthy_threshold,
            interval_s=probe_interval_s,
        )
        self.orchestrator = UpdateOrchestrator(self.fleet, provider, director, self.prober, clock=clock, sleep=sleep)
        policy = db.load_scaling_policy(name) or ScalingPolicy(period_s=settings.evaluation_period_s)
        self.capacity = CapacityController(
            self.fleet,
            provider,
            director,
            self.prober,
            policy=policy,
            clock=clock,
            sleep=sleep,
            active_update=self._active_update_id,
        )

    def start(self) -> None:
        self.recover()
        self.prober.start()
        self.capacity.start()

    def stop(self) -> None:
        self.prober.stop()
        self.capacity.stop()

    def _active_update_id(self) -> str | None:
        st = self.orchestrator.active()
        return st.id if st else None

    def recover(self) -> list[str]:
        """Restore persisted updates and traffic membership.

        Replicas left DRAINING by the previous run are destroyed first.
        Returns the ids of updates that were IN_PROGRESS when the controller
        stopped; they continue from their last completed batch.
        """
        self.orchestrator.finish_draining()
        for r in self.fleet.snapshot().in_service():
            self.director.register(r.id)
        resumable: list[str] = []
        for st in db.load_updates(self.fleet.name):
            self.orchestrator.restore(st)
            if st.state == UpdateState.IN_PROGRESS:
                resumable.append(st.id)
                db.log_event(
                    "INFO",
                    f"Resuming update after restart at batch {st.batch_index + 1}",
                    fleet=st.fleet,
                    update_id=st.id,
                )
                if self.autorun:
                    self.orchestrator.start(st.id)
        return resumable

    # -- fleet ------------------------------------------------------------

    def describe_fleet(self) -> FleetSnapshot:
        snap = self.fleet.snapshot()
        if snap.launch_spec is None:
            raise NotFound(f"fleet {snap.name} has not been created")
        return snap

    def create_fleet(self, spec: ReplicaSpec, desired: int) -> FleetSnapshot:
        if not spec.zones:
            raise InvalidPolicy("a fleet needs at least one zone")
        snap = self.fleet.snapshot()
        if snap.launch_spec is not None or snap.replicas:
            raise ConflictingUpdate(f"fleet {snap.name} already exists")
        policy = self.capacity.policy
        if desired != policy.bound(desired):
            raise InvalidPolicy(f"desired capacity {desired} outside [{policy.min}, {policy.max}]")
        self.fleet.update(lambda s: replace(s, launch_spec=spec, desired_capacity=desired))
        db.log_event("INFO", f"Fleet created: {desired} x {spec.label} over {', '.join(spec.zones)}", fleet=snap.name)
        self.capacity.reconcile()
        return self.fleet.snapshot()

    def set_desired(self, desired: int) -> FleetSnapshot:
        self.describe_fleet()
        return self.capacity.set_desired(desired)

    # -- updates ----------------------------------------------------------

    def submit_update(self, spec: ReplicaSpec, policy: UpdatePolicy) -> UpdateStatus:
        self.describe_fleet()
        st = self.orchestrator.submit_update(spec, policy)
        if self.autorun:
            self.orchestrator.start(st.id)
        return st

    def resume_update(self, update_id: str) -> UpdateStatus:
        st = self.orchestrator.resume_update(update_id)
        if self.autorun and st.state == UpdateState.IN_PROGRESS:
            self.orchestrator.start(st.id)
        return st

    # -- scaling ----------------------------------------------------------

    def submit_scaling_policy(self, policy: ScalingPolicy) -> ScalingPolicy:
        self.capacity.set_policy(policy)
        return self.capacity.policy

    def push_metric(self, metric: float) -> ScalingAction | None:
        self.describe_fleet()
        action = self.capacity.evaluate(metric)
        if action:
            self.capacity.apply(action)
        return action
