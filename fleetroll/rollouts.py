from __future__ import annotations

import secrets
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from threading import Lock, Thread
from typing import Callable

from . import db
from .alerts import send_alert
from .errors import (
    BatchFailed,
    ConflictingUpdate,
    FleetrollError,
    HealthTimeout,
    InvalidPolicy,
    NotFound,
    ProviderError,
    ReplicaNotFound,
    ResultCode,
)
from .health import HealthProber
from .planner import next_batch, plan_update
from .providers import FleetProvider, TrafficDirector, retry_provider_call
from .runtime import (
    ACTIVE_STATES,
    BatchRecord,
    Fleet,
    Health,
    Lifecycle,
    ReplicaSpec,
    UpdatePolicy,
    UpdateState,
    UpdateStatus,
    check_transition,
    format_composition,
    utc_now,
)
from .settings import settings


class UpdateOrchestrator:
    """Replaces a fleet's replicas with a new spec in health-gated batches.

    Each batch launches replacements, waits for them to report healthy,
    admits them to traffic, and only then drains and destroys the replicas
    they replace. Pause and cancel take effect between batches. Failures are
    never rolled back automatically: the fleet is left as it is (possibly
    mixed old/new) and the update is marked FAILED with its composition.
    """

    def __init__(
        self,
        fleet: Fleet,
        provider: FleetProvider,
        director: TrafficDirector,
        prober: HealthProber,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        probe_interval_s: float | None = None,
        max_attempts: int | None = None,
        backoff_s: float | None = None,
        backoff_max_s: float | None = None,
    ):
        self.fleet = fleet
        self.provider = provider
        self.director = director
        self.prober = prober
        self._clock = clock
        self._sleep = sleep
        self.probe_interval_s = prober.interval_s if probe_interval_s is None else probe_interval_s
        self.max_attempts = max_attempts or settings.provider_max_attempts
        self.backoff_s = settings.provider_backoff_s if backoff_s is None else backoff_s
        self.backoff_max_s = settings.provider_backoff_max_s if backoff_max_s is None else backoff_max_s
        self._lock = Lock()
        self._updates: dict[str, UpdateStatus] = {}
        self._threads: dict[str, Thread] = {}

    # -- operator surface -------------------------------------------------

    def submit_update(self, new_spec: ReplicaSpec, policy: UpdatePolicy) -> UpdateStatus:
        with self._lock:
            active = self._active()
            if active:
                raise ConflictingUpdate(f"update {active.id} is already {active.state.value}")
            snap = self.fleet.snapshot()
            self._validate(len(snap.in_service()), policy)

            st = UpdateStatus(
                id=secrets.token_hex(6),
                fleet=snap.name,
                spec=new_spec,
                policy=policy,
                previous_spec=snap.launch_spec,
            )
            st.plan = plan_update(snap, new_spec, policy)
            st.total_batches = len(st.plan.batches)
            self._transition(st, UpdateState.IN_PROGRESS)
            st.message = f"Rolling {len(snap.live())} replicas to {new_spec.label} in {st.total_batches} batch(es)"
            self._updates[st.id] = st
            self._save(st)

        # Replicas launched from now on, by anyone, use the new spec.
        self.fleet.update(lambda s: replace(s, launch_spec=new_spec))
        db.log_event("INFO", st.message, fleet=st.fleet, update_id=st.id)
        return st

    def describe_update(self, update_id: str) -> UpdateStatus:
        with self._lock:
            st = self._get(update_id)
            st.composition = self.fleet.snapshot().composition()
            return st

    def list_updates(self) -> list[UpdateStatus]:
        with self._lock:
            return list(self._updates.values())

    def active(self) -> UpdateStatus | None:
        with self._lock:
            return self._active()

    def pause_update(self, update_id: str) -> UpdateStatus:
        """Request a pause; it applies once the current batch has finished."""
        with self._lock:
            st = self._get(update_id)
            if st.state == UpdateState.PAUSED or st.pause_requested:
                return st
            if st.state != UpdateState.IN_PROGRESS:
                raise ConflictingUpdate(f"update {st.id} is {st.state.value}; only a running update can be paused")
            st.pause_requested = True
            st.message = "Pause requested; takes effect after the current batch"
            self._save(st)
        db.log_event("INFO", st.message, fleet=st.fleet, update_id=st.id)
        return st

    def resume_update(self, update_id: str) -> UpdateStatus:
        """Resume a paused update. The caller runs it again (see ``start``)."""
        with self._lock:
            st = self._get(update_id)
            if st.state == UpdateState.IN_PROGRESS:
                if st.pause_requested:
                    st.pause_requested = False
                    st.message = "Pending pause withdrawn"
                    self._save(st)
                return st
            if st.state != UpdateState.PAUSED:
                raise ConflictingUpdate(f"update {st.id} is {st.state.value}; only a paused update can be resumed")
            self._transition(st, UpdateState.IN_PROGRESS)
            st.message = f"Resumed at batch {st.batch_index + 1}"
            self._save(st)
        db.log_event("INFO", st.message, fleet=st.fleet, update_id=st.id)
        return st

    def cancel_update(self, update_id: str) -> UpdateStatus:
        """Stop the update at the next batch boundary, leaving the fleet as-is.

        Replicas already swapped are not reverted: destroying healthy new
        replicas to bring back old ones carries the same risk as going forward.
        """
        with self._lock:
            st = self._get(update_id)
            if st.state == UpdateState.PAUSED:
                self._finish_cancel(st)
                return st
            if st.state != UpdateState.IN_PROGRESS:
                raise ConflictingUpdate(f"update {st.id} is already {st.state.value}")
            st.cancel_requested = True
            st.message = "Cancel requested; takes effect after the current batch"
            self._save(st)
        db.log_event("WARN", st.message, fleet=st.fleet, update_id=st.id)
        return st

    def restore(self, st: UpdateStatus) -> None:
        """Adopt an update loaded from storage after a controller restart."""
        with self._lock:
            self._updates[st.id] = st

    def start(self, update_id: str) -> None:
        with self._lock:
            self._get(update_id)
            thr = self._threads.get(update_id)
            if thr and thr.is_alive():
                return
            thr = Thread(target=self.run, args=(update_id,), daemon=True)
            self._threads[update_id] = thr
        thr.start()

    # -- execution --------------------------------------------------------

    def run(self, update_id: str) -> UpdateStatus:
        """Execute batches until the update completes, pauses or fails."""
        with self._lock:
            st = self._get(update_id)

        while True:
            with self._lock:
                if st.state != UpdateState.IN_PROGRESS:
                    return st
                if st.cancel_requested:
                    self._transition(st, UpdateState.PAUSED)
                    self._finish_cancel(st)
                    return st
                if st.pause_requested:
                    st.pause_requested = False
                    self._transition(st, UpdateState.PAUSED)
                    st.message = f"Paused after {st.batch_index} of {st.total_batches} batch(es)"
                    self._save(st)
                    db.log_event("INFO", st.message, fleet=st.fleet, update_id=st.id)
                    return st

            try:
                record = self._run_batch(st)
            except HealthTimeout as e:
                self._fail(st, e, ResultCode.TIMEOUT)
                return st
            except (BatchFailed, ProviderError) as e:
                self._fail(st, e, ResultCode.FAILED)
                return st

            with self._lock:
                if record is None:
                    self._transition(st, UpdateState.COMPLETED)
                    st.result = ResultCode.SUCCESS
                    st.total_batches = st.batch_index
                    st.composition = self.fleet.snapshot().composition()
                    st.message = f"Update completed in {st.batch_index} batch(es)"
                    self._save(st)
                    db.log_event("INFO", st.message, fleet=st.fleet, update_id=st.id)
                    return st

                st.batches.append(record)
                st.batch_index += 1
                st.last_good_batch = record.index
                remaining = plan_update(self.fleet.snapshot(), st.spec, st.policy)
                st.total_batches = st.batch_index + len(remaining.batches)
                st.message = (
                    f"Batch {st.batch_index}/{st.total_batches}: "
                    f"launched {len(record.launched)}, retired {len(record.retired)}"
                )
                self._save(st)
            db.log_event("INFO", st.message, fleet=st.fleet, update_id=st.id)

    def _run_batch(self, st: UpdateStatus) -> BatchRecord | None:
        snap = self.fleet.snapshot()
        # LAUNCHING replicas of this update survive a restart mid-batch; they
        # are gated like freshly launched ones instead of launching more.
        pending = [
            r.id for r in snap.replicas
            if r.update_id == st.id and r.lifecycle == Lifecycle.LAUNCHING
        ]
        batch = next_batch(snap, st.spec, st.policy)
        if batch is None and not pending:
            return None

        index = st.batch_index
        launched = self._launch(st, batch.zones if batch else ())
        new_ids = pending + launched
        self._await_healthy(st, new_ids)
        self._admit(new_ids)
        retired, deferred = self._retire(st, batch.retire if batch else ())
        if not new_ids and not retired:
            raise BatchFailed(
                f"batch {index + 1} made no progress: retiring {len(deferred)} replica(s) would drop "
                f"in-service healthy replicas below {st.policy.min_in_service}"
            )
        return BatchRecord(index=index, launched=new_ids, retired=retired, deferred=deferred)

    def _launch(self, st: UpdateStatus, zones: tuple[str, ...]) -> list[str]:
        if not zones:
            return []
        ids: list[str] = []
        errors: list[FleetrollError] = []
        workers = max(1, min(len(zones), st.policy.max_batch_size))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(self._launch_one, st, zone) for zone in zones]
            for fut in futures:
                try:
                    ids.append(fut.result())
                except FleetrollError as e:
                    errors.append(e)
        if errors:
            raise BatchFailed(f"{len(errors)} of {len(zones)} launches failed: {errors[0]}") from errors[0]
        return ids

    def _launch_one(self, st: UpdateStatus, zone: str) -> str:
        rid = self._provider_call(lambda: self.provider.create_replica(st.spec, zone), f"create replica in {zone}")
        described = self._provider_call(lambda: self.provider.describe_replica(rid), f"describe replica {rid}")
        replica = replace(
            described,
            zone=zone,
            spec=st.spec,
            lifecycle=Lifecycle.LAUNCHING,
            health=Health.UNKNOWN,
            update_id=st.id,
        )
        self.fleet.put(replica)
        db.log_event("INFO", f"Launched {rid} ({st.spec.label}) in {zone}", fleet=st.fleet, update_id=st.id)
        return rid

    def _await_healthy(self, st: UpdateStatus, ids: list[str]) -> None:
        if not ids:
            return
        deadline = self._clock() + st.policy.health_timeout_s
        waiting = list(ids)
        while True:
            try:
                waiting = [rid for rid in waiting if self.prober.observe(rid) != Health.HEALTHY]
            except ReplicaNotFound as e:
                raise BatchFailed(f"replica vanished during health gate: {e}") from e
            if not waiting:
                return
            if self._clock() >= deadline:
                # Replicas that did become healthy stay and take traffic.
                self._admit([rid for rid in ids if rid not in waiting])
                raise HealthTimeout(
                    f"{len(waiting)} replica(s) not healthy after {st.policy.health_timeout_s:g}s: "
                    + ", ".join(waiting)
                )
            self._sleep(self.probe_interval_s)

    def _admit(self, ids: list[str]) -> None:
        for rid in ids:
            self.director.register(rid)
            self.fleet.set_lifecycle(rid, Lifecycle.IN_SERVICE)

    def _retire(self, st: UpdateStatus, retire_ids: tuple[str, ...]) -> tuple[list[str], list[str]]:
        draining: list[str] = []
        deferred: list[str] = []
        for rid in retire_ids:
            snap = self.fleet.snapshot()
            r = snap.get(rid)
            if r is None or not r.live:
                continue
            if r.serving and snap.serving_count() - 1 < st.policy.min_in_service:
                deferred.append(rid)
                continue
            self.director.deregister(rid)
            self.fleet.set_lifecycle(rid, Lifecycle.DRAINING)
            draining.append(rid)

        if deferred:
            db.log_event(
                "WARN",
                f"Deferred retiring {len(deferred)} replica(s) to keep {st.policy.min_in_service} in service",
                fleet=st.fleet,
                update_id=st.id,
            )
        if draining:
            self._sleep(st.policy.drain_grace_s)

        for rid in draining:
            self._destroy(rid)
        return draining, deferred

    def finish_draining(self) -> list[str]:
        """Destroy replicas a stopped controller left DRAINING.

        They were deregistered before the stop, so their drain grace has
        already run while the controller was down.
        """
        destroyed: list[str] = []
        for r in self.fleet.snapshot().replicas:
            if r.lifecycle != Lifecycle.DRAINING:
                continue
            self.director.deregister(r.id)
            try:
                self._destroy(r.id)
            except BatchFailed as e:
                # Stays DRAINING; the next restart tries again.
                db.log_event("ERROR", f"Could not destroy draining replica {r.id}: {e}", fleet=self.fleet.name)
                continue
            destroyed.append(r.id)
            db.log_event("WARN", f"Destroyed {r.id} ({r.zone}) left draining by an interrupted run", fleet=self.fleet.name)
        return destroyed

    def _destroy(self, rid: str) -> None:
        try:
            self._provider_call(lambda: self.provider.destroy_replica(rid), f"destroy replica {rid}")
        except ReplicaNotFound:
            pass  # already gone
        self.fleet.remove(rid)
        self.prober.forget(rid)
        self.director.forget(rid)

    def _provider_call(self, fn, what: str):
        return retry_provider_call(
            fn,
            what=what,
            attempts=self.max_attempts,
            backoff_s=self.backoff_s,
            backoff_max_s=self.backoff_max_s,
            sleep=self._sleep,
        )

    # -- state bookkeeping ------------------------------------------------

    def _validate(self, in_service: int, policy: UpdatePolicy) -> None:
        if policy.max_batch_size < 1:
            raise InvalidPolicy("max_batch_size must be >= 1")
        if policy.min_in_service < 0:
            raise InvalidPolicy("min_in_service must be >= 0")
        if policy.health_timeout_s <= 0:
            raise InvalidPolicy("health_timeout_s must be > 0")
        if policy.drain_grace_s < 0:
            raise InvalidPolicy("drain_grace_s must be >= 0")
        if policy.min_in_service >= in_service:
            raise InvalidPolicy(
                f"min_in_service ({policy.min_in_service}) must be below the in-service fleet size ({in_service})"
            )

    def _fail(self, st: UpdateStatus, exc: Exception, result: ResultCode) -> None:
        with self._lock:
            self._transition(st, UpdateState.FAILED)
            st.result = result
            st.composition = self.fleet.snapshot().composition()
            last = "none" if st.last_good_batch is None else str(st.last_good_batch + 1)
            st.message = (
                f"{type(exc).__name__}: {exc}. Last good batch: {last}. "
                f"Fleet left as-is for manual remediation: {format_composition(st.composition)}"
            )
            self._save(st)
        db.log_event("ERROR", st.message, fleet=st.fleet, update_id=st.id)
        send_alert(
            st.fleet,
            f"update {st.id} failed ({result.value})",
            {
                "Update": st.id,
                "Target": st.spec.label,
                "Batches done": f"{st.batch_index}/{st.total_batches}",
                "Composition": format_composition(st.composition),
                "Detail": st.message,
            },
        )

    def _finish_cancel(self, st: UpdateStatus) -> None:
        # Caller holds self._lock; st is PAUSED.
        swapped = any(b.launched or b.retired for b in st.batches)
        st.cancel_requested = False
        st.composition = self.fleet.snapshot().composition()
        if swapped:
            self._transition(st, UpdateState.FAILED)
            st.result = ResultCode.FAILED
            st.message = (
                f"Cancelled after {st.batch_index} batch(es); nothing was rolled back, "
                f"fleet is mixed: {format_composition(st.composition)}"
            )
        else:
            self._transition(st, UpdateState.ROLLED_BACK)
            st.result = ResultCode.SUCCESS
            st.message = "Cancelled before any replica was replaced; fleet unchanged"
            if st.previous_spec is not None:
                self.fleet.update(lambda s: replace(s, launch_spec=st.previous_spec))
        self._save(st)
        db.log_event("WARN", st.message, fleet=st.fleet, update_id=st.id)

    def _transition(self, st: UpdateStatus, new: UpdateState) -> None:
        check_transition(st.state, new)
        st.state = new

    def _active(self) -> UpdateStatus | None:
        for st in self._updates.values():
            if st.state in ACTIVE_STATES:
                return st
        return None

    def _get(self, update_id: str) -> UpdateStatus:
        st = self._updates.get(update_id)
        if not st:
            raise NotFound(f"unknown update {update_id}")
        return st

    def _save(self, st: UpdateStatus) -> None:
        st.updated_at = utc_now()
        db.save_update(st)
