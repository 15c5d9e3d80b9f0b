from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from threading import Lock, Thread
from typing import Callable

import httpx

from . import db
from .alerts import send_alert
from .errors import ReplicaNotFound
from .runtime import Fleet, Health, ProbeResult, Replica
from .settings import settings


def check_health(
    url: str,
    timeout_s: float = 2.0,
    transport: httpx.BaseTransport | None = None,
) -> tuple[ProbeResult, str, float | None]:
    """Call a replica health endpoint.

    HTTP 200 is healthy, any other status unhealthy, no response unreachable.
    Returns (result, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False, transport=transport) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if resp.status_code != 200:
            return ProbeResult.UNHEALTHY, f"HTTP {resp.status_code}", latency_ms
        return ProbeResult.HEALTHY, "Healthy", latency_ms
    except (httpx.ConnectError, httpx.TimeoutException):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return ProbeResult.UNREACHABLE, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return ProbeResult.UNREACHABLE, f"Error: {type(e).__name__}: {e}", latency_ms


class HealthProber:
    """Probes replicas and tracks consecutive results per replica.

    A replica becomes HEALTHY after ``healthy_threshold`` consecutive
    successes and UNHEALTHY after ``unhealthy_threshold`` consecutive failures
    (unreachable counts as a failure). Only Replica.health is written; traffic
    membership is left to the callers.
    """

    def __init__(
        self,
        fleet: Fleet,
        probe_fn: Callable[[Replica], ProbeResult] | None = None,
        healthy_threshold: int | None = None,
        unhealthy_threshold: int | None = None,
        interval_s: float | None = None,
        health_path: str | None = None,
        max_workers: int = 8,
    ):
        self.fleet = fleet
        self.probe_fn = probe_fn
        self.healthy_threshold = max(1, int(healthy_threshold or settings.healthy_threshold))
        self.unhealthy_threshold = max(1, int(unhealthy_threshold or settings.unhealthy_threshold))
        self.interval_s = settings.probe_interval_s if interval_s is None else interval_s
        self.health_path = health_path or settings.health_path
        self.max_workers = max(1, int(max_workers))
        self._lock = Lock()
        self._in_flight: dict[str, Lock] = {}
        self._successes: dict[str, int] = {}
        self._failures: dict[str, int] = {}
        self._stop = False
        self._thr: Thread | None = None

    def probe(self, replica: Replica) -> ProbeResult:
        if self.probe_fn is not None:
            return self.probe_fn(replica)
        if not replica.address:
            return ProbeResult.UNREACHABLE
        result, _msg, _latency = check_health(f"http://{replica.address}{self.health_path}", settings.probe_timeout_s)
        return result

    def check(self, replica_id: str) -> Health:
        """Probe once and return the replica's health after applying thresholds.

        If a probe for this replica is already outstanding, returns the last
        recorded health without probing again.
        """
        replica = self.fleet.get(replica_id)
        if replica is None:
            raise ReplicaNotFound(f"replica {replica_id} is not in fleet {self.fleet.name}")

        with self._lock:
            gate = self._in_flight.setdefault(replica_id, Lock())
        if not gate.acquire(blocking=False):
            return replica.health
        try:
            result = self.probe(replica)
        finally:
            gate.release()
        return self._record(replica, result)

    def observe(self, replica_id: str) -> Health:
        """Health for an admission decision.

        While the background loop runs it owns the consecutive-result
        counters, so this only reads the recorded health. Otherwise it
        probes once through ``check``.
        """
        if not self.running:
            return self.check(replica_id)
        replica = self.fleet.get(replica_id)
        if replica is None:
            raise ReplicaNotFound(f"replica {replica_id} is not in fleet {self.fleet.name}")
        return replica.health

    def _record(self, replica: Replica, result: ProbeResult) -> Health:
        rid = replica.id
        with self._lock:
            if result == ProbeResult.HEALTHY:
                self._successes[rid] = self._successes.get(rid, 0) + 1
                self._failures[rid] = 0
            else:
                self._failures[rid] = self._failures.get(rid, 0) + 1
                self._successes[rid] = 0
            successes = self._successes[rid]
            failures = self._failures[rid]

        current = self.fleet.get(rid)
        if current is None:
            return replica.health
        new = current.health
        if successes >= self.healthy_threshold:
            new = Health.HEALTHY
        elif failures >= self.unhealthy_threshold:
            new = Health.UNHEALTHY
        if new == current.health:
            return new

        self.fleet.set_health(rid, new)
        if new == Health.UNHEALTHY:
            db.log_event(
                "WARN",
                f"Replica {rid} ({current.zone}) unhealthy after {failures} failed probes ({result.value})",
                fleet=self.fleet.name,
            )
            if current.health == Health.HEALTHY:
                self._alert(current, "replica became unhealthy", result)
        elif current.health == Health.UNHEALTHY:
            db.log_event("INFO", f"Replica {rid} recovered", fleet=self.fleet.name)
            self._alert(current, "replica recovered")
        return new

    def _alert(self, replica: Replica, summary: str, result: ProbeResult | None = None) -> None:
        send_alert(
            self.fleet.name,
            f"{summary} ({replica.id})",
            {
                "Replica": replica.id,
                "Zone": replica.zone,
                "Spec": replica.spec.label,
                "Lifecycle": replica.lifecycle.value,
                "Last check": result.value if result else None,
            },
        )

    def forget(self, replica_id: str) -> None:
        with self._lock:
            self._in_flight.pop(replica_id, None)
            self._successes.pop(replica_id, None)
            self._failures.pop(replica_id, None)

    def probe_all(self) -> dict[str, Health]:
        """Probe every live replica concurrently."""
        ids = [r.id for r in self.fleet.snapshot().live()]
        if not ids:
            return {}
        out: dict[str, Health] = {}
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(ids))) as pool:
            futures = {rid: pool.submit(self.check, rid) for rid in ids}
            for rid, fut in futures.items():
                try:
                    out[rid] = fut.result()
                except ReplicaNotFound:
                    # removed between snapshot and probe
                    continue
        return out

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop = False
        self._thr = Thread(target=self._loop, daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop = True

    @property
    def running(self) -> bool:
        return self._thr is not None and self._thr.is_alive() and not self._stop

    def _loop(self) -> None:
        db.log_event("INFO", "Health prober started", fleet=self.fleet.name)
        while not self._stop:
            try:
                self.probe_all()
            except Exception as e:
                db.log_event("ERROR", f"Probe round failed: {type(e).__name__}: {e}", fleet=self.fleet.name)
            time.sleep(max(1.0, self.interval_s))
