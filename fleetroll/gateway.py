from __future__ import annotations

import time
from threading import Lock

from .providers import TrafficDirector


class NoHealthyBackends(Exception):
    pass


class GatewayTrafficDirector(TrafficDirector):
    """In-process routing table.

    Keeps the in-service membership a front proxy consults via ``pick()`` and
    remembers when each replica started draining.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._in_service: list[str] = []
        self._draining: dict[str, float] = {}  # replica id -> drain start
        self._rr = 0

    def register(self, replica_id: str) -> None:
        with self._lock:
            if replica_id not in self._in_service:
                self._in_service.append(replica_id)
            self._draining.pop(replica_id, None)

    def deregister(self, replica_id: str) -> None:
        with self._lock:
            if replica_id in self._in_service:
                self._in_service.remove(replica_id)
                self._draining[replica_id] = time.time()

    def list_in_service(self) -> set[str]:
        with self._lock:
            return set(self._in_service)

    def forget(self, replica_id: str) -> None:
        with self._lock:
            if replica_id in self._in_service:
                self._in_service.remove(replica_id)
            self._draining.pop(replica_id, None)

    def draining(self) -> dict[str, float]:
        with self._lock:
            return dict(self._draining)

    def pick(self) -> str:
        """Round-robin across in-service replicas."""
        with self._lock:
            if not self._in_service:
                raise NoHealthyBackends("No replicas in service.")
            i = self._rr % len(self._in_service)
            self._rr = (i + 1) % len(self._in_service)
            return self._in_service[i]
