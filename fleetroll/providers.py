"""Interfaces to the collaborators the controller drives but does not implement."""
from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Callable, TypeVar

from .errors import BatchFailed, ProviderError
from .runtime import Replica, ReplicaSpec

T = TypeVar("T")


class FleetProvider(ABC):
    """Creates and destroys compute replicas."""

    @abstractmethod
    def create_replica(self, spec: ReplicaSpec, zone: str) -> str:
        """Start a replica; raises QuotaExceeded, InvalidSpec or ProviderError."""

    @abstractmethod
    def destroy_replica(self, replica_id: str) -> None:
        """Raises ReplicaNotFound if the replica does not exist."""

    @abstractmethod
    def describe_replica(self, replica_id: str) -> Replica:
        """Raises ReplicaNotFound if the replica does not exist."""

    def replica_cpu(self, replica_id: str) -> float | None:
        """CPU utilization in percent, or None when the provider has no data."""
        return None


class TrafficDirector(ABC):
    """Routes traffic only to replicas registered as in service."""

    @abstractmethod
    def register(self, replica_id: str) -> None:
        ...

    @abstractmethod
    def deregister(self, replica_id: str) -> None:
        """Stop routing new requests; in-flight ones drain before destroy."""

    @abstractmethod
    def list_in_service(self) -> set[str]:
        ...

    def forget(self, replica_id: str) -> None:
        """Drop any bookkeeping kept for a destroyed replica."""


def retry_provider_call(
    fn: Callable[[], T],
    *,
    what: str,
    attempts: int,
    backoff_s: float,
    backoff_max_s: float,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run a provider call with bounded exponential backoff.

    Non-retryable errors and exhausted retries surface as BatchFailed.
    """
    attempts = max(1, int(attempts))
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except ProviderError as e:
            if not e.retryable:
                raise BatchFailed(f"{what} failed: {type(e).__name__}: {e}") from e
            if attempt == attempts:
                raise BatchFailed(f"{what} failed after {attempts} attempts: {type(e).__name__}: {e}") from e
            sleep(min(backoff_max_s, backoff_s * 2 ** (attempt - 1)))
    raise AssertionError("unreachable")
