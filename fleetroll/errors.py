from __future__ import annotations

from enum import Enum


class ResultCode(str, Enum):
    SUCCESS = "success"
    CONFLICT = "conflict"
    INVALID_POLICY = "invalid-policy"
    NOT_FOUND = "not-found"
    TIMEOUT = "timeout"
    FAILED = "failed"


class FleetrollError(Exception):
    result = ResultCode.FAILED


class InvalidPolicy(FleetrollError):
    """The policy makes the requested operation impossible."""

    result = ResultCode.INVALID_POLICY


class ConflictingUpdate(FleetrollError):
    """An update is already active, or the update cannot make that transition."""

    result = ResultCode.CONFLICT


class NotFound(FleetrollError):
    result = ResultCode.NOT_FOUND


class ReplicaNotFound(NotFound):
    pass


class ProviderError(FleetrollError):
    """A Fleet Provider call failed. Retried unless ``retryable`` is False."""

    retryable = True


class QuotaExceeded(ProviderError):
    pass


class InvalidSpec(ProviderError):
    retryable = False


class BatchFailed(FleetrollError):
    pass


class HealthTimeout(FleetrollError):
    """A launched replica never reported healthy within the timeout."""

    result = ResultCode.TIMEOUT


class StaleFleetVersion(FleetrollError):
    """Compare-and-swap lost against a concurrent fleet mutation."""

    result = ResultCode.CONFLICT
