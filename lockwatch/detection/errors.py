from __future__ import annotations
from typing import Optional


class LockwatchError(Exception):
    transient = False


class MalformedLockRecord(LockwatchError):
    """
    A lock record that cannot take part in graph construction.
    Collected as a warning by the graph builder, never raised out of the kernel.
    """
    def __init__(self, lock_id: str, reason: str):
        super().__init__(f"lock {lock_id!r} skipped: {reason}")
        self.lock_id = lock_id
        self.reason = reason


class AdvisorNoEligibleTarget(LockwatchError):
    def __init__(self, cycle_index: int):
        super().__init__(f"cycle {cycle_index} has no preemptible holder")
        self.cycle_index = cycle_index


class StaleEvaluation(LockwatchError):
    """Raised inside the coordinator when a newer notification superseded the running evaluation."""
    def __init__(self, generation: int, latest: int):
        super().__init__(f"evaluation {generation} superseded by {latest}")
        self.generation = generation
        self.latest = latest


class LockNotFound(LockwatchError, KeyError):
    def __init__(self, lock_id: str):
        super().__init__(f"unknown lock: {lock_id}")
        self.lock_id = lock_id

    def __str__(self) -> str:
        return self.args[0]


class AdviceServiceError(LockwatchError):
    def __init__(self, message: str, status: Optional[int] = None, transient: bool = False):
        super().__init__(message)
        self.status = status
        self.transient = transient


class UpstreamRateLimited(AdviceServiceError):
    def __init__(self, retry_after: float, user_message: str = ""):
        super().__init__(f"advice service rate limited, retry after {retry_after:.0f}s",
                         status=429, transient=True)
        self.retry_after = retry_after
        self.user_message = user_message or (
            "The advice service is receiving too many requests. Please try again shortly."
        )
