"""Error taxonomy surfaced by relay services."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for errors surfaced to relay callers."""


class AuthenticationError(RelayError):
    """Capability check failed; never retried."""


class NotFoundError(RelayError):
    """Missing tool, job or run."""


class BadRequestError(RelayError):
    """Request is well-formed but not acceptable in the current state."""


class InvalidJobArgumentsError(RelayError):
    """Job arguments are malformed, fail schema validation, or have no cache key."""


class JobPollTimeoutError(RelayError):
    """Synchronous wait for a job result exceeded its TTL; the job itself is untouched."""

    def __init__(self, message: str, *, job_id: str) -> None:
        super().__init__(message)
        self.job_id = job_id


class RunBusyError(RelayError):
    """Run cannot accept a new message right now; retry later."""


class AgentError(RelayError):
    """Reasoning loop contract violation (cycle, step ceiling, invalid schema)."""


class RunLeaseLostError(RelayError):
    """Run lock lease expired mid-processing; another processor owns the run now."""
