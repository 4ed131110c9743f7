"""
Export pipeline error taxonomy.

Failures are classified once, where they happen (fetch boundary, token
endpoint, checkpoint store), so the batch pipeline only ever dispatches on
exception type.
"""


class ExportError(Exception):
    """Base class for all export pipeline errors."""


class AuthExpiredError(ExportError):
    """Remote API rejected the bearer credential as expired (HTTP 401)."""


class TransientError(ExportError):
    """Network, throttling or 5xx failure; eligible for job-level retry."""


class PermanentError(ExportError):
    """Remote rejected the request for a reason retrying will not fix."""


class ReconnectRequiredError(PermanentError):
    """The refresh credential was rejected or is missing; user must re-authorize."""


class StaleInvocationError(ExportError):
    """Another invocation advanced the checkpoint first; this one must stop."""


class CheckpointError(ExportError):
    """A checkpoint write would violate a job invariant."""
