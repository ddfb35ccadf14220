"""Error taxonomy for the transfer orchestrator."""

from typing import Any, Dict, Optional


class MigratorError(Exception):
    """Base class for orchestrator errors with a stable error code."""

    code = "migrator_error"

    def __init__(self, message: str, *, principal: Optional[str] = None, job_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.principal = principal
        self.job_id = job_id

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.job_id:
            result["job_id"] = self.job_id
        return result


class NoCredentialError(MigratorError):
    """The principal never authorized (or its credential was revoked)."""

    code = "no_credential"


class RefreshFailedError(MigratorError):
    """The upstream refresh exchange was rejected or unreachable."""

    code = "refresh_failed"


class AccessDeniedError(MigratorError):
    """The source access check did not approve the credential."""

    code = "access_denied"


class EmptyManifestError(MigratorError):
    """No usable item paths remained after canonicalization."""

    code = "empty_manifest"


class SpawnFailedError(MigratorError):
    """The transfer executable could not be started."""

    code = "spawn_failed"


class ProcessFailedError(MigratorError):
    """The transfer process exited with a non-zero code."""

    code = "process_failed"

    def __init__(self, message: str, exit_code: int, **kwargs):
        super().__init__(message, **kwargs)
        self.exit_code = exit_code


class InvalidTransitionError(MigratorError):
    """A job state change that violates the job state machine."""

    code = "invalid_transition"


class JobNotFoundError(MigratorError, KeyError):
    """No job is registered under the given id."""

    code = "job_not_found"

    def __str__(self) -> str:
        return self.message
