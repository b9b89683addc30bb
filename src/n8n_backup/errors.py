"""Exception taxonomy for n8n-backup.

Run-level outcomes (Gate rejection, persistence failure) and object-level
failures share one hierarchy so transports can raise precise errors and
the reconciler can classify them at its boundary:

- ``InvalidVersionFormat``    -- fatal, pre-flight.
- ``CompatibilityMismatch``   -- Gate rejection, reported as ``aborted``.
- ``TransientTransportError`` -- retried with backoff.
- ``ValidationError``         -- non-retryable, object-level ``error``.
- ``PermissionDenied``        -- non-retryable, object-level ``error``.
- ``UnsupportedOperation``    -- object-level ``skipped`` (unsupported).
- ``DependencyMissing``       -- object-level ``skipped`` (dependency_missing).
- ``PersistenceError``        -- fatal to the run, surfaced to the caller.
- ``RunCancelled``            -- cancelled before the input was loaded; ``failed``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .engine.models import VersionReportSummary


class N8nBackupError(Exception):
    """Base class for all n8n-backup errors."""


class ConfigurationError(N8nBackupError, ValueError):
    """Configuration is missing or invalid."""


class ProfileError(N8nBackupError):
    """Profile lookup or profile-store invariant violation."""


class InvalidVersionFormat(N8nBackupError, ValueError):
    """A platform version tag could not be parsed as major.minor.patch."""

    def __init__(self, tag: Any) -> None:
        self.tag = tag
        super().__init__(
            f"Invalid version tag {tag!r}: expected MAJOR.MINOR.PATCH"
        )


class CompatibilityMismatch(N8nBackupError):
    """Source and target platform versions are not restore-compatible."""

    def __init__(self, source_tag: str, target_tag: str, reason: str):
        self.source_tag = source_tag
        self.target_tag = target_tag
        self.reason = reason
        super().__init__(reason)


class TransportError(N8nBackupError):
    """Base class for errors raised by remote transports."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class TransientTransportError(TransportError):
    """Timeout, connection failure, rate limit or 5xx. Safe to retry."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ):
        self.retry_after = retry_after
        super().__init__(message, status_code)


class ValidationError(TransportError):
    """The platform rejected the payload. Never retried."""


class PermissionDenied(TransportError):
    """Credentials lack access to the resource. Never retried."""


class UnsupportedOperation(TransportError):
    """The platform API cannot perform this mutation for this resource."""


class DependencyMissing(N8nBackupError):
    """An object references ids that are absent from the working set."""

    def __init__(self, resource_id: str, missing: list[str]):
        self.resource_id = resource_id
        self.missing = missing
        super().__init__(
            f"{resource_id} depends on missing object(s): {', '.join(missing)}"
        )


class PersistenceError(N8nBackupError):
    """The version store could not durably record a result.

    When raised by an orchestrator run, ``summary`` holds the ``failed``
    summary computed for the run so callers can still report it.
    """

    def __init__(
        self,
        message: str,
        summary: VersionReportSummary | None = None,
    ):
        self.summary = summary
        super().__init__(message)


class VersionNotFound(N8nBackupError, KeyError):
    """No version with the requested id exists in the store."""

    def __init__(self, version_id: str):
        self.version_id = version_id
        super().__init__(f"Version '{version_id}' not found")

    def __str__(self) -> str:
        return self.args[0]


class RunCancelled(N8nBackupError):
    """The run's cancel token fired while platform reads were pending."""

    def __init__(self, reason: str | None):
        self.reason = reason
        super().__init__(f"cancelled: {reason or 'run cancelled'}")
