"""
Exceptions raised by the migration engine.

Every error carries a ``context`` dictionary (HTTP status, response
excerpt, backup path, ...) and an optional ``hint`` so the operator has
enough information to act without re-running anything.
"""

from typing import Any, Dict, List, Optional


class MigrationError(Exception):
    """Base exception for migration errors."""

    def __init__(
        self,
        message: str,
        hint: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.context = context or {}
        self.original_error = original_error

    @property
    def backup_path(self) -> Optional[str]:
        return self.context.get("backup_path")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "hint": self.hint,
            "context": self.context,
        }

    def __str__(self) -> str:
        return self.message


class ConfigError(MigrationError):
    """Missing or invalid environment definition. Never retried."""


class MissingConfigError(ConfigError):
    """One or more required environment variables are unset."""

    def __init__(self, environment: str, missing: List[str], **kwargs):
        message = (
            f"Environment '{environment}' is missing required "
            f"configuration: {', '.join(missing)}"
        )
        super().__init__(message, **kwargs)
        self.environment = environment
        self.missing = list(missing)


class ConnectivityError(MigrationError):
    """API or database unreachable."""


class DatabaseCommandError(MigrationError):
    """A database tool (psql, pg_dump, pg_restore, docker) exited non-zero."""

    def __init__(
        self,
        message: str,
        command: Optional[str] = None,
        return_code: Optional[int] = None,
        stderr: Optional[str] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.command = command
        self.return_code = return_code
        self.stderr = stderr or ""
        if return_code is not None:
            self.context.setdefault("return_code", return_code)
        if stderr:
            self.context.setdefault("stderr", stderr.strip()[:300])


class PermissionDeniedError(MigrationError):
    """Credential lacks the structural access the migration needs."""


class TransportError(MigrationError):
    """A schema endpoint rejected the request or returned an unusable body."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_excerpt: Optional[str] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.response_excerpt = response_excerpt
        if status_code is not None:
            self.context.setdefault("status_code", status_code)
        if response_excerpt:
            self.context.setdefault("response", response_excerpt)


class ApplyError(TransportError):
    """The target refused to apply a schema diff."""


class TransplantError(MigrationError):
    """Content export, clear or import failed."""

    def __init__(self, message: str, stage: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.stage = stage


class BackupError(MigrationError):
    """The mandatory target backup could not be captured."""


class IntegrityViolation(MigrationError):
    """A post-migration invariant does not hold on the target."""


class MigrationTimeoutError(MigrationError, TimeoutError):
    """An operation exceeded its configured timeout."""

    def __init__(self, message: str, timeout: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.timeout = timeout
