"""Safety envelope - preflight checks, mandatory backup, postflight validation."""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .. import catalog
from ..exceptions import (
    BackupError,
    ConfigError,
    DatabaseCommandError,
    IntegrityViolation,
)
from ..models.environment import Environment, MigrationMode
from ..models.transplant import Backup, PostflightReport
from .api_client import DirectusAPIClient, Timeout
from .database import DatabaseClient

logger = logging.getLogger(__name__)

ClientProvider = Callable[[Environment], DirectusAPIClient]
DatabaseFactory = Callable[[Environment], DatabaseClient]


class BackupPathFilter(logging.Filter):
    """
    Appends the backup path to every record once a backup exists.

    Records propagated from a child logger skip the parent's filters, so
    the filter goes on every logger under the namespace.
    """

    def __init__(self, backup_path: str, namespace: str = "directus_migrate"):
        super().__init__()
        self.backup_path = backup_path
        self.namespace = namespace
        self._loggers: List[logging.Logger] = []

    @property
    def suffix(self) -> str:
        return f" [backup: {self.backup_path}]"

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        if not message.endswith(self.suffix):
            record.msg = message + self.suffix
            record.args = ()
        return True

    def attach(self) -> "BackupPathFilter":
        names = [self.namespace] + [
            name for name in list(logging.root.manager.loggerDict)
            if name.startswith(self.namespace + ".")
        ]
        for name in names:
            target = logging.getLogger(name)
            target.addFilter(self)
            self._loggers.append(target)
        return self

    def detach(self) -> None:
        for target in self._loggers:
            target.removeFilter(self)
        self._loggers = []


class TargetLock:
    """
    Advisory lock file that keeps two runs off the same target.

    Created with O_EXCL under ``<locks_dir>/<target>.lock`` and removed on
    exit, including on KeyboardInterrupt.
    """

    def __init__(self, locks_dir: Path, target: Environment):
        self.path = Path(locks_dir) / f"{target.name.lower()}.lock"
        self.target = target
        self._held = False

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError as e:
            raise ConfigError(
                f"Another migration into {self.target.name} is in progress",
                hint=f"If no other run is active, remove {self.path}",
                context={"lock_file": str(self.path), "holder": self._read_holder()},
                original_error=e,
            ) from e
        with os.fdopen(fd, "w") as f:
            json.dump({"pid": os.getpid(), "started_at": datetime.now(timezone.utc).isoformat()}, f)
        self._held = True
        logger.debug(f"Acquired lock {self.path}")

    def release(self) -> None:
        if not self._held:
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        self._held = False
        logger.debug(f"Released lock {self.path}")

    def _read_holder(self) -> Dict[str, Any]:
        try:
            return json.loads(self.path.read_text())
        except (OSError, ValueError):
            return {}

    def __enter__(self) -> "TargetLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class SafetyEnvelope:
    """
    Guards around a migration.

    Nothing is mutated until preflight passes, and nothing destructive
    runs in full mode until a non-empty backup of the target exists.
    """

    def __init__(
        self,
        api_client: ClientProvider,
        database_factory: DatabaseFactory,
        backups_dir: Path,
        ping_timeout: Timeout = 10.0
    ):
        """
        Initialize the envelope.

        Args:
            api_client: Returns the API client for an environment
            database_factory: Builds a DatabaseClient for an environment
            backups_dir: Where full backups are written
            ping_timeout: Timeout for the health and permission probes
        """
        self.api_client = api_client
        self.database_factory = database_factory
        self.backups_dir = Path(backups_dir)
        self.ping_timeout = ping_timeout

    def preflight(
        self,
        source: Environment,
        target: Environment,
        mode: MigrationMode
    ) -> Dict[str, Any]:
        """
        Verify both environments before anything is changed.

        Returns:
            Dictionary of the checks that passed

        Raises:
            ConnectivityError: If an API or database is unreachable
            PermissionDeniedError: If a token lacks structural access
        """
        checks: Dict[str, Any] = {}

        logger.info("Checking API connectivity...")
        for env in (source, target):
            self.api_client(env).ping(timeout=self.ping_timeout)
            checks[f"{env.name}_api"] = "ok"

        logger.info("Checking schema permissions...")
        for env in (source, target):
            self.api_client(env).check_schema_access(timeout=self.ping_timeout)
            checks[f"{env.name}_schema_access"] = "ok"

        if mode.needs_database:
            logger.info("Checking database connectivity...")
            for env in (source, target):
                self.database_factory(env).check_connection()
                checks[f"{env.name}_database"] = env.database.describe()

        logger.info("All preflight checks passed")
        return checks

    def create_backup(self, target: Environment, timestamp: Optional[str] = None) -> Backup:
        """
        Full custom-format dump of the target. Never deleted automatically.

        Raises:
            BackupError: If the dump fails or comes out empty
        """
        stamp = timestamp or datetime.now().strftime("%Y%m%d_%H%M%S")
        path = self.backups_dir / f"{target.name}_full_backup_{stamp}.dump"
        logger.info(f"Creating full backup of {target.name} database...")

        try:
            size = self.database_factory(target).dump_full(path)
        except DatabaseCommandError as e:
            raise BackupError(
                f"Failed to create backup of {target.name}; aborting before any change",
                context=dict(e.context, backup_path=str(path)),
                original_error=e,
            ) from e

        if size == 0:
            raise BackupError(
                f"Backup of {target.name} is empty; aborting before any change",
                context={"backup_path": str(path)},
            )

        logger.info(f"Full backup created: {path} ({size} bytes)")
        return Backup(environment=target.name, path=str(path), size_bytes=size)

    def postflight(self, target: Environment, backup: Optional[Backup] = None) -> PostflightReport:
        """
        Check the target still has accounts and settings.

        Raises:
            IntegrityViolation: If the target has no accounts left
        """
        db = self.database_factory(target)
        accounts = db.count_rows(catalog.ACCOUNT_TABLE)
        settings = db.count_rows(catalog.SETTINGS_TABLE)
        report = PostflightReport(account_count=accounts, settings_count=settings)

        if accounts == 0:
            context: Dict[str, Any] = {"environment": target.name, "account_count": 0}
            hint = None
            if backup is not None:
                context["backup_path"] = backup.path
                hint = f"Restore with: {self.restore_instructions(target, backup.path)}"
            raise IntegrityViolation(
                f"No users found in {target.name} after migration",
                hint=hint,
                context=context,
            )
        logger.info(f"Users preserved: {accounts}")

        if settings == 0:
            message = f"No settings found in {target.name} after migration"
            report.warnings.append(message)
            logger.warning(message)
        else:
            logger.info(f"Settings preserved: {settings}")

        return report

    def restore_instructions(self, target: Environment, backup_path: str) -> str:
        """The exact command that restores ``backup_path`` into the target."""
        return self.database_factory(target).restore_command(backup_path)
