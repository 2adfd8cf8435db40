"""Migration orchestrator - coordinates a run from resolution to validation."""

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Dict, Iterator, List, Mapping, Optional

from . import catalog
from .config import MigrationSettings
from .exceptions import ConfigError, MigrationError
from .models.environment import Environment, MigrationMode
from .models.migration import MigrationRun, MigrationStatus, MigrationStep
from .models.schema import SchemaDiff
from .models.transplant import Backup, file_size
from .services.database import DatabaseClient
from .services.environment_registry import EnvironmentRegistry
from .services.safety import BackupPathFilter, SafetyEnvelope, TargetLock
from .services.schema_transport import SchemaTransport
from .services.transplant import DataTransplantEngine

logger = logging.getLogger(__name__)

DatabaseFactory = Callable[[Environment], DatabaseClient]


class MigrationOrchestrator:
    """
    Runs one migration between two named environments.

    Handles:
    - Resolving both environments
    - Preflight checks before anything is changed
    - Schema sync (snapshot, diff, apply)
    - Backup, content transplant and postflight validation in full mode
    - The run report and the summary printed at the end
    """

    def __init__(
        self,
        settings: MigrationSettings,
        variables: Optional[Mapping[str, str]] = None,
        registry: Optional[EnvironmentRegistry] = None,
        transport: Optional[SchemaTransport] = None,
        database_factory: Optional[DatabaseFactory] = None
    ):
        """
        Initialize the orchestrator.

        Args:
            settings: Run settings
            variables: Variable mapping environments are resolved from
            registry: Environment registry (built from ``variables`` if omitted)
            transport: Schema transport
            database_factory: Builds a DatabaseClient for an environment
        """
        self.settings = settings
        self.registry = registry or EnvironmentRegistry(variables or {})
        self.transport = transport or SchemaTransport(timeout=settings.http_timeout)
        self._database_factory = database_factory or self._create_database_client
        self._databases: Dict[str, DatabaseClient] = {}

        self.safety = SafetyEnvelope(
            api_client=self.transport.client,
            database_factory=self.database,
            backups_dir=settings.backups_dir,
            ping_timeout=settings.ping_timeout,
        )
        self.engine = DataTransplantEngine(
            database_factory=self.database,
            exports_dir=settings.exports_dir,
            clear_workers=settings.clear_workers,
        )

        # Runtime state
        self.migration: Optional[MigrationRun] = None
        self._backup_filter: Optional[BackupPathFilter] = None

    def _create_database_client(self, env: Environment) -> DatabaseClient:
        return DatabaseClient(
            env,
            query_timeout=self.settings.query_timeout,
            command_timeout=self.settings.command_timeout,
            docker_binary=self.settings.docker_binary,
            remote_tmp_dir=self.settings.remote_tmp_dir,
        )

    def database(self, env: Environment) -> DatabaseClient:
        """One DatabaseClient per environment for the whole run."""
        if env.name not in self._databases:
            self._databases[env.name] = self._database_factory(env)
        return self._databases[env.name]

    def run(
        self,
        source: str,
        target: str,
        mode: MigrationMode = MigrationMode.SCHEMA
    ) -> MigrationRun:
        """
        Run a migration.

        Args:
            source: Environment to copy from
            target: Environment to bring in line with the source
            mode: Schema only, or schema plus content tables

        Returns:
            MigrationRun; check ``succeeded`` and ``errors``
        """
        migration = MigrationRun(
            source=source,
            target=target,
            mode=mode,
            dry_run=self.settings.dry_run,
        )
        self.migration = migration
        migration.started_at = datetime.now(timezone.utc)
        self.settings.ensure_directories()
        lock: Optional[TargetLock] = None

        try:
            logger.info("=== PHASE 1: RESOLVING ENVIRONMENTS ===")
            migration.transition_to(MigrationStatus.RESOLVING)
            with self._step("Resolve environments"):
                source_env, target_env = self._resolve(source, target, mode)

            if self.settings.use_lock and not self.settings.dry_run:
                lock = TargetLock(self.settings.locks_dir, target_env)
                lock.acquire()

            logger.info("=== PHASE 2: PREFLIGHT CHECKS ===")
            migration.transition_to(MigrationStatus.PREFLIGHT_CHECKING)
            with self._step("Preflight checks") as step:
                step.details = self.safety.preflight(source_env, target_env, mode)

            logger.info("=== PHASE 3: SCHEMA SYNC ===")
            migration.transition_to(MigrationStatus.SCHEMA_SYNCING)
            with self._step("Schema sync"):
                self._run_schema_sync(source_env, target_env)

            if self.settings.dry_run:
                logger.info("Dry run - stopping before any change to the target")
            elif mode.needs_database:
                logger.info("=== PHASE 4: BACKUP ===")
                migration.transition_to(MigrationStatus.BACKING_UP)
                with self._step("Backup target database"):
                    self._run_backup(target_env)

                logger.info("=== PHASE 5: DATA TRANSPLANT ===")
                migration.transition_to(MigrationStatus.DATA_TRANSPLANTING)
                with self._step("Transplant content tables"):
                    self._run_transplant(source_env, target_env)

                logger.info("=== PHASE 6: POST-MIGRATION VALIDATION ===")
                migration.transition_to(MigrationStatus.POST_VALIDATING)
                with self._step("Validate target"):
                    self._run_postflight(target_env)

            migration.transition_to(MigrationStatus.COMPLETED)
            logger.info("=== MIGRATION COMPLETED ===")

        except MigrationError as e:
            self._fail(e)

        except KeyboardInterrupt:
            self._fail(MigrationError("Interrupted by operator"))
            raise

        except Exception as e:
            self._fail(MigrationError(f"Unexpected error: {e}", original_error=e))
            raise

        finally:
            if lock is not None:
                lock.release()
            migration.completed_at = datetime.now(timezone.utc)
            try:
                self.transport.close()
                if self.settings.save_report:
                    self._save_report()
            finally:
                if self._backup_filter is not None:
                    self._backup_filter.detach()
                    self._backup_filter = None

        return migration

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _resolve(self, source: str, target: str, mode: MigrationMode):
        source_env, target_env = self.registry.resolve_pair(source, target, mode)
        self.migration.metadata["source"] = source_env.to_dict()
        self.migration.metadata["target"] = target_env.to_dict()

        if mode.needs_database:
            shared = self.registry.check_shared_database(source_env, target_env)
            self.migration.metadata["shared_database"] = shared
            if shared:
                if not self.settings.allow_shared_database:
                    raise ConfigError(
                        f"{source} and {target} share one database",
                        hint="Enable shared databases in the settings to migrate anyway",
                        context={"database": target_env.database.describe()},
                    )
                self.migration.warnings.append(
                    f"{source} and {target} share one database; content changes affect both"
                )

        logger.info(f"Source: {source_env.name} ({source_env.base_url})")
        logger.info(f"Target: {target_env.name} ({target_env.base_url})")
        logger.info(f"Mode: {mode.value}{' (dry run)' if self.settings.dry_run else ''}")
        return source_env, target_env

    def _run_schema_sync(self, source_env: Environment, target_env: Environment) -> None:
        migration = self.migration
        result = self.transport.sync(
            source_env,
            target_env,
            artifact_dir=self.settings.snapshots_dir,
            timestamp=migration.timestamp,
            dry_run=self.settings.dry_run,
        )
        if result.snapshot is not None and result.snapshot.path:
            migration.artifacts["snapshot"] = result.snapshot.path

        if isinstance(result.diff, SchemaDiff):
            path = self.settings.snapshots_dir / (
                f"{source_env.name}_to_{target_env.name}_{migration.timestamp}_diff.json"
            )
            with open(path, "w") as f:
                json.dump(result.diff.payload(), f, indent=2, default=str)
            migration.artifacts["diff"] = str(path)

        migration.schema = result.to_dict()

    def _run_backup(self, target_env: Environment) -> None:
        backup = self.safety.create_backup(target_env, timestamp=self.migration.timestamp)
        self.migration.artifacts["backup"] = backup.path
        self.migration.recovery = self.safety.restore_instructions(target_env, backup.path)
        self._backup_filter = BackupPathFilter(backup.path).attach()

    def _run_transplant(self, source_env: Environment, target_env: Environment) -> None:
        result = self.engine.transplant(source_env, target_env, timestamp=self.migration.timestamp)
        if result.export is not None:
            self.migration.artifacts["export"] = result.export.path
        self.migration.transplant = result.to_dict()
        self.migration.warnings.extend(result.warnings)
        for warning in result.warnings:
            logger.warning(warning)

    def _run_postflight(self, target_env: Environment) -> None:
        backup = None
        if self.migration.backup_path:
            backup = Backup(
                environment=target_env.name,
                path=self.migration.backup_path,
                size_bytes=file_size(self.migration.backup_path),
            )
        report = self.safety.postflight(target_env, backup)
        self.migration.postflight = report.to_dict()
        self.migration.warnings.extend(report.warnings)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    @contextmanager
    def _step(self, name: str) -> Iterator[MigrationStep]:
        """Track one step of the current phase."""
        phase = self.migration.status
        step = self.migration.add_step(name=name, phase=phase)
        step.status = phase
        step.started_at = datetime.now(timezone.utc)
        try:
            yield step
            step.status = MigrationStatus.COMPLETED
        except BaseException as e:
            step.status = MigrationStatus.FAILED
            step.errors.append({"error": str(e) or type(e).__name__})
            raise
        finally:
            step.completed_at = datetime.now(timezone.utc)

    def _fail(self, error: MigrationError) -> None:
        migration = self.migration
        entry = error.to_dict()
        if migration.backup_path:
            entry.setdefault("context", {})["backup_path"] = migration.backup_path
        if migration.status.is_terminal:
            migration.errors.append(entry)
            return
        migration.fail(str(error), entry)

        logger.error(f"Migration failed during {migration.failed_in.value}: {error}")
        if error.hint:
            logger.error(f"Hint: {error.hint}")
        if migration.backup_path:
            logger.error(f"Backup available at: {migration.backup_path}")
            if migration.recovery:
                logger.error(f"Restore with: {migration.recovery}")

    def _save_report(self) -> None:
        """Save the migration report."""
        migration = self.migration
        filepath = self.settings.logs_dir / (
            f"migration_report_{migration.source}_to_{migration.target}_{migration.timestamp}.json"
        )
        migration.artifacts["report"] = str(filepath)
        with open(filepath, "w") as f:
            json.dump(migration.to_dict(), f, indent=2, default=str)
        logger.info(f"Saved migration report to {filepath}")

    def summary(self) -> List[str]:
        """What was migrated and what was preserved, as printable lines."""
        migration = self.migration
        if migration is None:
            return []

        lines = [f"Migration {migration.source} -> {migration.target} ({migration.mode.value}): "
                 f"{migration.status.value.upper()}"]

        diff = migration.schema.get("diff") or {}
        if diff.get("identical"):
            lines.append("Schema: already identical, nothing applied")
        elif diff:
            counts = diff.get("summary", {})
            verb = "would change" if migration.dry_run else "changed"
            lines.append(
                f"Schema: {verb} {counts.get('collections', 0)} collections, "
                f"{counts.get('fields', 0)} fields, {counts.get('relations', 0)} relations"
            )

        export = migration.transplant.get("export") or {}
        if export:
            tables = export.get("tables", [])
            lines.append(
                f"Content: {len(tables)} tables migrated, "
                f"{migration.transplant.get('rows_imported', 0)} rows now in target"
            )

        if migration.mode.needs_database and not migration.dry_run:
            lines.append(
                f"Preserved: {len(catalog.SYSTEM_TABLES)} system tables "
                "(users, roles, permissions, settings, sessions, files, ...)"
            )
            if migration.postflight:
                lines.append(
                    f"Target now has {migration.postflight.get('account_count')} users, "
                    f"{migration.postflight.get('settings_count')} settings rows"
                )

        for warning in migration.warnings:
            lines.append(f"Warning: {warning}")

        if migration.status == MigrationStatus.FAILED:
            lines.append(f"Error: {migration.failure_reason}")
        if migration.backup_path:
            lines.append(f"Backup: {migration.backup_path}")
            if migration.status == MigrationStatus.FAILED and migration.recovery:
                lines.append(f"Restore with: {migration.recovery}")
        if migration.artifacts.get("report"):
            lines.append(f"Report: {migration.artifacts['report']}")
        return lines
