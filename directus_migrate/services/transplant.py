"""Data transplant engine - moves content tables between databases."""

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional

from .. import catalog
from ..exceptions import DatabaseCommandError, TransplantError
from ..models.environment import Environment
from ..models.transplant import (
    ClearAction,
    ClearResult,
    ExportArtifact,
    ImportOutcome,
    ImportStatus,
    RepairResult,
    TableClearOutcome,
    TableSet,
    TransplantResult,
    table_set,
)
from .database import DatabaseClient

logger = logging.getLogger(__name__)

DatabaseFactory = Callable[[Environment], DatabaseClient]

DUPLICATE_KEY_MARKER = "duplicate key value violates unique constraint"
ERROR_LINE = re.compile(r"ERROR:|pg_restore: error:")


def classify_restore_output(output: str, return_code: int) -> ImportOutcome:
    """
    Classify pg_restore output.

    Duplicate key violations alone mean the rows were already there
    (an idempotent re-run); anything else is reported as errors.
    """
    error_lines = [line.strip() for line in output.splitlines() if ERROR_LINE.search(line)]
    duplicate_count = sum(1 for line in error_lines if DUPLICATE_KEY_MARKER in line)
    error_count = len(error_lines)

    if error_count == 0 and return_code == 0:
        status = ImportStatus.CLEAN
    elif error_count > 0 and error_count == duplicate_count:
        status = ImportStatus.DUPLICATES_ONLY
    else:
        status = ImportStatus.ERRORS

    return ImportOutcome(
        status=status,
        return_code=return_code,
        error_count=error_count,
        duplicate_count=duplicate_count,
        error_lines=error_lines,
    )


class DataTransplantEngine:
    """
    Transplants content tables from a source database into a target.

    Steps run strictly in order, each gated by the previous one:
    export -> clear -> import -> repair. The set of tables the target
    loses is read from the export archive itself, so a table that was not
    exported is never cleared.
    """

    def __init__(
        self,
        database_factory: DatabaseFactory,
        exports_dir: Path,
        clear_workers: int = 1,
        exclude: Iterable[str] = catalog.SYSTEM_TABLES
    ):
        """
        Initialize the engine.

        Args:
            database_factory: Builds a DatabaseClient for an environment
            exports_dir: Where export archives are written (and kept)
            clear_workers: Tables cleared in parallel (1 = sequential)
            exclude: Tables whose data is never exported or cleared
        """
        self.database_factory = database_factory
        self.exports_dir = Path(exports_dir)
        self.clear_workers = max(1, int(clear_workers))
        self.exclude = frozenset(exclude)

    def _refuse_excluded(self, tables: Iterable[str], stage: str) -> None:
        protected = sorted(t for t in tables if t in self.exclude or catalog.is_system_table(t))
        if protected:
            raise TransplantError(
                f"Refusing to {stage} system tables: {', '.join(protected)}",
                stage=stage,
                context={"tables": protected},
            )

    # ------------------------------------------------------------------
    # 1. Export
    # ------------------------------------------------------------------

    def export_content(
        self,
        source: Environment,
        timestamp: Optional[str] = None,
        db: Optional[DatabaseClient] = None
    ) -> ExportArtifact:
        """
        Export content table data from the source.

        Returns:
            ExportArtifact whose tables come from the archive's own manifest

        Raises:
            TransplantError: If the dump fails, is empty, or lists system tables
        """
        db = db or self.database_factory(source)
        stamp = timestamp or datetime.now().strftime("%Y%m%d_%H%M%S")
        path = self.exports_dir / f"{source.name}_data_{stamp}.dump"

        logger.info(f"Exporting data from {source.name} (excluding {len(self.exclude)} system tables)...")
        try:
            size = db.dump_data(path, exclude_tables=self.exclude)
        except DatabaseCommandError as e:
            raise TransplantError(
                f"Failed to export data from {source.name}",
                stage="export",
                context=dict(e.context, export_path=str(path)),
                original_error=e,
            ) from e

        if size == 0:
            raise TransplantError(
                f"Data export from {source.name} is empty",
                stage="export",
                context={"export_path": str(path)},
            )

        tables = self.read_manifest(db, path)
        self._refuse_excluded(tables, "export")

        logger.info(f"Data exported: {path} ({size} bytes, {len(tables)} tables)")
        return ExportArtifact(environment=source.name, path=str(path), tables=tables, size_bytes=size)

    def read_manifest(self, db: DatabaseClient, path: Path) -> TableSet:
        """Tables with data in an archive, as listed by the archive itself."""
        staged = db.stage_archive(Path(path))
        try:
            return table_set(db.list_archive(staged))
        except DatabaseCommandError as e:
            raise TransplantError(
                f"Could not read the table list of {path}",
                stage="export",
                original_error=e,
            ) from e
        finally:
            if staged != str(path):
                db.remove_staged(staged)

    # ------------------------------------------------------------------
    # 2. Clear
    # ------------------------------------------------------------------

    def _clear_one(self, db: DatabaseClient, table: str) -> TableClearOutcome:
        if not db.table_exists(table):
            logger.info(f"  Table {table} doesn't exist yet (will be created during import)")
            return TableClearOutcome(table=table, action=ClearAction.SKIPPED_MISSING)

        rows_before = db.count_rows(table)
        logger.info(f"  Clearing table: {table} ({rows_before} rows)")
        try:
            db.truncate(table)
            return TableClearOutcome(table=table, action=ClearAction.TRUNCATED, rows_before=rows_before)
        except DatabaseCommandError as e:
            logger.warning(f"    Truncate failed for {table}, trying DELETE with foreign key checks suspended: {e.stderr.strip()[:200]}")

        try:
            db.delete_all(table, suspend_foreign_keys=True)
            return TableClearOutcome(table=table, action=ClearAction.DELETED, rows_before=rows_before)
        except DatabaseCommandError as e:
            logger.error(f"    Could not clear {table}: {e.stderr.strip()[:200]}")
            return TableClearOutcome(
                table=table,
                action=ClearAction.FAILED,
                rows_before=rows_before,
                error=e.stderr.strip()[:300] or str(e),
            )

    def clear_target_tables(
        self,
        target: Environment,
        tables: TableSet,
        db: Optional[DatabaseClient] = None
    ) -> ClearResult:
        """
        Empty exactly the tables in ``tables`` on the target.

        Tables missing on the target are skipped; everything outside
        ``tables`` (every system table included) is left alone.

        Raises:
            TransplantError: If a system table is requested or a table cannot be cleared
        """
        self._refuse_excluded(tables, "clear")
        db = db or self.database_factory(target)
        ordered = sorted(tables)
        result = ClearResult()

        logger.info(f"Clearing {len(ordered)} tables on {target.name} that will be imported...")
        if self.clear_workers > 1 and len(ordered) > 1:
            with ThreadPoolExecutor(max_workers=self.clear_workers) as pool:
                outcomes = list(pool.map(lambda t: self._clear_one(db, t), ordered))
        else:
            outcomes = [self._clear_one(db, t) for t in ordered]

        for outcome in outcomes:
            result.outcomes[outcome.table] = outcome

        if result.failed:
            raise TransplantError(
                f"Could not clear tables on {target.name}: {', '.join(result.failed)}",
                stage="clear",
                context={"tables": result.failed, "cleared": result.to_dict()},
            )

        logger.info("Cleared tables that will be imported; preserved all system tables")
        return result

    # ------------------------------------------------------------------
    # 3. Import
    # ------------------------------------------------------------------

    def import_content(
        self,
        target: Environment,
        artifact: ExportArtifact,
        db: Optional[DatabaseClient] = None
    ) -> ImportOutcome:
        """
        Restore an export into the target with foreign key checks suspended.

        Duplicate-key-only errors come back as a DUPLICATES_ONLY warning;
        other errors come back as ERRORS and do not raise.

        Raises:
            TransplantError: If the archive cannot be staged
        """
        db = db or self.database_factory(target)
        logger.info(f"Importing data to {target.name}...")

        try:
            staged = db.stage_archive(Path(artifact.path))
        except DatabaseCommandError as e:
            raise TransplantError(
                f"Could not copy {artifact.path} to {target.name}",
                stage="import",
                original_error=e,
            ) from e

        try:
            with db.foreign_keys_suspended():
                completed = db.restore_data(staged)
        finally:
            if staged != artifact.path:
                db.remove_staged(staged)

        output = "\n".join(part for part in (completed.stdout, completed.stderr) if part)
        outcome = classify_restore_output(output, completed.returncode)

        if outcome.status == ImportStatus.CLEAN:
            logger.info("Data import completed successfully")
        elif outcome.status == ImportStatus.DUPLICATES_ONLY:
            logger.warning(
                f"Data import skipped {outcome.duplicate_count} duplicate records (data already exists)"
            )
        else:
            logger.warning(
                f"Data import completed with errors: {outcome.duplicate_count} duplicate key, "
                f"{outcome.other_error_count} other"
            )
            for line in outcome.error_lines[:5]:
                logger.warning(f"   {line}")
        return outcome

    # ------------------------------------------------------------------
    # 4. Repair
    # ------------------------------------------------------------------

    def repair_ownership_references(
        self,
        target: Environment,
        tables: TableSet,
        db: Optional[DatabaseClient] = None
    ) -> RepairResult:
        """
        Null creator/updater references to accounts missing on the target.

        Only migrated content tables are updated.
        """
        db = db or self.database_factory(target)
        result = RepairResult()
        candidates = db.tables_with_columns(catalog.OWNERSHIP_COLUMNS)

        for table in catalog.content_tables(sorted(tables)):
            if table in self.exclude:
                continue
            columns = [c for c in candidates.get(table, []) if c in catalog.OWNERSHIP_COLUMNS]
            if not columns:
                continue
            for column in columns:
                try:
                    count = db.null_orphan_references(table, column)
                except DatabaseCommandError as e:
                    result.failed[table] = e.stderr.strip()[:300] or str(e)
                    logger.warning(f"  Could not repair {table}.{column}: {e}")
                    break
                result.updated.setdefault(table, {})[column] = count
                if count:
                    logger.info(f"  Cleared {count} dangling {column} references in {table}")

        logger.info(f"Ownership references repaired: {result.total_updated} rows updated")
        return result

    # ------------------------------------------------------------------
    # Full transplant
    # ------------------------------------------------------------------

    def transplant(
        self,
        source: Environment,
        target: Environment,
        timestamp: Optional[str] = None
    ) -> TransplantResult:
        """Run export, clear, import and repair in order."""
        result = TransplantResult(source=source.name, target=target.name)
        result.started_at = datetime.now(timezone.utc)
        target_db = self.database_factory(target)

        result.export = self.export_content(source, timestamp=timestamp)
        tables = result.export.tables
        if not tables:
            logger.warning(f"No tables found in the export from {source.name}; target left unchanged")
            result.completed_at = datetime.now(timezone.utc)
            return result

        logger.info(f"Found {len(tables)} tables to import: {', '.join(sorted(tables))}")

        result.cleared = self.clear_target_tables(target, tables, db=target_db)
        result.rows_before = {
            name: outcome.rows_before
            for name, outcome in result.cleared.outcomes.items()
            if outcome.rows_before is not None
        }

        result.imported = self.import_content(target, result.export, db=target_db)
        result.repaired = self.repair_ownership_references(target, tables, db=target_db)
        result.rows_after = self._count_tables(target_db, tables)

        result.completed_at = datetime.now(timezone.utc)
        return result

    def _count_tables(self, db: DatabaseClient, tables: Iterable[str]) -> Dict[str, int]:
        counts = {}
        for table in sorted(tables):
            try:
                if db.table_exists(table):
                    counts[table] = db.count_rows(table)
            except DatabaseCommandError as e:
                logger.warning(f"Could not count rows in {table}: {e}")
        return counts

