"""Data transplant models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

TableSet = FrozenSet[str]


def table_set(tables: Iterable[str]) -> TableSet:
    """Normalize table names into a TableSet."""
    return frozenset(t.strip() for t in tables if t and t.strip())


@dataclass(frozen=True)
class Backup:
    """A full backup of an environment's database."""
    environment: str
    path: str
    size_bytes: int
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "environment": self.environment,
            "path": self.path,
            "size_bytes": self.size_bytes,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class ExportArtifact:
    """A data-only export and the tables its own manifest lists."""
    environment: str
    path: str
    tables: TableSet
    size_bytes: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.tables

    def to_dict(self) -> Dict[str, Any]:
        return {
            "environment": self.environment,
            "path": self.path,
            "tables": sorted(self.tables),
            "size_bytes": self.size_bytes,
        }


class ClearAction(str, Enum):
    """How a table was emptied."""
    TRUNCATED = "truncated"
    DELETED = "deleted"
    SKIPPED_MISSING = "skipped_missing"
    FAILED = "failed"


@dataclass
class TableClearOutcome:
    table: str
    action: ClearAction
    rows_before: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "action": self.action.value,
            "rows_before": self.rows_before,
            "error": self.error,
        }


@dataclass
class ClearResult:
    """Outcome of clearing the target tables listed in an export."""
    outcomes: Dict[str, TableClearOutcome] = field(default_factory=dict)

    @property
    def touched(self) -> FrozenSet[str]:
        """Tables this step attempted to clear."""
        return frozenset(
            name for name, outcome in self.outcomes.items()
            if outcome.action != ClearAction.SKIPPED_MISSING
        )

    @property
    def failed(self) -> List[str]:
        return sorted(n for n, o in self.outcomes.items() if o.action == ClearAction.FAILED)

    @property
    def skipped(self) -> List[str]:
        return sorted(n for n, o in self.outcomes.items() if o.action == ClearAction.SKIPPED_MISSING)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tables": {name: o.to_dict() for name, o in sorted(self.outcomes.items())},
            "failed": self.failed,
            "skipped": self.skipped,
        }


class ImportStatus(str, Enum):
    """Classification of a restore's error output."""
    CLEAN = "clean"
    DUPLICATES_ONLY = "duplicates_only"  # idempotent re-run
    ERRORS = "errors"


@dataclass
class ImportOutcome:
    """Result of restoring an export into the target."""
    status: ImportStatus
    return_code: int = 0
    error_count: int = 0
    duplicate_count: int = 0
    error_lines: List[str] = field(default_factory=list)

    @property
    def other_error_count(self) -> int:
        return self.error_count - self.duplicate_count

    @property
    def is_warning(self) -> bool:
        return self.status != ImportStatus.CLEAN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "return_code": self.return_code,
            "error_count": self.error_count,
            "duplicate_count": self.duplicate_count,
            "other_error_count": self.other_error_count,
            "error_sample": self.error_lines[:10],
        }


@dataclass
class RepairResult:
    """Ownership references nulled per table and column."""
    updated: Dict[str, Dict[str, int]] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def total_updated(self) -> int:
        return sum(sum(cols.values()) for cols in self.updated.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "updated": self.updated,
            "failed": self.failed,
            "total_updated": self.total_updated,
        }


@dataclass
class TransplantResult:
    """Everything the transplant engine did to the target."""
    source: str
    target: str
    export: Optional[ExportArtifact] = None
    cleared: Optional[ClearResult] = None
    imported: Optional[ImportOutcome] = None
    repaired: Optional[RepairResult] = None
    rows_before: Dict[str, int] = field(default_factory=dict)
    rows_after: Dict[str, int] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def tables(self) -> FrozenSet[str]:
        return self.export.tables if self.export else frozenset()

    @property
    def skipped(self) -> bool:
        """True when the export contained no tables and the target was left alone."""
        return self.export is not None and self.export.is_empty

    @property
    def row_deltas(self) -> Dict[str, int]:
        """Rows after import minus rows before clearing, per table."""
        names = set(self.rows_before) | set(self.rows_after)
        return {
            name: self.rows_after.get(name, 0) - self.rows_before.get(name, 0)
            for name in sorted(names)
        }

    @property
    def rows_imported(self) -> int:
        return sum(self.rows_after.values())

    @property
    def warnings(self) -> List[str]:
        messages = []
        if self.imported and self.imported.status == ImportStatus.DUPLICATES_ONLY:
            messages.append(
                f"Import skipped {self.imported.duplicate_count} duplicate rows (data already present)"
            )
        elif self.imported and self.imported.status == ImportStatus.ERRORS:
            messages.append(
                f"Import reported {self.imported.error_count} errors "
                f"({self.imported.duplicate_count} duplicate key, "
                f"{self.imported.other_error_count} other)"
            )
        if self.cleared and self.cleared.failed:
            messages.append(f"Could not clear tables: {', '.join(self.cleared.failed)}")
        if self.repaired and self.repaired.failed:
            messages.append(f"Could not repair references in: {', '.join(sorted(self.repaired.failed))}")
        return messages

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "target": self.target,
            "export": self.export.to_dict() if self.export else None,
            "cleared": self.cleared.to_dict() if self.cleared else None,
            "imported": self.imported.to_dict() if self.imported else None,
            "repaired": self.repaired.to_dict() if self.repaired else None,
            "row_deltas": self.row_deltas,
            "rows_imported": self.rows_imported,
            "warnings": self.warnings,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass
class PostflightReport:
    """Target state checked after a full migration."""
    account_count: int
    settings_count: int
    warnings: List[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.account_count > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_count": self.account_count,
            "settings_count": self.settings_count,
            "passed": self.passed,
            "warnings": self.warnings,
        }


def file_size(path: str) -> int:
    p = Path(path)
    return p.stat().st_size if p.exists() else 0
