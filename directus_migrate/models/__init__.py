"""Data models for the migration engine."""

from .environment import (
    DatabaseDescriptor,
    Environment,
    MigrationMode,
)
from .schema import (
    Applied,
    DiffResult,
    Identical,
    SchemaDiff,
    SchemaSnapshot,
    SchemaSyncResult,
)
from .transplant import (
    Backup,
    ClearAction,
    ClearResult,
    ExportArtifact,
    ImportOutcome,
    ImportStatus,
    PostflightReport,
    RepairResult,
    TableClearOutcome,
    TableSet,
    TransplantResult,
)
from .migration import (
    InvalidTransition,
    MigrationRun,
    MigrationStatus,
    MigrationStep,
)

__all__ = [
    "DatabaseDescriptor",
    "Environment",
    "MigrationMode",
    "Applied",
    "DiffResult",
    "Identical",
    "SchemaDiff",
    "SchemaSnapshot",
    "SchemaSyncResult",
    "Backup",
    "ClearAction",
    "ClearResult",
    "ExportArtifact",
    "ImportOutcome",
    "ImportStatus",
    "PostflightReport",
    "RepairResult",
    "TableClearOutcome",
    "TableSet",
    "TransplantResult",
    "InvalidTransition",
    "MigrationRun",
    "MigrationStatus",
    "MigrationStep",
]
