"""Schema transport models."""

import copy
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Union

# Top-level keys that identify a structural document
SNAPSHOT_KEYS = ("version", "directus", "vendor", "collections", "fields", "relations")
DIFF_KINDS = ("collections", "fields", "relations")


def unwrap_envelope(document: Mapping[str, Any]) -> Dict[str, Any]:
    """Strip a ``{"data": {...}}`` response envelope, if present."""
    inner = document
    while isinstance(inner, Mapping) and "data" in inner and isinstance(inner["data"], Mapping):
        if any(key in inner for key in SNAPSHOT_KEYS):
            break
        inner = inner["data"]
    return dict(inner)


@dataclass(frozen=True)
class SchemaSnapshot:
    """
    A structural snapshot captured from a source environment.

    The document is stored unwrapped and exposed read-only.
    """
    source: str
    document: Mapping[str, Any]
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    path: Optional[str] = None

    def __post_init__(self):
        unwrapped = unwrap_envelope(self.document)
        object.__setattr__(self, "document", MappingProxyType(copy.deepcopy(unwrapped)))

    @property
    def version(self) -> Optional[Any]:
        return self.document.get("version")

    @property
    def platform_version(self) -> Optional[str]:
        return self.document.get("directus")

    @property
    def vendor(self) -> Optional[str]:
        return self.document.get("vendor")

    @property
    def collection_count(self) -> int:
        return len(self.document.get("collections") or [])

    def payload(self) -> Dict[str, Any]:
        """A mutable, unwrapped copy suitable for a request body."""
        return copy.deepcopy(dict(self.document))

    def with_path(self, path: Union[str, Path]) -> "SchemaSnapshot":
        return SchemaSnapshot(
            source=self.source,
            document=self.payload(),
            captured_at=self.captured_at,
            path=str(path),
        )

    def write(self, path: Union[str, Path]) -> "SchemaSnapshot":
        """Write the unwrapped document to disk and return a copy bound to the path."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.payload(), f, indent=2, default=str)
        return self.with_path(path)

    @classmethod
    def from_file(cls, path: Union[str, Path], source: str = "file") -> "SchemaSnapshot":
        """Load a snapshot artifact, wrapped or not."""
        with open(path) as f:
            data = json.load(f)
        return cls(source=source, document=data, path=str(path))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation (metadata only)."""
        return {
            "source": self.source,
            "captured_at": self.captured_at.isoformat(),
            "path": self.path,
            "version": self.version,
            "directus": self.platform_version,
            "vendor": self.vendor,
            "collections": self.collection_count,
        }


@dataclass(frozen=True)
class SchemaDiff:
    """Structural changes the target needs to match a snapshot."""
    target: str
    body: Mapping[str, Any]  # {"hash": ..., "diff": {...}} as returned by the target

    @property
    def hash(self) -> Optional[str]:
        return self.body.get("hash")

    @property
    def changes(self) -> Mapping[str, List[Any]]:
        return self.body.get("diff") or {}

    def count(self, kind: str) -> int:
        return len(self.changes.get(kind) or [])

    @property
    def summary(self) -> Dict[str, int]:
        return {kind: self.count(kind) for kind in DIFF_KINDS}

    @property
    def is_empty(self) -> bool:
        return sum(self.summary.values()) == 0

    def payload(self) -> Dict[str, Any]:
        """Request body for the apply endpoint."""
        return copy.deepcopy(dict(self.body))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "target": self.target,
            "hash": self.hash,
            "identical": False,
            "summary": self.summary,
        }


@dataclass(frozen=True)
class Identical:
    """The target already matches the snapshot; nothing to apply."""
    target: str

    is_empty = True

    @property
    def summary(self) -> Dict[str, int]:
        return {kind: 0 for kind in DIFF_KINDS}

    def to_dict(self) -> Dict[str, Any]:
        return {"target": self.target, "identical": True, "summary": self.summary}


DiffResult = Union[SchemaDiff, Identical]


@dataclass
class Applied:
    """Outcome of an apply call."""
    target: str
    skipped: bool = False
    status_code: Optional[int] = None
    applied_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "skipped": self.skipped,
            "status_code": self.status_code,
            "applied_at": self.applied_at.isoformat(),
        }


@dataclass
class SchemaSyncResult:
    """Result of snapshot -> diff -> apply between two environments."""
    source: str
    target: str
    snapshot: Optional[SchemaSnapshot] = None
    diff: Optional[DiffResult] = None
    applied: Optional[Applied] = None

    @property
    def identical(self) -> bool:
        return isinstance(self.diff, Identical)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "target": self.target,
            "snapshot": self.snapshot.to_dict() if self.snapshot else None,
            "diff": self.diff.to_dict() if self.diff else None,
            "applied": self.applied.to_dict() if self.applied else None,
            "identical": self.identical,
        }
