"""Migration execution models."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
from datetime import datetime, timezone
import uuid

from .environment import MigrationMode


class MigrationStatus(str, Enum):
    """Status of a migration run."""
    PENDING = "pending"
    RESOLVING = "resolving"
    PREFLIGHT_CHECKING = "preflight_checking"
    SCHEMA_SYNCING = "schema_syncing"
    BACKING_UP = "backing_up"
    DATA_TRANSPLANTING = "data_transplanting"
    POST_VALIDATING = "post_validating"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (MigrationStatus.COMPLETED, MigrationStatus.FAILED)


# Forward edges of the run state machine; FAILED is reachable from any
# non-terminal state.
TRANSITIONS = {
    MigrationStatus.PENDING: {MigrationStatus.RESOLVING},
    MigrationStatus.RESOLVING: {MigrationStatus.PREFLIGHT_CHECKING},
    MigrationStatus.PREFLIGHT_CHECKING: {MigrationStatus.SCHEMA_SYNCING},
    MigrationStatus.SCHEMA_SYNCING: {
        MigrationStatus.BACKING_UP,
        MigrationStatus.POST_VALIDATING,
        MigrationStatus.COMPLETED,
    },
    MigrationStatus.BACKING_UP: {MigrationStatus.DATA_TRANSPLANTING},
    MigrationStatus.DATA_TRANSPLANTING: {MigrationStatus.POST_VALIDATING},
    MigrationStatus.POST_VALIDATING: {MigrationStatus.COMPLETED},
    MigrationStatus.COMPLETED: set(),
    MigrationStatus.FAILED: set(),
}


class InvalidTransition(RuntimeError):
    """A run was moved along an edge the state machine does not have."""


@dataclass
class MigrationStep:
    """A single step in a migration process."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    phase: MigrationStatus = MigrationStatus.PENDING
    status: MigrationStatus = MigrationStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    details: Dict[str, Any] = field(default_factory=dict)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "name": self.name,
            "phase": self.phase.value,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "details": self.details,
            "errors": self.errors,
            "warnings": self.warnings,
        }

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


@dataclass
class MigrationRun:
    """A complete migration run between two environments."""
    source: str
    target: str
    mode: MigrationMode = MigrationMode.SCHEMA
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(default_factory=lambda: datetime.now().strftime("%Y%m%d_%H%M%S"))
    status: MigrationStatus = MigrationStatus.PENDING
    dry_run: bool = False

    # Timing
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Progress
    steps: List[MigrationStep] = field(default_factory=list)
    history: List[MigrationStatus] = field(default_factory=list)
    failed_in: Optional[MigrationStatus] = None
    failure_reason: Optional[str] = None

    # Artifacts: snapshot, backup, export, report -> path
    artifacts: Dict[str, str] = field(default_factory=dict)

    # Outcomes
    schema: Dict[str, Any] = field(default_factory=dict)
    transplant: Dict[str, Any] = field(default_factory=dict)
    postflight: Dict[str, Any] = field(default_factory=dict)
    recovery: Optional[str] = None

    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def backup_path(self) -> Optional[str]:
        return self.artifacts.get("backup")

    @property
    def succeeded(self) -> bool:
        return self.status == MigrationStatus.COMPLETED

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def transition_to(self, status: MigrationStatus) -> None:
        """Move the run to a new state, enforcing the state machine."""
        if status == MigrationStatus.FAILED:
            if self.status.is_terminal:
                raise InvalidTransition(f"Run already {self.status.value}")
            self.failed_in = self.status
        elif status not in TRANSITIONS[self.status]:
            raise InvalidTransition(f"Cannot move from {self.status.value} to {status.value}")
        self.history.append(self.status)
        self.status = status

    def fail(self, reason: str, error: Optional[Dict[str, Any]] = None) -> None:
        """Move to the absorbing FAILED state."""
        phase = self.status
        self.transition_to(MigrationStatus.FAILED)
        self.failure_reason = reason
        entry = {
            "phase": phase.value,
            "error": reason,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if error:
            entry.update(error)
        self.errors.append(entry)

    def add_step(self, name: str, phase: MigrationStatus) -> MigrationStep:
        """Add a new step to the migration."""
        step = MigrationStep(name=name, phase=phase)
        self.steps.append(step)
        return step

    def get_step(self, step_id: str) -> Optional[MigrationStep]:
        """Get a step by ID."""
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "mode": self.mode.value,
            "timestamp": self.timestamp,
            "status": self.status.value,
            "dry_run": self.dry_run,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "history": [s.value for s in self.history],
            "failed_in": self.failed_in.value if self.failed_in else None,
            "failure_reason": self.failure_reason,
            "steps": [s.to_dict() for s in self.steps],
            "artifacts": self.artifacts,
            "schema": self.schema,
            "transplant": self.transplant,
            "postflight": self.postflight,
            "recovery": self.recovery,
            "errors": self.errors,
            "warnings": self.warnings,
            "metadata": self.metadata,
        }
