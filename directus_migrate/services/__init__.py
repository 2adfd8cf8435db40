"""Service layer for the migration engine."""

from .environment_registry import EnvironmentRegistry
from .api_client import DirectusAPIClient
from .schema_transport import SchemaTransport
from .database import DatabaseClient
from .transplant import DataTransplantEngine
from .safety import SafetyEnvelope, TargetLock

__all__ = [
    "EnvironmentRegistry",
    "DirectusAPIClient",
    "SchemaTransport",
    "DatabaseClient",
    "DataTransplantEngine",
    "SafetyEnvelope",
    "TargetLock",
]
