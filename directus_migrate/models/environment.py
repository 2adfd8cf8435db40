"""Environment models."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class MigrationMode(str, Enum):
    """What a migration run moves."""
    SCHEMA = "schema"  # Structure only, API based
    FULL = "full"  # Structure plus content tables

    @property
    def needs_database(self) -> bool:
        return self is MigrationMode.FULL


@dataclass(frozen=True)
class DatabaseDescriptor:
    """How to reach an environment's database."""
    user: str = "directus"
    name: str = "directus"
    container: Optional[str] = None  # docker container running postgres
    host: Optional[str] = None  # direct host when there is no container
    port: int = 5432
    password: Optional[str] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.container or self.host)

    @property
    def uses_container(self) -> bool:
        return bool(self.container)

    @property
    def identity(self) -> Tuple[str, ...]:
        """Key identifying the physical database, credentials excluded."""
        location = f"container:{self.container}" if self.container else f"host:{self.host}:{self.port}"
        return (location, self.name)

    def describe(self) -> str:
        """Human readable location, never includes the password."""
        if self.container:
            return f"{self.user}@{self.name} in container {self.container}"
        return f"{self.user}@{self.host}:{self.port}/{self.name}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation (password masked)."""
        return {
            "user": self.user,
            "name": self.name,
            "container": self.container,
            "host": self.host,
            "port": self.port,
            "password": "***" if self.password else None,
        }


@dataclass(frozen=True)
class Environment:
    """A named Directus instance and its connection facts."""
    name: str
    api_url: str
    token: str
    database: DatabaseDescriptor = field(default_factory=DatabaseDescriptor)

    @property
    def base_url(self) -> str:
        return self.api_url.rstrip("/")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation (token masked)."""
        return {
            "name": self.name,
            "api_url": self.api_url,
            "token": "***" if self.token else None,
            "database": self.database.to_dict(),
        }
