"""Run configuration and environment file loading."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

from dotenv import dotenv_values

from .exceptions import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_ENV_FILES = (".env.directus", ".env")


@dataclass
class MigrationSettings:
    """Settings shared by every component of a run.

    Built once by the caller and handed to the orchestrator, which passes
    it down; no component looks at process-wide state.
    """
    output_dir: str = "."

    # HTTP timeouts (seconds)
    connect_timeout: float = 15.0
    request_timeout: float = 60.0
    ping_timeout: float = 10.0

    # Subprocess timeouts (seconds)
    command_timeout: float = 1800.0  # dumps and restores
    query_timeout: float = 60.0

    # Execution options
    clear_workers: int = 1
    dry_run: bool = False
    allow_shared_database: bool = True
    use_lock: bool = True
    save_report: bool = True

    # Tooling
    docker_binary: str = "docker"
    remote_tmp_dir: str = "/tmp"

    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def snapshots_dir(self) -> Path:
        return Path(self.output_dir) / "schema-snapshots"

    @property
    def backups_dir(self) -> Path:
        return Path(self.output_dir) / "backups"

    @property
    def exports_dir(self) -> Path:
        return Path(self.output_dir) / "data_exports"

    @property
    def logs_dir(self) -> Path:
        return Path(self.output_dir) / "logs"

    @property
    def locks_dir(self) -> Path:
        return Path(self.output_dir) / ".locks"

    @property
    def http_timeout(self):
        """(connect, read) tuple for requests."""
        return (self.connect_timeout, self.request_timeout)

    def ensure_directories(self) -> None:
        """Create artifact directories."""
        for directory in [self.snapshots_dir, self.backups_dir, self.exports_dir, self.logs_dir]:
            directory.mkdir(parents=True, exist_ok=True)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "output_dir": self.output_dir,
            "connect_timeout": self.connect_timeout,
            "request_timeout": self.request_timeout,
            "ping_timeout": self.ping_timeout,
            "command_timeout": self.command_timeout,
            "query_timeout": self.query_timeout,
            "clear_workers": self.clear_workers,
            "dry_run": self.dry_run,
            "allow_shared_database": self.allow_shared_database,
            "use_lock": self.use_lock,
            "save_report": self.save_report,
            "docker_binary": self.docker_binary,
            "remote_tmp_dir": self.remote_tmp_dir,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationSettings":
        """Create from dictionary representation."""
        return cls(
            output_dir=data.get("output_dir", "."),
            connect_timeout=float(data.get("connect_timeout", 15.0)),
            request_timeout=float(data.get("request_timeout", 60.0)),
            ping_timeout=float(data.get("ping_timeout", 10.0)),
            command_timeout=float(data.get("command_timeout", 1800.0)),
            query_timeout=float(data.get("query_timeout", 60.0)),
            clear_workers=int(data.get("clear_workers", 1)),
            dry_run=bool(data.get("dry_run", False)),
            allow_shared_database=bool(data.get("allow_shared_database", True)),
            use_lock=bool(data.get("use_lock", True)),
            save_report=bool(data.get("save_report", True)),
            docker_binary=data.get("docker_binary", "docker"),
            remote_tmp_dir=data.get("remote_tmp_dir", "/tmp"),
        )


def load_variables(
    env_file: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    search_dir: Optional[str] = None,
    candidates: Sequence[str] = DEFAULT_ENV_FILES,
) -> Dict[str, str]:
    """
    Build the variable mapping the environment registry resolves against.

    Args:
        env_file: Explicit env file; must exist if given
        environ: Process environment (values here win over the file)
        search_dir: Directory searched for the default env files
        candidates: Default env file names, first match wins

    Returns:
        Merged mapping of variable name -> value
    """
    path: Optional[Path] = None
    if env_file:
        path = Path(env_file)
        if not path.is_file():
            raise ConfigError(
                f"Environment file not found: {env_file}",
                hint="Pass an existing file with --env-file",
            )
    else:
        base = Path(search_dir or os.getcwd())
        for name in candidates:
            if (base / name).is_file():
                path = base / name
                break

    variables: Dict[str, str] = {}
    if path is not None:
        loaded = dotenv_values(path)
        variables.update({k: v for k, v in loaded.items() if v is not None})
        logger.debug(f"Loaded {len(variables)} variables from {path}")
    else:
        logger.debug("No environment file found, using process environment only")

    if environ:
        variables.update(environ)

    return variables
