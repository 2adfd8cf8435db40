"""PostgreSQL tooling adapter.

Runs psql, pg_dump and pg_restore either inside the environment's
database container (``docker exec``) or locally against a database host.
"""

import logging
import os
import shlex
import subprocess
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence

from .. import catalog
from ..exceptions import (
    ConnectivityError,
    DatabaseCommandError,
    MigrationTimeoutError,
)
from ..models.environment import Environment

logger = logging.getLogger(__name__)

Runner = Callable[..., subprocess.CompletedProcess]

REPLICA_ROLE_OPTION = "-c session_replication_role=replica"
REPLICA_ROLE_STATEMENT = "SET session_replication_role = replica;"


def quote_ident(name: str) -> str:
    """Quote an SQL identifier."""
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    """Quote an SQL string literal."""
    return "'" + value.replace("'", "''") + "'"


def qualified(table: str, schema: str = catalog.SCHEMA_NAME) -> str:
    return f"{quote_ident(schema)}.{quote_ident(table)}"


def parse_archive_listing(listing: str, schema: str = catalog.SCHEMA_NAME) -> List[str]:
    """
    Table names from ``pg_restore --list`` output.

    Entries look like ``3456; 0 16385 TABLE DATA public articles directus``;
    only TABLE DATA entries in the given schema count.
    """
    tables = []
    for line in listing.splitlines():
        line = line.strip()
        if not line or line.startswith(";"):
            continue
        parts = line.split()
        try:
            idx = parts.index("TABLE")
        except ValueError:
            continue
        if idx + 3 >= len(parts) or parts[idx + 1] != "DATA":
            continue
        entry_schema, table = parts[idx + 2], parts[idx + 3]
        if entry_schema == schema and table not in tables:
            tables.append(table)
    return sorted(tables)


class DatabaseClient:
    """
    Database operations for one environment.

    Commands are built as argument lists and run through ``runner``
    (``subprocess.run`` by default). The password is handed over through
    the child environment, never on the command line.
    """

    def __init__(
        self,
        environment: Environment,
        query_timeout: float = 60.0,
        command_timeout: float = 1800.0,
        docker_binary: str = "docker",
        remote_tmp_dir: str = "/tmp",
        runner: Optional[Runner] = None
    ):
        """
        Initialize the client.

        Args:
            environment: Environment whose database to operate on
            query_timeout: Timeout for psql queries and docker inspection
            command_timeout: Timeout for dumps, restores and copies
            docker_binary: Docker CLI executable
            remote_tmp_dir: Staging directory inside the container
            runner: subprocess.run compatible callable
        """
        self.environment = environment
        self.db = environment.database
        self.query_timeout = query_timeout
        self.command_timeout = command_timeout
        self.docker_binary = docker_binary
        self.remote_tmp_dir = remote_tmp_dir.rstrip("/") or "/tmp"
        self._runner = runner or subprocess.run
        self._session_options: List[str] = []

    @property
    def name(self) -> str:
        return self.environment.name

    @property
    def foreign_keys_suspended_now(self) -> bool:
        return REPLICA_ROLE_OPTION in self._session_options

    # ------------------------------------------------------------------
    # Command construction
    # ------------------------------------------------------------------

    def _child_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        if self.db.password:
            env["PGPASSWORD"] = self.db.password
        if self._session_options:
            env["PGOPTIONS"] = " ".join(self._session_options)
        else:
            env.pop("PGOPTIONS", None)
        return env

    def tool_command(
        self,
        tool: str,
        args: Sequence[str] = (),
        connect: bool = True,
        interactive: bool = False
    ) -> List[str]:
        """Build the argument list for a PostgreSQL client tool."""
        conn_args: List[str] = []
        if connect:
            conn_args = ["-U", self.db.user, "-d", self.db.name]

        if self.db.uses_container:
            cmd = [self.docker_binary, "exec"]
            if interactive:
                cmd.append("-i")
            if self.db.password:
                cmd += ["-e", "PGPASSWORD"]
            if self._session_options:
                cmd += ["-e", "PGOPTIONS"]
            cmd.append(self.db.container)
            return cmd + [tool] + conn_args + list(args)

        if connect:
            conn_args = ["-h", self.db.host, "-p", str(self.db.port)] + conn_args
        return [tool] + conn_args + list(args)

    def _run(
        self,
        cmd: List[str],
        timeout: float,
        check: bool = True,
        stdout=None,
        description: Optional[str] = None
    ) -> subprocess.CompletedProcess:
        description = description or cmd[0]
        logger.debug(f"[{self.name}] {shlex.join(cmd)}")

        kwargs = {"env": self._child_env(), "timeout": timeout}
        if stdout is not None:
            kwargs.update(stdout=stdout, stderr=subprocess.PIPE)
        else:
            kwargs.update(capture_output=True, text=True)

        try:
            result = self._runner(cmd, **kwargs)
        except subprocess.TimeoutExpired as e:
            raise MigrationTimeoutError(
                f"{description} on {self.name} timed out after {timeout}s",
                timeout=timeout,
                context={"environment": self.name, "command": shlex.join(cmd)},
                original_error=e,
            ) from e
        except FileNotFoundError as e:
            raise ConnectivityError(
                f"{cmd[0]} not found while running {description}",
                hint=f"Install {cmd[0]} or fix the PATH",
                original_error=e,
            ) from e

        if check and result.returncode != 0:
            stderr = result.stderr
            if isinstance(stderr, bytes):
                stderr = stderr.decode("utf-8", errors="replace")
            raise DatabaseCommandError(
                f"{description} failed on {self.name} (exit {result.returncode})",
                command=shlex.join(cmd),
                return_code=result.returncode,
                stderr=stderr,
                context={"environment": self.name},
            )
        return result

    # ------------------------------------------------------------------
    # Connectivity
    # ------------------------------------------------------------------

    def container_running(self) -> bool:
        """Whether the environment's container shows up in ``docker ps``."""
        if not self.db.uses_container:
            return True
        result = self._run(
            [self.docker_binary, "ps", "--format", "{{.Names}}"],
            timeout=self.query_timeout,
            description="docker ps",
        )
        return self.db.container in {line.strip() for line in result.stdout.splitlines()}

    def check_connection(self) -> None:
        """
        Verify the database answers ``SELECT 1``.

        Raises:
            ConnectivityError: If the container is not running or the query fails
        """
        if not self.container_running():
            raise ConnectivityError(
                f"Container '{self.db.container}' for {self.name} not found or not running",
                hint="Start the container or fix the *_DB_CONTAINER variable",
                context={"environment": self.name},
            )
        try:
            self.query("SELECT 1;")
        except DatabaseCommandError as e:
            raise ConnectivityError(
                f"Cannot connect to {self.name} database ({self.db.describe()})",
                context={"environment": self.name, "stderr": e.stderr.strip()[:300]},
                original_error=e,
            ) from e
        logger.info(f"{self.name} database reachable ({self.db.describe()})")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def query(self, sql: str, check: bool = True) -> str:
        """Run one statement with psql and return the unaligned tuples output."""
        cmd = self.tool_command("psql", ["-v", "ON_ERROR_STOP=1", "-X", "-q", "-t", "-A", "-c", sql])
        result = self._run(cmd, timeout=self.query_timeout, check=check, description="psql")
        return (result.stdout or "").strip()

    def execute(self, sql: str) -> None:
        self.query(sql)

    def scalar_int(self, sql: str) -> int:
        output = self.query(sql)
        line = output.splitlines()[-1].strip() if output else ""
        try:
            return int(line)
        except ValueError:
            raise DatabaseCommandError(
                f"Expected an integer from {self.name}, got {output[:80]!r}",
                command=sql,
            )

    def count_rows(self, table: str) -> int:
        return self.scalar_int(f"SELECT COUNT(*) FROM {qualified(table)};")

    def table_exists(self, table: str) -> bool:
        output = self.query(
            "SELECT EXISTS (SELECT 1 FROM information_schema.tables "
            f"WHERE table_schema = {quote_literal(catalog.SCHEMA_NAME)} "
            f"AND table_name = {quote_literal(table)});"
        )
        return output.strip() == "t"

    def truncate(self, table: str) -> None:
        """Empty a table and reset its identities. Never cascades."""
        self.execute(f"TRUNCATE TABLE {qualified(table)} RESTART IDENTITY;")

    def delete_all(self, table: str, suspend_foreign_keys: bool = False) -> None:
        """
        Delete every row of a table.

        With ``suspend_foreign_keys`` the statement runs in a psql session with
        replication role ``replica``, so rows referenced by other tables can go.
        """
        sql = f"DELETE FROM {qualified(table)};"
        if suspend_foreign_keys:
            sql = f"{REPLICA_ROLE_STATEMENT} {sql}"
        self.execute(sql)

    def tables_with_columns(self, columns: Iterable[str]) -> Dict[str, List[str]]:
        """Tables in the public schema carrying any of the given columns."""
        column_list = ", ".join(quote_literal(c) for c in columns)
        output = self.query(
            "SELECT table_name, column_name FROM information_schema.columns "
            f"WHERE table_schema = {quote_literal(catalog.SCHEMA_NAME)} "
            f"AND column_name IN ({column_list}) "
            "ORDER BY table_name, column_name;"
        )
        found: Dict[str, List[str]] = {}
        for line in output.splitlines():
            if "|" not in line:
                continue
            table, column = line.split("|", 1)
            found.setdefault(table.strip(), []).append(column.strip())
        return found

    def null_orphan_references(self, table: str, column: str, account_table: str = catalog.ACCOUNT_TABLE) -> int:
        """Set references to accounts that do not exist here to NULL; return rows changed."""
        col = quote_ident(column)
        sql = (
            f"WITH updated AS (UPDATE {qualified(table)} AS t SET {col} = NULL "
            f"WHERE t.{col} IS NOT NULL AND NOT EXISTS ("
            f"SELECT 1 FROM {qualified(account_table)} AS u WHERE u.id = t.{col}) "
            "RETURNING 1) SELECT COUNT(*) FROM updated;"
        )
        return self.scalar_int(sql)

    # ------------------------------------------------------------------
    # Dumps and restores
    # ------------------------------------------------------------------

    def _dump_to_file(self, args: List[str], path: Path, description: str) -> int:
        path.parent.mkdir(parents=True, exist_ok=True)
        cmd = self.tool_command("pg_dump", args)
        with open(path, "wb") as f:
            self._run(cmd, timeout=self.command_timeout, stdout=f, description=description)
        return path.stat().st_size

    def dump_full(self, path: Path) -> int:
        """Custom-format dump of the whole database; returns its size."""
        return self._dump_to_file(["-Fc"], Path(path), "full backup")

    def dump_data(self, path: Path, exclude_tables: Iterable[str] = catalog.SYSTEM_TABLES) -> int:
        """Data-only custom-format dump leaving out the given tables' rows."""
        args = ["--data-only", "-Fc"] + catalog.exclude_flags(exclude_tables)
        return self._dump_to_file(args, Path(path), "data export")

    def stage_archive(self, local_path: Path) -> str:
        """Make an archive readable by the tools; returns the path they should use."""
        local_path = Path(local_path)
        if not self.db.uses_container:
            return str(local_path)
        remote = f"{self.remote_tmp_dir}/{local_path.name}"
        self._run(
            [self.docker_binary, "cp", str(local_path), f"{self.db.container}:{remote}"],
            timeout=self.command_timeout,
            description="docker cp",
        )
        return remote

    def remove_staged(self, remote_path: str) -> None:
        if not self.db.uses_container:
            return
        self._run(
            [self.docker_binary, "exec", self.db.container, "rm", "-f", remote_path],
            timeout=self.query_timeout,
            check=False,
            description="cleanup",
        )

    def list_archive(self, archive_path: str) -> List[str]:
        """Tables whose data an archive contains, from its own table of contents."""
        cmd = self.tool_command("pg_restore", ["--list", archive_path], connect=False)
        result = self._run(cmd, timeout=self.query_timeout, description="pg_restore --list")
        return parse_archive_listing(result.stdout or "")

    def restore_data(self, archive_path: str) -> subprocess.CompletedProcess:
        """
        Restore a data-only archive. Does not raise on a non-zero exit;
        callers classify the error output.
        """
        cmd = self.tool_command(
            "pg_restore",
            ["--data-only", "--disable-triggers", "--no-owner", archive_path],
        )
        return self._run(cmd, timeout=self.command_timeout, check=False, description="pg_restore")

    def restore_command(self, backup_path: str) -> str:
        """Shell command an operator runs to restore a full backup."""
        if self.db.uses_container:
            prefix = f"{self.docker_binary} exec -i"
            if self.db.password:
                prefix += " -e PGPASSWORD"
            return (
                f"{prefix} {self.db.container} pg_restore -U {self.db.user} "
                f"-d {self.db.name} --clean --if-exists < {shlex.quote(backup_path)}"
            )
        return (
            f"pg_restore -h {self.db.host} -p {self.db.port} -U {self.db.user} "
            f"-d {self.db.name} --clean --if-exists {shlex.quote(backup_path)}"
        )

    @contextmanager
    def foreign_keys_suspended(self) -> Iterator[None]:
        """
        Run the enclosed database sessions with replication role ``replica``.

        Foreign key triggers do not fire while suspended. Enforcement is
        restored on every exit path, including KeyboardInterrupt.
        """
        self._session_options.append(REPLICA_ROLE_OPTION)
        logger.info(f"Foreign key checks suspended on {self.name}")
        try:
            yield
        finally:
            while REPLICA_ROLE_OPTION in self._session_options:
                self._session_options.remove(REPLICA_ROLE_OPTION)
            logger.info(f"Foreign key checks re-enabled on {self.name}")
