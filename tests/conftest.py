"""Shared fakes and fixtures.

``FakeDatabase`` keeps tables as lists of row dicts and an export archive
as a JSON file, so transplant behaviour can be asserted on plain data.
``FakeAPIClient`` serves scripted responses and borrows the real client's
probe methods.
"""

from __future__ import annotations

import json
import subprocess
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import pytest

from directus_migrate import catalog
from directus_migrate.config import MigrationSettings
from directus_migrate.exceptions import ConnectivityError, DatabaseCommandError
from directus_migrate.models.environment import DatabaseDescriptor, Environment
from directus_migrate.services.api_client import DirectusAPIClient
from directus_migrate.services.database import DatabaseClient

SNAPSHOT_DOCUMENT = {
    "version": 1,
    "directus": "10.10.4",
    "vendor": "postgres",
    "collections": [{"collection": "articles"}, {"collection": "authors"}],
    "fields": [{"collection": "articles", "field": "title"}],
    "relations": [],
}

DIFF_BODY = {
    "hash": "abc123",
    "diff": {
        "collections": [{"collection": "articles", "diff": [{"kind": "N"}]}],
        "fields": [
            {"collection": "articles", "field": "title", "diff": [{"kind": "N"}]},
            {"collection": "articles", "field": "body", "diff": [{"kind": "N"}]},
        ],
        "relations": [],
    },
}


def make_env(name: str, container: str | None = None, host: str | None = None, password: str | None = None) -> Environment:
    return Environment(
        name=name,
        api_url=f"https://{name}.example.com/",
        token=f"{name}-token",
        database=DatabaseDescriptor(container=container, host=host, password=password),
    )


# ---------------------------------------------------------------------------
# HTTP fakes
# ---------------------------------------------------------------------------


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str | None = None):
        self.status_code = status_code
        if text is None:
            text = json.dumps(payload) if payload is not None else ""
        self.text = text
        self.content = text.encode()

    def json(self):
        return json.loads(self.text)


class FakeAPIClient:
    """Scripted stand-in for DirectusAPIClient keyed on (method, path)."""

    ping = DirectusAPIClient.ping
    check_schema_access = DirectusAPIClient.check_schema_access
    current_user = DirectusAPIClient.current_user

    def __init__(self, environment: Environment, responses: dict | None = None):
        self.environment = environment
        self.base_url = environment.base_url
        self.responses = dict(responses or {})
        self.requests: list[tuple[str, str, dict]] = []
        self.closed = False

    def request(self, method, path, timeout=None, **kwargs):
        path = "/" + path.lstrip("/")
        self.requests.append((method, path, kwargs))
        response = self.responses.get((method, path))
        if isinstance(response, Exception):
            raise response
        if response is None:
            return FakeResponse(404, {"errors": [{"message": "Route doesn't exist"}]})
        return response

    def get(self, path, **kwargs):
        return self.request("GET", path, **kwargs)

    def post(self, path, json=None, **kwargs):
        return self.request("POST", path, json=json, **kwargs)

    def paths(self, method: str) -> list[str]:
        return [p for m, p, _ in self.requests if m == method]

    def close(self):
        self.closed = True


def healthy_responses(snapshot: Any = None, diff: FakeResponse | None = None) -> dict:
    """Responses for an instance that is up and grants schema access."""
    return {
        ("GET", "/server/ping"): FakeResponse(200, text="pong"),
        ("GET", "/schema/snapshot"): FakeResponse(200, {"data": snapshot or SNAPSHOT_DOCUMENT}),
        ("POST", "/schema/diff"): diff or FakeResponse(204),
        ("POST", "/schema/apply"): FakeResponse(204),
    }


# ---------------------------------------------------------------------------
# Database fake
# ---------------------------------------------------------------------------


class FakeDatabase:
    """In-memory database exposing the DatabaseClient operations the engine uses."""

    def __init__(self, environment: Environment, tables: dict | None = None, columns: dict | None = None):
        self.environment = environment
        self.tables = {name: [dict(row) for row in rows] for name, rows in (tables or {}).items()}
        self.columns = dict(columns or {})
        self.calls: list[tuple[str, str]] = []
        self.truncate_fails: set[str] = set()
        self.delete_fails: set[str] = set()
        self.referenced: set[str] = set()
        self.restore_output: tuple[int, str] | None = None
        self.backup_bytes = b"PGDMP full backup"
        self.reachable = True
        self.fk_suspended = False
        self.fk_during_restore: list[bool] = []
        self.staged: list[str] = []
        self.removed: list[str] = []

    @property
    def name(self) -> str:
        return self.environment.name

    def rows(self, table: str) -> list[dict]:
        return self.tables.get(table, [])

    def mutations(self) -> list[tuple[str, str]]:
        return [c for c in self.calls if c[0] in ("truncate", "delete", "restore", "repair")]

    def check_connection(self):
        if not self.reachable:
            raise ConnectivityError(f"Cannot connect to {self.name} database")

    def dump_full(self, path):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.backup_bytes)
        self.calls.append(("backup", str(path)))
        return path.stat().st_size

    def dump_data(self, path, exclude_tables=catalog.SYSTEM_TABLES):
        excluded = set(exclude_tables)
        data = {t: rows for t, rows in self.tables.items() if t not in excluded}
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data))
        self.calls.append(("export", str(path)))
        return path.stat().st_size

    def stage_archive(self, local_path):
        self.staged.append(str(local_path))
        return str(local_path)

    def remove_staged(self, remote_path):
        self.removed.append(remote_path)

    def list_archive(self, archive_path):
        return sorted(json.loads(Path(archive_path).read_text()))

    def restore_data(self, archive_path):
        self.calls.append(("restore", str(archive_path)))
        self.fk_during_restore.append(self.fk_suspended)
        if self.restore_output is not None:
            code, stderr = self.restore_output
            return subprocess.CompletedProcess(["pg_restore"], code, "", stderr)

        errors = []
        for table, rows in json.loads(Path(archive_path).read_text()).items():
            existing = self.tables.setdefault(table, [])
            ids = {row.get("id") for row in existing}
            if any(row.get("id") in ids for row in rows):
                errors.append(
                    f'pg_restore: error: COPY failed for table "{table}": ERROR:  '
                    f'duplicate key value violates unique constraint "{table}_pkey"'
                )
                continue
            existing.extend(dict(row) for row in rows)
        if errors:
            errors.append(f"pg_restore: warning: errors ignored on restore: {len(errors)}")
        return subprocess.CompletedProcess(["pg_restore"], 1 if errors else 0, "", "\n".join(errors))

    def table_exists(self, table):
        return table in self.tables

    def count_rows(self, table):
        if table not in self.tables:
            raise DatabaseCommandError(f'relation "{table}" does not exist', stderr="ERROR: relation does not exist")
        return len(self.tables[table])

    def truncate(self, table):
        self.calls.append(("truncate", table))
        if table in self.truncate_fails or table in self.referenced:
            raise DatabaseCommandError("psql failed", return_code=1, stderr="ERROR: cannot truncate a table referenced in a foreign key constraint")
        self.tables[table] = []

    def delete_all(self, table, suspend_foreign_keys=False):
        self.calls.append(("delete", table))
        if table in self.delete_fails:
            raise DatabaseCommandError("psql failed", return_code=1, stderr="ERROR: permission denied")
        if table in self.referenced and not suspend_foreign_keys:
            raise DatabaseCommandError("psql failed", return_code=1, stderr="ERROR: update or delete violates foreign key constraint")
        self.tables[table] = []

    def tables_with_columns(self, columns):
        wanted = set(columns)
        found = {}
        for table, cols in self.columns.items():
            matching = [c for c in cols if c in wanted]
            if matching:
                found[table] = matching
        return found

    def null_orphan_references(self, table, column, account_table=catalog.ACCOUNT_TABLE):
        self.calls.append(("repair", f"{table}.{column}"))
        accounts = {row["id"] for row in self.tables.get(account_table, [])}
        updated = 0
        for row in self.tables.get(table, []):
            if row.get(column) is not None and row[column] not in accounts:
                row[column] = None
                updated += 1
        return updated

    @contextmanager
    def foreign_keys_suspended(self):
        self.fk_suspended = True
        self.calls.append(("fk", "off"))
        try:
            yield
        finally:
            self.fk_suspended = False
            self.calls.append(("fk", "on"))

    def restore_command(self, backup_path):
        return DatabaseClient(self.environment).restore_command(backup_path)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path):
    return MigrationSettings(output_dir=str(tmp_path))


@pytest.fixture
def dev_env():
    return make_env("dev", container="directus-dev-db")


@pytest.fixture
def prod_env():
    return make_env("prod", container="directus-prod-db", password="secret")


@pytest.fixture
def dev_db(dev_env):
    return FakeDatabase(
        dev_env,
        tables={
            "articles": [
                {"id": 1, "title": "Hello", "user_created": "u-dev", "user_updated": None},
                {"id": 2, "title": "World", "user_created": "u-shared", "user_updated": "u-dev"},
                {"id": 3, "title": "Again", "user_created": None, "user_updated": None},
            ],
            "authors": [{"id": 1, "name": "Ada"}, {"id": 2, "name": "Grace"}],
            "directus_users": [{"id": "u-dev"}, {"id": "u-shared"}],
            "directus_settings": [{"id": 1, "project_name": "Dev"}],
            "directus_roles": [{"id": "r-admin"}],
        },
        columns={"articles": ["user_created", "user_updated"], "directus_files": ["user_created"]},
    )


@pytest.fixture
def prod_db(prod_env):
    return FakeDatabase(
        prod_env,
        tables={
            "articles": [{"id": 99, "title": "Stale", "user_created": "u-prod", "user_updated": None}],
            "authors": [{"id": 7, "name": "Old"}],
            "legacy_notes": [{"id": 1}, {"id": 2}, {"id": 3}, {"id": 4}],
            "directus_users": [{"id": "u-prod"}, {"id": "u-shared"}, {"id": "u-ops"}],
            "directus_settings": [{"id": 1, "project_name": "Prod"}],
            "directus_roles": [{"id": "r-prod"}],
        },
        columns={
            "articles": ["user_created", "user_updated"],
            "legacy_notes": ["user_created"],
            "directus_files": ["user_created", "user_updated"],
        },
    )
