"""End-to-end runs of the orchestrator against scripted APIs and fake databases."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from directus_migrate.config import MigrationSettings
from directus_migrate.models.environment import MigrationMode
from directus_migrate.models.migration import InvalidTransition, MigrationRun, MigrationStatus
from directus_migrate.orchestrator import MigrationOrchestrator
from directus_migrate.services.safety import BackupPathFilter
from directus_migrate.services.schema_transport import SchemaTransport

from tests.conftest import (
    DIFF_BODY,
    FakeAPIClient,
    FakeDatabase,
    FakeResponse,
    healthy_responses,
    make_env,
)

VARIABLES = {
    "DEV_URL": "https://dev.example.com",
    "DEV_TOKEN": "dev-token",
    "DEV_DB_CONTAINER": "directus-dev-db",
    "PROD_URL": "https://prod.example.com",
    "PROD_TOKEN": "prod-token",
    "PROD_DB_CONTAINER": "directus-prod-db",
    "PROD_DB_PASSWORD": "secret",
    "STAGE_URL": "https://stage.example.com",
    "STAGE_TOKEN": "stage-token",
    "STAGE_DB_CONTAINER": "directus-stage-db",
}


class Harness:
    """Wires an orchestrator to fake API clients and databases."""

    def __init__(self, settings: MigrationSettings, dbs: dict, diff: FakeResponse | None = None, variables=None):
        self.settings = settings
        self.dbs = dbs
        self.clients = {
            "dev": FakeAPIClient(make_env("dev"), healthy_responses()),
            "prod": FakeAPIClient(make_env("prod"), healthy_responses(diff=diff)),
            "stage": FakeAPIClient(make_env("stage"), healthy_responses(diff=diff)),
        }
        self.created_dbs: list[str] = []
        self.orchestrator = MigrationOrchestrator(
            settings,
            variables=variables or VARIABLES,
            transport=SchemaTransport(client_factory=lambda env: self.clients[env.name]),
            database_factory=self._database,
        )

    def _database(self, env):
        self.created_dbs.append(env.name)
        return self.dbs[env.name]

    def run(self, source="dev", target="prod", mode=MigrationMode.FULL):
        return self.orchestrator.run(source, target, mode)


@pytest.fixture
def stage_db():
    return FakeDatabase(
        make_env("stage", container="directus-stage-db"),
        tables={
            "articles": [{"id": 5}],
            "directus_users": [{"id": "a"}, {"id": "b"}, {"id": "c"}],
            "directus_settings": [{"id": 1}],
        },
    )


# ---------------------------------------------------------------------------
# Schema-only runs
# ---------------------------------------------------------------------------


def test_schema_only_identical_changes_nothing(settings, dev_db, stage_db):
    harness = Harness(settings, {"dev": dev_db, "stage": stage_db})
    run = harness.run("dev", "stage", MigrationMode.SCHEMA)

    assert run.succeeded
    assert run.schema["identical"] is True
    assert "/schema/apply" not in harness.clients["stage"].paths("POST")
    assert harness.created_dbs == []
    assert len(stage_db.rows("directus_users")) == 3
    assert run.history == [
        MigrationStatus.PENDING,
        MigrationStatus.RESOLVING,
        MigrationStatus.PREFLIGHT_CHECKING,
        MigrationStatus.SCHEMA_SYNCING,
    ]
    assert "Schema: already identical, nothing applied" in harness.orchestrator.summary()


def test_schema_only_applies_diff_and_saves_artifacts(settings, dev_db, prod_db):
    harness = Harness(settings, {"dev": dev_db, "prod": prod_db}, diff=FakeResponse(200, {"data": DIFF_BODY}))
    run = harness.run(mode=MigrationMode.SCHEMA)

    assert run.succeeded
    assert "/schema/apply" in harness.clients["prod"].paths("POST")
    assert Path(run.artifacts["snapshot"]).exists()
    assert json.loads(Path(run.artifacts["diff"]).read_text()) == DIFF_BODY
    assert run.backup_path is None
    assert prod_db.mutations() == []


def test_dry_run_stops_after_diff(tmp_path, dev_db, prod_db):
    settings = MigrationSettings(output_dir=str(tmp_path), dry_run=True)
    harness = Harness(settings, {"dev": dev_db, "prod": prod_db}, diff=FakeResponse(200, {"data": DIFF_BODY}))
    run = harness.run(mode=MigrationMode.FULL)

    assert run.succeeded and run.dry_run
    assert "/schema/apply" not in harness.clients["prod"].paths("POST")
    assert prod_db.calls == []
    summary = harness.orchestrator.summary()
    assert any(line.startswith("Schema: would change 1 collections") for line in summary)


# ---------------------------------------------------------------------------
# Full runs
# ---------------------------------------------------------------------------


def test_full_migration_preserves_target_state(settings, dev_db, prod_db):
    harness = Harness(settings, {"dev": dev_db, "prod": prod_db})
    run = harness.run()

    assert run.succeeded, run.errors
    assert run.status == MigrationStatus.COMPLETED
    assert Path(run.backup_path).exists()
    assert len(prod_db.rows("legacy_notes")) == 4
    assert [u["id"] for u in prod_db.rows("directus_users")] == ["u-prod", "u-shared", "u-ops"]
    assert run.transplant["export"]["tables"] == ["articles", "authors"]
    assert run.postflight["account_count"] == 3
    # backup comes before the first destructive call
    calls = [c[0] for c in prod_db.calls]
    assert calls.index("backup") < calls.index("truncate")


def test_every_log_line_after_the_backup_names_it(settings, dev_db, prod_db, caplog):
    harness = Harness(settings, {"dev": dev_db, "prod": prod_db})
    with caplog.at_level(logging.INFO, logger="directus_migrate"):
        run = harness.run()

    assert run.succeeded
    messages = [r.getMessage() for r in caplog.records if r.name.startswith("directus_migrate")]
    backup_line = next(i for i, m in enumerate(messages) if m.startswith("Full backup created"))
    after = messages[backup_line + 1:]
    assert any("PHASE 5" in m for m in after)
    assert [m for m in after if f"[backup: {run.backup_path}]" not in m] == []
    assert not any(isinstance(f, BackupPathFilter) for f in logging.getLogger("directus_migrate.services.transplant").filters)


def test_run_timestamps_are_timezone_aware(settings, dev_db, prod_db):
    run = Harness(settings, {"dev": dev_db, "prod": prod_db}).run()
    assert run.started_at.tzinfo is not None
    assert run.steps[0].completed_at.utcoffset().total_seconds() == 0
    report = json.loads(Path(run.artifacts["report"]).read_text())
    assert report["started_at"].endswith("+00:00")


def test_full_migration_writes_report(settings, dev_db, prod_db):
    run = Harness(settings, {"dev": dev_db, "prod": prod_db}).run()
    report = json.loads(Path(run.artifacts["report"]).read_text())
    assert report["status"] == "completed"
    assert report["mode"] == "full"
    assert report["metadata"]["target"]["token"] == "***"
    assert Path(run.artifacts["report"]).parent == settings.logs_dir


def test_rerun_with_duplicates_completes_with_warning(settings, dev_db, prod_db):
    prod_db.restore_output = (1, "\n".join(
        'pg_restore: error: COPY failed for table "articles": ERROR:  duplicate key value violates unique constraint "articles_pkey"'
        for _ in range(12)
    ))
    harness = Harness(settings, {"dev": dev_db, "prod": prod_db})
    run = harness.run()

    assert run.succeeded
    assert run.warnings == ["Import skipped 12 duplicate rows (data already present)"]
    assert "Warning: Import skipped 12 duplicate rows (data already present)" in harness.orchestrator.summary()


def test_accounts_wiped_fails_with_recovery_command(settings, dev_db, prod_db):
    prod_db.tables["directus_users"] = []
    harness = Harness(settings, {"dev": dev_db, "prod": prod_db})
    run = harness.run()

    assert run.status == MigrationStatus.FAILED
    assert run.failed_in == MigrationStatus.POST_VALIDATING
    assert run.errors[-1]["type"] == "IntegrityViolation"
    assert run.errors[-1]["context"]["backup_path"] == run.backup_path
    assert "pg_restore" in run.recovery and "--clean" in run.recovery
    summary = harness.orchestrator.summary()
    assert f"Backup: {run.backup_path}" in summary
    assert f"Restore with: {run.recovery}" in summary


def test_unreachable_target_fails_before_any_change(settings, dev_db, prod_db):
    harness = Harness(settings, {"dev": dev_db, "prod": prod_db})
    harness.clients["prod"].responses[("GET", "/server/ping")] = FakeResponse(503, text="down")
    run = harness.run()

    assert run.failed_in == MigrationStatus.PREFLIGHT_CHECKING
    assert run.backup_path is None
    assert prod_db.calls == []
    assert harness.clients["prod"].paths("POST") == []


def test_failed_backup_stops_before_transplant(settings, dev_db, prod_db):
    prod_db.backup_bytes = b""
    run = Harness(settings, {"dev": dev_db, "prod": prod_db}).run()

    assert run.failed_in == MigrationStatus.BACKING_UP
    assert prod_db.mutations() == []
    assert run.steps[-1].status == MigrationStatus.FAILED


def test_missing_configuration_fails_in_resolution(settings, dev_db):
    run = Harness(settings, {"dev": dev_db}).run("dev", "qa")
    assert run.failed_in == MigrationStatus.RESOLVING
    assert run.errors[-1]["type"] == "MissingConfigError"
    assert dev_db.calls == []


def test_shared_database_can_be_refused(tmp_path, dev_db, prod_db):
    variables = dict(VARIABLES, PROD_DB_CONTAINER="directus-dev-db")
    settings = MigrationSettings(output_dir=str(tmp_path), allow_shared_database=False)
    run = Harness(settings, {"dev": dev_db, "prod": prod_db}, variables=variables).run()
    assert run.failed_in == MigrationStatus.RESOLVING
    assert "share one database" in run.failure_reason


def test_lock_is_released_after_the_run(settings, dev_db, prod_db):
    Harness(settings, {"dev": dev_db, "prod": prod_db}).run()
    assert list(settings.locks_dir.glob("*.lock")) == []


def test_interrupt_is_recorded_and_reraised(settings, dev_db, prod_db, monkeypatch):
    harness = Harness(settings, {"dev": dev_db, "prod": prod_db})

    def interrupted(path):
        raise KeyboardInterrupt

    monkeypatch.setattr(prod_db, "restore_data", interrupted)
    with pytest.raises(KeyboardInterrupt):
        harness.run()

    run = harness.orchestrator.migration
    assert run.failed_in == MigrationStatus.DATA_TRANSPLANTING
    assert run.failure_reason == "Interrupted by operator"
    assert not prod_db.fk_suspended
    assert list(settings.locks_dir.glob("*.lock")) == []
    assert Path(run.artifacts["report"]).exists()


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


def test_run_cannot_skip_states():
    run = MigrationRun(source="dev", target="prod")
    run.transition_to(MigrationStatus.RESOLVING)
    with pytest.raises(InvalidTransition):
        run.transition_to(MigrationStatus.DATA_TRANSPLANTING)


def test_failed_is_absorbing():
    run = MigrationRun(source="dev", target="prod")
    run.fail("boom")
    assert run.failed_in == MigrationStatus.PENDING
    with pytest.raises(InvalidTransition):
        run.transition_to(MigrationStatus.RESOLVING)
    with pytest.raises(InvalidTransition):
        run.fail("again")
