"""Command line interface for environment migrations."""

import argparse
import json
import logging
import os
import sys
from typing import List, Optional

from . import __version__, catalog
from .config import MigrationSettings, load_variables
from .exceptions import ConfigError
from .models.environment import MigrationMode
from .models.migration import MigrationStatus
from .orchestrator import MigrationOrchestrator
from .services.api_client import DirectusAPIClient, diagnose
from .services.environment_registry import EnvironmentRegistry

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


def add_verbosity_flags(parser: argparse.ArgumentParser, default=False) -> None:
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("--verbose", "-v", action="store_true", default=default, help="Debug output")
    verbosity.add_argument("--quiet", "-q", action="store_true", default=default, help="Warnings and errors only")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="directus-migrate",
        description="Directus Environment Migration - move schema and content between instances",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--env-file", help="Environment file (default: .env.directus, then .env)")

    add_verbosity_flags(parser)

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Run migration
    migrate_parser = subparsers.add_parser("migrate", help="Migrate from one environment to another")
    migrate_parser.add_argument("source", help="Source environment (e.g. dev)")
    migrate_parser.add_argument("target", help="Target environment (e.g. prod)")
    migrate_parser.add_argument(
        "--full", action="store_true", help="Also transplant content tables (needs database access)"
    )
    migrate_parser.add_argument(
        "--dry-run", action="store_true", help="Preflight, snapshot and diff only; change nothing"
    )
    migrate_parser.add_argument("--output-dir", default=".", help="Where artifacts and reports are written")
    migrate_parser.add_argument(
        "--clear-workers", type=int, default=1, help="Tables cleared in parallel (default: 1)"
    )
    migrate_parser.add_argument(
        "--no-lock", action="store_true", help="Do not take the per-target lock file"
    )
    # Also accepted after the subcommand; SUPPRESS keeps a top-level flag intact
    add_verbosity_flags(migrate_parser, default=argparse.SUPPRESS)

    # Permission diagnostics
    diagnose_parser = subparsers.add_parser("diagnose", help="Check an environment's token and permissions")
    diagnose_parser.add_argument("environment", help="Environment to diagnose")
    diagnose_parser.add_argument("--json", action="store_true", help="Print the raw report")

    # System tables
    subparsers.add_parser("tables", help="List the system tables a migration never overwrites")

    # Configured environments
    subparsers.add_parser("environments", help="List environments defined in the env file")

    return parser


def configure_logging(args: argparse.Namespace) -> None:
    if args.verbose:
        log_level = logging.DEBUG
    elif args.quiet:
        log_level = logging.WARNING
    else:
        log_level = logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    # Request-level chatter only when debugging
    logging.getLogger("urllib3").setLevel(logging.DEBUG if args.verbose else logging.WARNING)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args)

    if args.command == "tables":
        return print_tables()

    try:
        variables = load_variables(env_file=args.env_file, environ=os.environ)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        if e.hint:
            print(f"Hint: {e.hint}", file=sys.stderr)
        return EXIT_USAGE

    if args.command == "migrate":
        return run_migration(args, variables)
    elif args.command == "diagnose":
        return run_diagnose(args, variables)
    elif args.command == "environments":
        return print_environments(variables)

    parser.print_help()
    return EXIT_USAGE


def run_migration(args: argparse.Namespace, variables) -> int:
    """Run a migration between two environments."""
    if args.clear_workers < 1:
        print("Error: --clear-workers must be at least 1", file=sys.stderr)
        return EXIT_USAGE

    settings = MigrationSettings(
        output_dir=args.output_dir,
        dry_run=args.dry_run,
        clear_workers=args.clear_workers,
        use_lock=not args.no_lock,
    )
    mode = MigrationMode.FULL if args.full else MigrationMode.SCHEMA
    orchestrator = MigrationOrchestrator(settings, variables=variables)

    interrupted = False
    try:
        result = orchestrator.run(args.source, args.target, mode)
    except KeyboardInterrupt:
        interrupted = True
        result = orchestrator.migration

    print_summary(orchestrator.summary())

    if interrupted or result is None:
        return EXIT_FAILED
    if result.succeeded:
        return EXIT_OK
    if result.failed_in == MigrationStatus.RESOLVING:
        return EXIT_USAGE
    return EXIT_FAILED


def print_summary(lines: List[str]) -> None:
    print("\n" + "=" * 60)
    print("MIGRATION SUMMARY")
    print("=" * 60)
    for line in lines:
        print(line)


def run_diagnose(args: argparse.Namespace, variables) -> int:
    """Print token and permission diagnostics for one environment."""
    registry = EnvironmentRegistry(variables)
    try:
        env = registry.resolve(args.environment, MigrationMode.SCHEMA)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE

    settings = MigrationSettings()
    client = DirectusAPIClient(env, timeout=settings.http_timeout)
    try:
        report = diagnose(client, timeout=settings.ping_timeout)
    finally:
        client.close()

    if args.json:
        print(json.dumps(report, indent=2, default=str))
        return EXIT_OK if report["schema_access"] else EXIT_FAILED

    print("\n" + "=" * 60)
    print(f"DIAGNOSIS: {env.name} ({env.base_url})")
    print("=" * 60)
    token = report["token"]
    print(f"Token length: {token['length']}")
    print(f"Token contains whitespace: {'YES' if token['has_whitespace'] else 'NO'}")
    print(f"Token starts with 'Bearer ': {'YES' if token['has_bearer_prefix'] else 'NO'}")
    print(f"API ping: {report['ping']}")

    user = report["user"]
    if "error" in user:
        print(f"Authentication failed: {user['error']}")
    else:
        print(f"User: {user['email']} ({user['status']})")
        print(f"Role: {user['role']} (admin access: {user['admin_access']}, app access: {user['app_access']})")

    print("\nEndpoints:")
    for path, status in report["endpoints"].items():
        print(f"  {path}: {status}")

    if report["schema_access"]:
        print("\nSchema endpoints accessible - this token can be used for migrations")
        return EXIT_OK
    print("\nSchema endpoints NOT accessible - use a token with admin access")
    return EXIT_FAILED


def print_tables() -> int:
    """Print the system table catalog, grouped."""
    groups = [
        ("Accounts and access", catalog.ACCOUNT_TABLES),
        ("Settings and automation", catalog.SETTINGS_TABLES),
        ("Structure (synced through the schema API)", catalog.STRUCTURE_TABLES),
        ("History and assets", catalog.HISTORY_TABLES),
    ]
    print(f"{len(catalog.SYSTEM_TABLES)} system tables are never exported, cleared or overwritten:")
    for title, tables in groups:
        print(f"\n{title}:")
        for table in tables:
            print(f"  {table}")
    return EXIT_OK


def print_environments(variables) -> int:
    registry = EnvironmentRegistry(variables)
    names = registry.known_environments()
    if not names:
        print("No environments configured (expected NAME_URL and NAME_TOKEN variables)")
        return EXIT_OK
    for name in names:
        status = registry.describe(name)
        db = "container" if status[registry.variable_name(name, "container")] else (
            "host" if status[registry.variable_name(name, "host")] else "no database"
        )
        print(f"{name}: {db}")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
