"""System table catalog.

The single list of tables that hold environment-specific state. The
content export excludes their data, the clear step refuses them and the
ownership repair never updates them.
"""

from typing import FrozenSet, Iterable, List

SCHEMA_NAME = "public"

# Accounts and access
ACCOUNT_TABLES = (
    "directus_users",
    "directus_sessions",
    "directus_roles",
    "directus_permissions",
    "directus_access",
    "directus_policies",
    "directus_shares",
)

# Project configuration and automation
SETTINGS_TABLES = (
    "directus_settings",
    "directus_webhooks",
    "directus_flows",
    "directus_operations",
    "directus_extensions",
    "directus_migrations",
    "directus_presets",
    "directus_dashboards",
    "directus_panels",
    "directus_translations",
)

# Structural metadata, maintained through the schema API
STRUCTURE_TABLES = (
    "directus_collections",
    "directus_fields",
    "directus_relations",
)

# History and assets
HISTORY_TABLES = (
    "directus_activity",
    "directus_notifications",
    "directus_revisions",
    "directus_versions",
    "directus_comments",
    "directus_files",
    "directus_folders",
)

SYSTEM_TABLES: FrozenSet[str] = frozenset(
    ACCOUNT_TABLES + SETTINGS_TABLES + STRUCTURE_TABLES + HISTORY_TABLES
)

ACCOUNT_TABLE = "directus_users"
SETTINGS_TABLE = "directus_settings"

# Columns on content tables that reference ACCOUNT_TABLE
OWNERSHIP_COLUMNS = ("user_created", "user_updated")


def is_system_table(table: str) -> bool:
    """Check whether a table (optionally schema-qualified) is a system table."""
    name = table.strip().strip('"')
    if "." in name:
        name = name.split(".", 1)[1].strip('"')
    return name in SYSTEM_TABLES


def exclude_flags(tables: Iterable[str] = SYSTEM_TABLES) -> List[str]:
    """pg_dump arguments that leave the given tables' data out of an export."""
    return [f"--exclude-table-data={SCHEMA_NAME}.{t}" for t in sorted(tables)]


def content_tables(tables: Iterable[str]) -> List[str]:
    """Filter out system tables, preserving order."""
    return [t for t in tables if not is_system_table(t)]
