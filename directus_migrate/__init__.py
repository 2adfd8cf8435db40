"""
Directus Environment Migration

A migration toolkit for moving schema and content between isolated
Directus instances (dev, stage, prod, edit, ...) without touching the
environment-specific state of the target.

Supports:
- Schema-only migrations via the snapshot/diff/apply API
- Full migrations that also transplant content tables between databases
- Mandatory target backups and post-migration integrity checks
- Container (docker exec) and direct host database access
"""

__version__ = "0.1.0"
