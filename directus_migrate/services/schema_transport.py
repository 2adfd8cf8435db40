"""Schema transport - snapshot, diff and apply through the structural API."""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import requests

from ..exceptions import (
    ApplyError,
    PermissionDeniedError,
    TransportError,
)
from ..models.environment import Environment
from ..models.schema import (
    SNAPSHOT_KEYS,
    Applied,
    DiffResult,
    Identical,
    SchemaDiff,
    SchemaSnapshot,
    SchemaSyncResult,
)
from .api_client import DirectusAPIClient, Timeout, excerpt

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Environment], DirectusAPIClient]


class SchemaTransport:
    """
    Moves structure from one environment to another.

    Never overwrites a target with a raw snapshot: the snapshot is diffed
    against the target's live structure and only the diff is applied.
    """

    def __init__(
        self,
        timeout: Timeout = (15.0, 60.0),
        client_factory: Optional[ClientFactory] = None
    ):
        """
        Initialize the transport.

        Args:
            timeout: (connect, read) timeout for every call
            client_factory: Builds an API client for an environment
        """
        self.timeout = timeout
        self._client_factory = client_factory or (
            lambda env: DirectusAPIClient(env, timeout=self.timeout)
        )
        self._clients: Dict[str, DirectusAPIClient] = {}

    def client(self, env: Environment) -> DirectusAPIClient:
        if env.name not in self._clients:
            self._clients[env.name] = self._client_factory(env)
        return self._clients[env.name]

    def snapshot(self, env: Environment) -> SchemaSnapshot:
        """
        Capture the structure of an environment.

        Raises:
            TransportError: On a non-200 status or an unrecognisable body
            PermissionDeniedError: On 401/403
        """
        logger.info(f"Creating schema snapshot from {env.name}...")
        response = self.client(env).get("/schema/snapshot")
        self._raise_for_permissions(env, response)

        if response.status_code != 200:
            raise TransportError(
                f"Schema snapshot failed (HTTP {response.status_code})",
                status_code=response.status_code,
                response_excerpt=excerpt(response),
                context={"environment": env.name},
            )

        body = self._parse_json(env, response, "snapshot")
        snapshot = SchemaSnapshot(source=env.name, document=body)
        if not any(key in snapshot.document for key in SNAPSHOT_KEYS):
            raise TransportError(
                f"Invalid snapshot response from {env.name}: no recognisable top-level key",
                status_code=response.status_code,
                response_excerpt=excerpt(response),
                context={"environment": env.name},
            )

        logger.info(
            f"Schema snapshot captured from {env.name}: "
            f"{snapshot.collection_count} collections "
            f"(version {snapshot.version}, directus {snapshot.platform_version}, vendor {snapshot.vendor})"
        )
        return snapshot

    def diff(self, target: Environment, snapshot: SchemaSnapshot) -> DiffResult:
        """
        Compare a snapshot with the target's live structure.

        Returns:
            SchemaDiff with the changes, or Identical when there are none

        Raises:
            TransportError: If the payload is still wrapped or the target rejects it
        """
        payload = snapshot.payload()
        self._guard_unwrapped(payload)

        logger.info(f"Generating schema diff against {target.name}...")
        response = self.client(target).post(
            "/schema/diff", json=payload, params={"force": "true"}
        )
        self._raise_for_permissions(target, response)

        if response.status_code == 204:
            logger.info("Schemas are identical - no changes to apply")
            return Identical(target=target.name)

        if response.status_code != 200:
            raise TransportError(
                f"Schema diff failed (HTTP {response.status_code})",
                status_code=response.status_code,
                response_excerpt=excerpt(response),
                context={"environment": target.name},
            )

        if not response.content or not response.content.strip():
            logger.info("Schemas are identical - no changes to apply")
            return Identical(target=target.name)

        body = self._parse_json(target, response, "diff")
        data = body.get("data", body) if isinstance(body, dict) else None
        if data is None or (isinstance(data, dict) and not data):
            return Identical(target=target.name)
        if not isinstance(data, dict) or "diff" not in data:
            raise TransportError(
                "Invalid diff response: no diff document",
                status_code=response.status_code,
                response_excerpt=excerpt(response),
                context={"environment": target.name},
            )

        result = SchemaDiff(target=target.name, body=data)
        if result.is_empty:
            logger.info("Diff contains no changes - treating schemas as identical")
            return Identical(target=target.name)

        summary = result.summary
        logger.info(
            f"Diff summary: {summary['collections']} collections, "
            f"{summary['fields']} fields, {summary['relations']} relations to modify"
        )
        return result

    def apply(self, target: Environment, diff: DiffResult) -> Applied:
        """
        Apply a diff to the target.

        Applying Identical is a no-op. Any non-success status is fatal.

        Raises:
            ApplyError: If the target refuses the diff
        """
        if isinstance(diff, Identical):
            logger.info(f"Skipping schema apply - {target.name} already matches")
            return Applied(target=target.name, skipped=True)

        if not isinstance(diff, SchemaDiff):
            raise ApplyError(f"Refusing to apply {type(diff).__name__}; only a SchemaDiff can be applied")

        logger.info(f"Applying schema changes to {target.name}...")
        response = self.client(target).post("/schema/apply", json=diff.payload())
        self._raise_for_permissions(target, response)

        if response.status_code not in (200, 204):
            raise ApplyError(
                f"Schema apply failed (HTTP {response.status_code})",
                status_code=response.status_code,
                response_excerpt=excerpt(response),
                context={"environment": target.name},
            )

        logger.info(f"Schema applied to {target.name} successfully")
        return Applied(target=target.name, status_code=response.status_code)

    def sync(
        self,
        source: Environment,
        target: Environment,
        artifact_dir: Optional[Path] = None,
        timestamp: Optional[str] = None,
        dry_run: bool = False
    ) -> SchemaSyncResult:
        """
        Snapshot the source, diff against the target and apply.

        Args:
            source: Environment to copy structure from
            target: Environment to bring up to date
            artifact_dir: Where to write the snapshot artifact
            timestamp: Artifact timestamp, defaults to now
            dry_run: Stop after the diff

        Returns:
            SchemaSyncResult with the snapshot, diff and apply outcome
        """
        result = SchemaSyncResult(source=source.name, target=target.name)

        snapshot = self.snapshot(source)
        if artifact_dir is not None:
            stamp = timestamp or datetime.now().strftime("%Y%m%d_%H%M%S")
            path = Path(artifact_dir) / f"{source.name}_to_{target.name}_{stamp}.json"
            snapshot = snapshot.write(path)
            logger.info(f"Schema snapshot saved: {path} ({path.stat().st_size} bytes)")
        result.snapshot = snapshot

        result.diff = self.diff(target, snapshot)
        if dry_run:
            logger.info("Dry run - schema diff not applied")
            return result

        result.applied = self.apply(target, result.diff)
        return result

    def _guard_unwrapped(self, payload: Dict[str, Any]) -> None:
        """The diff endpoint takes the bare snapshot; a wrapped one must never be sent."""
        if "data" in payload and not any(key in payload for key in SNAPSHOT_KEYS):
            raise TransportError("Snapshot payload is still wrapped in a data envelope")
        if "version" not in payload:
            raise TransportError(
                "Snapshot payload has no 'version' key; refusing to submit it for diffing",
                hint="Capture a fresh snapshot from the source environment",
            )

    def _parse_json(self, env: Environment, response: requests.Response, what: str) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError as e:
            raise TransportError(
                f"Invalid {what} response from {env.name}: not JSON",
                status_code=response.status_code,
                response_excerpt=excerpt(response),
                original_error=e,
            ) from e
        if not isinstance(body, dict):
            raise TransportError(
                f"Invalid {what} response from {env.name}: expected a JSON object",
                status_code=response.status_code,
                response_excerpt=excerpt(response),
            )
        return body

    def _raise_for_permissions(self, env: Environment, response: requests.Response) -> None:
        if response.status_code in (401, 403):
            raise PermissionDeniedError(
                f"{env.name} token lacks schema permissions (HTTP {response.status_code})",
                hint="Use an admin token for both environments",
                context={
                    "environment": env.name,
                    "status_code": response.status_code,
                    "response": excerpt(response),
                },
            )

    def close(self) -> None:
        for client in self._clients.values():
            client.close()
        self._clients.clear()
