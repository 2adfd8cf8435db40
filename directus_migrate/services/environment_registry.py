"""Environment registry - resolves environment names to connection facts."""

import logging
import re
from typing import Dict, List, Mapping, Optional, Tuple

from ..exceptions import ConfigError, MissingConfigError
from ..models.environment import DatabaseDescriptor, Environment, MigrationMode

logger = logging.getLogger(__name__)

NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")

DEFAULT_DB_USER = "directus"
DEFAULT_DB_NAME = "directus"
DEFAULT_DB_PORT = 5432


class EnvironmentRegistry:
    """
    Resolves named environments from a variable mapping.

    A name like ``potato`` is looked up as ``POTATO_URL``, ``POTATO_TOKEN``,
    ``POTATO_DB_CONTAINER`` and so on. The mapping is passed in explicitly
    (usually the merged env file and process environment).
    """

    SUFFIXES = {
        "url": "URL",
        "token": "TOKEN",
        "container": "DB_CONTAINER",
        "host": "DB_HOST",
        "port": "DB_PORT",
        "user": "DB_USER",
        "name": "DB_NAME",
        "password": "DB_PASSWORD",
    }

    def __init__(self, variables: Mapping[str, str]):
        """
        Initialize the registry.

        Args:
            variables: Variable name -> value mapping to resolve against
        """
        self.variables = dict(variables)

    @staticmethod
    def prefix_for(name: str) -> str:
        """Variable prefix for an environment name (``dev-eu`` -> ``DEV_EU``)."""
        return name.upper().replace("-", "_")

    def variable_name(self, name: str, key: str) -> str:
        return f"{self.prefix_for(name)}_{self.SUFFIXES[key]}"

    def _get(self, name: str, key: str) -> str:
        value = self.variables.get(self.variable_name(name, key))
        return value.strip() if value else ""

    def resolve(self, name: str, mode: MigrationMode = MigrationMode.SCHEMA) -> Environment:
        """
        Resolve an environment, failing closed on incomplete configuration.

        Args:
            name: Environment name (e.g. "dev", "potato")
            mode: Migration mode; full mode also needs a database location

        Returns:
            The resolved Environment

        Raises:
            ConfigError: If the name is invalid
            MissingConfigError: If a mode-required variable is unset
        """
        if not name or not NAME_PATTERN.match(name):
            raise ConfigError(
                f"Invalid environment name: {name!r}",
                hint="Use letters, digits, '-' or '_'",
            )

        missing: List[str] = []
        url = self._get(name, "url")
        token = self._get(name, "token")
        if not url:
            missing.append(self.variable_name(name, "url"))
        if not token:
            missing.append(self.variable_name(name, "token"))

        container = self._get(name, "container") or None
        host = self._get(name, "host") or None
        if mode.needs_database and not (container or host):
            missing.append(
                f"{self.variable_name(name, 'container')} or {self.variable_name(name, 'host')}"
            )

        if missing:
            raise MissingConfigError(
                name,
                missing,
                hint="Define them in .env.directus, .env or the process environment",
            )

        port_value = self._get(name, "port")
        try:
            port = int(port_value) if port_value else DEFAULT_DB_PORT
        except ValueError:
            raise ConfigError(
                f"{self.variable_name(name, 'port')} is not a number: {port_value!r}"
            )

        database = DatabaseDescriptor(
            user=self._get(name, "user") or DEFAULT_DB_USER,
            name=self._get(name, "name") or DEFAULT_DB_NAME,
            container=container,
            host=None if container else host,
            port=port,
            password=self._get(name, "password") or None,
        )

        env = Environment(name=name, api_url=url, token=token, database=database)
        logger.debug(f"Resolved environment {name}: {env.base_url}, db {database.describe()}")
        return env

    def resolve_pair(
        self,
        source: str,
        target: str,
        mode: MigrationMode = MigrationMode.SCHEMA
    ) -> Tuple[Environment, Environment]:
        """Resolve source and target, rejecting a migration onto itself."""
        if self.prefix_for(source) == self.prefix_for(target):
            raise ConfigError(
                "Source and target environments cannot be the same",
                context={"prefix": self.prefix_for(target)},
            )
        return self.resolve(source, mode), self.resolve(target, mode)

    @staticmethod
    def check_shared_database(source: Environment, target: Environment) -> bool:
        """
        Flag two differently-named environments that share one database.

        This is a valid deployment (e.g. an edit and a prod instance on the
        same container) and is logged as a risk rather than refused here.
        """
        if source.name == target.name:
            return False
        if not (source.database.is_configured and target.database.is_configured):
            return False
        shared = source.database.identity == target.database.identity
        if shared:
            logger.warning(
                f"CAUTION: {source.name} and {target.name} share the same database "
                f"({target.database.describe()}); content changes affect both environments"
            )
        return shared

    def known_environments(self) -> List[str]:
        """Environment names that define both a URL and a token."""
        names = []
        for key in sorted(self.variables):
            if not key.endswith("_URL"):
                continue
            prefix = key[: -len("_URL")]
            if prefix and self.variables.get(f"{prefix}_TOKEN"):
                names.append(prefix.lower())
        return names

    def describe(self, name: str) -> Dict[str, Optional[str]]:
        """Which variables are set for an environment (values never shown)."""
        return {
            self.variable_name(name, key): ("set" if self._get(name, key) else None)
            for key in self.SUFFIXES
        }
