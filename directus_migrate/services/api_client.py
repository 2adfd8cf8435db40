"""HTTP client for a Directus instance's structural API."""

import logging
from typing import Any, Dict, Optional, Tuple, Union

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..exceptions import (
    ConnectivityError,
    MigrationError,
    MigrationTimeoutError,
    PermissionDeniedError,
    TransportError,
)
from ..models.environment import Environment

logger = logging.getLogger(__name__)

Timeout = Union[float, Tuple[float, float]]

EXCERPT_LENGTH = 300


def excerpt(response: requests.Response, limit: int = EXCERPT_LENGTH) -> str:
    """First characters of a response body, for error messages."""
    try:
        text = response.text or ""
    except (UnicodeDecodeError, RuntimeError):
        return ""
    text = " ".join(text.split())
    return text[:limit] + ("..." if len(text) > limit else "")


class DirectusAPIClient:
    """
    Thin requests wrapper bound to one environment.

    Every call is a single attempt with a (connect, read) timeout; retries
    are disabled on the adapter so a slow or failing endpoint surfaces
    immediately and the operator decides whether to re-run.
    """

    def __init__(
        self,
        environment: Environment,
        timeout: Timeout = (15.0, 60.0),
        session: Optional[requests.Session] = None
    ):
        """
        Initialize the client.

        Args:
            environment: Environment to talk to
            timeout: Default (connect, read) timeout in seconds
            session: Custom requests session
        """
        self.environment = environment
        self.base_url = environment.base_url
        self.timeout = timeout
        self._session = session or self._create_session()
        self._session.headers["Authorization"] = f"Bearer {environment.token}"

    def _create_session(self) -> requests.Session:
        """Create a requests session without automatic retries."""
        session = requests.Session()

        adapter = HTTPAdapter(max_retries=Retry(total=0, connect=0, read=0, redirect=3))
        session.mount("https://", adapter)
        session.mount("http://", adapter)

        session.headers["Accept"] = "application/json"
        return session

    def request(
        self,
        method: str,
        path: str,
        timeout: Optional[Timeout] = None,
        **kwargs
    ) -> requests.Response:
        """
        Perform one request against the environment.

        Raises:
            MigrationTimeoutError: If the call exceeded its timeout
            ConnectivityError: If the host could not be reached
        """
        url = f"{self.base_url}/{path.lstrip('/')}"
        effective_timeout = timeout if timeout is not None else self.timeout
        logger.debug(f"{method} {url}")

        try:
            return self._session.request(method, url, timeout=effective_timeout, **kwargs)
        except requests.exceptions.Timeout as e:
            raise MigrationTimeoutError(
                f"{method} {url} timed out after {effective_timeout}s",
                timeout=effective_timeout if isinstance(effective_timeout, (int, float)) else None,
                context={"environment": self.environment.name, "url": url},
                original_error=e,
            ) from e
        except requests.exceptions.ConnectionError as e:
            raise ConnectivityError(
                f"Cannot reach {self.environment.name} API at {self.base_url}",
                hint="Check the URL and that the instance is running",
                context={"environment": self.environment.name, "url": url},
                original_error=e,
            ) from e
        except requests.exceptions.RequestException as e:
            raise TransportError(
                f"{method} {url} failed: {e}",
                context={"environment": self.environment.name, "url": url},
                original_error=e,
            ) from e

    def get(self, path: str, **kwargs) -> requests.Response:
        return self.request("GET", path, **kwargs)

    def post(self, path: str, json: Any = None, **kwargs) -> requests.Response:
        return self.request("POST", path, json=json, **kwargs)

    def ping(self, timeout: Optional[Timeout] = None) -> None:
        """
        Health probe against ``/server/ping``.

        Raises:
            ConnectivityError: If the API is unreachable or unhealthy
        """
        response = self.get("/server/ping", timeout=timeout)
        if response.status_code != 200:
            raise ConnectivityError(
                f"{self.environment.name} API health check failed (HTTP {response.status_code})",
                context={
                    "environment": self.environment.name,
                    "status_code": response.status_code,
                    "response": excerpt(response),
                },
            )
        logger.info(f"{self.environment.name} API accessible")

    def check_schema_access(self, timeout: Optional[Timeout] = None) -> None:
        """
        Probe structural access with a read-only snapshot request.

        Raises:
            PermissionDeniedError: On 401/403
            ConnectivityError: On any other failure
        """
        response = self.get("/schema/snapshot", timeout=timeout)
        status = response.status_code
        if status == 200:
            logger.info(f"{self.environment.name} has schema permissions")
            return
        context = {
            "environment": self.environment.name,
            "status_code": status,
            "response": excerpt(response),
        }
        if status in (401, 403):
            raise PermissionDeniedError(
                f"{self.environment.name} token lacks schema permissions (HTTP {status})",
                hint="Use an admin token; schema endpoints require admin access",
                context=context,
            )
        raise ConnectivityError(
            f"{self.environment.name} schema access unclear (HTTP {status})",
            context=context,
        )

    def current_user(self) -> Dict[str, Any]:
        """The account the token belongs to, with its role."""
        response = self.get("/users/me", params={"fields": "id,email,status,role.name,role.admin_access,role.app_access"})
        if response.status_code in (401, 403):
            raise PermissionDeniedError(
                f"{self.environment.name} token rejected (HTTP {response.status_code})",
                context={"status_code": response.status_code, "response": excerpt(response)},
            )
        if response.status_code != 200:
            raise TransportError(
                f"Failed to read current user (HTTP {response.status_code})",
                status_code=response.status_code,
                response_excerpt=excerpt(response),
            )
        try:
            body = response.json()
        except ValueError as e:
            raise TransportError(
                "Invalid /users/me response: not JSON",
                status_code=response.status_code,
                response_excerpt=excerpt(response),
                original_error=e,
            ) from e
        return (body.get("data") if isinstance(body, dict) else None) or {}

    def close(self) -> None:
        self._session.close()


DIAGNOSTIC_ENDPOINTS = (
    "server/info",
    "collections",
    "fields",
    "relations",
    "permissions",
    "roles",
    "schema/snapshot",
)


def diagnose(client: DirectusAPIClient, timeout: Optional[Timeout] = None) -> Dict[str, Any]:
    """
    Permission diagnostics for one environment's token.

    Never raises for HTTP failures; each probe records what it saw.
    """
    token = client.environment.token
    report: Dict[str, Any] = {
        "environment": client.environment.name,
        "url": client.base_url,
        "token": {
            "length": len(token),
            "has_whitespace": any(c.isspace() for c in token),
            "has_bearer_prefix": token.startswith("Bearer "),
        },
    }

    try:
        client.ping(timeout=timeout)
        report["ping"] = "ok"
    except MigrationError as e:
        report["ping"] = str(e)

    try:
        user = client.current_user()
        role = user.get("role") or {}
        report["user"] = {
            "email": user.get("email"),
            "status": user.get("status"),
            "role": role.get("name"),
            "admin_access": role.get("admin_access"),
            "app_access": role.get("app_access"),
        }
    except MigrationError as e:
        report["user"] = {"error": str(e)}

    endpoints: Dict[str, Any] = {}
    for path in DIAGNOSTIC_ENDPOINTS:
        try:
            endpoints[path] = client.get(path, timeout=timeout).status_code
        except MigrationError as e:
            endpoints[path] = str(e)
    report["endpoints"] = endpoints
    report["schema_access"] = endpoints.get("schema/snapshot") == 200
    return report
