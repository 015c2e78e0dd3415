"""
Sentry Client - Remote project operations against the Sentry REST API.

The reconciler only talks to Sentry through the ProjectClient interface.
SentryClient keeps one aiohttp session (and its connection pool) for the
lifetime of the process so it can be shared by concurrent reconciliations.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import aiohttp

logger = logging.getLogger(__name__)

USER_AGENT = "sentry-project-operator/0.1.0"


class SentryAPIError(Exception):
    """Sentry answered with a non-success HTTP status."""

    def __init__(self, status_code: int, detail: str = ""):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"{status_code}: {detail}" if detail else str(status_code))


class SentryConnectionError(Exception):
    """The request never produced an HTTP response (network error, timeout)."""


class ProjectClient(ABC):
    """Operations the reconciler needs from the remote project service."""

    @abstractmethod
    async def create_project(
        self, organization: str, team: str, params: Dict[str, str]
    ) -> Dict[str, Any]:
        """
        Create a project owned by a team.

        Raises:
            SentryAPIError: On an HTTP failure, carrying its status code.
            SentryConnectionError: If Sentry could not be reached.
        """
        pass

    @abstractmethod
    async def update_project(
        self, organization: str, slug: str, params: Dict[str, str]
    ) -> Dict[str, Any]:
        """Update the project currently addressed by ``slug``."""
        pass

    @abstractmethod
    async def delete_project(self, organization: str, slug: str) -> None:
        """Delete the project addressed by ``slug``."""
        pass


class SentryClient(ProjectClient):
    """ProjectClient backed by the Sentry web API (``/api/0/``)."""

    def __init__(
        self,
        base_url: str = "https://sentry.io/",
        token: Optional[str] = None,
        timeout: int = 30,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def initialize(self) -> None:
        """Open the shared HTTP session."""
        if not self.token:
            logger.warning(
                "Sentry token not configured. Set SENTRY_TOKEN environment variable."
            )
        self._session = aiohttp.ClientSession(
            headers=self._get_headers(),
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        )
        logger.info(f"Sentry client initialized: base_url={self.base_url}")

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def create_project(
        self, organization: str, team: str, params: Dict[str, str]
    ) -> Dict[str, Any]:
        url = f"{self.base_url}/api/0/teams/{organization}/{team}/projects/"
        return await self._request("POST", url, json=params)

    async def update_project(
        self, organization: str, slug: str, params: Dict[str, str]
    ) -> Dict[str, Any]:
        url = f"{self.base_url}/api/0/projects/{organization}/{slug}/"
        return await self._request("PUT", url, json=params)

    async def delete_project(self, organization: str, slug: str) -> None:
        url = f"{self.base_url}/api/0/projects/{organization}/{slug}/"
        await self._request("DELETE", url)

    # Private helper methods

    def _get_headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _request(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        """
        Issue a request and decode the JSON body.

        Returns an empty dict for bodiless success responses (204).
        """
        if self._session is None:
            raise RuntimeError(
                "Sentry client not initialized. Call initialize() first."
            )

        try:
            async with self._session.request(method, url, **kwargs) as response:
                if response.status >= 400:
                    detail = await self._error_detail(response)
                    raise SentryAPIError(response.status, detail)
                if response.status == 204:
                    return {}
                return await self._success_body(response)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SentryConnectionError(f"{method} {url} failed: {e!r}") from e

    @staticmethod
    async def _success_body(response: aiohttp.ClientResponse) -> Dict[str, Any]:
        """Decode a success body; one that is not JSON does not undo the call."""
        try:
            body = await response.json(content_type=None)
        except (ValueError, aiohttp.ClientPayloadError):
            logger.warning(
                f"Sentry answered {response.status} with an unreadable body"
            )
            return {}
        return body if isinstance(body, dict) else {}

    @staticmethod
    async def _error_detail(response: aiohttp.ClientResponse) -> str:
        """Pull the ``detail`` field Sentry puts in error bodies."""
        text = await response.text()
        try:
            body = await response.json(content_type=None)
        except ValueError:
            return text
        if isinstance(body, dict) and body.get("detail"):
            return str(body["detail"])
        return text
