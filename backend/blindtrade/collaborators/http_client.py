"""
HTTP client shared by remote collaborators.

WHAT: Bounded, retrying JSON requests against a collaborator base URL
WHY: Every remote call must have a timeout and a finite retry budget
HOW: httpx.Client with httpx.Timeout, exponential backoff on timeouts,
     connection errors and 5xx; other 4xx fail immediately
"""

import time
from typing import Iterable

import httpx

from ..utils.exceptions import CollaboratorUnavailableError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class RetryingHttpClient:
    """Synchronous httpx client with retry logic for one collaborator."""

    def __init__(
        self,
        name: str,
        base_url: str,
        timeout: float,
        max_retries: int,
        retry_delay: float,
        transport: httpx.BaseTransport | None = None,
    ):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay

        self.client = httpx.Client(
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
            transport=transport,
        )

    def request(
        self,
        method: str,
        path: str,
        *,
        allow_status: Iterable[int] = (),
        **kwargs,
    ) -> httpx.Response:
        """
        Send a request, retrying transient failures.

        Args:
            method: HTTP method
            path: Path relative to base_url
            allow_status: Non-2xx statuses handed back to the caller instead of raising
            **kwargs: Passed to httpx.Client.request (json, params, headers)

        Returns:
            The response (2xx or an allowed status)

        Raises:
            CollaboratorUnavailableError: Timeout, connection failure or 5xx after
                all retries, or an unexpected 4xx
        """
        allowed = set(allow_status)
        url = f"{self.base_url}{path}"

        for attempt in range(self.max_retries):
            try:
                response = self.client.request(method, url, **kwargs)
                if response.status_code in allowed:
                    return response
                response.raise_for_status()
                return response

            except httpx.TimeoutException as e:
                logger.warning(f"{self.name} timeout (attempt {attempt + 1}/{self.max_retries})")
                if attempt == self.max_retries - 1:
                    raise CollaboratorUnavailableError(
                        self.name, f"timed out after {self.max_retries} attempts"
                    ) from e

            except httpx.ConnectError as e:
                logger.error(f"{self.name} connection refused (attempt {attempt + 1}/{self.max_retries})")
                if attempt == self.max_retries - 1:
                    raise CollaboratorUnavailableError(self.name, "not reachable") from e

            except httpx.HTTPStatusError as e:
                if e.response.status_code < 500:
                    # Client errors don't retry
                    raise CollaboratorUnavailableError(
                        self.name, f"HTTP {e.response.status_code}"
                    ) from e
                logger.error(
                    f"{self.name} server error {e.response.status_code} "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )
                if attempt == self.max_retries - 1:
                    raise CollaboratorUnavailableError(
                        self.name, f"server error {e.response.status_code}"
                    ) from e

            time.sleep(self.retry_delay * (2 ** attempt))

        raise CollaboratorUnavailableError(self.name, "no attempts made")

    def json(self, response: httpx.Response) -> dict:
        """Decode a JSON object body or fail as an unavailable collaborator."""
        try:
            data = response.json()
        except ValueError as e:
            raise CollaboratorUnavailableError(self.name, f"invalid response: {e}") from e
        if not isinstance(data, dict):
            raise CollaboratorUnavailableError(self.name, "invalid response: expected an object")
        return data

    def close(self):
        self.client.close()
