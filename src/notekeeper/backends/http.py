"""Shared HTTP plumbing for the remote backend adapters."""
import logging
import time
from typing import Any, Iterable, Optional

import httpx

from notekeeper.backends.base import BackendAdapter
from notekeeper.exceptions import ConnectivityError, ErrorCode

logger = logging.getLogger(__name__)


class HttpBackend(BackendAdapter):
    """Base for adapters that talk to their medium over HTTP.

    Transient failures (connection errors, timeouts, 5xx responses) are
    retried with a linear backoff; everything else fails immediately.
    """

    def __init__(
        self,
        client: httpx.Client,
        max_retries: int = 2,
        retry_delay: float = 0.2,
    ):
        self._client = client
        self._max_retries = max_retries
        self._retry_delay = retry_delay

    def _request(
        self,
        method: str,
        path: str,
        expected: Iterable[int] = (200,),
        operation: Optional[str] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request, retrying transient failures.

        Args:
            method: HTTP (or WebDAV) method.
            path: Path relative to the client's base URL.
            expected: Status codes treated as success.
            operation: Name used in error details. Defaults to "METHOD path".
            **kwargs: Passed through to ``httpx.Client.request``.

        Raises:
            ConnectivityError: Unreachable, timed out, rejected, or an
                unexpected status after all retries.
        """
        expected = set(expected)
        operation = operation or f"{method} {path}"
        last_error: Optional[ConnectivityError] = None

        for attempt in range(self._max_retries + 1):
            try:
                response = self._client.request(method, path, **kwargs)
            except httpx.TimeoutException as e:
                last_error = ConnectivityError(
                    f"{self.name} request timed out",
                    backend=self.name,
                    operation=operation,
                    code=ErrorCode.REMOTE_TIMEOUT,
                    original_error=e,
                )
            except httpx.TransportError as e:
                last_error = ConnectivityError(
                    f"{self.name} is unreachable",
                    backend=self.name,
                    operation=operation,
                    code=ErrorCode.REMOTE_UNREACHABLE,
                    original_error=e,
                )
            else:
                if response.status_code in expected:
                    return response
                if response.status_code in (401, 403):
                    raise self._credentials_rejected(response, operation)
                last_error = ConnectivityError(
                    f"{self.name} answered HTTP {response.status_code}",
                    backend=self.name,
                    operation=operation,
                    code=ErrorCode.REMOTE_REJECTED,
                )
                if response.status_code < 500:
                    raise last_error

            if attempt < self._max_retries:
                logger.debug(
                    f"{operation} failed (attempt {attempt + 1}), retrying: {last_error}"
                )
                time.sleep(self._retry_delay * (attempt + 1))

        raise last_error

    def _credentials_rejected(self, response: httpx.Response, operation: str) -> Exception:
        return ConnectivityError(
            f"{self.name} rejected the credentials (HTTP {response.status_code})",
            backend=self.name,
            operation=operation,
            code=ErrorCode.REMOTE_REJECTED,
        )

    def close(self) -> None:
        self._client.close()
