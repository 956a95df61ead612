"""HTTP transport for the time endpoint."""

from __future__ import annotations
import logging
from typing import Any, Dict, Optional

import httpx

from server_time_sync.configuration import FetchConfig

logger = logging.getLogger(__name__)

SUPPORTED_METHODS = ("GET", "POST")


class HttpTimeFetcher:
    """
    Fetch the server time payload from an HTTP endpoint.

    The endpoint is expected to answer with a JSON body carrying a
    ``timestamp`` field. Validation of that field is left to the caller.
    """

    def __init__(
        self,
        timeout_ms: float = 5000,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        :param timeout_ms: Request timeout in milliseconds.
        :param headers: Extra headers sent with every request.
        :param transport: Optional httpx transport, mainly for testing.
        """
        self.timeout_ms = timeout_ms
        self.headers = dict(headers or {})
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_config(cls, config: FetchConfig, **kwargs) -> HttpTimeFetcher:
        return cls(timeout_ms=config.timeout_ms, headers=config.headers, **kwargs)

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout_ms / 1000,
                headers=self.headers,
                transport=self._transport,
            )
        return self._client

    async def fetch(self, endpoint: str, method: str = "POST") -> Any:
        """
        Request the endpoint and return the decoded JSON body.

        :raises httpx.HTTPError: On transport errors, timeouts and non-2xx responses.
        :raises ValueError: If the method is unsupported or the body is not JSON.
        """
        method = method.upper()
        if method not in SUPPORTED_METHODS:
            raise ValueError(f"Unsupported request method: {method}")

        headers = {"Content-Type": "application/json"} if method == "POST" else None
        response = await self.client.request(method, endpoint, headers=headers)
        response.raise_for_status()
        logger.debug(
            f"Time endpoint answered {response.status_code}",
            extra={"endpoint": endpoint, "method": method},
        )
        return response.json()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
