"""HTTP transport adapter on top of requests."""

import logging
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import urlencode

import requests

from ..errors import TransportError
from .auth import GpodderAuth

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://gpodder.net"
DEFAULT_TIMEOUT = 30
DEFAULT_USER_AGENT = "gpodder-sync/0.1.0"


@dataclass(frozen=True)
class TransportResponse:
    """Raw status code and body returned by the server."""

    status_code: int
    text: str


class Transport(Protocol):
    """Anything that can issue a request to the gpodder.net API."""

    def request(
        self,
        method: str,
        path: str,
        auth: GpodderAuth | None,
        body: Any = None,
        query: dict[str, str] | None = None,
    ) -> TransportResponse:
        ...


class RequestsTransport:
    """Transport backed by a ``requests.Session``.

    The session keeps the ``sessionid`` cookie after a login, so later
    requests are authenticated by cookie as well as by Basic auth.
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        user_agent: str = DEFAULT_USER_AGENT,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout
        self.user_agent = user_agent
        self.session = session or requests.Session()

    def get_full_url(self, path: str, query_params: dict[str, str] | None = None) -> str:
        """Build full URL from base URL, path, and query params.

        Args:
            path: API path (e.g., /api/2/devices/alice.json)
            query_params: Optional query parameters

        Returns:
            Full URL string
        """
        url = f"{self.base_url}{path}"
        if query_params:
            url += "?" + urlencode(sorted(query_params.items()))
        return url

    def request(
        self,
        method: str,
        path: str,
        auth: GpodderAuth | None,
        body: Any = None,
        query: dict[str, str] | None = None,
    ) -> TransportResponse:
        """Send one request and return the raw response.

        Args:
            method: HTTP method
            path: API path (without base URL)
            auth: Credentials, or None for public endpoints
            body: JSON-serializable request body
            query: Optional query parameters

        Returns:
            TransportResponse with status code and body text

        Raises:
            TransportError: On network failure or timeout
        """
        url = self.get_full_url(path, query)
        headers = {
            "User-Agent": self.user_agent,
            "Accept": "application/json",
        }
        if auth is not None:
            headers.update(auth.get_headers())

        logger.debug(f"{method} {url}")
        try:
            response = self.session.request(
                method=method,
                url=url,
                headers=headers,
                json=body if method in ("POST", "PUT", "PATCH") else None,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransportError(f"Request failed: {e}") from e

        return TransportResponse(status_code=response.status_code, text=response.text)

    def close(self) -> None:
        self.session.close()
