"""
Upstream Client

Sends released requests to their origin with aiohttp and returns the origin's
answer in a storable shape.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import aiohttp
import structlog

from capture_relay.core.errors import UpstreamError
from capture_relay.engine.body import decode_body, encode_body
from capture_relay.models.records import body_size

logger = structlog.get_logger()

# Recomputed by the client library for the actual payload
STRIPPED_HEADERS = {"content-length"}


@dataclass
class UpstreamResponse:
    """Status, headers and decoded body returned by an origin"""

    status: int
    headers: Dict[str, Any] = field(default_factory=dict)
    body: Any = None
    body_size: int = 0


def forwardable_headers(headers: Optional[Dict[str, Any]]) -> Dict[str, str]:
    result = {}
    for key, value in (headers or {}).items():
        if key.lower() in STRIPPED_HEADERS or value is None:
            continue
        result[key] = ", ".join(map(str, value)) if isinstance(value, list) else str(value)
    return result


class UpstreamClient:
    """
    Shared aiohttp session for origin calls

    The session is created on first use and closed by close(). A semaphore
    bounds how many origin calls run at the same time.
    """

    def __init__(self, timeout_seconds: float = 30.0, verify_ssl: bool = True, max_concurrency: int = 20):
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.verify_ssl = verify_ssl
        self.max_concurrency = max_concurrency
        self.logger = logger.bind(component="upstream_client")
        self._session: Optional[aiohttp.ClientSession] = None
        self._semaphore: Optional[asyncio.Semaphore] = None

        self.stats = {
            "requests_sent": 0,
            "errors": 0,
        }

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(ssl=self.verify_ssl)
            self._session = aiohttp.ClientSession(
                timeout=self.timeout,
                connector=connector,
                auto_decompress=True
            )
            self._semaphore = asyncio.Semaphore(self.max_concurrency)
        return self._session

    async def send(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, Any]] = None,
        body: Any = None
    ) -> UpstreamResponse:
        """
        Send one request to its origin

        Args:
            method: HTTP method
            url: Absolute target URL
            headers: Request headers, a pre-set Content-Length is dropped
            body: Stored body (text, JSON value or binary marker)

        Returns:
            UpstreamResponse with a decoded body

        Raises:
            UpstreamError: on connection failure, timeout or invalid URL
        """
        session = self._get_session()
        try:
            async with self._semaphore:
                async with session.request(
                    (method or "GET").upper(),
                    url,
                    headers=forwardable_headers(headers),
                    data=encode_body(body),
                    allow_redirects=False
                ) as response:
                    content = await response.read()
                    response_headers = {key: value for key, value in response.headers.items()}
                    content_type = response.headers.get("Content-Type")
                    status = response.status
        except asyncio.TimeoutError as e:
            self.stats["errors"] += 1
            raise UpstreamError(f"Upstream request timed out after {self.timeout.total}s", url=url) from e
        except (aiohttp.ClientError, ValueError) as e:
            self.stats["errors"] += 1
            raise UpstreamError(f"Upstream request failed: {e}", url=url) from e

        self.stats["requests_sent"] += 1
        decoded = decode_body(content, content_type)
        self.logger.debug("Upstream responded", method=method, url=url, status=status, size=len(content))

        return UpstreamResponse(
            status=status,
            headers=response_headers,
            body=decoded,
            body_size=len(content) if content else body_size(decoded)
        )

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
        self.logger.info("Upstream client closed", stats=self.stats)

    def get_stats(self) -> Dict[str, Any]:
        return self.stats.copy()
