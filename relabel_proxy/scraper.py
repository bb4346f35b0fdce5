"""Outbound scrapes of proxied targets using httpx."""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx

from relabel_proxy.exceptions import FetchError

ACCEPT_HEADER = "text/plain;version=0.0.4;q=1,*/*;q=0.1"
FORWARDED_FOR_HEADER = "X-Forwarded-For"


@dataclass
class InboundRequest:
    """The parts of the collector's request that outbound scrapes need."""
    headers: Dict[str, str] = field(default_factory=dict)
    client_host: Optional[str] = None

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


class Scraper:
    """Fetches raw metrics from targets, forwarding selected inbound headers."""

    def __init__(
        self,
        forward_headers: Optional[List[str]] = None,
        timeout_s: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.forward_headers = list(forward_headers or [])
        self.timeout_s = timeout_s
        self.logger = logger or logging.getLogger(__name__)
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self):
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_s),
                follow_redirects=True
            )
            self._owns_client = True
        return self._client

    async def close(self):
        """Close the HTTP client if this scraper created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def build_headers(self, inbound: InboundRequest) -> Dict[str, str]:
        """
        Prepare outbound headers.

        Forwards the configured inbound headers and appends the client's
        address to the X-Forwarded-For chain.
        """
        headers = {"Accept": ACCEPT_HEADER}
        for name in self.forward_headers:
            value = inbound.header(name)
            if value is not None:
                headers[name] = value

        forwarded_for = inbound.header(FORWARDED_FOR_HEADER)
        if inbound.client_host:
            if forwarded_for:
                forwarded_for = f"{forwarded_for}, {inbound.client_host}"
            else:
                forwarded_for = inbound.client_host
        if forwarded_for:
            headers[FORWARDED_FOR_HEADER] = forwarded_for

        return headers

    async def fetch(self, url: str, inbound: InboundRequest, timeout_s: Optional[float] = None) -> bytes:
        """
        GET a target's metrics.

        Args:
            url: Full target URL
            inbound: The collector's request being served
            timeout_s: Overrides the default timeout for this request

        Returns:
            The raw response body

        Raises:
            FetchError: On transport errors, timeouts and non-2xx responses
        """
        client = self._ensure_client()
        timeout = httpx.Timeout(timeout_s if timeout_s is not None else self.timeout_s)

        self.logger.debug(f"Fetching {url}")
        try:
            response = await client.get(url, headers=self.build_headers(inbound), timeout=timeout)
        except httpx.TimeoutException as e:
            raise FetchError(f"Timed out fetching {url}: {e}", url) from e
        except httpx.HTTPError as e:
            raise FetchError(f"Failed to fetch {url}: {e}", url) from e
        except Exception as e:
            # httpx.InvalidURL and friends sit outside the HTTPError tree
            raise FetchError(f"Cannot fetch {url}: {e}", url) from e

        if not response.is_success:
            raise FetchError(
                f"Target {url} returned HTTP {response.status_code}",
                url,
                status_code=response.status_code
            )

        self.logger.debug(f"Fetched {len(response.content)} bytes from {url}")
        return response.content
