"""Async HTTP client for the third-party market-data feed.

The feed wraps every response in a ``{"data": ..., "meta": ...}``
envelope and authenticates with a bearer token. This client follows the
usual pattern: async context manager with structured error handling.
"""

from typing import Any

import httpx

from market_ledger.clients.feed.exceptions import FeedAPIError
from market_ledger.clients.feed.models import FeedMarket

_HTTP_BAD_REQUEST = 400
_HTTP_NOT_FOUND = 404


class FeedClient:
    """Async HTTP client for feed market listings.

    Args:
        base_url: Base URL for the feed API.
        api_key: Bearer token; omitted from requests when empty.
        timeout: Request timeout in seconds.

    """

    BASE_URL = "https://api.data.adj.news/api"

    def __init__(
        self,
        base_url: str = BASE_URL,
        api_key: str = "",
        timeout: float = 15.0,
    ) -> None:
        """Initialize the feed client.

        Args:
            base_url: Base URL for the feed API.
            api_key: Bearer token; omitted from requests when empty.
            timeout: Request timeout in seconds.

        """
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._http_client = httpx.AsyncClient(timeout=timeout, headers=headers)

    async def get_markets(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        status: str = "active",
    ) -> list[FeedMarket]:
        """Fetch a page of binary markets, most recently updated first.

        Args:
            limit: Maximum number of markets to return.
            offset: Pagination offset.
            status: Feed status filter.

        Returns:
            Parsed markets from the page (not yet validated).

        Raises:
            FeedAPIError: When the API returns an error response.

        """
        params: dict[str, str | int] = {
            "limit": limit,
            "offset": offset,
            "sort": "updated_at:desc",
            "market_type": "binary",
            "status": status,
        }
        payload = await self._get("/markets", params=params)
        return [FeedMarket.from_api(raw) for raw in payload.get("data") or []]

    async def get_market(self, ticker: str) -> FeedMarket:
        """Fetch a single market by its feed ticker.

        Args:
            ticker: Feed ticker.

        Returns:
            Parsed market.

        Raises:
            FeedAPIError: When the market is not found or the API fails.

        """
        payload = await self._get(f"/markets/{ticker}")
        data = payload.get("data")
        if not data:
            raise FeedAPIError(msg=f"Market not found: {ticker}", status_code=_HTTP_NOT_FOUND)
        return FeedMarket.from_api(data)

    async def _get(
        self,
        path: str,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send a GET request and return the parsed JSON envelope.

        Args:
            path: Request path relative to base_url.
            params: Query parameters.

        Returns:
            Parsed JSON response.

        Raises:
            FeedAPIError: When the request fails or the API returns an error.

        """
        url = f"{self.base_url}{path}"
        try:
            response = await self._http_client.request("GET", url, params=params)
        except httpx.HTTPError as exc:
            raise FeedAPIError(
                msg=f"HTTP request failed: {exc}",
                status_code=_HTTP_BAD_REQUEST,
            ) from exc

        if response.status_code >= _HTTP_BAD_REQUEST:
            self._handle_error(response)

        result: dict[str, Any] = response.json()
        return result

    @staticmethod
    def _handle_error(response: httpx.Response) -> None:
        """Raise a FeedAPIError from an error response.

        Args:
            response: HTTP response with a non-2xx status code.

        Raises:
            FeedAPIError: Always raised with status code and message.

        """
        try:
            data = response.json()
            msg: str = data.get("message", f"HTTP {response.status_code}")
        except (ValueError, AttributeError):
            msg = f"HTTP {response.status_code}"
        raise FeedAPIError(msg=msg, status_code=response.status_code)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._http_client.aclose()

    async def __aenter__(self) -> "FeedClient":
        """Enter async context manager."""
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit async context manager."""
        await self.close()
