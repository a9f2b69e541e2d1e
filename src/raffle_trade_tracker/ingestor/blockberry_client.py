"""Async client for the Blockberry indexer trades API with rate limiting."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx

from raffle_trade_tracker.ingestor.extraction import pick_string
from raffle_trade_tracker.ingestor.models import SourcePage
from raffle_trade_tracker.ingestor.sources import (
    SourceNotConfiguredError,
    SourceUnavailableError,
)

logger = logging.getLogger(__name__)

# Constants
DEFAULT_BASE_URL = "https://api.blockberry.one/v1/sui"
DEFAULT_TRADES_PATH = "defi/trades"
DEFAULT_LIMIT = 100
DEFAULT_FILTER_PARAM = "coinType"
DEFAULT_ORDER_PARAM = "order"
DEFAULT_CURSOR_PARAM = "cursor"
DEFAULT_TIMEOUT_SECONDS = 15.0
MAX_REQUESTS_PER_SECOND = 5

RETRY_STATUS_CODES = (429, 500, 502, 503, 504)
ERROR_BODY_PREVIEW_CHARS = 500

NEXT_CURSOR_PATHS = (
    "nextCursor",
    "cursor",
    "next_page_token",
    "pageInfo.nextCursor",
    "pageInfo.endCursor",
)


class RateLimiter:
    """Token bucket rate limiter for API requests."""

    def __init__(self, max_requests_per_second: float = MAX_REQUESTS_PER_SECOND) -> None:
        """Initialize the rate limiter.

        Args:
            max_requests_per_second: Maximum requests allowed per second.
        """
        self._min_interval = 1.0 / max_requests_per_second
        self._last_request_time: float = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a request slot is available."""
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_request_time
            if elapsed < self._min_interval:
                await asyncio.sleep(self._min_interval - elapsed)
            self._last_request_time = time.monotonic()


class BlockberryClientError(SourceUnavailableError):
    """Base exception for Blockberry client errors."""


class BlockberryTransientError(BlockberryClientError):
    """Raised for retryable/transient errors (e.g., 429/5xx, network issues)."""


class BlockberryNotConfiguredError(SourceNotConfiguredError):
    """Raised when the client is used without an API key."""


def extract_next_cursor(payload: Any) -> str | None:
    """Find the pagination cursor in whichever field this API version uses."""
    if not isinstance(payload, dict):
        return None
    return pick_string(payload, NEXT_CURSOR_PATHS)


class BlockberryClient:
    """Indexer source adapter backed by the Blockberry trades endpoint.

    Trades are requested newest-first for a single coin type. Transport
    failures and non-2xx responses raise BlockberryClientError subclasses so
    the caller can tell an outage apart from an empty page.

    Example:
        >>> client = BlockberryClient(api_key="...")
        >>> page = await client.fetch_since("0xabc::token::TOKEN")
        >>> len(page.records)
    """

    name = "blockberry"

    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str = DEFAULT_BASE_URL,
        trades_path: str = DEFAULT_TRADES_PATH,
        limit: int = DEFAULT_LIMIT,
        filter_param: str = DEFAULT_FILTER_PARAM,
        order_param: str = DEFAULT_ORDER_PARAM,
        cursor_param: str = DEFAULT_CURSOR_PARAM,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        requests_per_second: float = MAX_REQUESTS_PER_SECOND,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the Blockberry client.

        Args:
            api_key: Blockberry API key. The client is inactive without one.
            base_url: API base URL.
            trades_path: Trades endpoint path relative to base_url.
            limit: Page size requested per call.
            filter_param: Query parameter carrying the coin type.
            order_param: Query parameter carrying the sort order.
            cursor_param: Query parameter carrying the pagination cursor.
            timeout: Per-request timeout in seconds.
            requests_per_second: Rate limit for API requests.
            transport: Optional httpx transport (used by tests).
        """
        self._api_key = api_key or ""
        self._base_url = base_url.rstrip("/")
        self._trades_path = trades_path.lstrip("/")
        self._limit = limit
        self._filter_param = filter_param
        self._order_param = order_param
        self._cursor_param = cursor_param
        self._rate_limiter = RateLimiter(requests_per_second)
        self._http = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )

        if not self._api_key:
            logger.warning("BLOCKBERRY_API_KEY not configured; Blockberry client will remain inactive")

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    def _build_params(self, token_address: str, cursor: str | None) -> dict[str, str]:
        params = {
            self._filter_param: token_address,
            "limit": str(self._limit),
            self._order_param: "desc",
        }
        if cursor:
            params[self._cursor_param] = cursor
        return params

    async def fetch_since(self, token_address: str, cursor: str | None = None) -> SourcePage:
        """Fetch one page of trades for a coin type.

        Args:
            token_address: Coin type of the monitored token.
            cursor: Pagination cursor from the previous page, if any.

        Returns:
            SourcePage of raw trades (newest-first) and the next cursor.

        Raises:
            BlockberryNotConfiguredError: If no API key is set.
            BlockberryTransientError: On network errors, 429 and 5xx.
            BlockberryClientError: On any other non-2xx response.
        """
        if not self.is_configured:
            raise BlockberryNotConfiguredError("Blockberry client called without BLOCKBERRY_API_KEY")

        await self._rate_limiter.acquire()
        params = self._build_params(token_address, cursor)
        try:
            response = await self._http.get(
                f"/{self._trades_path}",
                params=params,
                headers={"x-api-key": self._api_key},
            )
        except httpx.HTTPError as e:
            raise BlockberryTransientError(f"Failed to fetch trades for {token_address}: {e}") from e

        if response.status_code >= 400:
            body = response.text[:ERROR_BODY_PREVIEW_CHARS]
            message = f"Blockberry responded with {response.status_code}: {body}"
            if response.status_code in RETRY_STATUS_CODES:
                raise BlockberryTransientError(message)
            raise BlockberryClientError(message)

        try:
            payload = response.json()
        except ValueError as e:
            raise BlockberryClientError(f"Blockberry returned a non-JSON body: {e}") from e

        if isinstance(payload, list):
            return SourcePage.of([r for r in payload if isinstance(r, dict)])

        if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
            logger.warning("Blockberry trade response missing data array")
            return SourcePage(records=(), next_cursor=extract_next_cursor(payload))

        records = [r for r in payload["data"] if isinstance(r, dict)]
        return SourcePage.of(records, next_cursor=extract_next_cursor(payload))

    async def aclose(self) -> None:
        await self._http.aclose()
