"""Sui JSON-RPC client for coin transfer events and transaction lookups.

This module provides the native-chain source adapter with:
- Coin TransferEvent queries for the monitored token
- Coin metadata lookups (decimals) with a safe default
- Transaction sender and balance-change lookups
- Retry logic with exponential backoff for transport failures
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any

import httpx

from raffle_trade_tracker.ingestor.models import SourcePage
from raffle_trade_tracker.ingestor.sources import DEFAULT_COIN_DECIMALS, SourceUnavailableError

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_RPC_URL = "https://fullnode.mainnet.sui.io:443"
DEFAULT_EVENT_PAGE_LIMIT = 50
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 0.5
DEFAULT_REQUEST_TIMEOUT = 20.0

RETRY_STATUS_CODES = (429, 500, 502, 503, 504)


class SuiClientError(SourceUnavailableError):
    """Base exception for Sui client errors."""


class SuiRPCError(SuiClientError):
    """Raised when the node answers with a JSON-RPC error object."""

    def __init__(self, method: str, code: Any, message: str) -> None:
        super().__init__(f"{method} failed ({code}): {message}")
        self.method = method
        self.code = code


class SuiTransportError(SuiClientError):
    """Raised when the node cannot be reached after all retries."""


def transfer_event_type(coin_type: str) -> str:
    return f"0x2::coin::TransferEvent<{coin_type}>"


class SuiClient:
    """Native-chain source adapter speaking Sui JSON-RPC over HTTP.

    Example:
        ```python
        client = SuiClient("https://fullnode.mainnet.sui.io:443")
        page = await client.fetch_since("0xabc::token::TOKEN")
        decimals = await client.resolve_coin_decimals("0xabc::token::TOKEN")
        ```
    """

    name = "sui"

    def __init__(
        self,
        rpc_url: str = DEFAULT_RPC_URL,
        *,
        event_page_limit: int = DEFAULT_EVENT_PAGE_LIMIT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the Sui client.

        Args:
            rpc_url: Sui full node JSON-RPC endpoint.
            event_page_limit: Events requested per query.
            max_retries: Maximum attempts for transport failures.
            retry_delay_seconds: Initial delay between retries.
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport (used by tests).
        """
        self._rpc_url = rpc_url
        self._event_page_limit = event_page_limit
        self._max_retries = max(1, max_retries)
        self._retry_delay = retry_delay_seconds
        self._ids = itertools.count(1)
        self._http = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def _call(self, method: str, params: list[Any]) -> Any:
        """Execute a JSON-RPC call with retry on transport failures.

        Raises:
            SuiRPCError: If the node returns an error object.
            SuiTransportError: If all attempts fail.
        """
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        last_error: Exception | None = None
        delay = self._retry_delay

        for attempt in range(self._max_retries):
            try:
                response = await self._http.post(self._rpc_url, json=payload)
                if response.status_code in RETRY_STATUS_CODES:
                    raise httpx.HTTPStatusError(
                        f"retryable status {response.status_code}",
                        request=response.request,
                        response=response,
                    )
                response.raise_for_status()
                body = response.json()
            except (httpx.HTTPError, ValueError) as e:
                last_error = e
                logger.warning(
                    "Sui RPC %s failed (attempt %d/%d): %s",
                    method,
                    attempt + 1,
                    self._max_retries,
                    e,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2
                continue

            error = body.get("error") if isinstance(body, dict) else None
            if error:
                raise SuiRPCError(method, error.get("code"), str(error.get("message", error)))
            return body.get("result") if isinstance(body, dict) else None

        raise SuiTransportError(f"Sui RPC {method} failed after all retries: {last_error}")

    async def fetch_since(self, token_address: str, cursor: str | None = None) -> SourcePage:
        """Fetch the latest coin TransferEvents for a token, newest-first.

        The cursor is accepted for interface parity; native polling always
        reads the newest page and relies on the watermark for ordering.
        """
        return SourcePage.of(await self.query_events(transfer_event_type(token_address)))

    async def query_events(self, move_event_type: str) -> list[dict[str, Any]]:
        """Return the newest page of events of one Move event type, newest-first."""
        result = await self._call(
            "suix_queryEvents",
            [{"MoveEventType": move_event_type}, None, self._event_page_limit, True],
        )
        events = (result or {}).get("data") or []
        return [e for e in events if isinstance(e, dict)]

    async def resolve_coin_decimals(self, coin_type: str) -> int:
        """Return the coin's decimals, or 9 if metadata is unavailable. Never raises."""
        try:
            metadata = await self._call("suix_getCoinMetadata", [coin_type])
        except SuiClientError as e:
            logger.warning(
                "Failed to fetch coin metadata for %s, defaulting decimals to %d: %s",
                coin_type,
                DEFAULT_COIN_DECIMALS,
                e,
            )
            return DEFAULT_COIN_DECIMALS

        decimals = metadata.get("decimals") if isinstance(metadata, dict) else None
        if decimals is None:
            logger.warning("No coin metadata for %s, defaulting decimals to %d", coin_type, DEFAULT_COIN_DECIMALS)
            return DEFAULT_COIN_DECIMALS
        try:
            return int(decimals)
        except (TypeError, ValueError):
            logger.warning(
                "Malformed decimals %r for %s, defaulting to %d", decimals, coin_type, DEFAULT_COIN_DECIMALS
            )
            return DEFAULT_COIN_DECIMALS

    async def get_transaction(
        self,
        tx_digest: str,
        *,
        show_input: bool = False,
        show_balance_changes: bool = False,
        show_effects: bool = False,
    ) -> dict[str, Any]:
        options = {
            "showInput": show_input,
            "showBalanceChanges": show_balance_changes,
            "showEffects": show_effects,
        }
        result = await self._call("sui_getTransactionBlock", [tx_digest, options])
        return result if isinstance(result, dict) else {}

    async def resolve_transaction_sender(self, tx_digest: str) -> str | None:
        """Look up who signed a transaction. Returns None on any failure."""
        try:
            tx = await self.get_transaction(tx_digest, show_input=True)
        except SuiClientError as e:
            logger.debug("Could not resolve sender for %s: %s", tx_digest, e)
            return None
        sender = ((tx.get("transaction") or {}).get("data") or {}).get("sender")
        return str(sender) if sender else None

    async def aclose(self) -> None:
        await self._http.aclose()
