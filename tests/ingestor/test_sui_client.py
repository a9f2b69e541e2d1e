"""Tests for the Sui JSON-RPC client."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from conftest import SELLER, TOKEN
from raffle_trade_tracker.ingestor.sources import EventSource, NativeChainSource, TransactionSource
from raffle_trade_tracker.ingestor.sui_client import (
    SuiClient,
    SuiRPCError,
    SuiTransportError,
    transfer_event_type,
)

RPC_URL = "https://node.test:443"


def rpc_result(result: Any) -> httpx.Response:
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": result})


def make_client(handler: Callable[[httpx.Request], httpx.Response], **kwargs) -> SuiClient:
    kwargs.setdefault("retry_delay_seconds", 0)
    return SuiClient(RPC_URL, transport=httpx.MockTransport(handler), **kwargs)


class RecordingHandler:
    """Answers each JSON-RPC method from a table and records the calls."""

    def __init__(self, responses: dict[str, httpx.Response]) -> None:
        self.responses = responses
        self.calls: list[dict[str, Any]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.calls.append(body)
        template = self.responses[body["method"]]
        return httpx.Response(template.status_code, headers=template.headers, content=template.content)


def test_transfer_event_type() -> None:
    assert transfer_event_type(TOKEN) == f"0x2::coin::TransferEvent<{TOKEN}>"


async def test_client_satisfies_source_protocols() -> None:
    client = make_client(RecordingHandler({}))
    assert isinstance(client, NativeChainSource)
    assert isinstance(client, TransactionSource)
    assert isinstance(client, EventSource)
    await client.aclose()


class TestFetchSince:
    async def test_queries_transfer_events_newest_first(self) -> None:
        events = [{"id": {"txDigest": "A", "eventSeq": "0"}}, {"id": {"txDigest": "B", "eventSeq": "0"}}]
        handler = RecordingHandler({"suix_queryEvents": rpc_result({"data": events, "hasNextPage": False})})
        client = make_client(handler, event_page_limit=20)

        page = await client.fetch_since(TOKEN)
        await client.aclose()

        call = handler.calls[0]
        assert call["jsonrpc"] == "2.0"
        assert call["params"] == [{"MoveEventType": transfer_event_type(TOKEN)}, None, 20, True]
        assert [e["id"]["txDigest"] for e in page.records] == ["A", "B"]

    async def test_empty_result(self) -> None:
        client = make_client(RecordingHandler({"suix_queryEvents": rpc_result(None)}))
        page = await client.fetch_since(TOKEN)
        await client.aclose()
        assert page.records == ()

    async def test_rpc_error_raises(self) -> None:
        error = httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32602, "message": "bad"}})
        client = make_client(RecordingHandler({"suix_queryEvents": error}))

        with pytest.raises(SuiRPCError) as exc_info:
            await client.fetch_since(TOKEN)
        await client.aclose()

        assert exc_info.value.code == -32602
        assert exc_info.value.method == "suix_queryEvents"

    async def test_retries_then_gives_up(self) -> None:
        handler = RecordingHandler({"suix_queryEvents": httpx.Response(503)})
        client = make_client(handler, max_retries=3)

        with pytest.raises(SuiTransportError):
            await client.fetch_since(TOKEN)
        await client.aclose()

        assert len(handler.calls) == 3

    async def test_retry_recovers(self) -> None:
        responses = iter([httpx.Response(429), rpc_result({"data": [{"id": {"txDigest": "A", "eventSeq": "0"}}]})])
        client = make_client(lambda request: next(responses), max_retries=3)

        page = await client.fetch_since(TOKEN)
        await client.aclose()

        assert len(page) == 1


class TestResolveCoinDecimals:
    async def test_reads_metadata(self) -> None:
        handler = RecordingHandler({"suix_getCoinMetadata": rpc_result({"decimals": 6, "symbol": "PEPE"})})
        client = make_client(handler)

        assert await client.resolve_coin_decimals(TOKEN) == 6
        await client.aclose()
        assert handler.calls[0]["params"] == [TOKEN]

    async def test_missing_metadata_defaults_to_nine(self) -> None:
        client = make_client(RecordingHandler({"suix_getCoinMetadata": rpc_result(None)}))
        assert await client.resolve_coin_decimals(TOKEN) == 9
        await client.aclose()

    async def test_failure_defaults_to_nine(self) -> None:
        client = make_client(RecordingHandler({"suix_getCoinMetadata": httpx.Response(500)}), max_retries=1)
        assert await client.resolve_coin_decimals(TOKEN) == 9
        await client.aclose()

    @pytest.mark.parametrize("value", ["six", [6]])
    async def test_malformed_decimals_default_to_nine(self, value: Any) -> None:
        client = make_client(RecordingHandler({"suix_getCoinMetadata": rpc_result({"decimals": value})}))
        assert await client.resolve_coin_decimals(TOKEN) == 9
        await client.aclose()


class TestTransactions:
    async def test_get_transaction_options(self) -> None:
        handler = RecordingHandler({"sui_getTransactionBlock": rpc_result({"digest": "T"})})
        client = make_client(handler)

        tx = await client.get_transaction("T", show_balance_changes=True)
        await client.aclose()

        assert tx == {"digest": "T"}
        assert handler.calls[0]["params"] == [
            "T",
            {"showInput": False, "showBalanceChanges": True, "showEffects": False},
        ]

    async def test_resolve_sender(self) -> None:
        result = {"transaction": {"data": {"sender": SELLER}}}
        client = make_client(RecordingHandler({"sui_getTransactionBlock": rpc_result(result)}))

        assert await client.resolve_transaction_sender("T") == SELLER
        await client.aclose()

    async def test_resolve_sender_missing(self) -> None:
        client = make_client(RecordingHandler({"sui_getTransactionBlock": rpc_result({})}))
        assert await client.resolve_transaction_sender("T") is None
        await client.aclose()

    async def test_resolve_sender_on_error(self) -> None:
        error = httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -1, "message": "not found"}})
        client = make_client(RecordingHandler({"sui_getTransactionBlock": error}))
        assert await client.resolve_transaction_sender("T") is None
        await client.aclose()


class TestQueryEvents:
    async def test_queries_any_event_type(self) -> None:
        stake_type = "0xpkg::moonbags_stake::StakeEvent"
        events = [{"id": {"txDigest": "S", "eventSeq": "1"}}, "junk"]
        handler = RecordingHandler({"suix_queryEvents": rpc_result({"data": events})})
        client = make_client(handler, event_page_limit=5)

        result = await client.query_events(stake_type)
        await client.aclose()

        assert handler.calls[0]["params"] == [{"MoveEventType": stake_type}, None, 5, True]
        assert result == [{"id": {"txDigest": "S", "eventSeq": "1"}}]
