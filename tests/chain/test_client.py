"""Tests for the chain client."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from web3.exceptions import Web3Exception

from streampay_indexer.chain.client import ChainClient, RateLimiter, RPCError
from streampay_indexer.chain.models import RawLog

CONTRACT = "0x" + "c0" * 20
TOPIC = "0x" + "ab" * 32


def _rpc_log(block_number: int, log_index: int) -> dict:
    return {
        "address": "0xC0c0c0C0c0C0c0c0C0c0c0C0c0c0c0c0C0C0C0c0",
        "blockNumber": block_number,
        "blockHash": bytes.fromhex("11" * 32),
        "transactionHash": bytes.fromhex("22" * 32),
        "logIndex": log_index,
        "transactionIndex": 3,
        "topics": [bytes.fromhex("ab" * 32)],
        "data": bytes.fromhex("00" * 31 + "05"),
    }


def _mock_web3() -> MagicMock:
    w3 = MagicMock()
    w3.eth.get_block_number = AsyncMock(return_value=500)
    w3.eth.get_logs = AsyncMock(return_value=[])
    w3.eth.get_block = AsyncMock(side_effect=lambda n: {"timestamp": 1_000 + n})
    return w3


@pytest.fixture
def client() -> ChainClient:
    c = ChainClient(
        "https://rpc.example.org",
        chain_id=1,
        max_requests_per_second=1000,
        max_retries=2,
        retry_delay_seconds=0,
    )
    c._w3 = _mock_web3()
    return c


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_acquire_within_budget(self) -> None:
        limiter = RateLimiter.create(10)

        await limiter.acquire()

        assert limiter.tokens < 10


class TestChainClient:
    @pytest.mark.asyncio
    async def test_get_head_block_number(self, client: ChainClient) -> None:
        assert await client.get_head_block_number() == 500

    @pytest.mark.asyncio
    async def test_get_logs_builds_filter(self, client: ChainClient) -> None:
        client._w3.eth.get_logs.return_value = [_rpc_log(10, 0), _rpc_log(11, 4)]

        logs = await client.get_logs(CONTRACT, 10, 20, topics=[TOPIC])

        params = client._w3.eth.get_logs.call_args.args[0]
        assert params["fromBlock"] == 10
        assert params["toBlock"] == 20
        assert params["address"].lower() == CONTRACT
        assert params["topics"] == [[TOPIC]]
        assert logs[0] == RawLog(
            address=CONTRACT,
            block_number=10,
            block_hash="0x" + "11" * 32,
            transaction_hash="0x" + "22" * 32,
            log_index=0,
            transaction_index=3,
            topics=(TOPIC,),
            data="0x" + "00" * 31 + "05",
        )
        assert logs[1].log_index == 4

    @pytest.mark.asyncio
    async def test_get_logs_without_topics(self, client: ChainClient) -> None:
        await client.get_logs(CONTRACT, 1, 1)

        params = client._w3.eth.get_logs.call_args.args[0]
        assert "topics" not in params

    @pytest.mark.asyncio
    async def test_get_logs_rejects_inverted_range(self, client: ChainClient) -> None:
        with pytest.raises(ValueError):
            await client.get_logs(CONTRACT, 20, 10)

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, client: ChainClient) -> None:
        client._w3.eth.get_block_number = AsyncMock(side_effect=[Web3Exception("boom"), 42])

        assert await client.get_head_block_number() == 42
        assert client._w3.eth.get_block_number.await_count == 2

    @pytest.mark.asyncio
    async def test_fails_over_to_fallback(self, client: ChainClient) -> None:
        client._w3.eth.get_block_number = AsyncMock(side_effect=OSError("connection refused"))
        fallback = _mock_web3()
        fallback.eth.get_block_number = AsyncMock(return_value=77)
        client._w3_fallback = fallback

        assert await client.get_head_block_number() == 77
        assert client._primary_healthy is False

    @pytest.mark.asyncio
    async def test_raises_rpc_error_when_exhausted(self, client: ChainClient) -> None:
        client._w3.eth.get_block_number = AsyncMock(side_effect=TimeoutError())

        with pytest.raises(RPCError):
            await client.get_head_block_number()

    @pytest.mark.asyncio
    async def test_block_timestamps_deduplicated(self, client: ChainClient) -> None:
        timestamps = await client.get_block_timestamps([5, 3, 5, 3, 9])

        assert timestamps == {3: 1_003, 5: 1_005, 9: 1_009}
        assert client._w3.eth.get_block.await_count == 3

    @pytest.mark.asyncio
    async def test_block_timestamps_empty(self, client: ChainClient) -> None:
        assert await client.get_block_timestamps([]) == {}
        client._w3.eth.get_block.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_block_timestamp_failure_raises(self, client: ChainClient) -> None:
        client._w3.eth.get_block = AsyncMock(side_effect=Web3Exception("missing block"))

        with pytest.raises(RPCError):
            await client.get_block_timestamps([1, 2])


class TestBlockTimestampCache:
    @pytest.mark.asyncio
    async def test_uses_cached_value(self) -> None:
        redis = MagicMock()
        redis.get = AsyncMock(return_value=b"123")
        redis.set = AsyncMock()
        client = ChainClient("https://rpc.example.org", chain_id=10, redis=redis)
        client._w3 = _mock_web3()

        assert await client.get_block_timestamp(7) == 123
        redis.get.assert_awaited_once_with("chain:10:block_ts:7")
        client._w3.eth.get_block.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_caches_fetched_value(self) -> None:
        redis = MagicMock()
        redis.get = AsyncMock(return_value=None)
        redis.set = AsyncMock()
        client = ChainClient("https://rpc.example.org", chain_id=10, redis=redis, cache_ttl_seconds=60)
        client._w3 = _mock_web3()

        assert await client.get_block_timestamp(7) == 1_007
        redis.set.assert_awaited_once_with("chain:10:block_ts:7", "1007", ex=60)

    @pytest.mark.asyncio
    async def test_cache_errors_are_not_fatal(self) -> None:
        redis = MagicMock()
        redis.get = AsyncMock(side_effect=ConnectionError("redis down"))
        redis.set = AsyncMock(side_effect=ConnectionError("redis down"))
        client = ChainClient("https://rpc.example.org", chain_id=10, redis=redis)
        client._w3 = _mock_web3()

        assert await client.get_block_timestamp(7) == 1_007
