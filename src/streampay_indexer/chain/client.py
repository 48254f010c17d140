"""EVM chain client with rate limiting, retries and block caching.

This module provides the read-only chain access the indexer needs:
- Head block number
- Contract logs for a block range
- Batched block timestamps

with:
- Rate limiting to respect provider limits
- Retry logic with exponential backoff
- Failover to secondary RPC URL
- Optional Redis caching of (immutable) block timestamps
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.exceptions import Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from streampay_indexer.chain.models import RawLog

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_CACHE_TTL_SECONDS = 24 * 3600
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when RPC call fails."""


class ChainReader(Protocol):
    """Read interface the worker loop consumes."""

    async def get_head_block_number(self) -> int:
        """Return the current chain head block number."""

    async def get_logs(
        self,
        address: str,
        from_block: int,
        to_block: int,
        topics: Sequence[str] | None = None,
    ) -> list[RawLog]:
        """Return logs emitted by `address` in [from_block, to_block] inclusive.

        `topics` restricts topic0 to any of the given hashes; None means no filter.
        """

    async def get_block_timestamps(self, block_numbers: Iterable[int]) -> dict[int, int]:
        """Return unix timestamps for the distinct block numbers given."""


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


class ChainClient:
    """JSON-RPC chain client used by the indexer worker.

    Example:
        ```python
        client = ChainClient(
            rpc_url="https://rpc.example.org",
            fallback_rpc_url="https://rpc-backup.example.org",
            redis=Redis.from_url("redis://localhost:6379"),
        )

        head = await client.get_head_block_number()
        logs = await client.get_logs(contract, head - 100, head, topics=EVENT_TOPICS)
        timestamps = await client.get_block_timestamps(log.block_number for log in logs)
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        chain_id: int,
        fallback_rpc_url: str | None = None,
        redis: Redis | None = None,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
    ) -> None:
        """Initialize the chain client.

        Args:
            rpc_url: Primary RPC endpoint URL.
            chain_id: Chain ID, used to namespace cache keys.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            redis: Optional Redis client for caching block timestamps.
            cache_ttl_seconds: Cache TTL in seconds.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Maximum retry attempts per endpoint.
            retry_delay_seconds: Initial delay between retries.
        """
        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._redis = redis
        self._cache_ttl = cache_ttl_seconds
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds

        self._w3 = self._new_web3_client(rpc_url)
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = self._new_web3_client(fallback_rpc_url)

        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        # Track primary RPC health
        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0

        self._cache_prefix = f"chain:{chain_id}:"

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        client = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self._inject_poa_middleware(client, rpc_url=rpc_url)
        return client

    def _inject_poa_middleware(self, client: AsyncWeb3[AsyncHTTPProvider], *, rpc_url: str) -> None:
        try:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except Exception as e:
            logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)

    def _block_cache_key(self, block_number: int) -> str:
        return f"{self._cache_prefix}block_ts:{block_number}"

    async def _get_cached(self, key: str) -> str | None:
        """Get value from cache."""
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int | None = None) -> None:
        """Set value in cache."""
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl or self._cache_ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    def _should_try_primary(self) -> bool:
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _call_with_retries(
        self,
        w3: AsyncWeb3[AsyncHTTPProvider],
        label: str,
        func_name: str,
        *args: Any,
    ) -> tuple[bool, Any, Exception | None]:
        delay = self._retry_delay
        last_error: Exception | None = None
        for attempt in range(self._max_retries):
            try:
                method = getattr(w3.eth, func_name)
                return True, await method(*args), None
            except (Web3Exception, OSError, TimeoutError) as e:
                last_error = e
                logger.warning(
                    "%s RPC %s failed (attempt %d/%d): %s",
                    label,
                    func_name,
                    attempt + 1,
                    self._max_retries,
                    e,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2
        return False, None, last_error

    async def _execute_with_retry(self, func_name: str, *args: Any) -> Any:
        """Execute an RPC call with retry and failover logic.

        Args:
            func_name: Name of the web3.eth attribute or method to call.
            *args: Positional arguments for the method.

        Returns:
            Result from the RPC call.

        Raises:
            RPCError: If all retries and failover fail.
        """
        await self._rate_limiter.acquire()

        last_error: Exception | None = None

        if self._should_try_primary():
            ok, result, last_error = await self._call_with_retries(self._w3, "Primary", func_name, *args)
            if ok:
                self._primary_healthy = True
                return result
            self._primary_healthy = False
            self._last_primary_check = time.monotonic()

        if self._w3_fallback:
            ok, result, error = await self._call_with_retries(
                self._w3_fallback, "Fallback", func_name, *args
            )
            if ok:
                logger.info("Fallback RPC succeeded for %s", func_name)
                return result
            last_error = error

        raise RPCError(f"RPC call {func_name} failed after all retries: {last_error}")

    async def get_head_block_number(self) -> int:
        """Get the current head block number."""
        return int(await self._execute_with_retry("get_block_number"))

    async def get_logs(
        self,
        address: str,
        from_block: int,
        to_block: int,
        topics: Sequence[str] | None = None,
    ) -> list[RawLog]:
        """Fetch contract logs via `eth_getLogs`.

        Args:
            address: Contract address.
            from_block: First block (inclusive).
            to_block: Last block (inclusive).
            topics: Optional topic0 alternatives.

        Returns:
            Raw logs in the order returned by the node.
        """
        if to_block < from_block:
            raise ValueError("to_block must be >= from_block")

        filter_params: dict[str, Any] = {
            "address": AsyncWeb3.to_checksum_address(address),
            "fromBlock": from_block,
            "toBlock": to_block,
        }
        if topics:
            filter_params["topics"] = [list(topics)]

        logs = await self._execute_with_retry("get_logs", filter_params)
        return [RawLog.from_rpc(dict(log)) for log in logs]

    async def get_block_timestamp(self, block_number: int) -> int:
        """Get a block's unix timestamp."""
        cache_key = self._block_cache_key(block_number)
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return int(cached)

        block = await self._execute_with_retry("get_block", block_number)
        timestamp = int(block["timestamp"])

        await self._set_cached(cache_key, str(timestamp))
        return timestamp

    async def get_block_timestamps(self, block_numbers: Iterable[int]) -> dict[int, int]:
        """Batch get timestamps for the distinct block numbers given.

        Args:
            block_numbers: Block numbers; duplicates are fetched once.

        Returns:
            Dictionary mapping block number to unix timestamp.
        """
        distinct = sorted(set(block_numbers))
        if not distinct:
            return {}

        timestamps = await asyncio.gather(
            *(self.get_block_timestamp(n) for n in distinct),
            return_exceptions=True,
        )

        results: dict[int, int] = {}
        for block_number, ts in zip(distinct, timestamps, strict=True):
            if isinstance(ts, BaseException):
                raise RPCError(f"Failed to get block {block_number}: {ts}") from ts
            results[block_number] = ts
        return results

    async def health_check(self) -> bool:
        """Check if the client can connect to the RPC."""
        try:
            await self.get_head_block_number()
            return True
        except RPCError:
            return False

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)
