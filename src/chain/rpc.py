"""EVM JSON-RPC chain reader: block height, log queries and read-only calls."""

import asyncio
import itertools
from collections.abc import Sequence
from typing import Any, Protocol

import httpx
from loguru import logger

from src.chain.abi import ContractFunction
from src.chain.models import RawLog
from src.chain.rate_limiter import RateLimiter
from src.indexer.errors import TransientIOError

MAX_RETRIES = 2
RETRY_DELAYS = [1.0, 3.0]

Topic = str | list[str] | None


class ChainReader(Protocol):
    """Read-only node access used by the scanner, decoder and recoverer."""

    async def get_block_number(self) -> int: ...

    async def get_logs(
        self,
        address: str,
        topics: Sequence[Topic],
        from_block: int,
        to_block: int,
    ) -> list[RawLog]: ...

    async def call(
        self, address: str, function: ContractFunction, args: Sequence[Any] = ()
    ) -> tuple[Any, ...]: ...


class JsonRpcChainReader:
    """Async httpx client for a standard EVM JSON-RPC endpoint.

    Retries 429s, timeouts and connection errors a bounded number of times,
    then raises TransientIOError. Never retries in a loop beyond that; the
    caller resumes from its cursor on the next pass.
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        max_rps: float = 10.0,
        timeout: float = 15.0,
        max_block_range: int = 9500,
    ) -> None:
        self._rpc_url = rpc_url
        self._max_block_range = max_block_range
        self._rate_limiter = RateLimiter(max_rps)
        self._client = httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)

    @property
    def max_block_range(self) -> int:
        return self._max_block_range

    async def close(self) -> None:
        await self._client.aclose()

    async def get_block_number(self) -> int:
        result = await self._request("eth_blockNumber", [])
        return int(result, 16)

    async def get_logs(
        self,
        address: str,
        topics: Sequence[Topic],
        from_block: int,
        to_block: int,
    ) -> list[RawLog]:
        if to_block < from_block:
            return []
        if to_block - from_block + 1 > self._max_block_range:
            raise ValueError(
                f"block range [{from_block}, {to_block}] exceeds provider max "
                f"{self._max_block_range}"
            )
        params = {
            "address": address,
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
            "topics": list(topics),
        }
        result = await self._request("eth_getLogs", [params])
        logs = [RawLog.from_rpc(item) for item in result or []]
        logs.sort(key=lambda log: log.sort_key)
        return logs

    async def call(
        self, address: str, function: ContractFunction, args: Sequence[Any] = ()
    ) -> tuple[Any, ...]:
        tx = {"to": address, "data": function.encode_call(args)}
        result = await self._request("eth_call", [tx, "latest"])
        try:
            return function.decode_result(result or "0x")
        except Exception as e:
            raise TransientIOError(
                f"undecodable result for {function.signature} at {address}: {e}"
            ) from e

    async def _request(self, method: str, params: list[Any]) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        last_error = ""

        for attempt in range(MAX_RETRIES + 1):
            delay = RETRY_DELAYS[min(attempt, len(RETRY_DELAYS) - 1)]
            try:
                await self._rate_limiter.acquire()
                resp = await self._client.post(self._rpc_url, json=payload)

                if resp.status_code == 429:
                    last_error = "HTTP 429"
                    if attempt < MAX_RETRIES:
                        logger.debug(f"[RPC] {method} rate limited, waiting {delay}s")
                        await asyncio.sleep(delay)
                    continue
                if resp.status_code != 200:
                    raise TransientIOError(f"{method} HTTP {resp.status_code}")

                try:
                    data = resp.json()
                except ValueError as e:
                    raise TransientIOError(f"{method} returned invalid JSON") from e
                if "error" in data:
                    err = data["error"] or {}
                    raise TransientIOError(
                        f"{method} RPC error {err.get('code')}: {err.get('message')}"
                    )
                return data.get("result")

            except (httpx.TimeoutException, httpx.ConnectError) as e:
                last_error = f"{type(e).__name__}: {e}"
                if attempt < MAX_RETRIES:
                    logger.debug(f"[RPC] {method} {type(e).__name__}, retry in {delay}s")
                    await asyncio.sleep(delay)

        logger.warning(f"[RPC] {method} failed after {MAX_RETRIES + 1} attempts: {last_error}")
        raise TransientIOError(f"{method} failed: {last_error}")
