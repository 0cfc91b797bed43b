"""
This module provides a `LedgerAccess` source backed by an Ethereum JSON-RPC
endpoint, using httpx.

Provider failures are mapped onto the indexer's error types so the fetcher can
tell a rate limit or a timeout (retried) from anything else (not retried).
"""
from typing import Any, Dict, List
import itertools
import logging

import httpx

from ..errors import RateLimitedError, SourceError, SourceTimeoutError
from ..models import RawLogEntry

# JSON-RPC error codes providers use for throttling.
RATE_LIMIT_CODES = {429, -32005}
RATE_LIMIT_MARKERS = ("rate limit", "compute units per second", "too many requests")


def _quantity(value: Any) -> int:
    if isinstance(value, int):
        return value
    return int(value, 16)


def _is_rate_limit(code: Any, message: str) -> bool:
    message = message.lower()
    return code in RATE_LIMIT_CODES or any(marker in message for marker in RATE_LIMIT_MARKERS)


class JsonRpcLedger:
    def __init__(self, url: str, *, timeout: float = 20.0, client: httpx.AsyncClient | None = None):
        self.url = url
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(connect=timeout, read=timeout, write=timeout, pool=timeout),
        )
        self._ids = itertools.count(1)

    async def _call(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = await self.client.post(self.url, json=payload)
        except httpx.TimeoutException as e:
            raise SourceTimeoutError(f"{method} timed out: {e}") from e
        except httpx.TransportError as e:
            raise SourceError(f"{method} failed: {e}") from e

        if response.status_code == 429:
            raise RateLimitedError(f"{method} rate limited (HTTP 429)")
        if response.status_code >= 400:
            raise SourceError(f"{method} failed with HTTP {response.status_code}: {response.text[:200]}")

        try:
            body = response.json()
        except ValueError as e:
            raise SourceError(f"{method} returned invalid JSON") from e
        if not isinstance(body, dict):
            raise SourceError(f"{method} returned an unexpected response: {str(body)[:200]}")

        error = body.get("error")
        if error:
            if isinstance(error, dict):
                code, message = error.get("code"), str(error.get("message", ""))
            else:
                code, message = None, str(error)
            if _is_rate_limit(code, message):
                raise RateLimitedError(f"{method} rate limited: {code} {message}")
            raise SourceError(f"RPC error on {method}: {code} {message}")
        return body.get("result")

    async def get_tip(self) -> int:
        return _quantity(await self._call("eth_blockNumber", []))

    async def get_logs(self, source_address: str, from_block: int, to_block: int) -> List[RawLogEntry]:
        params: List[Dict[str, Any]] = [
            {"address": source_address.lower(), "fromBlock": hex(from_block), "toBlock": hex(to_block)}
        ]
        result = await self._call("eth_getLogs", params) or []

        entries = []
        for log in result:
            if log.get("removed"):
                logging.debug(f"Ignoring removed log {log.get('transactionHash')}:{log.get('logIndex')}")
                continue
            try:
                entries.append(
                    RawLogEntry(
                        block_number=_quantity(log["blockNumber"]),
                        block_hash=log.get("blockHash") or "",
                        transaction_hash=log["transactionHash"].lower(),
                        log_index=_quantity(log["logIndex"]),
                        address=(log.get("address") or "").lower() or None,
                        topics=[t.lower() for t in log.get("topics", [])],
                        data=log.get("data") or "0x",
                    )
                )
            except (KeyError, TypeError, ValueError) as e:
                raise SourceError(f"Malformed log in eth_getLogs result: {e}") from e
        entries.sort(key=lambda e: (e.block_number, e.log_index))
        return entries

    async def aclose(self):
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "JsonRpcLedger":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
