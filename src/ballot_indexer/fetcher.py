"""
This module wraps a `LedgerAccess` source with the retry policy the sync loop
relies on.

Only transient failures (rate limiting and timeouts) are retried, with
exponential backoff and a bounded number of attempts. Every other failure
propagates immediately, so a malformed range or an unreachable endpoint shows
up in the logs instead of being retried forever.
"""
from typing import Any, Awaitable, Callable, List, TypeVar
import asyncio
import logging

from .errors import SourceError, SourceTimeoutError, TransientSourceError
from .models import RawLogEntry
from .protocols import LedgerAccess

T = TypeVar("T")


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Seconds to wait before retry number `attempt` (0-based)."""
    return min(base * (2 ** attempt), cap)


class LogFetcher:
    def __init__(
        self,
        ledger: LedgerAccess,
        *,
        max_range_width: int = 10,
        max_retries: int = 8,
        backoff_base: float = 1.5,
        backoff_cap: float = 30.0,
        timeout: float | None = 20.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_range_width < 1:
            raise ValueError("max_range_width must be at least 1")
        if max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        self.ledger = ledger
        self.max_range_width = max_range_width
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.timeout = timeout
        self._sleep = sleep

    async def tip(self) -> int:
        return await self._with_retry(self.ledger.get_tip, "getBlockNumber")

    async def fetch(self, source_address: str, from_block: int, to_block: int) -> List[RawLogEntry]:
        """
        Returns the logs of `source_address` in [from_block, to_block], in
        (block, log index) order. The range must not exceed `max_range_width`;
        splitting a backlog into ranges is the caller's job.
        """
        if from_block < 0 or to_block < from_block:
            raise ValueError(f"Invalid block range {from_block} -> {to_block}")
        width = to_block - from_block + 1
        if width > self.max_range_width:
            raise ValueError(
                f"Block range {from_block} -> {to_block} spans {width} blocks, "
                f"max is {self.max_range_width}"
            )

        entries = await self._with_retry(
            lambda: self.ledger.get_logs(source_address, from_block, to_block),
            f"eth_getLogs {from_block}->{to_block}",
        )
        entries = list(entries)
        self._check_order(entries, from_block, to_block)
        return entries

    @staticmethod
    def _check_order(entries: List[RawLogEntry], from_block: int, to_block: int):
        previous = None
        for entry in entries:
            position = (entry.block_number, entry.log_index)
            if not from_block <= entry.block_number <= to_block:
                raise SourceError(
                    f"Source returned a log at block {entry.block_number} outside {from_block} -> {to_block}"
                )
            if previous is not None and position <= previous:
                raise SourceError(f"Source returned logs out of order: {position} after {previous}")
            previous = position

    async def _call(self, fn: Callable[[], Awaitable[T]], label: str) -> T:
        try:
            return await asyncio.wait_for(fn(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise SourceTimeoutError(f"{label} timed out after {self.timeout}s") from e

    async def _with_retry(self, fn: Callable[[], Awaitable[T]], label: str) -> T:
        attempt = 0
        while True:
            try:
                return await self._call(fn, label)
            except TransientSourceError as e:
                if attempt >= self.max_retries:
                    logging.error(f"Giving up on {label} after {attempt + 1} attempts: {e}")
                    raise
                wait = backoff_delay(attempt, self.backoff_base, self.backoff_cap)
                logging.warning(
                    f"Transient failure during {label} ({e}). "
                    f"Retry {attempt + 1}/{self.max_retries} in {wait:.2f}s"
                )
                await self._sleep(wait)
                attempt += 1
