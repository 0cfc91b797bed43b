"""
This module drives synchronization: it reads the cursor, fetches the next
bounded block range, records the entries in the raw event ledger, projects the
newly recorded ones and advances the cursor.

Each range is handled in a single store transaction, so recording, projection
and the cursor update of a range commit together or not at all. A crash or a
failed fetch leaves the cursor where it was, and the next pass re-reads the
same range; the ledger's insert-if-absent keeps the re-read from being
projected twice.
"""
from enum import Enum
from typing import Any, Awaitable, Callable, Tuple
import asyncio
import logging

from .decoder import EventDecoder
from .errors import InvariantViolation
from .fetcher import LogFetcher
from .models import DecodedEvent, EventKind, PassResult, RangeResult, RawEvent, RawLogEntry
from .projection import ProjectionEngine
from .protocols import IndexStore


class LoopState(str, Enum):
    IDLE = "idle"
    BACKFILLING = "backfilling"
    POLLING = "polling"
    STOPPED = "stopped"


class SyncLoop:
    """
    Keeps the store of one (network, source) pair in step with the ledger.

    Only one pass runs at a time; a pass requested while another is in flight
    is skipped rather than queued.
    """

    def __init__(
        self,
        store: IndexStore,
        fetcher: LogFetcher,
        decoder: EventDecoder,
        *,
        projector: ProjectionEngine | None = None,
        confirmations: int = 2,
        deployment_block: int | None = None,
        initial_lookback: int = 100,
        poll_interval: float = 15.0,
        throttle: float = 0.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if confirmations < 0:
            raise ValueError("confirmations cannot be negative")
        self.store = store
        self.fetcher = fetcher
        self.decoder = decoder
        self.projector = projector or ProjectionEngine()
        self.confirmations = confirmations
        self.deployment_block = deployment_block
        self.initial_lookback = initial_lookback
        self.poll_interval = poll_interval
        self.throttle = throttle
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._running = False
        self.state = LoopState.IDLE

    def default_start(self, tip: int) -> int:
        """
        The cursor value used when the pair has never been synchronized. A
        deployment block of 0 counts as unknown.
        """
        if self.deployment_block:
            return max(self.deployment_block - 1, 0)
        return max(tip - self.initial_lookback, 0)

    def next_range(self, cursor: int, safe_tip: int) -> Tuple[int, int] | None:
        from_block = cursor + 1
        if from_block > safe_tip:
            return None
        return from_block, min(from_block + self.fetcher.max_range_width - 1, safe_tip)

    async def sync_range(self, from_block: int, to_block: int) -> RangeResult:
        """Fetches, records and projects one range, then moves the cursor to `to_block`."""
        entries = await self.fetcher.fetch(self.store.source_address, from_block, to_block)
        inserted = 0
        async with self.store.transaction() as tx:
            for entry in entries:
                decoded = self.decoder.decode(entry)
                raw = self._to_raw_event(entry, decoded)
                if await tx.insert_if_absent(raw):
                    inserted += 1
                    await self.projector.apply(tx, decoded, raw.block_number, raw.transaction_hash)
            await tx.advance_cursor(to_block)
        logging.info(
            f"Synced {from_block} -> {to_block} for {self.store.source_address}: "
            f"{len(entries)} logs, {inserted} new"
        )
        return RangeResult(from_block=from_block, to_block=to_block, fetched=len(entries), inserted=inserted)

    async def catch_up_once(self) -> PassResult:
        """Processes every range between the cursor and the confirmed tip."""
        if self._lock.locked():
            logging.info("A sync pass is already running; skipping")
            return PassResult(skipped=True)

        async with self._lock:
            try:
                tip = await self.fetcher.tip()
                safe_tip = max(tip - self.confirmations, 0)
                async with self.store.transaction() as tx:
                    cursor = await tx.get_or_init_cursor(self.default_start(tip))

                result = PassResult(safe_tip=safe_tip)
                next_range = self.next_range(cursor, safe_tip)
                if next_range is None:
                    logging.debug(f"Cursor {cursor} is at the safe tip {safe_tip}")
                    return result

                if safe_tip - cursor > self.fetcher.max_range_width:
                    self.state = LoopState.BACKFILLING
                logging.info(f"Catching up from {cursor + 1} to {safe_tip} (tip {tip})")
                while next_range is not None:
                    result.ranges.append(await self.sync_range(*next_range))
                    next_range = self.next_range(next_range[1], safe_tip)
                    if next_range is not None and self.throttle > 0:
                        await self._sleep(self.throttle)
                logging.info(f"Pass complete at block {safe_tip}: {result.inserted} new events")
                return result
            finally:
                if self.state != LoopState.STOPPED:
                    self.state = LoopState.POLLING if self._running else LoopState.IDLE

    async def run_forever(self, stop_event: asyncio.Event | None = None):
        """
        Runs passes until `stop_event` is set. A failed pass is logged and
        retried on the next tick; an invariant violation stops the loop.
        """
        stop_event = stop_event or asyncio.Event()
        self._running = True
        logging.info(
            f"Sync loop started for {self.store.network_id}:{self.store.source_address} "
            f"(poll every {self.poll_interval}s)"
        )
        try:
            while not stop_event.is_set():
                try:
                    await self.catch_up_once()
                except InvariantViolation as e:
                    logging.critical(f"Stopping sync loop: {e}")
                    raise
                except Exception as e:
                    logging.error(f"Sync pass failed, retrying in {self.poll_interval}s: {e}")

                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            self.state = LoopState.STOPPED
            logging.info("Sync loop stopped")

    async def rebuild_read_model(self) -> int:
        """
        Discards the read model and replays every recorded event in ledger
        order. Events recorded as unknown are decoded again first, so a newer
        ABI can pick them up. Returns the number of events replayed.
        """
        async with self._lock:
            async with self.store.transaction() as tx:
                await tx.clear_read_model()
                events = await tx.list_raw_events()
                for event in events:
                    await self.projector.apply(
                        tx, self._redecode(event), event.block_number, event.transaction_hash
                    )
        logging.info(f"Rebuilt read model for {self.store.source_address} from {len(events)} events")
        return len(events)

    def _redecode(self, event: RawEvent) -> DecodedEvent:
        if event.kind == EventKind.UNKNOWN and event.topics:
            return self.decoder.decode(
                RawLogEntry(
                    block_number=event.block_number,
                    block_hash=event.block_hash,
                    transaction_hash=event.transaction_hash,
                    log_index=event.log_index,
                    topics=event.topics,
                    data=event.data,
                )
            )
        return DecodedEvent(kind=event.kind, name=event.event_name, args=event.args)

    def _to_raw_event(self, entry: RawLogEntry, decoded: DecodedEvent) -> RawEvent:
        return RawEvent(
            network_id=self.store.network_id,
            source_address=self.store.source_address,
            block_number=entry.block_number,
            block_hash=entry.block_hash,
            transaction_hash=entry.transaction_hash.lower(),
            log_index=entry.log_index,
            event_name=decoded.name,
            args=decoded.args,
            topics=entry.topics,
            data=entry.data,
        )
