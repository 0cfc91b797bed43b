import pytest
from pytest_asyncio import fixture

from ballot_indexer.adaptors.sqlite import sqlite_store_factory
from ballot_indexer.decoder import EventDecoder
from ballot_indexer.fetcher import LogFetcher
from ballot_indexer.models import RawLogEntry
from ballot_indexer.sync import SyncLoop

NETWORK_ID = 11155111
SOURCE = "0x00000000000000000000000000000000000000b0"
VOTER_X = "0x00000000000000000000000000000000000000aa"
VOTER_Y = "0x00000000000000000000000000000000000000bb"


class FakeLedger:
    """An in-process ledger: a fixed tip and a list of logs, with scripted failures."""

    def __init__(self, tip=0, logs=None):
        self.tip = tip
        self.logs = list(logs or [])
        self.calls = []
        self.failures = []
        self.tip_failures = []
        self.on_tip = None
        self.gate = None

    async def get_tip(self):
        if self.gate is not None:
            await self.gate.wait()
        if self.on_tip is not None:
            self.on_tip()
        if self.tip_failures:
            raise self.tip_failures.pop(0)
        return self.tip

    async def get_logs(self, source_address, from_block, to_block):
        self.calls.append((from_block, to_block))
        if self.failures:
            raise self.failures.pop(0)
        return sorted(
            (log for log in self.logs if from_block <= log.block_number <= to_block),
            key=lambda log: (log.block_number, log.log_index),
        )


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def build_log(block, log_index, event_name, args, tx_hash=None):
    return RawLogEntry(
        block_number=block,
        block_hash=f"0x{block:064x}",
        transaction_hash=tx_hash or f"0x{block:032x}{log_index:032x}",
        log_index=log_index,
        address=SOURCE,
        event_name=event_name,
        args=args,
    )


@pytest.fixture
def make_log():
    return build_log


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def sleep():
    return RecordingSleep()


@fixture
async def store_factory(tmp_path):
    """Yields `open_store` for a fresh SQLite file per test."""
    async with sqlite_store_factory(str(tmp_path / "indexer.db")) as open_store:
        yield open_store


@fixture
async def store(store_factory):
    async with store_factory(NETWORK_ID, SOURCE) as s:
        yield s


@pytest.fixture
def make_loop(store, ledger, sleep):
    """Builds a SyncLoop over the test store and fake ledger; keyword arguments override defaults."""

    def _make(*, max_range_width=10, max_retries=8, projector=None, decoder=None, **kwargs):
        fetcher = LogFetcher(
            ledger,
            max_range_width=max_range_width,
            max_retries=max_retries,
            backoff_base=1.5,
            backoff_cap=30.0,
            timeout=5.0,
            sleep=sleep,
        )
        kwargs.setdefault("confirmations", 2)
        kwargs.setdefault("sleep", sleep)
        return SyncLoop(store, fetcher, decoder or EventDecoder(), projector=projector, **kwargs)

    return _make
