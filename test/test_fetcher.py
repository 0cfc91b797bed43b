import asyncio

import pytest

from ballot_indexer.errors import RateLimitedError, SourceError, SourceTimeoutError
from ballot_indexer.fetcher import LogFetcher, backoff_delay

from conftest import SOURCE, build_log


def make_fetcher(ledger, sleep, **kwargs):
    kwargs.setdefault("backoff_base", 1.5)
    kwargs.setdefault("backoff_cap", 30.0)
    return LogFetcher(ledger, sleep=sleep, **kwargs)


def test_backoff_delay_doubles_until_cap():
    assert [backoff_delay(a, 1.5, 30.0) for a in range(6)] == [1.5, 3.0, 6.0, 12.0, 24.0, 30.0]


@pytest.mark.asyncio
async def test_fetch_returns_logs_in_range(ledger, sleep):
    ledger.logs = [build_log(105, 0, "StageChanged", {"newStage": 1}), build_log(120, 0, "StageChanged", {"newStage": 2})]
    fetcher = make_fetcher(ledger, sleep)

    entries = await fetcher.fetch(SOURCE, 101, 110)
    assert [e.block_number for e in entries] == [105]
    assert ledger.calls == [(101, 110)]


@pytest.mark.asyncio
async def test_fetch_rejects_invalid_ranges(ledger, sleep):
    fetcher = make_fetcher(ledger, sleep, max_range_width=10)
    with pytest.raises(ValueError):
        await fetcher.fetch(SOURCE, 101, 111)
    with pytest.raises(ValueError):
        await fetcher.fetch(SOURCE, 110, 101)
    assert ledger.calls == []


@pytest.mark.asyncio
async def test_rate_limits_are_retried_with_backoff(ledger, sleep):
    ledger.failures = [RateLimitedError("429"), RateLimitedError("429"), RateLimitedError("429")]
    fetcher = make_fetcher(ledger, sleep, max_retries=8)

    assert await fetcher.fetch(SOURCE, 1, 10) == []
    assert len(ledger.calls) == 4
    assert sleep.delays == [1.5, 3.0, 6.0]


@pytest.mark.asyncio
async def test_gives_up_after_max_retries(ledger, sleep):
    ledger.failures = [RateLimitedError("429")] * 4
    fetcher = make_fetcher(ledger, sleep, max_retries=3)

    with pytest.raises(RateLimitedError):
        await fetcher.fetch(SOURCE, 1, 10)
    assert len(ledger.calls) == 4
    assert len(sleep.delays) == 3


@pytest.mark.asyncio
async def test_non_transient_errors_are_not_retried(ledger, sleep):
    ledger.failures = [SourceError("bad request")]
    fetcher = make_fetcher(ledger, sleep)

    with pytest.raises(SourceError):
        await fetcher.fetch(SOURCE, 1, 10)
    assert len(ledger.calls) == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_slow_calls_time_out_and_are_retried(sleep):
    class SlowOnceLedger:
        def __init__(self):
            self.calls = 0

        async def get_tip(self):
            self.calls += 1
            if self.calls == 1:
                await asyncio.sleep(1)
            return 42

    ledger = SlowOnceLedger()
    fetcher = make_fetcher(ledger, sleep, timeout=0.01)
    assert await fetcher.tip() == 42
    assert ledger.calls == 2
    assert sleep.delays == [1.5]


@pytest.mark.asyncio
async def test_timeouts_exhaust_into_source_timeout_error(sleep):
    class HangingLedger:
        async def get_tip(self):
            await asyncio.sleep(1)

    fetcher = make_fetcher(HangingLedger(), sleep, timeout=0.01, max_retries=1)
    with pytest.raises(SourceTimeoutError):
        await fetcher.tip()


@pytest.mark.asyncio
async def test_out_of_order_logs_are_rejected(sleep):
    class UnorderedLedger:
        async def get_logs(self, source_address, from_block, to_block):
            return [build_log(107, 0, "StageChanged", {}), build_log(105, 0, "StageChanged", {})]

    with pytest.raises(SourceError):
        await make_fetcher(UnorderedLedger(), sleep).fetch(SOURCE, 101, 110)


@pytest.mark.asyncio
async def test_logs_outside_the_range_are_rejected(sleep):
    class SloppyLedger:
        async def get_logs(self, source_address, from_block, to_block):
            return [build_log(to_block + 1, 0, "StageChanged", {})]

    with pytest.raises(SourceError):
        await make_fetcher(SloppyLedger(), sleep).fetch(SOURCE, 101, 110)
