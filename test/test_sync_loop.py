import asyncio

import pytest
from eth_abi import encode

from ballot_indexer.decoder import DEFAULT_BALLOT_ABI, EventDecoder
from ballot_indexer.errors import InvariantViolation, RateLimitedError, SourceError
from ballot_indexer.models import EventKind, RawLogEntry
from ballot_indexer.projection import ProjectionEngine
from ballot_indexer.sync import LoopState

from conftest import VOTER_X, VOTER_Y, build_log


def stage_changed(block, log_index, stage):
    return build_log(block, log_index, "StageChanged", {"newStage": stage})


def registered(block, log_index, voter, weight):
    return build_log(block, log_index, "VoterRegistered", {"voter": voter, "weight": weight})


def vote_cast(block, log_index, voter, proposal_id, weight):
    return build_log(block, log_index, "VoteCast", {"voter": voter, "proposalId": proposal_id, "weight": weight})


async def read_model(store):
    snapshot = await store.get_snapshot()
    return (
        snapshot.model_dump(exclude={"updated_at"}) if snapshot else None,
        [v.model_dump() for v in await store.get_voters()],
        [p.model_dump() for p in await store.get_proposals()],
    )


class FailingProjector(ProjectionEngine):
    """Fails on the n-th applied event."""

    def __init__(self, fail_on, error):
        super().__init__()
        self.fail_on = fail_on
        self.error = error
        self.applied = 0

    async def apply(self, writer, event, block_number, transaction_hash):
        self.applied += 1
        if self.applied == self.fail_on:
            raise self.error
        return await super().apply(writer, event, block_number, transaction_hash)


@pytest.mark.asyncio
async def test_ballot_scenario_from_deployment_block(ledger, make_loop, store):
    ledger.tip = 130
    ledger.logs = [stage_changed(105, 0, 1), registered(107, 0, VOTER_X, 1)]
    loop = make_loop(deployment_block=100)

    result = await loop.catch_up_once()

    assert result.safe_tip == 128
    assert [(r.from_block, r.to_block) for r in result.ranges] == [(100, 109), (110, 119), (120, 128)]
    assert result.inserted == 2
    assert (await store.get_cursor()).last_processed_block == 128

    snapshot = await store.get_snapshot()
    assert snapshot.stage == 1
    assert snapshot.total_voters == 1
    assert snapshot.last_indexed_block == 107
    [voter] = await store.get_voters()
    assert (voter.voter_address, voter.weight) == (VOTER_X, "1")


@pytest.mark.asyncio
async def test_ballot_scenario_from_existing_cursor(ledger, make_loop, store):
    ledger.tip = 130
    ledger.logs = [stage_changed(105, 0, 1), registered(107, 0, VOTER_X, 1)]
    loop = make_loop(deployment_block=100)
    async with store.transaction() as tx:
        await tx.get_or_init_cursor(100)

    first = await loop.sync_range(101, 110)
    assert (first.fetched, first.inserted) == (2, 2)
    snapshot = await store.get_snapshot()
    assert snapshot.stage == 1
    assert snapshot.total_voters == 1
    [voter] = await store.get_voters()
    assert voter.weight == "1"

    result = await loop.catch_up_once()
    assert [(r.from_block, r.to_block) for r in result.ranges] == [(111, 120), (121, 128)]
    assert ledger.calls == [(101, 110), (111, 120), (121, 128)]
    assert (await store.get_cursor()).last_processed_block == 128


@pytest.mark.asyncio
async def test_default_cursor_without_deployment_block(ledger, make_loop, store):
    ledger.tip = 1_000
    loop = make_loop(max_range_width=50)

    await loop.catch_up_once()
    assert ledger.calls[0] == (901, 950)
    assert (await store.get_cursor()).last_processed_block == 998


@pytest.mark.asyncio
async def test_zero_deployment_block_uses_lookback(ledger, make_loop, store):
    ledger.tip = 1_000
    loop = make_loop(deployment_block=0, max_range_width=50)
    assert loop.default_start(5_000_000) == 4_999_900

    await loop.catch_up_once()
    assert ledger.calls[0] == (901, 950)
    assert (await store.get_cursor()).last_processed_block == 998


@pytest.mark.asyncio
async def test_nothing_to_do_at_safe_tip(ledger, make_loop):
    ledger.tip = 1
    loop = make_loop(deployment_block=0)

    result = await loop.catch_up_once()
    assert result.safe_tip == 0
    assert result.ranges == []
    assert ledger.calls == []


@pytest.mark.asyncio
async def test_replaying_a_range_changes_nothing(ledger, make_loop, store):
    ledger.tip = 12
    ledger.logs = [
        registered(1, 0, VOTER_X, 2),
        registered(1, 1, VOTER_Y, 1),
        vote_cast(3, 0, VOTER_X, 0, 2),
        vote_cast(4, 0, VOTER_Y, 0, 1),
    ]
    loop = make_loop(deployment_block=1)
    await loop.catch_up_once()
    once = await read_model(store)

    for _ in range(3):
        replay = await loop.sync_range(1, 10)
        assert replay.inserted == 0

    assert await read_model(store) == once
    [proposal] = await store.get_proposals()
    assert proposal.vote_count == "3"
    assert (await store.get_snapshot()).total_votes == 2


@pytest.mark.asyncio
async def test_second_pass_only_processes_new_blocks(ledger, make_loop, store):
    ledger.tip = 12
    ledger.logs = [registered(5, 0, VOTER_X, 1)]
    loop = make_loop(deployment_block=1)
    await loop.catch_up_once()

    ledger.tip = 22
    ledger.logs.append(vote_cast(15, 0, VOTER_X, 1, 1))
    ledger.calls.clear()
    result = await loop.catch_up_once()

    assert ledger.calls == [(11, 20)]
    assert result.inserted == 1
    assert (await store.get_snapshot()).total_votes == 1


@pytest.mark.asyncio
async def test_events_apply_in_log_order(ledger, make_loop, store):
    # A voter that (incorrectly) votes twice in one block: the later log wins.
    ledger.tip = 12
    ledger.logs = [
        registered(2, 0, VOTER_X, 1),
        vote_cast(5, 1, VOTER_X, 2, 1),
        vote_cast(5, 0, VOTER_X, 1, 1),
    ]
    loop = make_loop(deployment_block=1)
    await loop.catch_up_once()

    vote = await store.get_vote(VOTER_X)
    assert vote.proposal_id == 2
    assert vote.transaction_hash == build_log(5, 1, "VoteCast", {}).transaction_hash


@pytest.mark.asyncio
async def test_crash_mid_range_resumes_without_duplicates(ledger, make_loop, store):
    ledger.tip = 12
    ledger.logs = [registered(2, 0, VOTER_X, 1), registered(3, 0, VOTER_Y, 1), vote_cast(4, 0, VOTER_X, 0, 1)]
    crashing = make_loop(deployment_block=1, projector=FailingProjector(2, RuntimeError("crash")))

    with pytest.raises(RuntimeError):
        await crashing.catch_up_once()
    assert (await store.get_cursor()).last_processed_block == 0
    assert await store.get_recent_raw_events() == []
    assert await store.get_snapshot() is None

    result = await make_loop(deployment_block=1).catch_up_once()
    assert result.inserted == 3
    assert (await store.get_cursor()).last_processed_block == 10
    snapshot = await store.get_snapshot()
    assert (snapshot.total_voters, snapshot.total_votes) == (2, 1)


@pytest.mark.asyncio
async def test_cancelled_range_rolls_back(ledger, make_loop, store):
    ledger.tip = 12
    ledger.logs = [registered(2, 0, VOTER_X, 1), registered(3, 0, VOTER_Y, 1)]
    loop = make_loop(deployment_block=1, projector=FailingProjector(2, asyncio.CancelledError()))

    with pytest.raises(asyncio.CancelledError):
        await loop.catch_up_once()
    assert await store.get_recent_raw_events() == []
    assert (await store.get_cursor()).last_processed_block == 0


@pytest.mark.asyncio
async def test_rate_limited_fetch_recovers(ledger, make_loop, store, sleep):
    ledger.tip = 12
    ledger.logs = [registered(2, 0, VOTER_X, 1)]
    ledger.failures = [RateLimitedError("compute units per second")] * 3
    loop = make_loop(deployment_block=1, max_retries=8)

    result = await loop.catch_up_once()
    assert result.inserted == 1
    assert sleep.delays == [1.5, 3.0, 6.0]
    assert (await store.get_snapshot()).total_voters == 1
    assert (await store.get_cursor()).last_processed_block == 10


@pytest.mark.asyncio
async def test_exhausted_retries_abort_without_advancing(ledger, make_loop, store):
    ledger.tip = 12
    ledger.logs = [registered(2, 0, VOTER_X, 1)]
    ledger.failures = [RateLimitedError("429")] * 3
    loop = make_loop(deployment_block=1, max_retries=2)

    with pytest.raises(RateLimitedError):
        await loop.catch_up_once()
    assert (await store.get_cursor()).last_processed_block == 0
    assert await store.get_snapshot() is None

    # The next pass starts from the same block and counts the event once.
    await loop.catch_up_once()
    assert ledger.calls[-1] == (1, 10)
    assert (await store.get_snapshot()).total_voters == 1


@pytest.mark.asyncio
async def test_throttle_between_ranges(ledger, make_loop, sleep):
    ledger.tip = 32
    loop = make_loop(deployment_block=1, throttle=0.4)

    result = await loop.catch_up_once()
    assert len(result.ranges) == 3
    assert sleep.delays == [0.4, 0.4]


@pytest.mark.asyncio
async def test_overlapping_pass_is_skipped(ledger, make_loop):
    gate = asyncio.Event()
    ledger.gate = gate
    ledger.tip = 12
    loop = make_loop(deployment_block=1)

    first = asyncio.create_task(loop.catch_up_once())
    await asyncio.sleep(0)
    second = await loop.catch_up_once()
    assert second.skipped is True

    gate.set()
    result = await first
    assert result.skipped is False
    assert loop.state == LoopState.IDLE


@pytest.mark.asyncio
async def test_run_forever_survives_failed_passes(ledger, make_loop, store):
    stop = asyncio.Event()
    ticks = []

    def on_tip():
        ticks.append(1)
        if len(ticks) == 3:
            stop.set()

    ledger.tip = 12
    ledger.logs = [registered(2, 0, VOTER_X, 1)]
    ledger.on_tip = on_tip
    ledger.tip_failures = [SourceError("node down")]
    loop = make_loop(deployment_block=1, poll_interval=0.01)

    await asyncio.wait_for(loop.run_forever(stop), timeout=5)
    assert len(ticks) == 3
    assert loop.state == LoopState.STOPPED
    assert (await store.get_snapshot()).total_voters == 1


@pytest.mark.asyncio
async def test_run_forever_stops_on_invariant_violation(ledger, make_loop, store):
    ledger.tip = 12
    ledger.logs = [registered(2, 0, VOTER_X, 1)]
    loop = make_loop(
        deployment_block=1, poll_interval=0.01, projector=FailingProjector(1, InvariantViolation("corrupt"))
    )

    with pytest.raises(InvariantViolation):
        await asyncio.wait_for(loop.run_forever(asyncio.Event()), timeout=5)
    assert loop.state == LoopState.STOPPED
    assert (await store.get_cursor()).last_processed_block == 0


@pytest.mark.asyncio
async def test_rebuild_matches_incremental_projection(ledger, make_loop, store):
    ledger.tip = 40
    ledger.logs = [
        stage_changed(2, 0, 1),
        registered(3, 0, VOTER_X, 5),
        registered(3, 1, VOTER_Y, 2),
        stage_changed(12, 0, 2),
        vote_cast(14, 0, VOTER_X, 1, 5),
        vote_cast(25, 0, VOTER_Y, 0, 2),
        stage_changed(30, 0, 3),
        build_log(31, 0, "Finalized", {"winningProposalId": 1, "winningVoteCount": 5, "timestamp": 1}),
    ]
    loop = make_loop(deployment_block=1)
    await loop.catch_up_once()
    incremental = await read_model(store)

    assert await loop.rebuild_read_model() == 8
    assert await read_model(store) == incremental

    stats = await store.get_stats()
    assert stats.stage == 3
    assert stats.participation_rate == 1.0
    assert stats.winner_computed is True
    assert stats.winning_proposal_id == 1
    assert [p.vote_count for p in stats.proposals] == ["2", "5"]


@pytest.mark.asyncio
async def test_rebuild_redecodes_unknown_events(ledger, make_loop, store):
    stage_only = EventDecoder(DEFAULT_BALLOT_ABI[:1])
    full = EventDecoder()
    ledger.tip = 12
    ledger.logs = [
        RawLogEntry(
            block_number=4,
            block_hash=f"0x{4:064x}",
            transaction_hash=f"0x{4:064x}",
            log_index=0,
            topics=[full.topic_for("VoterRegistered"), "0x" + "00" * 12 + VOTER_X[2:]],
            data="0x" + encode(["uint256"], [7]).hex(),
        )
    ]
    loop = make_loop(deployment_block=1, decoder=stage_only)
    await loop.catch_up_once()

    [raw] = await store.get_recent_raw_events()
    assert raw.kind == EventKind.UNKNOWN
    assert raw.topics[0] == full.topic_for("VoterRegistered")
    assert (await store.get_snapshot()).total_voters == 0

    loop.decoder = full
    await loop.rebuild_read_model()
    assert (await store.get_snapshot()).total_voters == 1
    [voter] = await store.get_voters()
    assert voter.weight == "7"


@pytest.mark.asyncio
async def test_stats_participation_rate(ledger, make_loop, store):
    assert (await store.get_stats()).total_voters == 0

    ledger.tip = 12
    ledger.logs = [
        registered(2, 0, VOTER_X, 1),
        registered(2, 1, VOTER_Y, 1),
        registered(2, 2, "0x00000000000000000000000000000000000000cc", 1),
        vote_cast(5, 0, VOTER_X, 0, 1),
    ]
    await make_loop(deployment_block=1).catch_up_once()

    stats = await store.get_stats()
    assert stats.total_voters == 3
    assert stats.total_votes == 1
    assert stats.participation_rate == 0.3333
