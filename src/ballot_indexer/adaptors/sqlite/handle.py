"""
This module provides the SQLite implementation of the store protocols. It is
responsible for all direct database interactions: the sync cursor, the raw
event ledger and the ballot read model.

Writes go through a single dedicated connection, one transaction per block
range, so a range is either fully recorded, projected and cursor-committed or
not visible at all. Reads use a pool of read-only connections and therefore
never observe a range that is still being processed.
"""
from typing import AsyncIterator, List
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import asyncio
import json
import logging

import aiosqlite
import pydantic_core

from ...errors import CursorRegressionError
from ...models import (
    BallotSnapshot,
    BallotStats,
    Proposal,
    RawEvent,
    SyncCursor,
    Vote,
    Voter,
)
from ...protocols import IndexStore, StoreHandle

DEFAULT_EVENT_LIMIT = 50
MAX_EVENT_LIMIT = 200

_RAW_EVENT_COLUMNS = (
    "network_id, source_address, block_number, block_hash, transaction_hash, "
    "log_index, event_name, args, topics, data, created_at"
)
_SNAPSHOT_COLUMNS = (
    "network_id, source_address, stage, total_voters, total_votes, "
    "winner_computed, winning_proposal_id, last_indexed_block, updated_at"
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_raw_event(row) -> RawEvent:
    (
        network_id,
        source_address,
        block_number,
        block_hash,
        transaction_hash,
        log_index,
        event_name,
        args_json,
        topics_json,
        data,
        created_at,
    ) = row
    return RawEvent(
        network_id=network_id,
        source_address=source_address,
        block_number=block_number,
        block_hash=block_hash,
        transaction_hash=transaction_hash,
        log_index=log_index,
        event_name=event_name,
        args=json.loads(args_json),
        topics=json.loads(topics_json),
        data=data,
        created_at=datetime.fromisoformat(created_at),
    )


def _row_to_snapshot(row) -> BallotSnapshot:
    (
        network_id,
        source_address,
        stage,
        total_voters,
        total_votes,
        winner_computed,
        winning_proposal_id,
        last_indexed_block,
        updated_at,
    ) = row
    return BallotSnapshot(
        network_id=network_id,
        source_address=source_address,
        stage=stage,
        total_voters=total_voters,
        total_votes=total_votes,
        winner_computed=bool(winner_computed),
        winning_proposal_id=winning_proposal_id,
        last_indexed_block=last_indexed_block,
        updated_at=datetime.fromisoformat(updated_at),
    )


def _row_to_voter(row) -> Voter:
    voter_address, weight, has_voted, registered_at_block, last_updated_block = row
    return Voter(
        voter_address=voter_address,
        weight=weight,
        has_voted=bool(has_voted),
        registered_at_block=registered_at_block,
        last_updated_block=last_updated_block,
    )


class SQLiteHandle(StoreHandle):
    """
    Encapsulates the SQL for one (network, source) pair on a given connection.

    The handle never commits: the caller owns the transaction boundary.
    """

    def __init__(self, conn: aiosqlite.Connection, network_id: int, source_address: str):
        self.conn = conn
        self.network_id = network_id
        self.source_address = source_address

    @property
    def _key(self):
        return (self.network_id, self.source_address)

    # -- cursor -------------------------------------------------------------

    async def get_or_init_cursor(self, default_block: int) -> int:
        """Creates the cursor at `default_block` if absent; never overwrites an existing one."""
        await self.conn.execute(
            "INSERT INTO sync_cursors (network_id, source_address, last_processed_block, updated_at) "
            "VALUES (?, ?, ?, ?) ON CONFLICT (network_id, source_address) DO NOTHING",
            (*self._key, default_block, _now()),
        )
        async with self.conn.execute(
            "SELECT last_processed_block FROM sync_cursors WHERE network_id = ? AND source_address = ?",
            self._key,
        ) as cursor:
            row = await cursor.fetchone()
        return row[0]

    async def advance_cursor(self, new_block: int):
        async with self.conn.execute(
            "SELECT last_processed_block FROM sync_cursors WHERE network_id = ? AND source_address = ?",
            self._key,
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            await self.get_or_init_cursor(new_block)
            return
        current = row[0]
        if new_block < current:
            raise CursorRegressionError(self.network_id, self.source_address, current, new_block)
        await self.conn.execute(
            "UPDATE sync_cursors SET last_processed_block = ?, updated_at = ? "
            "WHERE network_id = ? AND source_address = ?",
            (new_block, _now(), *self._key),
        )

    async def get_cursor(self) -> SyncCursor | None:
        async with self.conn.execute(
            "SELECT network_id, source_address, last_processed_block, updated_at "
            "FROM sync_cursors WHERE network_id = ? AND source_address = ?",
            self._key,
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        network_id, source_address, last_processed_block, updated_at = row
        return SyncCursor(
            network_id=network_id,
            source_address=source_address,
            last_processed_block=last_processed_block,
            updated_at=datetime.fromisoformat(updated_at),
        )

    # -- raw event ledger ---------------------------------------------------

    async def insert_if_absent(self, event: RawEvent) -> bool:
        """
        Appends a raw event unless its (network, source, tx, log index) key is
        already present. Returns True only when a row was actually written.
        """
        cursor = await self.conn.execute(
            f"INSERT INTO raw_events ({_RAW_EVENT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT (network_id, source_address, transaction_hash, log_index) DO NOTHING",
            (
                event.network_id,
                event.source_address,
                event.block_number,
                event.block_hash,
                event.transaction_hash,
                event.log_index,
                event.event_name,
                json.dumps(event.args),
                json.dumps(event.topics),
                event.data,
                (event.created_at or datetime.now(timezone.utc)).isoformat(),
            ),
        )
        inserted = cursor.rowcount == 1
        await cursor.close()
        return inserted

    async def list_raw_events(self) -> List[RawEvent]:
        """All raw events of the pair in ledger order."""
        async with self.conn.execute(
            f"SELECT {_RAW_EVENT_COLUMNS} FROM raw_events WHERE network_id = ? AND source_address = ? "
            "ORDER BY block_number, log_index",
            self._key,
        ) as cursor:
            rows = await cursor.fetchall()
        events = []
        for row in rows:
            try:
                events.append(_row_to_raw_event(row))
            except (json.JSONDecodeError, pydantic_core.ValidationError, ValueError) as e:
                logging.warning(f"Skipping invalid raw event row for {self.network_id}:{self.source_address}: {e}")
        return events

    async def get_recent_raw_events(self, limit: int = DEFAULT_EVENT_LIMIT) -> List[RawEvent]:
        async with self.conn.execute(
            f"SELECT {_RAW_EVENT_COLUMNS} FROM raw_events WHERE network_id = ? AND source_address = ? "
            "ORDER BY block_number DESC, log_index DESC LIMIT ?",
            (*self._key, limit),
        ) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_raw_event(row) for row in rows]

    # -- read model ---------------------------------------------------------

    async def get_snapshot(self) -> BallotSnapshot | None:
        async with self.conn.execute(
            f"SELECT {_SNAPSHOT_COLUMNS} FROM ballot_snapshots WHERE network_id = ? AND source_address = ?",
            self._key,
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_snapshot(row) if row else None

    async def save_snapshot(self, snapshot: BallotSnapshot):
        await self.conn.execute(
            f"INSERT INTO ballot_snapshots ({_SNAPSHOT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT (network_id, source_address) DO UPDATE SET "
            "stage = excluded.stage, total_voters = excluded.total_voters, "
            "total_votes = excluded.total_votes, winner_computed = excluded.winner_computed, "
            "winning_proposal_id = excluded.winning_proposal_id, "
            "last_indexed_block = excluded.last_indexed_block, updated_at = excluded.updated_at",
            (
                *self._key,
                snapshot.stage,
                snapshot.total_voters,
                snapshot.total_votes,
                int(snapshot.winner_computed),
                snapshot.winning_proposal_id,
                snapshot.last_indexed_block,
                _now(),
            ),
        )

    async def get_voter(self, voter_address: str) -> Voter | None:
        async with self.conn.execute(
            "SELECT voter_address, weight, has_voted, registered_at_block, last_updated_block "
            "FROM voters WHERE network_id = ? AND source_address = ? AND voter_address = ?",
            (*self._key, voter_address),
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_voter(row) if row else None

    async def get_voters(self) -> List[Voter]:
        async with self.conn.execute(
            "SELECT voter_address, weight, has_voted, registered_at_block, last_updated_block "
            "FROM voters WHERE network_id = ? AND source_address = ? ORDER BY voter_address",
            self._key,
        ) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_voter(row) for row in rows]

    async def upsert_voter(self, voter: Voter):
        await self.conn.execute(
            "INSERT INTO voters (network_id, source_address, voter_address, weight, has_voted, "
            "registered_at_block, last_updated_block) VALUES (?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT (network_id, source_address, voter_address) DO UPDATE SET "
            "weight = excluded.weight, has_voted = excluded.has_voted, "
            "registered_at_block = excluded.registered_at_block, "
            "last_updated_block = excluded.last_updated_block",
            (
                *self._key,
                voter.voter_address,
                voter.weight,
                int(voter.has_voted),
                voter.registered_at_block,
                voter.last_updated_block,
            ),
        )

    async def get_vote(self, voter_address: str) -> Vote | None:
        async with self.conn.execute(
            "SELECT voter_address, proposal_id, weight, transaction_hash, block_number "
            "FROM votes WHERE network_id = ? AND source_address = ? AND voter_address = ?",
            (*self._key, voter_address),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        voter_address, proposal_id, weight, transaction_hash, block_number = row
        return Vote(
            voter_address=voter_address,
            proposal_id=proposal_id,
            weight=weight,
            transaction_hash=transaction_hash,
            block_number=block_number,
        )

    async def upsert_vote(self, vote: Vote):
        await self.conn.execute(
            "INSERT INTO votes (network_id, source_address, voter_address, proposal_id, weight, "
            "transaction_hash, block_number) VALUES (?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT (network_id, source_address, voter_address) DO UPDATE SET "
            "proposal_id = excluded.proposal_id, weight = excluded.weight, "
            "transaction_hash = excluded.transaction_hash, block_number = excluded.block_number",
            (
                *self._key,
                vote.voter_address,
                vote.proposal_id,
                vote.weight,
                vote.transaction_hash,
                vote.block_number,
            ),
        )

    async def get_proposal(self, proposal_id: int) -> Proposal | None:
        async with self.conn.execute(
            "SELECT proposal_id, name, vote_count FROM proposals "
            "WHERE network_id = ? AND source_address = ? AND proposal_id = ?",
            (*self._key, proposal_id),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return Proposal(proposal_id=row[0], name=row[1], vote_count=row[2])

    async def get_proposals(self) -> List[Proposal]:
        async with self.conn.execute(
            "SELECT proposal_id, name, vote_count FROM proposals "
            "WHERE network_id = ? AND source_address = ? ORDER BY proposal_id",
            self._key,
        ) as cursor:
            rows = await cursor.fetchall()
        return [Proposal(proposal_id=r[0], name=r[1], vote_count=r[2]) for r in rows]

    async def upsert_proposal(self, proposal: Proposal):
        await self.conn.execute(
            "INSERT INTO proposals (network_id, source_address, proposal_id, name, vote_count) "
            "VALUES (?, ?, ?, ?, ?) ON CONFLICT (network_id, source_address, proposal_id) "
            "DO UPDATE SET name = excluded.name, vote_count = excluded.vote_count",
            (*self._key, proposal.proposal_id, proposal.name, proposal.vote_count),
        )

    async def clear_read_model(self):
        """Deletes the derived rows of the pair. Raw events and the cursor are kept."""
        for table in ("ballot_snapshots", "voters", "votes", "proposals"):
            await self.conn.execute(
                f"DELETE FROM {table} WHERE network_id = ? AND source_address = ?",
                self._key,
            )


class SQLiteIndexStore(IndexStore):
    """
    The store for one (network, source) pair, using the shared dedicated write
    connection for transactions and a pool of read connections for queries.
    """

    def __init__(
        self,
        network_id: int,
        source_address: str,
        write_conn: aiosqlite.Connection,
        write_lock: asyncio.Lock,
        read_pool: asyncio.Queue,
    ):
        self.network_id = network_id
        self.source_address = source_address.lower()
        self.write_conn = write_conn
        self.write_lock = write_lock
        self.read_pool = read_pool

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SQLiteHandle]:
        """
        Opens a write transaction on the dedicated write connection. It commits
        on successful exit and rolls back on any error, including cancellation.
        """
        async with self.write_lock:
            await self.write_conn.execute("BEGIN IMMEDIATE")
            handle = SQLiteHandle(self.write_conn, self.network_id, self.source_address)
            try:
                yield handle
                await self.write_conn.commit()
            except BaseException:
                await self.write_conn.rollback()
                raise

    @asynccontextmanager
    async def _read_handle(self) -> AsyncIterator[SQLiteHandle]:
        """Provides a handle with a connection from the read pool."""
        conn = await self.read_pool.get()
        try:
            yield SQLiteHandle(conn, self.network_id, self.source_address)
        finally:
            await self.read_pool.put(conn)

    @asynccontextmanager
    async def _read_transaction(self) -> AsyncIterator[SQLiteHandle]:
        """A pooled read handle whose queries all see the same snapshot."""
        conn = await self.read_pool.get()
        try:
            await conn.execute("BEGIN")
            try:
                yield SQLiteHandle(conn, self.network_id, self.source_address)
                await conn.commit()
            except BaseException:
                await conn.rollback()
                raise
        finally:
            await self.read_pool.put(conn)

    async def get_cursor(self) -> SyncCursor | None:
        async with self._read_handle() as handle:
            return await handle.get_cursor()

    async def get_snapshot(self) -> BallotSnapshot | None:
        async with self._read_handle() as handle:
            return await handle.get_snapshot()

    async def get_proposals(self) -> List[Proposal]:
        async with self._read_handle() as handle:
            return await handle.get_proposals()

    async def get_voters(self) -> List[Voter]:
        async with self._read_handle() as handle:
            return await handle.get_voters()

    async def get_vote(self, voter_address: str) -> Vote | None:
        async with self._read_handle() as handle:
            return await handle.get_vote(voter_address.lower())

    async def get_recent_raw_events(self, limit: int = DEFAULT_EVENT_LIMIT) -> List[RawEvent]:
        """Most recent raw events first. The limit is clamped to 1..200."""
        limit = max(1, min(limit, MAX_EVENT_LIMIT))
        async with self._read_handle() as handle:
            return await handle.get_recent_raw_events(limit)

    async def get_stats(self) -> BallotStats:
        async with self._read_transaction() as handle:
            snapshot = await handle.get_snapshot()
            proposals = await handle.get_proposals()
        if snapshot is None:
            # Nothing indexed yet.
            snapshot = BallotSnapshot(network_id=self.network_id, source_address=self.source_address)
        participation_rate = (
            round(snapshot.total_votes / snapshot.total_voters, 4)
            if snapshot.total_voters > 0
            else 0.0
        )
        return BallotStats(
            network_id=self.network_id,
            source_address=self.source_address,
            stage=snapshot.stage,
            total_voters=snapshot.total_voters,
            total_votes=snapshot.total_votes,
            participation_rate=participation_rate,
            winner_computed=snapshot.winner_computed,
            winning_proposal_id=snapshot.winning_proposal_id,
            proposals=proposals,
            last_indexed_block=snapshot.last_indexed_block,
        )
