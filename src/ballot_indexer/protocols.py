"""
This module defines the protocols the sync loop is written against.

The ledger source and the store are both passed in explicitly, so the loop can
run against a JSON-RPC node and a SQLite file in production and against an
in-process fake in tests without any change to the loop itself.
"""
from typing import AsyncContextManager, List, Protocol

from .models import (
    BallotSnapshot,
    BallotStats,
    Proposal,
    RawEvent,
    RawLogEntry,
    SyncCursor,
    Vote,
    Voter,
)


class LedgerAccess(Protocol):
    """Read access to the ledger: the chain tip and the logs of one contract."""

    async def get_tip(self) -> int:
        ...

    async def get_logs(
        self, source_address: str, from_block: int, to_block: int
    ) -> List[RawLogEntry]:
        ...


class ReadModelWriter(Protocol):
    """
    The read-model operations the projection engine needs. Every call runs
    inside the transaction of the range being processed.
    """
    network_id: int
    source_address: str

    async def get_snapshot(self) -> BallotSnapshot | None:
        ...

    async def save_snapshot(self, snapshot: BallotSnapshot):
        ...

    async def get_voter(self, voter_address: str) -> Voter | None:
        ...

    async def upsert_voter(self, voter: Voter):
        ...

    async def upsert_vote(self, vote: Vote):
        ...

    async def get_proposal(self, proposal_id: int) -> Proposal | None:
        ...

    async def upsert_proposal(self, proposal: Proposal):
        ...


class StoreHandle(ReadModelWriter, Protocol):
    """A write handle bound to one open transaction."""

    async def get_or_init_cursor(self, default_block: int) -> int:
        ...

    async def advance_cursor(self, new_block: int):
        ...

    async def insert_if_absent(self, event: RawEvent) -> bool:
        ...

    async def list_raw_events(self) -> List[RawEvent]:
        ...

    async def clear_read_model(self):
        ...


class IndexStore(Protocol):
    """
    The store for one (network, source) pair: a transactional write side used
    by the sync loop and read-only queries for everything else.
    """
    network_id: int
    source_address: str

    def transaction(self) -> AsyncContextManager[StoreHandle]:
        ...

    async def get_cursor(self) -> SyncCursor | None:
        ...

    async def get_snapshot(self) -> BallotSnapshot | None:
        ...

    async def get_proposals(self) -> List[Proposal]:
        ...

    async def get_voters(self) -> List[Voter]:
        ...

    async def get_recent_raw_events(self, limit: int = 50) -> List[RawEvent]:
        ...

    async def get_stats(self) -> BallotStats:
        ...
