"""
This module defines the data models for the indexer using Pydantic.

`RawLogEntry` is what the ledger source hands over, `DecodedEvent` is what the
projection engine consumes, and the remaining models mirror the rows of the
raw event ledger, the sync cursor and the ballot read model.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List

from pydantic import BaseModel, Field


class EventKind(str, Enum):
    STAGE_CHANGED = "StageChanged"
    VOTER_REGISTERED = "VoterRegistered"
    VOTE_CAST = "VoteCast"
    FINALIZED = "Finalized"
    UNKNOWN = "UnknownEvent"

    @classmethod
    def from_name(cls, name: str | None) -> "EventKind":
        try:
            return cls(name)
        except ValueError:
            return cls.UNKNOWN


class RawLogEntry(BaseModel):
    """
    A single log entry as returned by the ledger source.

    Sources that decode on their side fill `event_name` and `args`. Others only
    provide `topics` and `data`, which the decoder resolves against the ABI.
    """
    block_number: int
    block_hash: str
    transaction_hash: str
    log_index: int
    address: str | None = None
    topics: List[str] = Field(default_factory=list)
    data: str = "0x"
    event_name: str | None = None
    args: Dict[str, Any] | List[Any] | None = None


class DecodedEvent(BaseModel):
    kind: EventKind
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class RawEvent(BaseModel):
    network_id: int
    source_address: str
    block_number: int
    block_hash: str
    transaction_hash: str
    log_index: int
    event_name: str
    args: Dict[str, Any] = Field(default_factory=dict)
    topics: List[str] = Field(default_factory=list)
    data: str = "0x"
    created_at: datetime | None = None

    @property
    def kind(self) -> EventKind:
        return EventKind.from_name(self.event_name)


class SyncCursor(BaseModel):
    network_id: int
    source_address: str
    last_processed_block: int
    updated_at: datetime


class BallotSnapshot(BaseModel):
    network_id: int
    source_address: str
    stage: int = 0
    total_voters: int = 0
    total_votes: int = 0
    winner_computed: bool = False
    winning_proposal_id: int = 0
    last_indexed_block: int = 0
    updated_at: datetime | None = None


class Voter(BaseModel):
    voter_address: str
    weight: str  # decimal string
    has_voted: bool = False
    registered_at_block: int | None = None
    last_updated_block: int


class Vote(BaseModel):
    voter_address: str
    proposal_id: int
    weight: str
    transaction_hash: str
    block_number: int


class Proposal(BaseModel):
    proposal_id: int
    name: str
    vote_count: str = "0"


class BallotStats(BaseModel):
    network_id: int
    source_address: str
    stage: int
    total_voters: int
    total_votes: int
    participation_rate: float
    winner_computed: bool
    winning_proposal_id: int
    proposals: List[Proposal]
    last_indexed_block: int


class RangeResult(BaseModel):
    from_block: int
    to_block: int
    fetched: int
    inserted: int


class PassResult(BaseModel):
    safe_tip: int | None = None
    ranges: List[RangeResult] = Field(default_factory=list)
    skipped: bool = False

    @property
    def inserted(self) -> int:
        return sum(r.inserted for r in self.ranges)
