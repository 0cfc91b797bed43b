"""
This module folds decoded events into the ballot read model.

Each event kind maps to one fixed recipe in `ProjectionEngine._handlers`. The
engine runs inside the transaction of the range being processed and only for
events the raw event ledger reported as newly inserted, so every event is
counted exactly once. Totals are read, changed and written back within that
transaction; cumulative vote weights are arbitrary-precision integers kept as
decimal strings.
"""
from typing import Any, Awaitable, Callable, Dict
import logging

from .decoder import POSITIONAL_KEY
from .models import BallotSnapshot, DecodedEvent, EventKind, Proposal, Vote, Voter
from .protocols import ReadModelWriter

# Largest value an SQLite INTEGER column can hold.
MAX_SQL_INTEGER = 2 ** 63 - 1


def get_arg(args: Dict[str, Any], name: str, position: int) -> Any:
    """Reads an event argument by name, falling back to its position."""
    value = args.get(name)
    if value is not None:
        return value
    positional = args.get(POSITIONAL_KEY)
    if isinstance(positional, list) and position < len(positional):
        return positional[position]
    return None


def as_int(value: Any) -> int | None:
    """Parses a decimal or 0x-hex string (or an int) without going through float."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    try:
        if text[:2].lower() == "0x":
            return int(text, 16)
        return int(text)
    except ValueError:
        return None


def _as_sql_int(value: Any) -> int | None:
    number = as_int(value)
    if number is None or not 0 <= number <= MAX_SQL_INTEGER:
        return None
    return number


Handler = Callable[[ReadModelWriter, BallotSnapshot, Dict[str, Any], int, str], Awaitable[None]]


class ProjectionEngine:
    """
    Applies decoded events to the read model.

    `count_duplicate_registrations` restores the behaviour of counting every
    registration event towards `total_voters`; by default a voter is counted
    once, when its first registration is seen.
    """

    def __init__(self, count_duplicate_registrations: bool = False):
        self.count_duplicate_registrations = count_duplicate_registrations
        self._handlers: Dict[EventKind, Handler] = {
            EventKind.STAGE_CHANGED: self._on_stage_changed,
            EventKind.VOTER_REGISTERED: self._on_voter_registered,
            EventKind.VOTE_CAST: self._on_vote_cast,
            EventKind.FINALIZED: self._on_finalized,
        }

    async def apply(
        self,
        writer: ReadModelWriter,
        event: DecodedEvent,
        block_number: int,
        transaction_hash: str,
    ) -> bool:
        """
        Applies one event. The snapshot is created on first use and its
        `last_indexed_block` moves to `block_number` whatever the kind.
        Returns True when a recipe ran, False for unknown kinds.
        """
        snapshot = await writer.get_snapshot()
        if snapshot is None:
            snapshot = BallotSnapshot(network_id=writer.network_id, source_address=writer.source_address)
        snapshot.last_indexed_block = block_number

        handler = self._handlers.get(event.kind)
        if handler is not None:
            await handler(writer, snapshot, event.args, block_number, transaction_hash)
        await writer.save_snapshot(snapshot)
        return handler is not None

    async def _on_stage_changed(self, writer, snapshot, args, block_number, transaction_hash):
        stage = _as_sql_int(get_arg(args, "newStage", 0))
        if stage is None:
            logging.warning(f"StageChanged in {transaction_hash} has no usable newStage: {args}")
            return
        snapshot.stage = stage

    async def _on_voter_registered(self, writer, snapshot, args, block_number, transaction_hash):
        voter_address = get_arg(args, "voter", 0)
        if not voter_address:
            logging.warning(f"VoterRegistered in {transaction_hash} has no voter: {args}")
            return
        voter_address = str(voter_address).lower()
        weight = as_int(get_arg(args, "weight", 1))
        if weight is None:
            weight = 1

        existing = await writer.get_voter(voter_address)
        first_registration = existing is None or existing.registered_at_block is None
        await writer.upsert_voter(
            Voter(
                voter_address=voter_address,
                weight=str(weight),
                has_voted=existing.has_voted if existing else False,
                registered_at_block=block_number,
                last_updated_block=block_number,
            )
        )
        if first_registration or self.count_duplicate_registrations:
            snapshot.total_voters += 1
        else:
            logging.warning(f"Voter {voter_address} registered again in {transaction_hash}; not recounted")

    async def _on_vote_cast(self, writer, snapshot, args, block_number, transaction_hash):
        voter_address = get_arg(args, "voter", 0)
        proposal_id = _as_sql_int(get_arg(args, "proposalId", 1))
        if not voter_address or proposal_id is None:
            logging.warning(f"VoteCast in {transaction_hash} has no usable voter/proposalId: {args}")
            return
        voter_address = str(voter_address).lower()
        weight = as_int(get_arg(args, "weight", 2))

        await writer.upsert_vote(
            Vote(
                voter_address=voter_address,
                proposal_id=proposal_id,
                weight=str(weight or 0),
                transaction_hash=transaction_hash,
                block_number=block_number,
            )
        )

        voter = await writer.get_voter(voter_address)
        if voter is None:
            # Vote seen before (or without) its registration.
            voter = Voter(
                voter_address=voter_address,
                weight=str(weight if weight is not None else 1),
                registered_at_block=None,
                last_updated_block=block_number,
            )
        voter.has_voted = True
        voter.last_updated_block = block_number
        await writer.upsert_voter(voter)

        proposal = await writer.get_proposal(proposal_id)
        if proposal is None:
            proposal = Proposal(proposal_id=proposal_id, name=f"proposal-{proposal_id}")
        proposal.vote_count = str(int(proposal.vote_count) + (weight or 0))
        await writer.upsert_proposal(proposal)

        snapshot.total_votes += 1

    async def _on_finalized(self, writer, snapshot, args, block_number, transaction_hash):
        winning_proposal_id = _as_sql_int(get_arg(args, "winningProposalId", 0))
        if winning_proposal_id is None:
            logging.warning(f"Finalized in {transaction_hash} has no usable winningProposalId: {args}")
            return
        snapshot.winner_computed = True
        snapshot.winning_proposal_id = winning_proposal_id
