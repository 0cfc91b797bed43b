"""
This module exports the building blocks of the indexer: the store factory,
the ledger source, the sync loop and the models they exchange.
"""
from .models import (
    BallotSnapshot,
    BallotStats,
    DecodedEvent,
    EventKind,
    PassResult,
    Proposal,
    RangeResult,
    RawEvent,
    RawLogEntry,
    SyncCursor,
    Vote,
    Voter,
)
from .errors import (
    ConfigurationError,
    CursorRegressionError,
    IndexerError,
    InvariantViolation,
    RateLimitedError,
    SourceError,
    SourceTimeoutError,
    TransientSourceError,
)
from .config import IndexerConfig
from .decoder import EventDecoder
from .fetcher import LogFetcher
from .projection import ProjectionEngine
from .sync import LoopState, SyncLoop
from .adaptors.sqlite import sqlite_store_factory
from .adaptors.jsonrpc import JsonRpcLedger

__all__ = [
    "BallotSnapshot", "BallotStats", "DecodedEvent", "EventKind", "PassResult", "Proposal",
    "RangeResult", "RawEvent", "RawLogEntry", "SyncCursor", "Vote", "Voter",
    "ConfigurationError", "CursorRegressionError", "IndexerError", "InvariantViolation",
    "RateLimitedError", "SourceError", "SourceTimeoutError", "TransientSourceError",
    "IndexerConfig", "EventDecoder", "LogFetcher", "ProjectionEngine", "LoopState", "SyncLoop",
    "sqlite_store_factory", "JsonRpcLedger",
]
