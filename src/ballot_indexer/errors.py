"""
This module defines the exception hierarchy used across the indexer.

Source errors describe failures of the ledger source. Only the transient ones
(rate limiting, timeouts) are retried by the fetcher; the rest propagate so a
misconfigured endpoint surfaces instead of being retried forever.
Invariant violations are never retried: they stop the sync loop before the
read model can be corrupted.
"""


class IndexerError(Exception):
    """Base class for all indexer errors."""


class SourceError(IndexerError):
    """The ledger source failed and retrying will not help."""


class TransientSourceError(SourceError):
    """The ledger source failed but the same call may succeed later."""


class RateLimitedError(TransientSourceError):
    """The ledger source refused the call because of a rate limit."""


class SourceTimeoutError(TransientSourceError):
    """A call to the ledger source did not complete within its timeout."""


class InvariantViolation(IndexerError):
    """A correctness invariant was broken."""


class CursorRegressionError(InvariantViolation):
    def __init__(self, network_id: int, source_address: str, current: int, requested: int):
        super().__init__(
            f"Cursor for {network_id}:{source_address} cannot move backward "
            f"from {current} to {requested}"
        )
        self.network_id = network_id
        self.source_address = source_address
        self.current = current
        self.requested = requested


class ConfigurationError(InvariantViolation):
    """Required configuration is missing or invalid."""
