import aiosqlite


async def create_schema(conn: aiosqlite.Connection):
    # Schema management is centralized here. The factory runs it once on the
    # write connection before any read connection is opened.
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_cursors (
            network_id INTEGER NOT NULL,
            source_address TEXT NOT NULL,
            last_processed_block INTEGER NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (network_id, source_address)
        )
    """
    )
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS raw_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            network_id INTEGER NOT NULL,
            source_address TEXT NOT NULL,
            block_number INTEGER NOT NULL,
            block_hash TEXT NOT NULL,
            transaction_hash TEXT NOT NULL,
            log_index INTEGER NOT NULL,
            event_name TEXT NOT NULL,
            args TEXT NOT NULL,
            topics TEXT NOT NULL,
            data TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
    """
    )
    # The unique index is the idempotency gate of the whole pipeline:
    # `insert_if_absent` relies on it instead of a check-then-insert.
    await conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_raw_events_identity
        ON raw_events (network_id, source_address, transaction_hash, log_index)
    """
    )
    await conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_raw_events_position
        ON raw_events (network_id, source_address, block_number, log_index)
    """
    )
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS ballot_snapshots (
            network_id INTEGER NOT NULL,
            source_address TEXT NOT NULL,
            stage INTEGER NOT NULL DEFAULT 0,
            total_voters INTEGER NOT NULL DEFAULT 0,
            total_votes INTEGER NOT NULL DEFAULT 0,
            winner_computed INTEGER NOT NULL DEFAULT 0,
            winning_proposal_id INTEGER NOT NULL DEFAULT 0,
            last_indexed_block INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (network_id, source_address)
        )
    """
    )
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS voters (
            network_id INTEGER NOT NULL,
            source_address TEXT NOT NULL,
            voter_address TEXT NOT NULL,
            weight TEXT NOT NULL,
            has_voted INTEGER NOT NULL DEFAULT 0,
            registered_at_block INTEGER,
            last_updated_block INTEGER NOT NULL,
            PRIMARY KEY (network_id, source_address, voter_address)
        )
    """
    )
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS votes (
            network_id INTEGER NOT NULL,
            source_address TEXT NOT NULL,
            voter_address TEXT NOT NULL,
            proposal_id INTEGER NOT NULL,
            weight TEXT NOT NULL,
            transaction_hash TEXT NOT NULL,
            block_number INTEGER NOT NULL,
            PRIMARY KEY (network_id, source_address, voter_address)
        )
    """
    )
    # vote_count is TEXT: cumulative weights are arbitrary-precision integers.
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS proposals (
            network_id INTEGER NOT NULL,
            source_address TEXT NOT NULL,
            proposal_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            vote_count TEXT NOT NULL DEFAULT '0',
            PRIMARY KEY (network_id, source_address, proposal_id)
        )
    """
    )
    await conn.commit()
