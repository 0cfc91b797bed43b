from typing import AsyncIterator, Callable, AsyncContextManager, List
from contextlib import asynccontextmanager
import asyncio
import logging
import os
import shutil
import tempfile

import aiosqlite

from .handle import SQLiteIndexStore
from .schema import create_schema


@asynccontextmanager
async def sqlite_store_factory(
    db_path: str,
    *,
    cache_size_kib: int = -16384,
    pool_size: int = 4,
) -> AsyncIterator[Callable[[int, str], AsyncContextManager[SQLiteIndexStore]]]:
    """
    A factory for opening index stores backed by a SQLite database.
    Used as an async context manager, it yields an `open_store` function that
    binds a (network, source) pair to the shared connections. All connections
    are closed when the context exits.
    """
    if not db_path:
        raise ValueError("`db_path` must be provided.")

    temp_dir: str | None = None
    if db_path == ":memory:":
        # Backed by a throwaway file; readers need WAL snapshots, which shared-cache memory lacks.
        temp_dir = tempfile.mkdtemp(prefix="ballot_indexer_")
        db_connect_string = os.path.join(temp_dir, "index.db")
    else:
        db_connect_string = db_path
    read_connect_string = f"file:{db_connect_string}?mode=ro"

    write_conn: aiosqlite.Connection | None = None
    write_lock = asyncio.Lock()
    read_pool: asyncio.Queue = asyncio.Queue(maxsize=pool_size)
    read_conns: List[aiosqlite.Connection] = []
    init_lock = asyncio.Lock()

    async def _initialize_db_resources():
        """Opens the write connection, creates the schema, then fills the read pool."""
        nonlocal write_conn
        async with init_lock:
            if write_conn is not None:
                return
            conn = await aiosqlite.connect(db_connect_string)
            await conn.execute("PRAGMA journal_mode=WAL;")
            await conn.execute("PRAGMA synchronous = NORMAL;")
            await conn.execute(f"PRAGMA cache_size = {cache_size_kib};")
            await conn.execute("PRAGMA busy_timeout = 5000;")
            await create_schema(conn)

            for _ in range(pool_size):
                read_conn = await aiosqlite.connect(read_connect_string, uri=True)
                await read_conn.execute(f"PRAGMA cache_size = {cache_size_kib};")
                await read_conn.execute("PRAGMA busy_timeout = 5000;")
                read_conns.append(read_conn)
                await read_pool.put(read_conn)
            write_conn = conn
            logging.info(f"SQLite store ready at {db_path} (read pool={pool_size})")

    async def cleanup():
        """Closes all database connections and removes the file of a `:memory:` store."""
        connection_tasks = [conn.close() for conn in read_conns]
        if write_conn is not None:
            connection_tasks.append(write_conn.close())
        try:
            await asyncio.gather(*connection_tasks)
        finally:
            if temp_dir is not None:
                shutil.rmtree(temp_dir, ignore_errors=True)

    @asynccontextmanager
    async def open_store(network_id: int, source_address: str) -> AsyncIterator[SQLiteIndexStore]:
        await _initialize_db_resources()
        yield SQLiteIndexStore(
            network_id=network_id,
            source_address=source_address,
            write_conn=write_conn,
            write_lock=write_lock,
            read_pool=read_pool,
        )

    try:
        yield open_store
    finally:
        await cleanup()
