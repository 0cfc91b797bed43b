import argparse
import asyncio
import json
import logging
import signal
import sys
from contextlib import asynccontextmanager
from typing import AsyncIterator, Tuple

from .adaptors.jsonrpc import JsonRpcLedger
from .adaptors.sqlite import SQLiteIndexStore, sqlite_store_factory
from .config import IndexerConfig
from .decoder import EventDecoder
from .errors import ConfigurationError, IndexerError, InvariantViolation
from .fetcher import LogFetcher
from .sync import SyncLoop

LOG_FORMAT = "%(asctime)s - [%(levelname)s] - %(name)s - %(message)s"


@asynccontextmanager
async def open_indexer(config: IndexerConfig) -> AsyncIterator[Tuple[SQLiteIndexStore, SyncLoop]]:
    """Wires the JSON-RPC source, the SQLite store and the sync loop from `config`."""
    decoder = EventDecoder.from_file(config.abi_path) if config.abi_path else EventDecoder()
    async with JsonRpcLedger(config.rpc_url, timeout=config.request_timeout) as ledger:
        async with sqlite_store_factory(config.db_path) as open_store:
            async with open_store(config.network_id, config.source_address) as store:
                fetcher = LogFetcher(
                    ledger,
                    max_range_width=config.max_range_width,
                    max_retries=config.max_retries,
                    backoff_base=config.backoff_base,
                    backoff_cap=config.backoff_cap,
                    timeout=config.request_timeout,
                )
                loop = SyncLoop(
                    store,
                    fetcher,
                    decoder,
                    confirmations=config.confirmations,
                    deployment_block=config.deployment_block,
                    initial_lookback=config.initial_lookback,
                    poll_interval=config.poll_interval,
                    throttle=config.throttle,
                )
                yield store, loop


async def run_command(args: argparse.Namespace, config: IndexerConfig):
    async with open_indexer(config) as (store, loop):
        if args.command == "run":
            stop_event = asyncio.Event()
            event_loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    event_loop.add_signal_handler(sig, stop_event.set)
                except NotImplementedError:
                    pass  # Windows
            await loop.run_forever(stop_event)
        elif args.command == "backfill":
            result = await loop.catch_up_once()
            print(result.model_dump_json(indent=2))
        elif args.command == "rebuild":
            replayed = await loop.rebuild_read_model()
            print(json.dumps({"replayed": replayed}))
        elif args.command == "stats":
            stats = await store.get_stats()
            print(stats.model_dump_json(indent=2))
        elif args.command == "events":
            events = await store.get_recent_raw_events(args.limit)
            print(json.dumps([e.model_dump(mode="json") for e in events], indent=2))
        elif args.command == "cursor":
            cursor = await store.get_cursor()
            print(cursor.model_dump_json(indent=2) if cursor else "null")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ballot-indexer", description="Mirror Ballot contract events into SQLite."
    )
    parser.add_argument("--env-file", default=None, help="Path to a .env file (default: ./.env)")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Catch up, then keep polling for new blocks")
    sub.add_parser("backfill", help="Run a single catch-up pass")
    sub.add_parser("rebuild", help="Rebuild the read model from recorded events")
    sub.add_parser("stats", help="Print ballot statistics")
    events = sub.add_parser("events", help="Print the most recent recorded events")
    events.add_argument("--limit", type=int, default=50)
    sub.add_parser("cursor", help="Print the sync cursor")
    return parser


def run(argv=None):
    args = build_parser().parse_args(argv)
    try:
        config = IndexerConfig.from_env(env_file=args.env_file)
    except ConfigurationError as e:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
        logging.critical(str(e))
        sys.exit(2)

    logging.basicConfig(level=config.log_level, format=LOG_FORMAT)
    try:
        asyncio.run(run_command(args, config))
    except InvariantViolation as e:
        logging.critical(f"Indexer stopped: {e}")
        sys.exit(3)
    except IndexerError as e:
        logging.error(f"Command failed: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
