from .factory import sqlite_store_factory
from .handle import SQLiteHandle, SQLiteIndexStore

__all__ = ["sqlite_store_factory", "SQLiteHandle", "SQLiteIndexStore"]
