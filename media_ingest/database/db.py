"""
Catalog connection management.
"""
import sqlite3
import logging
import threading
from pathlib import Path
from typing import Optional

from ..exceptions import CheckpointWriteFailed
from .schema import init_schema

class DBManager:
    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        # Workers write checkpoints from their own threads; sqlite needs
        # those writes serialized.
        self._write_lock = threading.Lock()

    def connect(self) -> sqlite3.Connection:
        """
        Connects to the catalog and configures pragmas.
        An unopenable catalog means resume state cannot be kept.
        """
        if self._conn:
            return self._conn

        logging.info(f"Opening catalog: {self.db_path}")
        try:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA synchronous=FULL;")
            self._conn.execute("PRAGMA temp_store=MEMORY;")
            self._conn.execute("PRAGMA foreign_keys=ON;")

            init_schema(self._conn)
        except sqlite3.Error as e:
            raise CheckpointWriteFailed(f"Cannot open catalog {self.db_path}: {e}") from e

        return self._conn

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self.connect()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def write_lock(self) -> threading.Lock:
        """Returns the write lock for thread-safe catalog writes."""
        return self._write_lock
