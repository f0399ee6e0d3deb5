"""
Database manager for mint watcher state using DuckDB.

One database file per config profile holds two tables:
- dedup_state: per watched contract, the token IDs already alerted as minted/sold
- watchlist:   the watched contracts and their notification destinations

Connections are opened per operation and retried on file lock conflicts, so a
`mintwatch status` run can read while the watcher is writing.
"""

import duckdb
import json
import os
import logging
import threading
import time
import random
from typing import Dict, Any, List, Optional
from contextlib import contextmanager

logger = logging.getLogger(__name__)

DEDUP_SCHEMA_VERSION = 1


class DatabaseLockError(Exception):
    """Raised when database is locked by another process"""
    pass


class MintWatchDB:
    """Row-level access to the mint watcher tables with lock handling"""

    def __init__(self, database_path: str):
        self.database_path = database_path
        # duckdb connections are not shared across threads; serialize our own access
        self._lock = threading.RLock()

        directory = os.path.dirname(database_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        self.init_database()

        logger.debug(f"Initialized MintWatchDB at {database_path}")

    def is_database_lock_error(self, error: Exception) -> bool:
        """Check if error is a DuckDB lock conflict"""
        error_str = str(error).lower()
        return (
            "could not set lock on file" in error_str or
            "conflicting lock is held" in error_str or
            "database is locked" in error_str or
            "io error" in error_str and "lock" in error_str
        )

    @contextmanager
    def get_connection_with_retry(self, max_retries: int = 5, base_delay: float = 0.5):
        """Context manager for database connections with retry on lock conflicts"""
        with self._lock:
            conn = None
            for attempt in range(max_retries):
                try:
                    conn = duckdb.connect(self.database_path)
                    break
                except Exception as e:
                    if not self.is_database_lock_error(e):
                        raise
                    if attempt == max_retries - 1:
                        raise DatabaseLockError(f"Database locked after {max_retries} attempts: {e}")
                    # exponential backoff with jitter
                    delay = base_delay * (2 ** attempt) * (1 + random.uniform(-0.1, 0.1))
                    logger.warning(f"Database locked, retrying in {delay:.1f}s (attempt {attempt + 1}/{max_retries})")
                    time.sleep(delay)
            try:
                yield conn
            finally:
                conn.close()

    def init_database(self):
        """Create tables if they do not exist"""
        with self.get_connection_with_retry() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS dedup_state (
                    contract_name VARCHAR PRIMARY KEY,
                    schema_version INTEGER,
                    minted_ids VARCHAR,
                    sold_ids VARCHAR,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS watchlist (
                    name VARCHAR PRIMARY KEY,
                    contract_address VARCHAR NOT NULL,
                    mint_price VARCHAR NOT NULL,
                    payment_token VARCHAR NOT NULL,
                    payment_token_symbol VARCHAR NOT NULL,
                    destination_ids VARCHAR,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

    # dedup state

    def get_dedup_record(self, contract_name: str) -> Optional[Dict[str, Any]]:
        """Raw persisted dedup record; JSON columns are returned undecoded"""
        with self.get_connection_with_retry() as conn:
            row = conn.execute(
                "SELECT schema_version, minted_ids, sold_ids FROM dedup_state WHERE contract_name = ?",
                [contract_name]
            ).fetchone()

        if not row:
            return None
        return {"schema_version": row[0], "minted_ids": row[1], "sold_ids": row[2]}

    def save_dedup_record(self, contract_name: str, minted_ids: List[int], sold_ids: List[int]):
        """Replace the dedup record for one contract"""
        minted_json = json.dumps([str(token_id) for token_id in sorted(minted_ids)])
        sold_json = json.dumps([str(token_id) for token_id in sorted(sold_ids)])
        with self.get_connection_with_retry() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO dedup_state (contract_name, schema_version, minted_ids, sold_ids, updated_at)
                VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
            """, [contract_name, DEDUP_SCHEMA_VERSION, minted_json, sold_json])

    def delete_dedup_record(self, contract_name: Optional[str] = None):
        """Delete one contract's dedup record, or all of them"""
        with self.get_connection_with_retry() as conn:
            if contract_name is None:
                conn.execute("DELETE FROM dedup_state")
            else:
                conn.execute("DELETE FROM dedup_state WHERE contract_name = ?", [contract_name])

    # watchlist

    def get_watchlist_rows(self) -> List[Dict[str, Any]]:
        with self.get_connection_with_retry() as conn:
            rows = conn.execute("""
                SELECT name, contract_address, mint_price, payment_token, payment_token_symbol, destination_ids
                FROM watchlist ORDER BY created_at, name
            """).fetchall()
        return [self._watchlist_row_to_dict(row) for row in rows]

    def get_watchlist_row(self, name: str) -> Optional[Dict[str, Any]]:
        with self.get_connection_with_retry() as conn:
            row = conn.execute("""
                SELECT name, contract_address, mint_price, payment_token, payment_token_symbol, destination_ids
                FROM watchlist WHERE name = ?
            """, [name]).fetchone()
        return self._watchlist_row_to_dict(row) if row else None

    def upsert_watchlist_row(self, row: Dict[str, Any]):
        with self.get_connection_with_retry() as conn:
            existing = conn.execute("SELECT 1 FROM watchlist WHERE name = ?", [row["name"]]).fetchone()
            params = [
                row["contract_address"],
                row["mint_price"],
                row["payment_token"],
                row["payment_token_symbol"],
                json.dumps(row["destination_ids"]),
                row["name"],
            ]
            if existing:
                conn.execute("""
                    UPDATE watchlist
                    SET contract_address = ?, mint_price = ?, payment_token = ?, payment_token_symbol = ?,
                        destination_ids = ?, updated_at = CURRENT_TIMESTAMP
                    WHERE name = ?
                """, params)
            else:
                conn.execute("""
                    INSERT INTO watchlist
                    (contract_address, mint_price, payment_token, payment_token_symbol, destination_ids, name)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, params)

    def delete_watchlist_row(self, name: str) -> bool:
        with self.get_connection_with_retry() as conn:
            existing = conn.execute("SELECT 1 FROM watchlist WHERE name = ?", [name]).fetchone()
            if not existing:
                return False
            conn.execute("DELETE FROM watchlist WHERE name = ?", [name])
        return True

    def _watchlist_row_to_dict(self, row) -> Dict[str, Any]:
        try:
            destination_ids = json.loads(row[5]) if row[5] else []
        except ValueError:
            logger.warning(f"Corrupt destination list for watch entry {row[0]}; treating as empty")
            destination_ids = []
        return {
            "name": row[0],
            "contract_address": row[1],
            "mint_price": row[2],
            "payment_token": row[3],
            "payment_token_symbol": row[4],
            "destination_ids": destination_ids,
        }

    def get_statistics(self) -> Dict[str, Any]:
        """Row counts for the status command"""
        with self.get_connection_with_retry() as conn:
            watch_count = conn.execute("SELECT COUNT(*) FROM watchlist").fetchone()[0]
            dedup_count = conn.execute("SELECT COUNT(*) FROM dedup_state").fetchone()[0]
            last_flush = conn.execute("SELECT MAX(updated_at) FROM dedup_state").fetchone()[0]
        return {
            "watchlist_count": watch_count,
            "dedup_record_count": dedup_count,
            "last_flush": last_flush,
        }
