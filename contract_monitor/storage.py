import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .models import AddressCounters, Cursor

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

KEY_ADDRESS_COUNTS = "address_counts"
KEY_LAST_FETCHED_BLOCK = "last_fetched_block"
KEY_CONTRACT_CREATION_BLOCK = "contract_creation_block"
KEY_SCHEMA_VERSION = "schema_version"
KEY_FILTER_FAILED_TXS = "filter_failed_txs"


class Storage:
    def __init__(self, db_path: str):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(db_path)
        self.conn.row_factory = sqlite3.Row
        self._init_schema()

    def close(self) -> None:
        self.conn.close()

    def _init_schema(self) -> None:
        cur = self.conn.cursor()
        cur.executescript(
            """
            PRAGMA journal_mode=WAL;
            PRAGMA synchronous=NORMAL;

            CREATE TABLE IF NOT EXISTS system_state (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS counted_txs (
                tx_hash TEXT PRIMARY KEY,
                counted_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS dead_letters (
                tx_hash TEXT PRIMARY KEY,
                block_number INTEGER NOT NULL,
                reason TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 1,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            );
            """
        )
        self.conn.commit()

    def get_state(self, key: str) -> Optional[str]:
        cur = self.conn.execute("SELECT value FROM system_state WHERE key = ?", (key,))
        row = cur.fetchone()
        return row["value"] if row else None

    def _upsert_states(self, values: Dict[str, str]) -> None:
        now = int(time.time())
        self.conn.executemany(
            """
            INSERT INTO system_state(key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            [(k, v, now) for k, v in values.items()],
        )

    def get_known_txs(self, tx_hashes: Iterable[str]) -> Set[str]:
        unique_hashes = sorted({str(x).lower() for x in tx_hashes if x})
        if not unique_hashes:
            return set()

        found: Set[str] = set()
        chunk_size = 400
        for i in range(0, len(unique_hashes), chunk_size):
            chunk = unique_hashes[i : i + chunk_size]
            placeholders = ",".join("?" for _ in chunk)
            rows = self.conn.execute(
                f"SELECT tx_hash FROM counted_txs WHERE tx_hash IN ({placeholders})", chunk
            ).fetchall()
            found.update(str(r["tx_hash"]) for r in rows)
        return found

    def count_counted_txs(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) AS n FROM counted_txs").fetchone()
        return int(row["n"])

    def commit_snapshot(self, values: Dict[str, str], counted_hashes: Iterable[str]) -> None:
        """Write state keys and counted hashes in one transaction."""
        now = int(time.time())
        rows = [(str(x).lower(), now) for x in counted_hashes if x]
        with self.conn:
            self._upsert_states(values)
            if rows:
                self.conn.executemany(
                    "INSERT OR IGNORE INTO counted_txs(tx_hash, counted_at) VALUES (?, ?)",
                    rows,
                )
                self.conn.executemany(
                    "DELETE FROM dead_letters WHERE tx_hash = ?",
                    [(h,) for h, _ in rows],
                )

    def save_dead_letters(self, entries: List[Tuple[str, int, str]]) -> None:
        if not entries:
            return
        now = int(time.time())
        with self.conn:
            self.conn.executemany(
                """
                INSERT INTO dead_letters(tx_hash, block_number, reason, attempts, created_at, updated_at)
                VALUES (?, ?, ?, 1, ?, ?)
                ON CONFLICT(tx_hash) DO UPDATE SET
                    reason = excluded.reason,
                    attempts = dead_letters.attempts + 1,
                    updated_at = excluded.updated_at
                """,
                [(h.lower(), int(b), reason, now, now) for h, b, reason in entries],
            )

    def list_dead_letters(self, limit_n: int) -> List[Dict[str, object]]:
        # least-retried first, so entries that keep failing rotate to the back
        rows = self.conn.execute(
            """
            SELECT tx_hash, block_number, reason, attempts
            FROM dead_letters
            ORDER BY attempts ASC, updated_at ASC, block_number ASC, tx_hash ASC
            LIMIT ?
            """,
            (max(0, int(limit_n)),),
        ).fetchall()
        return [dict(r) for r in rows]

    def delete_dead_letters(self, tx_hashes: Iterable[str]) -> None:
        rows = [(str(x).lower(),) for x in tx_hashes if x]
        if not rows:
            return
        with self.conn:
            self.conn.executemany("DELETE FROM dead_letters WHERE tx_hash = ?", rows)

    def count_dead_letters(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) AS n FROM dead_letters").fetchone()
        return int(row["n"])

    def clear_aggregate(self) -> None:
        with self.conn:
            self.conn.execute("DELETE FROM counted_txs")
            self.conn.execute("DELETE FROM dead_letters")
            self.conn.execute(
                "DELETE FROM system_state WHERE key IN (?, ?)",
                (KEY_ADDRESS_COUNTS, KEY_LAST_FETCHED_BLOCK),
            )


def encode_counts(counters: Dict[str, AddressCounters]) -> str:
    return json.dumps({addr: c.to_dict() for addr, c in sorted(counters.items())})


def decode_counts(raw: Optional[str]) -> Dict[str, AddressCounters]:
    if not raw:
        return {}
    data = json.loads(raw)
    out: Dict[str, AddressCounters] = {}
    for addr, value in data.items():
        if isinstance(value, dict):
            out[addr.lower()] = AddressCounters(
                total=int(value.get("total", 0)), failed=int(value.get("failed", 0))
            )
        else:
            out[addr.lower()] = AddressCounters(total=int(value))
    return out


class StateStore:
    """Persisted aggregate: per-address counters plus the block cursor."""

    def __init__(self, storage: Storage, schema_version: int = SCHEMA_VERSION, filter_failed_txs: bool = False):
        self.storage = storage
        self.schema_version = schema_version
        self.filter_failed_txs = filter_failed_txs

    def _cursor_values(self, cursor: Cursor) -> Dict[str, str]:
        return {
            KEY_LAST_FETCHED_BLOCK: str(int(cursor.last_fetched_block)),
            KEY_CONTRACT_CREATION_BLOCK: str(int(cursor.contract_creation_block)),
            KEY_SCHEMA_VERSION: str(int(cursor.schema_version)),
            KEY_FILTER_FAILED_TXS: "1" if cursor.filter_failed_txs else "0",
        }

    def load(self) -> Tuple[Dict[str, AddressCounters], Cursor]:
        stored_version = self.storage.get_state(KEY_SCHEMA_VERSION)
        stored_filter = self.storage.get_state(KEY_FILTER_FAILED_TXS)
        if stored_version is None or int(stored_version) != self.schema_version:
            logger.info(
                "state schema version %s != %s, resetting aggregate", stored_version, self.schema_version
            )
            return self.reset()
        if stored_filter is not None and (stored_filter == "1") != self.filter_failed_txs:
            logger.info("failed-transaction filter changed, resetting aggregate")
            return self.reset()

        counters = decode_counts(self.storage.get_state(KEY_ADDRESS_COUNTS))
        cursor = Cursor(
            last_fetched_block=int(self.storage.get_state(KEY_LAST_FETCHED_BLOCK) or 0),
            contract_creation_block=int(self.storage.get_state(KEY_CONTRACT_CREATION_BLOCK) or 0),
            schema_version=self.schema_version,
            filter_failed_txs=self.filter_failed_txs,
        )
        return counters, cursor

    def save(
        self,
        counters: Dict[str, AddressCounters],
        cursor: Cursor,
        counted_hashes: Iterable[str] = (),
    ) -> None:
        values = self._cursor_values(cursor)
        values[KEY_ADDRESS_COUNTS] = encode_counts(counters)
        self.storage.commit_snapshot(values, counted_hashes)

    def reset(self) -> Tuple[Dict[str, AddressCounters], Cursor]:
        creation_block = int(self.storage.get_state(KEY_CONTRACT_CREATION_BLOCK) or 0)
        self.storage.clear_aggregate()
        cursor = Cursor(
            last_fetched_block=0,
            contract_creation_block=creation_block,
            schema_version=self.schema_version,
            filter_failed_txs=self.filter_failed_txs,
        )
        self.save({}, cursor)
        return {}, cursor
