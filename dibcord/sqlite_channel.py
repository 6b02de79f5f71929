"""
SQLite Substrate — Persistent Local Channel Store

A single SQLite file standing in for the messaging substrate, so tables
survive process restarts without a remote service.  It enforces the same
rules as any substrate: server-assigned increasing ids, the per-message
payload limit, and the bulk-delete age and count limits.

Tables:
    channels     - One row per channel (name is unique)
    messages     - Append-only message log (id, channel, label, payload, link)
    schema_meta  - Schema version and creator

Thread safety: uses sqlite3 check_same_thread=False with explicit serialization.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from dibcord.channel import (
    BULK_DELETE_MAX_AGE_DAYS,
    BULK_DELETE_MAX_IDS,
    MAX_PAYLOAD_CHARS,
    check_bulk_delete,
    check_payload,
)
from dibcord.types import Message, MessageNotFoundError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS channels (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    name        TEXT NOT NULL UNIQUE,
    created_at  REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    channel_id    INTEGER NOT NULL REFERENCES channels(id),
    label         TEXT NOT NULL,
    payload       TEXT,
    forward_link  TEXT,
    created_at    REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_channel ON messages(channel_id, id);

CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=str(row["id"]),
        label=row["label"],
        payload=row["payload"],
        forward_link=row["forward_link"],
        created_at=row["created_at"],
    )


class SqliteSubstrate:
    """
    SQLite-backed channel provider.

    Thread-safe via explicit lock shared by all channels of the file.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        wal_mode: bool = True,
        *,
        max_payload_chars: int = MAX_PAYLOAD_CHARS,
        bulk_delete_max_age_days: int = BULK_DELETE_MAX_AGE_DAYS,
        bulk_delete_max_ids: int = BULK_DELETE_MAX_IDS,
        clock: Optional[Callable[[], float]] = None,
    ):
        """Open (and create if needed) a substrate database.

        Args:
            db_path: SQLite database path (or ":memory:" for in-memory).
            wal_mode: Enable WAL journal mode for concurrent readers.
            clock: Epoch-seconds source for message timestamps.
        """
        self._db_path = db_path
        self._lock = threading.Lock()
        self.max_payload_chars = max_payload_chars
        self.bulk_delete_max_age_days = bulk_delete_max_age_days
        self.bulk_delete_max_ids = bulk_delete_max_ids
        self._clock = clock or time.time
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if wal_mode and db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(_SCHEMA_SQL)
        self._conn.execute(
            "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('schema_version', ?)",
            (str(SCHEMA_VERSION),),
        )
        self._conn.execute(
            "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('created_by', 'dibcord')",
        )
        self._conn.commit()
        logger.info(f"SqliteSubstrate initialized: {db_path}")

    @property
    def db_path(self) -> str:
        return self._db_path

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._lock:
            self._conn.close()

    # -- Channels ------------------------------------------------------------

    def get_or_create_channel(self, name: str) -> SqliteChannel:
        with self._lock:
            row = self._conn.execute(
                "SELECT id FROM channels WHERE name=?", (name,)
            ).fetchone()
            if row is None:
                cur = self._conn.execute(
                    "INSERT INTO channels (name, created_at) VALUES (?, ?)",
                    (name, self._clock()),
                )
                self._conn.commit()
                channel_id = cur.lastrowid
                logger.info("Created channel %s (id=%s)", name, channel_id)
            else:
                channel_id = row["id"]
        return SqliteChannel(self, channel_id, name)

    def list_channels(self) -> List[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT name FROM channels ORDER BY name"
            ).fetchall()
        return [r["name"] for r in rows]

    def count_messages(self, channel_name: Optional[str] = None) -> int:
        """Count stored messages, optionally for one channel."""
        with self._lock:
            if channel_name is None:
                row = self._conn.execute("SELECT COUNT(*) AS n FROM messages").fetchone()
            else:
                row = self._conn.execute(
                    "SELECT COUNT(*) AS n FROM messages m "
                    "JOIN channels c ON c.id = m.channel_id WHERE c.name=?",
                    (channel_name,),
                ).fetchone()
        return row["n"]


class SqliteChannel:
    """One channel of a SqliteSubstrate."""

    def __init__(self, substrate: SqliteSubstrate, channel_id: int, name: str):
        self._substrate = substrate
        self._channel_id = channel_id
        self.id = str(channel_id)
        self.name = name

    @property
    def _conn(self) -> sqlite3.Connection:
        return self._substrate._conn

    @property
    def _lock(self) -> threading.Lock:
        return self._substrate._lock

    def send_message(
        self, label: str, payload: Optional[str], forward_link: Optional[str] = None,
    ) -> Message:
        check_payload(payload, self._substrate.max_payload_chars)
        created_at = self._substrate._clock()
        with self._lock:
            cur = self._conn.execute(
                """INSERT INTO messages
                   (channel_id, label, payload, forward_link, created_at)
                   VALUES (?,?,?,?,?)""",
                (self._channel_id, label, payload, forward_link, created_at),
            )
            self._conn.commit()
        return Message(
            id=str(cur.lastrowid),
            label=label,
            payload=payload,
            forward_link=forward_link,
            created_at=created_at,
        )

    def fetch_message(self, message_id: str) -> Message:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM messages WHERE id=? AND channel_id=?",
                (message_id, self._channel_id),
            ).fetchone()
        if row is None:
            raise MessageNotFoundError(message_id)
        return _row_to_message(row)

    def fetch_recent(self, limit: int) -> List[Message]:
        if limit <= 0:
            return []
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM messages WHERE channel_id=? ORDER BY id DESC LIMIT ?",
                (self._channel_id, limit),
            ).fetchall()
        return [_row_to_message(r) for r in rows]

    def bulk_delete(self, message_ids: Iterable[str]) -> int:
        ids = list(dict.fromkeys(message_ids))
        with self._lock:
            known: List[Message] = []
            for mid in ids:
                row = self._conn.execute(
                    "SELECT * FROM messages WHERE id=? AND channel_id=?",
                    (mid, self._channel_id),
                ).fetchone()
                if row is not None:
                    known.append(_row_to_message(row))
            check_bulk_delete(
                known, len(ids), self._substrate._clock(),
                self._substrate.bulk_delete_max_age_days,
                self._substrate.bulk_delete_max_ids,
            )
            self._conn.executemany(
                "DELETE FROM messages WHERE id=?", [(m.id,) for m in known],
            )
            self._conn.commit()
        return len(known)

    def delete_message(self, message_id: str) -> None:
        with self._lock:
            cur = self._conn.execute(
                "DELETE FROM messages WHERE id=? AND channel_id=?",
                (message_id, self._channel_id),
            )
            self._conn.commit()
        if cur.rowcount == 0:
            raise MessageNotFoundError(message_id)
