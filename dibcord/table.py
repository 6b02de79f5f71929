"""
Channel Table — CRUD over a chain-encoded channel

A ChannelTable owns a schema, a bound channel and a write-populated cache.

Lifecycle:
    uninitialized ──bind(channel)──▶ ready

Operations:
    insert(record)   — write a new chain, cache its head
    find(pk)         — scan the retrieval window for pk's head, rebuild it
    query(pred)      — rebuild every head in the window, keep matches
    update(record)   — delete(pk) then insert(record); not atomic
    delete(pk)       — bulk delete the chain, per-message fallback

The cache is never read back by find/query: lookups always scan the
substrate.  Entries are created on insert, dropped on delete, never evicted.
Duplicate primary keys are not rejected; find returns the most recent head.
"""

from __future__ import annotations

import copy
import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional

from dibcord.channel import ChannelStore
from dibcord.codec import (
    DEFAULT_CHUNK_SIZE,
    encode_record,
    head_prefix,
    reconstruct,
    remove_messages,
    write_chain,
)
from dibcord.types import (
    CacheEntry,
    DeleteResult,
    Message,
    ReconstructedRecord,
    TableNotReadyError,
    TableSchema,
)

logger = logging.getLogger(__name__)

DEFAULT_RETRIEVAL_WINDOW = 100

Predicate = Callable[[Dict[str, Any]], bool]


class ChannelTable:
    """A logical table stored as message chains in one channel."""

    def __init__(
        self,
        name: str,
        schema: TableSchema,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        retrieval_window: int = DEFAULT_RETRIEVAL_WINDOW,
    ):
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        if retrieval_window <= 0:
            raise ValueError(f"retrieval_window must be positive, got {retrieval_window}")
        self._name = name
        self._schema = schema
        self._chunk_size = chunk_size
        self._retrieval_window = retrieval_window
        self._channel: Optional[ChannelStore] = None
        self._cache: Dict[str, CacheEntry] = {}  # keyed by the pk as it appears in labels
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        state = "ready" if self.ready else "uninitialized"
        return f"ChannelTable({self._name!r}, {state})"

    # -- State ---------------------------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    @property
    def schema(self) -> TableSchema:
        return self._schema

    @property
    def chunk_size(self) -> int:
        return self._chunk_size

    @property
    def retrieval_window(self) -> int:
        return self._retrieval_window

    @property
    def ready(self) -> bool:
        return self._channel is not None

    @property
    def channel(self) -> ChannelStore:
        return self._require_channel()

    def bind(self, channel: ChannelStore) -> None:
        """Attach the channel holding this table's messages."""
        self._channel = channel
        logger.info("Table %s bound to channel %s (id=%s)", self._name, channel.name, channel.id)

    def _require_channel(self) -> ChannelStore:
        if self._channel is None:
            raise TableNotReadyError(self._name)
        return self._channel

    # -- Cache ---------------------------------------------------------------

    def cached(self, pk: Any) -> Optional[CacheEntry]:
        """Return the last written snapshot for *pk*, if any."""
        with self._lock:
            return self._cache.get(str(pk))

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    # -- Write operations ----------------------------------------------------

    def insert(self, record: Dict[str, Any]) -> Message:
        """
        Store *record* as a new chain and return its head message.

        Raises:
            TableNotReadyError: the table is not bound.
            MissingPrimaryKeyError: the record has no primary-key value.
            ChainWriteError: the substrate rejected a chunk.
        """
        channel = self._require_channel()
        pk = self._schema.key_of(record)
        text = encode_record(record)
        head, ids = write_chain(channel, pk, text, self._chunk_size)
        with self._lock:
            self._cache[str(pk)] = CacheEntry(
                head=head, data=copy.deepcopy(record), message_ids=frozenset(ids),
            )
        logger.debug("Inserted %r into %s (%d chunk(s))", pk, self._name, len(ids))
        return head

    def update(self, record: Dict[str, Any]) -> Message:
        """Replace the record with the same primary key (delete, then insert)."""
        self._require_channel()
        pk = self._schema.key_of(record)
        self.delete(pk)
        return self.insert(record)

    def delete(self, pk: Any) -> DeleteResult:
        """
        Remove *pk*'s chain.  An absent key yields a falsy result, not an error.

        A single bulk deletion is tried first; when the substrate refuses it
        every message is deleted individually and failures are reported in
        ``failed_ids`` rather than raised.
        """
        channel = self._require_channel()
        record = self.find(pk)
        if record is None:
            return DeleteResult(found=False)

        try:
            strategy, deleted, failed, bulk_error = remove_messages(
                channel, list(record.message_ids),
            )
        finally:
            with self._lock:
                self._cache.pop(str(pk), None)

        if failed:
            logger.warning(
                "Delete of %r in %s left %d orphaned chunk(s): %s",
                pk, self._name, len(failed), ", ".join(failed),
            )
        return DeleteResult(
            found=True,
            strategy=strategy,
            deleted_ids=tuple(deleted),
            failed_ids=tuple(failed),
            bulk_error=bulk_error,
        )

    # -- Read operations -----------------------------------------------------

    def recent_messages(self) -> List[Message]:
        """The retrieval window: most recent messages first."""
        return self._require_channel().fetch_recent(self._retrieval_window)

    def find(self, pk: Any) -> Optional[ReconstructedRecord]:
        """Locate *pk*'s head in the retrieval window and rebuild the record."""
        channel = self._require_channel()
        prefix = head_prefix(pk)
        head = next(
            (m for m in self.recent_messages() if m.label.startswith(prefix)), None,
        )
        if head is None:
            logger.debug("No head for %r in the last %d messages of %s",
                         pk, self._retrieval_window, self._name)
            return None
        return reconstruct(channel, head)

    def get(self, pk: Any) -> Optional[Dict[str, Any]]:
        """Like find, but return only the record data."""
        found = self.find(pk)
        return found.data if found is not None else None

    def query(self, predicate: Predicate) -> List[Dict[str, Any]]:
        """Return every record in the window satisfying *predicate*."""
        from dibcord.query import run_query
        return run_query(self, predicate)

    def insert_many(self, records: Iterable[Dict[str, Any]]) -> List[Message]:
        """Insert records one after another, stopping at the first failure."""
        return [self.insert(r) for r in records]
