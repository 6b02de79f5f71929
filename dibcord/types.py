"""
Data Model — Schemas, Messages, Cache Entries, Errors

Defines the table schema, the substrate message shape, reconstruction and
delete results, and the error taxonomy shared by every layer.

A record is a plain dict; its identity is the value of the schema's
primary-key column.  A record is stored as a chain of messages whose labels
read ``Row ID: <pk> | Chunk <i> of <n>``.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Literal, Optional, Tuple

DeleteStrategy = Literal["none", "bulk", "individual"]


def _now_epoch() -> float:
    """Current wall time in epoch seconds."""
    return time.time()


def _is_empty_key(value: Any) -> bool:
    """True when a primary-key value counts as absent."""
    return value is None or value == ""


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class DibcordError(Exception):
    """Base class for all dibcord errors."""


class TableNotReadyError(DibcordError):
    """Raised when a record operation runs before the table is bound."""

    def __init__(self, table_name: str):
        self.table_name = table_name
        super().__init__(
            f'Table "{table_name}" has not been initialized. '
            "Link it to a database first."
        )


class MissingPrimaryKeyError(DibcordError):
    """Raised when a record lacks a value for its primary-key column."""

    def __init__(self, primary_key: str):
        self.primary_key = primary_key
        super().__init__(f"Data is missing primary key field: '{primary_key}'")


class SchemaError(DibcordError):
    """Raised when a table schema is inconsistent."""


class QueryError(DibcordError):
    """Raised when a query condition cannot be parsed."""


class ChannelError(DibcordError):
    """Base class for substrate (channel store) failures."""


class MessageNotFoundError(ChannelError):
    """Raised when a message id does not exist in the channel."""

    def __init__(self, message_id: str):
        self.message_id = message_id
        super().__init__(f"Unknown message: {message_id!r}")


class PayloadTooLargeError(ChannelError):
    """Raised when a payload exceeds the substrate's per-message limit."""

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"Payload of {size} chars exceeds limit of {limit}")


class BulkDeleteRejected(ChannelError):
    """Raised when the substrate refuses a bulk deletion (age or count)."""


class RateLimitExceeded(ChannelError):
    """Raised when a rate limit is exceeded."""

    def __init__(self, retry_after_ms: int, message: str):
        self.retry_after_ms = retry_after_ms
        super().__init__(message)


class ChainWriteError(ChannelError):
    """Raised when a multi-message write fails part way.

    ``orphan_ids`` lists messages created before the failure that could not
    be removed again.
    """

    def __init__(self, primary_key: Any, cause: Exception, orphan_ids=()):
        self.primary_key = primary_key
        self.cause = cause
        self.orphan_ids: Tuple[str, ...] = tuple(orphan_ids)
        super().__init__(
            f"Chain write for {primary_key!r} failed: {cause}"
            + (f" ({len(self.orphan_ids)} orphaned chunk(s))" if self.orphan_ids else "")
        )


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TableSchema:
    """Ordered column names plus the primary-key column."""

    columns: Tuple[str, ...]
    primary_key: str

    def __post_init__(self):
        """Coerce columns to a tuple and check the primary key is one of them."""
        cols = tuple(self.columns)
        object.__setattr__(self, "columns", cols)
        if not self.primary_key:
            raise SchemaError("Schema needs a primary key column")
        if len(set(cols)) != len(cols):
            raise SchemaError(f"Duplicate column names in {cols!r}")
        if self.primary_key not in cols:
            raise SchemaError(
                f"Primary key {self.primary_key!r} is not a column of {cols!r}"
            )

    def key_of(self, record: Dict[str, Any]) -> Any:
        """Return the primary-key value of *record*.

        Raises:
            MissingPrimaryKeyError: the value is absent, None or "".
            SchemaError: the value is not a string or number.
        """
        value = record.get(self.primary_key)
        if _is_empty_key(value):
            raise MissingPrimaryKeyError(self.primary_key)
        if not isinstance(value, (str, int, float)):
            raise SchemaError(
                f"Primary key '{self.primary_key}' must be a string or number, "
                f"got {type(value).__name__}"
            )
        return value

    def to_dict(self) -> Dict[str, Any]:
        return {"columns": list(self.columns), "primary_key": self.primary_key}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> TableSchema:
        return cls(columns=tuple(d["columns"]), primary_key=d["primary_key"])


# ---------------------------------------------------------------------------
# Substrate message
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Message:
    """One substrate message: a chunk of a stored record."""

    id: str
    label: str
    payload: Optional[str] = None
    forward_link: Optional[str] = None
    created_at: float = field(default_factory=_now_epoch)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "payload": self.payload,
            "forward_link": self.forward_link,
            "created_at": self.created_at,
        }


# ---------------------------------------------------------------------------
# Engine results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReconstructedRecord:
    """A record rebuilt from its chain, with the ids that compose it."""

    data: Dict[str, Any]
    head: Message
    message_ids: Tuple[str, ...]

    def to_json(self) -> str:
        return json.dumps(self.data, ensure_ascii=False)


@dataclass
class CacheEntry:
    """Last written snapshot of a record and the ids of its chain."""

    head: Message
    data: Dict[str, Any]
    message_ids: FrozenSet[str]


@dataclass
class DeleteResult:
    """Outcome of a delete, including which chain messages survived.

    Truthiness follows ``found``: deleting an absent key is a falsy no-op.
    """

    found: bool
    strategy: DeleteStrategy = "none"
    deleted_ids: Tuple[str, ...] = ()
    failed_ids: Tuple[str, ...] = ()
    bulk_error: Optional[str] = None

    def __bool__(self) -> bool:
        return self.found

    @property
    def complete(self) -> bool:
        """True when every chain message is gone."""
        return not self.failed_ids

    def to_dict(self) -> Dict[str, Any]:
        return {
            "found": self.found,
            "strategy": self.strategy,
            "deleted_ids": list(self.deleted_ids),
            "failed_ids": list(self.failed_ids),
            "bulk_error": self.bulk_error,
        }
