"""
dibcord — Record tables stored as linked message chains.

Each table is a channel of an append-only, rate-limited messaging substrate;
each record is a chain of size-bounded messages linked head to tail and
rebuilt on read.
"""

__version__ = "0.1.0"

from dibcord.types import (
    BulkDeleteRejected,
    CacheEntry,
    ChainWriteError,
    ChannelError,
    DeleteResult,
    DibcordError,
    Message,
    MessageNotFoundError,
    MissingPrimaryKeyError,
    PayloadTooLargeError,
    QueryError,
    RateLimitExceeded,
    ReconstructedRecord,
    SchemaError,
    TableNotReadyError,
    TableSchema,
)
from dibcord.channel import ChannelProvider, ChannelStore, InMemoryChannel, InMemorySubstrate
from dibcord.codec import DEFAULT_CHUNK_SIZE, chunk_text
from dibcord.config import DibcordConfig, load_config
from dibcord.database import Database, open_database
from dibcord.query import parse_conditions, where
from dibcord.rate_limiter import RateLimiter, ThrottledChannel
from dibcord.sqlite_channel import SqliteSubstrate
from dibcord.table import ChannelTable

__all__ = [
    "__version__",
    "BulkDeleteRejected",
    "CacheEntry",
    "ChainWriteError",
    "ChannelError",
    "ChannelProvider",
    "ChannelStore",
    "ChannelTable",
    "DEFAULT_CHUNK_SIZE",
    "Database",
    "DeleteResult",
    "DibcordConfig",
    "DibcordError",
    "InMemoryChannel",
    "InMemorySubstrate",
    "Message",
    "MessageNotFoundError",
    "MissingPrimaryKeyError",
    "PayloadTooLargeError",
    "QueryError",
    "RateLimitExceeded",
    "RateLimiter",
    "ReconstructedRecord",
    "SchemaError",
    "SqliteSubstrate",
    "TableNotReadyError",
    "TableSchema",
    "ThrottledChannel",
    "chunk_text",
    "load_config",
    "open_database",
    "parse_conditions",
    "where",
]
