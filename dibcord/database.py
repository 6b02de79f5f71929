"""
Database — links tables to channels of a substrate.

Each table lives in the channel named after it (lowercased).  Channels are
provisioned on first link.  When rate limiting is enabled every channel is
wrapped in a ThrottledChannel sharing one limiter.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence

from dibcord.channel import ChannelProvider, ChannelStore
from dibcord.config import DibcordConfig
from dibcord.rate_limiter import RateLimiter, ThrottledChannel
from dibcord.table import ChannelTable
from dibcord.types import DibcordError, TableSchema

logger = logging.getLogger(__name__)


def channel_name_for(table_name: str) -> str:
    """Channel naming convention: the lowercase table name."""
    return table_name.lower()


class Database:
    """Registry of ChannelTables bound to one substrate."""

    def __init__(self, provider: ChannelProvider, config: Optional[DibcordConfig] = None):
        self._provider = provider
        self._config = config or DibcordConfig()
        self._tables: Dict[str, ChannelTable] = {}
        self._limiter: Optional[RateLimiter] = None
        rl = self._config.rate_limit
        if rl.enabled:
            self._limiter = RateLimiter(
                writes_per_minute=rl.writes_per_minute,
                reads_per_minute=rl.reads_per_minute,
                burst_factor=rl.burst_factor,
            )

    @property
    def provider(self) -> ChannelProvider:
        return self._provider

    @property
    def config(self) -> DibcordConfig:
        return self._config

    @property
    def tables(self) -> List[str]:
        return sorted(self._tables)

    def _open_channel(self, table_name: str) -> ChannelStore:
        channel = self._provider.get_or_create_channel(channel_name_for(table_name))
        if self._limiter is not None:
            channel = ThrottledChannel(
                channel, self._limiter, wait=self._config.rate_limit.wait,
            )
        return channel

    def link_table(self, table: ChannelTable) -> ChannelTable:
        """Provision *table*'s channel, bind it, and register the table."""
        table.bind(self._open_channel(table.name))
        self._tables[table.name] = table
        return table

    def create_table(
        self, name: str, columns: Sequence[str], primary_key: str,
    ) -> ChannelTable:
        """Build a ChannelTable from engine config and link it."""
        table = ChannelTable(
            name,
            TableSchema(columns=tuple(columns), primary_key=primary_key),
            chunk_size=self._config.engine.chunk_size,
            retrieval_window=self._config.engine.retrieval_window,
        )
        return self.link_table(table)

    def table(self, name: str) -> ChannelTable:
        """Return a linked table by name."""
        try:
            return self._tables[name]
        except KeyError:
            raise DibcordError(f"Table {name!r} is not linked") from None

    def close(self) -> None:
        """Close the provider if it holds resources."""
        close = getattr(self._provider, "close", None)
        if close is not None:
            close()


def open_database(config: Optional[DibcordConfig] = None) -> Database:
    """Open a Database on the local SQLite substrate described by *config*."""
    from dibcord.sqlite_channel import SqliteSubstrate

    cfg = config or DibcordConfig()
    substrate = SqliteSubstrate(
        db_path=cfg.store.db_path,
        wal_mode=cfg.store.wal_mode,
        max_payload_chars=cfg.channel.max_payload_chars,
        bulk_delete_max_age_days=cfg.channel.bulk_delete_max_age_days,
        bulk_delete_max_ids=cfg.channel.bulk_delete_max_ids,
    )
    logger.info("Opened database at %s", cfg.store.db_path)
    return Database(substrate, cfg)
