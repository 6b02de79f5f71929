"""
Channel Store — Substrate Adapter Protocol and In-Memory Substrate

The engine talks to the messaging substrate only through ``ChannelStore``:

    send_message(label, payload, forward_link)  → Message
    fetch_message(message_id)                   → Message | MessageNotFoundError
    fetch_recent(limit)                         → [Message]  (most recent first)
    bulk_delete(ids)                            → int | BulkDeleteRejected
    delete_message(message_id)                  → None | MessageNotFoundError

Substrate rules enforced by every implementation:
    - payloads longer than ``max_payload_chars`` are rejected
    - bulk deletion is refused when any message is older than
      ``bulk_delete_max_age_days`` or more than ``bulk_delete_max_ids``
      ids are passed; unknown ids are ignored
    - ids are assigned by the substrate and increase monotonically
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from dibcord.types import (
    BulkDeleteRejected,
    Message,
    MessageNotFoundError,
    PayloadTooLargeError,
)

logger = logging.getLogger(__name__)

MAX_PAYLOAD_CHARS = 4096
BULK_DELETE_MAX_AGE_DAYS = 14
BULK_DELETE_MAX_IDS = 100
_SECONDS_PER_DAY = 86_400


class ChannelStore(Protocol):
    """Send/fetch/delete primitives for one channel of the substrate."""

    id: str
    name: str

    def send_message(
        self, label: str, payload: Optional[str], forward_link: Optional[str] = None,
    ) -> Message: ...

    def fetch_message(self, message_id: str) -> Message: ...

    def fetch_recent(self, limit: int) -> List[Message]: ...

    def bulk_delete(self, message_ids: Iterable[str]) -> int: ...

    def delete_message(self, message_id: str) -> None: ...


class ChannelProvider(Protocol):
    """Provisions channels by name."""

    def get_or_create_channel(self, name: str) -> ChannelStore: ...

    def list_channels(self) -> List[str]: ...


# ---------------------------------------------------------------------------
# Shared substrate rules
# ---------------------------------------------------------------------------


def check_payload(payload: Optional[str], limit: int) -> None:
    """Raise PayloadTooLargeError if *payload* exceeds *limit* characters."""
    if payload is not None and len(payload) > limit:
        raise PayloadTooLargeError(len(payload), limit)


def check_bulk_delete(
    messages: List[Message],
    requested: int,
    now: float,
    max_age_days: int,
    max_ids: int,
) -> None:
    """Apply the bulk-delete count and age rules.

    Args:
        messages: Known messages among the requested ids.
        requested: Number of ids the caller asked for.
        now: Current epoch seconds.
    """
    if requested > max_ids:
        raise BulkDeleteRejected(
            f"Bulk delete accepts at most {max_ids} messages, got {requested}"
        )
    cutoff = now - max_age_days * _SECONDS_PER_DAY
    stale = [m.id for m in messages if m.created_at < cutoff]
    if stale:
        raise BulkDeleteRejected(
            f"You can only bulk delete messages that are under {max_age_days} "
            f"days old ({len(stale)} too old)"
        )


# ---------------------------------------------------------------------------
# In-memory substrate
# ---------------------------------------------------------------------------


class InMemoryChannel:
    """Process-local channel. History lives in insertion order."""

    def __init__(
        self,
        name: str,
        channel_id: Optional[str] = None,
        *,
        max_payload_chars: int = MAX_PAYLOAD_CHARS,
        bulk_delete_max_age_days: int = BULK_DELETE_MAX_AGE_DAYS,
        bulk_delete_max_ids: int = BULK_DELETE_MAX_IDS,
        clock: Optional[Callable[[], float]] = None,
        id_source: Optional[Iterable[int]] = None,
    ):
        self.name = name
        self.id = channel_id or name
        self.max_payload_chars = max_payload_chars
        self.bulk_delete_max_age_days = bulk_delete_max_age_days
        self.bulk_delete_max_ids = bulk_delete_max_ids
        self._clock = clock or time.time
        self._ids = iter(id_source) if id_source is not None else itertools.count(1)
        self._messages: Dict[str, Message] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._messages)

    def send_message(
        self, label: str, payload: Optional[str], forward_link: Optional[str] = None,
    ) -> Message:
        check_payload(payload, self.max_payload_chars)
        with self._lock:
            msg = Message(
                id=str(next(self._ids)),
                label=label,
                payload=payload,
                forward_link=forward_link,
                created_at=self._clock(),
            )
            self._messages[msg.id] = msg
        return msg

    def fetch_message(self, message_id: str) -> Message:
        try:
            return self._messages[message_id]
        except KeyError:
            raise MessageNotFoundError(message_id) from None

    def fetch_recent(self, limit: int) -> List[Message]:
        if limit <= 0:
            return []
        with self._lock:
            history = list(self._messages.values())
        return history[::-1][:limit]

    def bulk_delete(self, message_ids: Iterable[str]) -> int:
        ids = list(dict.fromkeys(message_ids))
        with self._lock:
            known = [self._messages[i] for i in ids if i in self._messages]
            check_bulk_delete(
                known, len(ids), self._clock(),
                self.bulk_delete_max_age_days, self.bulk_delete_max_ids,
            )
            for msg in known:
                del self._messages[msg.id]
        return len(known)

    def delete_message(self, message_id: str) -> None:
        with self._lock:
            if message_id not in self._messages:
                raise MessageNotFoundError(message_id)
            del self._messages[message_id]


class InMemorySubstrate:
    """Channel provider keeping every channel in process memory.

    All channels share one id sequence, so message ids are unique across the
    substrate.
    """

    def __init__(
        self,
        *,
        max_payload_chars: int = MAX_PAYLOAD_CHARS,
        bulk_delete_max_age_days: int = BULK_DELETE_MAX_AGE_DAYS,
        bulk_delete_max_ids: int = BULK_DELETE_MAX_IDS,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._max_payload_chars = max_payload_chars
        self._bulk_delete_max_age_days = bulk_delete_max_age_days
        self._bulk_delete_max_ids = bulk_delete_max_ids
        self._clock = clock
        self._ids = itertools.count(1)
        self._channels: Dict[str, InMemoryChannel] = {}
        self._lock = threading.Lock()

    def get_or_create_channel(self, name: str) -> InMemoryChannel:
        with self._lock:
            channel = self._channels.get(name)
            if channel is None:
                channel = InMemoryChannel(
                    name,
                    channel_id=f"ch-{len(self._channels) + 1}",
                    max_payload_chars=self._max_payload_chars,
                    bulk_delete_max_age_days=self._bulk_delete_max_age_days,
                    bulk_delete_max_ids=self._bulk_delete_max_ids,
                    clock=self._clock,
                    id_source=self._ids,
                )
                self._channels[name] = channel
                logger.debug("Created in-memory channel %s", name)
            return channel

    def list_channels(self) -> List[str]:
        return sorted(self._channels)
