"""
Rate Limiter — Token-bucket throttling for substrate and tool calls.

The substrate is rate limited on its side; throttling here keeps a client
under that budget instead of discovering it through rejections.  The same
limiter guards MCP tool calls per session.

Each key (a channel id, or an MCP session) owns two buckets:
    write:  send_message, bulk_delete, delete_message
    read:   fetch_message, fetch_recent

A bucket holds ``per_minute * burst_factor`` tokens and refills at
``per_minute / 60`` tokens per second.  Callers serialize per key.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from dibcord.channel import ChannelStore
from dibcord.types import Message, RateLimitExceeded

logger = logging.getLogger(__name__)

WRITE_CALLS: FrozenSet[str] = frozenset({"send_message", "bulk_delete", "delete_message"})
READ_CALLS: FrozenSet[str] = frozenset({"fetch_message", "fetch_recent"})

Clock = Callable[[], float]

# Wait hint when a bucket never refills.
_NO_REFILL_WAIT_MS = 60_000


@dataclass
class TokenBucket:
    """Refilling token budget."""
    capacity: float
    rate: float  # tokens per second
    tokens: float = -1.0
    clock: Clock = time.monotonic
    stamp: float = field(init=False)

    def __post_init__(self):
        if self.tokens < 0:
            self.tokens = self.capacity
        self.stamp = self.clock()

    def _refill(self) -> None:
        now = self.clock()
        if now > self.stamp:
            self.tokens = min(self.capacity, self.tokens + (now - self.stamp) * self.rate)
        self.stamp = now

    def take(self, n: float = 1.0) -> int:
        """Spend *n* tokens: 0 on success, else the wait in ms before retrying."""
        self._refill()
        if self.tokens >= n:
            self.tokens -= n
            return 0
        if self.rate <= 0:
            return _NO_REFILL_WAIT_MS
        return max(int((n - self.tokens) / self.rate * 1000), 1)


class RateLimiter:
    """Independent read and write budgets per key."""

    def __init__(
        self,
        writes_per_minute: int = 300,
        reads_per_minute: int = 600,
        burst_factor: float = 1.0,
        *,
        clock: Clock = time.monotonic,
    ):
        self._per_minute = {"write": writes_per_minute, "read": reads_per_minute}
        self._burst_factor = burst_factor
        self._clock = clock
        self._buckets: Dict[Tuple[str, str], TokenBucket] = {}

    def bucket(self, key: str, kind: str) -> TokenBucket:
        """The *kind* ("read" or "write") bucket of *key*, created full."""
        b = self._buckets.get((key, kind))
        if b is None:
            per_minute = self._per_minute[kind]
            b = TokenBucket(
                capacity=per_minute * self._burst_factor,
                rate=per_minute / 60.0,
                clock=self._clock,
            )
            self._buckets[(key, kind)] = b
        return b

    def check(self, key: str, kind: str) -> None:
        """Spend one *kind* token for *key*.

        Raises:
            RateLimitExceeded: the bucket is empty; carries the wait hint.
        """
        wait = self.bucket(key, kind).take()
        if wait:
            raise RateLimitExceeded(
                wait,
                f"{kind.capitalize()} rate limit exceeded "
                f"({self._per_minute[kind]}/min). Retry after {wait}ms.",
            )

    def check_read(self, key: str) -> None:
        self.check(key, "read")

    def check_write(self, key: str) -> None:
        self.check(key, "write")

    @staticmethod
    def classify_call(call_name: str) -> str:
        """'write', 'read' or 'exempt' for a ChannelStore method name."""
        if call_name in WRITE_CALLS:
            return "write"
        if call_name in READ_CALLS:
            return "read"
        return "exempt"

class ThrottledChannel:
    """ChannelStore wrapper charging every call against a RateLimiter.

    With ``wait=True`` an exhausted budget sleeps for the advertised delay
    and retries; otherwise RateLimitExceeded propagates to the caller.
    """

    def __init__(
        self,
        channel: ChannelStore,
        limiter: RateLimiter,
        *,
        wait: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._channel = channel
        self._limiter = limiter
        self._wait = wait
        self._sleep = sleep
        self.id = channel.id
        self.name = channel.name

    @property
    def inner(self) -> ChannelStore:
        return self._channel

    def _charge(self, call_name: str) -> None:
        kind = self._limiter.classify_call(call_name)
        if kind == "exempt":
            return
        while True:
            try:
                self._limiter.check(self.id, kind)
                return
            except RateLimitExceeded as e:
                if not self._wait:
                    raise
                logger.debug(
                    "%s on %s throttled, sleeping %dms",
                    call_name, self.name, e.retry_after_ms,
                )
                self._sleep(e.retry_after_ms / 1000.0)

    def send_message(
        self, label: str, payload: Optional[str], forward_link: Optional[str] = None,
    ) -> Message:
        self._charge("send_message")
        return self._channel.send_message(label, payload, forward_link)

    def fetch_message(self, message_id: str) -> Message:
        self._charge("fetch_message")
        return self._channel.fetch_message(message_id)

    def fetch_recent(self, limit: int) -> List[Message]:
        self._charge("fetch_recent")
        return self._channel.fetch_recent(limit)

    def bulk_delete(self, message_ids: Iterable[str]) -> int:
        self._charge("bulk_delete")
        return self._channel.bulk_delete(message_ids)

    def delete_message(self, message_id: str) -> None:
        self._charge("delete_message")
        self._channel.delete_message(message_id)
