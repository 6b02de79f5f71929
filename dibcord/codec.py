"""
Record Codec — Chunking, Chain Construction, Chain Reconstruction

A record is serialized to compact JSON, split into fixed-size chunks and
written as a singly linked chain of messages:

    head (chunk 1) ──next──▶ chunk 2 ──next──▶ … ──▶ tail (no link)

A message id is only known once the substrate has created the message, so
the chain is written tail first: each send carries the id returned by the
previous one.  Only the head is discoverable by scanning history; the rest
is reached by following links.

Reconstruction never raises on a damaged chain.  A missing link target, a
chunk without payload, a cycle, a chunk count that disagrees with the head
label, or an undecodable document all yield ``None`` so scanning callers
can skip the record and continue.
"""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, Dict, List, Optional, Tuple

from dibcord.channel import ChannelStore
from dibcord.types import (
    BulkDeleteRejected,
    ChainWriteError,
    ChannelError,
    Message,
    ReconstructedRecord,
)

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 3800  # under the 4096-char payload limit

HEAD_MARKER = "| Chunk 1 of"
_LABEL_RE = re.compile(r"^Row ID: (?P<pk>.*) \| Chunk (?P<index>\d+) of (?P<count>\d+)$")


# ---------------------------------------------------------------------------
# Labels
# ---------------------------------------------------------------------------


def row_label(pk: Any, index: int, count: int) -> str:
    """Human-readable label for chunk *index* (1-based) of *count*."""
    return f"Row ID: {pk} | Chunk {index} of {count}"


def head_prefix(pk: Any) -> str:
    """Label prefix identifying the head message of *pk*'s chain."""
    return f"Row ID: {pk} {HEAD_MARKER}"


def parse_label(label: str) -> Optional[Tuple[str, int, int]]:
    """Split a chunk label into (pk, index, count), or None if foreign."""
    m = _LABEL_RE.match(label or "")
    if m is None:
        return None
    return m.group("pk"), int(m.group("index")), int(m.group("count"))


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def encode_record(record: Dict[str, Any]) -> str:
    """Serialize a record to compact JSON text."""
    return json.dumps(record, ensure_ascii=False, separators=(",", ":"))


def chunk_text(text: str, size: int) -> List[str]:
    """Split *text* into ceil(len/size) pieces of *size* chars (last may be shorter)."""
    if size <= 0:
        raise ValueError(f"Chunk size must be positive, got {size}")
    count = math.ceil(len(text) / size)
    return [text[i * size:(i + 1) * size] for i in range(count)]


def remove_messages(
    channel: ChannelStore, message_ids: List[str],
) -> Tuple[str, List[str], List[str], Optional[str]]:
    """Delete messages: one bulk call, then one by one if the bulk is refused.

    Individual failures do not stop the fallback; they are reported.

    Returns:
        (strategy, deleted_ids, failed_ids, bulk_error)
    """
    if not message_ids:
        return "none", [], [], None
    try:
        channel.bulk_delete(message_ids)
        return "bulk", list(message_ids), [], None
    except BulkDeleteRejected as e:
        bulk_error = str(e)
        logger.warning(
            "Bulk delete rejected for %d message(s), falling back to "
            "individual deletion: %s", len(message_ids), e,
        )

    deleted: List[str] = []
    failed: List[str] = []
    for mid in message_ids:
        try:
            channel.delete_message(mid)
            deleted.append(mid)
        except ChannelError as e:
            logger.warning("Could not delete message %s: %s", mid, e)
            failed.append(mid)
    return "individual", deleted, failed, bulk_error


def write_chain(
    channel: ChannelStore, pk: Any, text: str, chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> Tuple[Message, List[str]]:
    """Write *text* as a linked chain, tail first.

    Returns:
        (head message, chain ids in head-to-tail order)

    Raises:
        ChainWriteError: a send failed; messages already created were removed
            where possible and the rest are listed in ``orphan_ids``.
    """
    chunks = chunk_text(text, chunk_size)
    count = len(chunks)
    if not count:
        raise ValueError(f"Nothing to write for {pk!r}")
    created: List[Message] = []
    next_id: Optional[str] = None

    try:
        for i in range(count - 1, -1, -1):
            msg = channel.send_message(
                row_label(pk, i + 1, count), chunks[i], forward_link=next_id,
            )
            created.append(msg)
            next_id = msg.id
    except ChannelError as e:
        logger.warning(
            "Write of %r failed after %d of %d chunk(s): %s",
            pk, len(created), count, e,
        )
        orphans = [m.id for m in created]
        try:
            _, _, failed, _ = remove_messages(channel, orphans)
        except ChannelError as cleanup_error:
            logger.warning("Cleanup after failed write of %r failed: %s", pk, cleanup_error)
            failed = orphans
        raise ChainWriteError(pk, e, orphan_ids=failed) from e

    logger.debug("Wrote %r as %d chunk(s) on %s", pk, count, channel.name)
    ids = [m.id for m in reversed(created)]
    return created[-1], ids


# ---------------------------------------------------------------------------
# Reconstruction
# ---------------------------------------------------------------------------


def reconstruct(channel: ChannelStore, head: Message) -> Optional[ReconstructedRecord]:
    """Follow the chain from *head* and decode the record.

    Returns None (after logging) when the chain is broken or undecodable.
    """
    visited: List[str] = []
    parts: List[str] = []
    current: Optional[Message] = head

    while current is not None:
        if current.id in visited:
            logger.warning(
                "Chain starting at %s loops back to %s. Chain is broken.",
                head.id, current.id,
            )
            return None
        visited.append(current.id)

        if current.payload is None:
            logger.warning(
                "Message %s in chain %s carries no payload. Chain is broken.",
                current.id, head.id,
            )
            return None
        parts.append(current.payload)

        link = current.forward_link
        if not link:
            break
        try:
            current = channel.fetch_message(link)
        except ChannelError as e:
            logger.warning(
                "Could not fetch next chunk %s for chain %s. Chain is broken. (%s)",
                link, head.id, e,
            )
            return None

    parsed = parse_label(head.label)
    if parsed is not None and parsed[2] != len(visited):
        logger.warning(
            "Chain %s has %d chunk(s) but its label announces %d",
            head.id, len(visited), parsed[2],
        )
        return None

    try:
        data = json.loads("".join(parts))
    except ValueError as e:
        logger.warning("Failed to parse JSON for chain %s: %s", head.id, e)
        return None
    if not isinstance(data, dict):
        logger.warning("Chain %s does not hold a JSON object", head.id)
        return None

    return ReconstructedRecord(data=data, head=head, message_ids=tuple(visited))
