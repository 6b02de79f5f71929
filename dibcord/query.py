"""
Query Engine — Predicate scans over the retrieval window

There is no index: a query fetches the retrieval window, keeps head
messages, rebuilds each chain and applies the predicate.  Cost is
linear in window size times chain length.  Broken chains are skipped.

Predicates are plain callables on record dicts.  ``where`` and
``parse_conditions`` build equality predicates from keyword arguments or
``field=value`` strings (CLI and MCP surface).
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Sequence

from dibcord.codec import HEAD_MARKER, reconstruct
from dibcord.types import Message, QueryError

if TYPE_CHECKING:
    from dibcord.table import ChannelTable

logger = logging.getLogger(__name__)

Predicate = Callable[[Dict[str, Any]], bool]

_MISSING = object()


def is_head(message: Message) -> bool:
    """True when *message* is the first chunk of a chain.

    Only the label is checked: the shipped substrates have a single writer.
    """
    return HEAD_MARKER in (message.label or "")


def head_messages(messages: Iterable[Message]) -> List[Message]:
    """Filter chain heads, preserving order."""
    return [m for m in messages if is_head(m)]


def run_query(table: ChannelTable, predicate: Predicate) -> List[Dict[str, Any]]:
    """Rebuild every head in *table*'s window and keep those matching *predicate*.

    Results follow substrate history order (most recent first).
    """
    channel = table.channel
    heads = head_messages(table.recent_messages())
    results: List[Dict[str, Any]] = []
    skipped = 0
    for head in heads:
        record = reconstruct(channel, head)
        if record is None:
            skipped += 1
            continue
        if predicate(record.data):
            results.append(record.data)
    logger.debug(
        "Query on %s: %d head(s), %d match(es), %d broken",
        table.name, len(heads), len(results), skipped,
    )
    return results


# ---------------------------------------------------------------------------
# Predicate builders
# ---------------------------------------------------------------------------


def match_all(record: Dict[str, Any]) -> bool:
    """Predicate accepting every record."""
    return True


def where(**fields: Any) -> Predicate:
    """Predicate: every given field equals the given value."""
    expected = dict(fields)

    def predicate(record: Dict[str, Any]) -> bool:
        return all(record.get(k, _MISSING) == v for k, v in expected.items())

    return predicate


def _parse_value(raw: str) -> Any:
    """JSON literal if it parses (42, true, null, "x"), else the raw string."""
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def parse_conditions(conditions: Sequence[str]) -> Predicate:
    """Build an equality predicate from ``field=value`` strings.

    Raises:
        QueryError: a condition has no ``=`` or an empty field name.
    """
    fields: Dict[str, Any] = {}
    for cond in conditions:
        key, sep, raw = cond.partition("=")
        key = key.strip()
        if not sep or not key:
            raise QueryError(f"Invalid condition {cond!r}: expected field=value")
        fields[key] = _parse_value(raw.strip())
    if not fields:
        return match_all
    return where(**fields)
