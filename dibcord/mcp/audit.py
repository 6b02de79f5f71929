"""
Tool-call audit trail (JSONL)

Each MCP tool call produces exactly one line:

    {"v":1,"ts":"...Z","rid":"<hex>","tool":"table_insert","sid":"default",
     "table":"Users","outcome":"ok","d":{...},"ms":3.2}

Record bodies never reach the trail in full: record-carrying calls log the
UTF-8 size, a SHA-256 digest of the compact JSON, and a short preview.

Writing is best effort.  A failing sink (closed file, full disk) is reported
once through the module logger and otherwise ignored, so auditing cannot
change a tool's result.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sys
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

logger = logging.getLogger(__name__)

AUDIT_SCHEMA_VERSION = 1
PREVIEW_MAX_CHARS = 120


def _utc_stamp() -> str:
    """Millisecond UTC timestamp ending in Z."""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


@dataclass
class AuditEntry:
    """One line of the audit trail."""
    rid: str
    tool: str
    sid: str
    table: Optional[str]
    outcome: str
    ms: float = 0.0
    d: Dict[str, Any] = field(default_factory=dict)
    v: int = AUDIT_SCHEMA_VERSION
    ts: str = field(default_factory=_utc_stamp)

    def to_json(self) -> str:
        body = asdict(self)
        if not body["d"]:
            del body["d"]
        body["ms"] = round(self.ms, 1)
        return json.dumps(body, ensure_ascii=False, separators=(",", ":"), default=str)


class AuditLogger:
    """Appends AuditEntry lines to a text stream (stderr by default)."""

    def __init__(self, output: Optional[TextIO] = None):
        self._output = output if output is not None else sys.stderr
        self._lock = threading.Lock()
        self._sink_failed = False

    def new_rid(self) -> str:
        """Fresh request id (32 hex chars)."""
        return uuid.uuid4().hex

    def log(
        self,
        tool: str,
        rid: str,
        session_id: str,
        table: Optional[str],
        outcome: str,
        detail: Optional[Dict[str, Any]] = None,
        latency_ms: float = 0.0,
    ) -> None:
        """
        Append one entry.  Never raises.

        Args:
            tool: Tool name, e.g. "table_find".
            table: Table addressed by the call; None for table_list.
            outcome: "ok", "not_found", "rejected", "rate_limited" or "error".
            detail: Tool-specific fields stored under "d".
        """
        entry = AuditEntry(
            rid=rid, tool=tool, sid=session_id, table=table,
            outcome=outcome, ms=latency_ms, d=dict(detail or {}),
        )
        try:
            line = entry.to_json()
            with self._lock:
                self._output.write(line + "\n")
                self._output.flush()
        except (OSError, ValueError, TypeError) as e:
            if not self._sink_failed:
                self._sink_failed = True
                logger.warning("Audit sink unavailable, entries dropped: %s", e)

    @staticmethod
    def make_record_detail(record: Dict[str, Any]) -> Dict[str, Any]:
        """Size, digest and single-line preview of a record's compact JSON."""
        text = json.dumps(record, ensure_ascii=False, separators=(",", ":"), default=str)
        raw = text.encode("utf-8")
        preview = " ".join(text[:PREVIEW_MAX_CHARS].splitlines())
        if len(text) > PREVIEW_MAX_CHARS:
            preview = preview.rstrip() + "…"
        return {
            "bytes": len(raw),
            "hash": hashlib.sha256(raw).hexdigest(),
            "preview": preview,
        }
