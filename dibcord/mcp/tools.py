"""
dibcord MCP Tools — table CRUD for MCP integration.

Thin wrappers around Database/ChannelTable.  Each tool follows the same
middleware order:

    ① Rate limiter     — check read/write budget for the session
    ② Tool execution   — table lookup/link → engine call
    ③ Audit log        — always, including on failure (in finally block)

Tools:
    WRITE:  table_insert, table_update, table_delete
    READ:   table_find, table_query
    META:   table_list (exempt from rate limiting)

Every tool returns a dict with a ``status`` of "ok", "not_found",
"rejected", "rate_limited" or "error".
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from dibcord.database import Database
from dibcord.mcp.audit import AuditLogger
from dibcord.query import parse_conditions
from dibcord.rate_limiter import RateLimiter
from dibcord.table import ChannelTable
from dibcord.types import (
    ChannelError,
    MissingPrimaryKeyError,
    QueryError,
    RateLimitExceeded,
    SchemaError,
)

logger = logging.getLogger(__name__)

DEFAULT_SESSION_ID = "default"


def register_table_tools(
    mcp,
    db: Database,
    *,
    primary_key: str = "id",
    rate_limiter: Optional[RateLimiter] = None,
    audit: Optional[AuditLogger] = None,
) -> None:
    """
    Register the table tools on a FastMCP server instance.

    Args:
        mcp: FastMCP server instance.
        db: Database whose tables the tools address.
        primary_key: Primary-key column for tables linked on first use.
        rate_limiter: RateLimiter for per-session throttling.
        audit: AuditLogger for structured logging.
    """
    if audit is None:
        audit = AuditLogger()

    def _table(name: str) -> ChannelTable:
        if name in db.tables:
            return db.table(name)
        return db.create_table(name, columns=[primary_key], primary_key=primary_key)

    def _run(
        tool: str,
        table: Optional[str],
        kind: str,
        body: Callable[[Dict[str, Any]], Dict[str, Any]],
    ) -> Dict[str, Any]:
        t0 = time.monotonic()
        rid = audit.new_rid()
        detail: Dict[str, Any] = {}
        outcome = "ok"
        try:
            if rate_limiter is not None and kind == "write":
                rate_limiter.check_write(DEFAULT_SESSION_ID)
            elif rate_limiter is not None and kind == "read":
                rate_limiter.check_read(DEFAULT_SESSION_ID)
            result = body(detail)
            outcome = result.get("status", "ok")
            return result
        except RateLimitExceeded as e:
            outcome = "rate_limited"
            return {"status": "rate_limited", "retry_after_ms": e.retry_after_ms, "message": str(e)}
        except (MissingPrimaryKeyError, QueryError, SchemaError) as e:
            outcome = "rejected"
            return {"status": "rejected", "message": str(e)}
        except ChannelError as e:
            outcome = "error"
            return {"status": "error", "message": f"Substrate error: {e}"}
        except Exception as e:
            outcome = "error"
            logger.exception("%s failed", tool)
            return {"status": "error", "message": f"{tool} failed: {e}"}
        finally:
            audit.log(tool, rid, DEFAULT_SESSION_ID, table, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    # =====================================================================
    # WRITE
    # =====================================================================

    @mcp.tool()
    def table_insert(table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a record (JSON object) into a table.

        The record must carry a value for the table's primary-key column.
        Duplicate keys are not rejected.

        Args:
            table: Table name.
            record: The record to store.
        """
        def body(detail: Dict[str, Any]) -> Dict[str, Any]:
            detail.update(AuditLogger.make_record_detail(record))
            t = _table(table)
            head = t.insert(record)
            pk = record[t.schema.primary_key]
            entry = t.cached(pk)
            return {
                "status": "ok",
                "id": pk,
                "head": head.id,
                "chunks": len(entry.message_ids) if entry else 1,
            }
        return _run("table_insert", table, "write", body)

    @mcp.tool()
    def table_update(table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Replace the record with the same primary key (delete, then insert).

        Not atomic: a failure between the two steps leaves the record absent.

        Args:
            table: Table name.
            record: The full new record.
        """
        def body(detail: Dict[str, Any]) -> Dict[str, Any]:
            detail.update(AuditLogger.make_record_detail(record))
            t = _table(table)
            head = t.update(record)
            return {"status": "ok", "id": record[t.schema.primary_key], "head": head.id}
        return _run("table_update", table, "write", body)

    @mcp.tool()
    def table_delete(table: str, pk: str) -> Dict[str, Any]:
        """Delete a record by primary key. Absent keys return not_found.

        Args:
            table: Table name.
            pk: Primary-key value.
        """
        def body(detail: Dict[str, Any]) -> Dict[str, Any]:
            detail["id"] = pk
            result = _table(table).delete(pk)
            if not result:
                return {"status": "not_found", "id": pk}
            detail["strategy"] = result.strategy
            return {"status": "ok", "id": pk, **result.to_dict()}
        return _run("table_delete", table, "write", body)

    # =====================================================================
    # READ
    # =====================================================================

    @mcp.tool()
    def table_find(table: str, pk: str) -> Dict[str, Any]:
        """Read one record by primary key.

        Only the most recent messages of the table's channel are scanned;
        older records may not be found.

        Args:
            table: Table name.
            pk: Primary-key value.
        """
        def body(detail: Dict[str, Any]) -> Dict[str, Any]:
            detail["id"] = pk
            found = _table(table).find(pk)
            if found is None:
                return {"status": "not_found", "id": pk}
            return {"status": "ok", "record": found.data, "chunks": len(found.message_ids)}
        return _run("table_find", table, "read", body)

    @mcp.tool()
    def table_query(table: str, where: Optional[List[str]] = None) -> Dict[str, Any]:
        """List records matching every ``field=value`` condition.

        Values are parsed as JSON when possible (42, true, "x"), else taken
        as strings.  No conditions lists every record in the window.

        Args:
            table: Table name.
            where: Conditions such as ["status=open", "priority=2"].
        """
        def body(detail: Dict[str, Any]) -> Dict[str, Any]:
            predicate = parse_conditions(where or [])
            records = _table(table).query(predicate)
            detail["conditions"] = len(where or [])
            detail["matches"] = len(records)
            return {"status": "ok", "records": records, "count": len(records)}
        return _run("table_query", table, "read", body)

    @mcp.tool()
    def table_list() -> Dict[str, Any]:
        """List channels (tables) known to the substrate."""
        def body(detail: Dict[str, Any]) -> Dict[str, Any]:
            channels = db.provider.list_channels()
            return {"status": "ok", "tables": channels, "count": len(channels)}
        return _run("table_list", None, "exempt", body)
