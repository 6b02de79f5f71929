"""
dibcord-mcp — MCP server over the local substrate

Exposes the six table tools (see dibcord.mcp.tools) through FastMCP.  The
server owns one Database for its lifetime; tables are linked on first use
with a single primary-key column.

Settings resolve like the CLI: flag > DIBCORD_* env var > config file >
built-in default.  Tool-call throttling is separate from substrate
throttling (``rate_limit`` in config.json) and is on by default.

    dibcord-mcp --db ./data/dibcord.db
    dibcord-mcp --pk user_id --no-rate-limit --audit-log audit.jsonl
    dibcord-mcp --transport sse
"""

from __future__ import annotations

import argparse
import logging
import os
from typing import Any, Callable, Optional, TextIO, Tuple

logger = logging.getLogger(__name__)

TRANSPORTS = ("stdio", "sse", "streamable-http")

_TOOL_WRITES_PER_MINUTE = 20
_TOOL_READS_PER_MINUTE = 120
_TOOL_BURST_FACTOR = 2.0

_INSTRUCTIONS = """\
Record tables stored as chains of messages on an append-only substrate.

Tools: table_insert, table_update, table_delete (writes);
table_find, table_query (reads); table_list.

- A record is a JSON object with a value for the primary-key column.
- Lookups scan only the most recent messages of a table's channel.
- table_update deletes then inserts; a failure in between loses the record.
"""


def _from_env(name: str, cast: Callable[[str], Any], default: Any) -> Any:
    """Typed environment lookup; malformed values fall back to *default*."""
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r (not a valid %s)", name, raw, cast.__name__)
        return default


def build_parser() -> argparse.ArgumentParser:
    """Argument parser for dibcord-mcp."""
    p = argparse.ArgumentParser(
        prog="dibcord-mcp",
        description="Serve dibcord tables over the Model Context Protocol",
    )
    p.add_argument("--db", default=None,
                   help="SQLite substrate path ($DIBCORD_DB, config, .dibcord/dibcord.db)")
    p.add_argument("--pk", default=os.environ.get("DIBCORD_PK", "id"),
                   help="Primary-key column for linked tables (default: $DIBCORD_PK or id)")
    p.add_argument("--config", default=os.environ.get("DIBCORD_CONFIG"),
                   help="config.json path (default: $DIBCORD_CONFIG)")
    p.add_argument("--transport", choices=TRANSPORTS, default="stdio",
                   help="MCP transport (default: stdio)")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    limits = p.add_argument_group("tool throttling")
    limits.add_argument("--no-rate-limit", dest="rate_limit", action="store_false",
                        help="Do not throttle tool calls")
    limits.add_argument(
        "--writes-per-minute", type=int,
        default=_from_env("DIBCORD_WRITES_PER_MINUTE", int, _TOOL_WRITES_PER_MINUTE),
        help=f"Write tools per minute (default: {_TOOL_WRITES_PER_MINUTE})",
    )
    limits.add_argument(
        "--reads-per-minute", type=int,
        default=_from_env("DIBCORD_READS_PER_MINUTE", int, _TOOL_READS_PER_MINUTE),
        help=f"Read tools per minute (default: {_TOOL_READS_PER_MINUTE})",
    )
    limits.add_argument(
        "--burst-factor", type=float,
        default=_from_env("DIBCORD_BURST_FACTOR", float, _TOOL_BURST_FACTOR),
        help=f"Bucket capacity multiplier (default: {_TOOL_BURST_FACTOR})",
    )

    p.add_argument("--audit-log", default=None, metavar="PATH",
                   help="Append audit JSONL here instead of stderr")
    return p


def create_server(
    args: Optional[argparse.Namespace] = None,
    audit_output: Optional[TextIO] = None,
) -> Tuple[Any, Any]:
    """
    Build the FastMCP instance and the Database it serves.

    Args:
        audit_output: Stream for the audit trail; stderr when None.

    Returns:
        (mcp, db). The caller runs the server and closes the database.
    """
    from mcp.server.fastmcp import FastMCP

    from dibcord.config import load_config
    from dibcord.database import open_database
    from dibcord.mcp.audit import AuditLogger
    from dibcord.mcp.tools import register_table_tools
    from dibcord.rate_limiter import RateLimiter

    if args is None:
        args = build_parser().parse_args()

    config = load_config(args.config)
    config.store.db_path = args.db or os.environ.get("DIBCORD_DB") or config.store.db_path
    db = open_database(config)

    limiter = (
        RateLimiter(
            writes_per_minute=args.writes_per_minute,
            reads_per_minute=args.reads_per_minute,
            burst_factor=args.burst_factor,
        )
        if args.rate_limit else None
    )

    mcp = FastMCP(name="dibcord", instructions=_INSTRUCTIONS)
    register_table_tools(
        mcp, db, primary_key=args.pk, rate_limiter=limiter,
        audit=AuditLogger(output=audit_output),
    )
    logger.info(
        "Serving %s (pk=%s, tool throttling %s)",
        config.store.db_path, args.pk, "on" if limiter else "off",
    )
    return mcp, db


def serve(args: argparse.Namespace) -> None:
    """Run the server until the transport closes, then release the database and audit file."""
    sink = open(args.audit_log, "a", encoding="utf-8") if args.audit_log else None
    try:
        mcp, db = create_server(args, audit_output=sink)
        try:
            mcp.run(transport=args.transport)
        finally:
            db.close()
    finally:
        if sink is not None:
            sink.close()


def main() -> None:
    args = build_parser().parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    serve(args)


if __name__ == "__main__":
    main()
