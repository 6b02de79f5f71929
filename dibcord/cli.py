"""
dibcord CLI — Table Commands over the Local Substrate

Commands:
    dibcord init    [PATH]                  — scaffold database + config.json
    dibcord insert  TABLE [JSON]            — insert a record (stdin if omitted)
    dibcord find    TABLE PK                — print one record
    dibcord query   TABLE [--where k=v ...] — print matching records
    dibcord update  TABLE [JSON]            — replace a record (stdin if omitted)
    dibcord delete  TABLE PK                — delete a record
    dibcord channels                        — list channels and message counts
    dibcord serve                           — start MCP server (foreground)

Environment variables:
    DIBCORD_DB      Path to SQLite database (default: .dibcord/dibcord.db)
    DIBCORD_PK      Primary-key column (default: id)
    DIBCORD_CONFIG  Path to config.json

Precedence (invariant):
    CLI --flag  >  DIBCORD_* env var  >  config file  >  compiled default

Exit codes:
    0  Success (including idempotent no-op delete)
    1  Operational error (bad args, bad JSON, missing key, record not found)
    2  Internal failure (unexpected exception, substrate I/O error)
"""

from __future__ import annotations

import argparse
import contextlib
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple

from dibcord.config import DibcordConfig, load_config
from dibcord.types import (
    MissingPrimaryKeyError,
    QueryError,
    SchemaError,
    TableNotReadyError,
)

logger = logging.getLogger(__name__)

_DEFAULT_DB = ".dibcord/dibcord.db"
_DEFAULT_PK = "id"
_TRANSPORTS = ("stdio", "sse", "streamable-http")

# Errors that are the caller's fault: exit 1.  Everything else exits 2.
_USER_ERRORS = (MissingPrimaryKeyError, QueryError, SchemaError, TableNotReadyError)


class _Abort(Exception):
    """Stop the command with a message and an exit code."""

    def __init__(self, message: str, code: int = 1):
        super().__init__(message)
        self.code = code


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

_quiet = False


def _info(msg: str) -> None:
    """Progress line on stderr; silenced by --quiet."""
    if not _quiet:
        print(msg, file=sys.stderr)


def _warn(msg: str) -> None:
    print(msg, file=sys.stderr)


def _emit(obj: Any, pretty: bool = True) -> None:
    print(json.dumps(obj, indent=2 if pretty else None, ensure_ascii=False))


# ---------------------------------------------------------------------------
# Settings resolution
# ---------------------------------------------------------------------------


def _resolve_config(args: argparse.Namespace) -> DibcordConfig:
    """--config > DIBCORD_CONFIG > defaults."""
    return load_config(getattr(args, "config", None) or os.environ.get("DIBCORD_CONFIG"))


def _resolve_db(args: argparse.Namespace, config: Optional[DibcordConfig] = None) -> str:
    """--db > DIBCORD_DB > config store.db_path > default."""
    flag = getattr(args, "db", None)
    if flag:
        return flag
    env = os.environ.get("DIBCORD_DB")
    if env:
        return env
    return config.store.db_path if config is not None else _DEFAULT_DB


def _resolve_pk(args: argparse.Namespace) -> str:
    """--pk > DIBCORD_PK > id."""
    return getattr(args, "pk", None) or os.environ.get("DIBCORD_PK") or _DEFAULT_PK


@contextlib.contextmanager
def _table_session(args: argparse.Namespace) -> Iterator[Any]:
    """Open the database, link args.table on the resolved key, close on exit."""
    from dibcord.database import open_database

    config = _resolve_config(args)
    config.store.db_path = _resolve_db(args, config)
    db = open_database(config)
    try:
        pk = _resolve_pk(args)
        yield db.create_table(args.table, columns=[pk], primary_key=pk)
    finally:
        db.close()


def _read_record(args: argparse.Namespace) -> Dict[str, Any]:
    """JSON object from the positional argument, else stdin."""
    text = args.data if args.data is not None else sys.stdin.read()
    if not text.strip():
        raise _Abort("No record given (argument or stdin).")
    try:
        record = json.loads(text)
    except json.JSONDecodeError as e:
        raise _Abort(f"Invalid JSON: {e}") from None
    if not isinstance(record, dict):
        raise _Abort(f"Record must be a JSON object, got {type(record).__name__}.")
    return record


# ===========================================================================
# Command: init
# ===========================================================================


def _remove_database(db_path: Path) -> None:
    for p in (db_path, db_path.with_name(db_path.name + "-wal"),
              db_path.with_name(db_path.name + "-shm")):
        if p.exists():
            p.unlink()


def _write_if_missing(path: Path, text: str) -> bool:
    if path.exists():
        return False
    path.write_text(text, encoding="utf-8")
    return True


def cmd_init(args: argparse.Namespace) -> None:
    """Create (or recreate with --force) a workspace: database, config, .gitignore."""
    from dibcord.sqlite_channel import SqliteSubstrate

    workspace = Path(args.path).resolve()
    db_path = Path(args.db).resolve() if getattr(args, "db", None) else workspace / "dibcord.db"

    if db_path.exists():
        if not args.force:
            _info(f"Workspace exists: {workspace} (database {db_path})")
            print(f'export DIBCORD_DB="{db_path}"')
            return
        _remove_database(db_path)

    workspace.mkdir(parents=True, exist_ok=True)
    SqliteSubstrate(db_path=str(db_path)).close()

    cfg = DibcordConfig()
    cfg.store.db_path = str(db_path)
    config_path = workspace / "config.json"
    wrote_config = _write_if_missing(config_path, json.dumps(cfg.to_dict(), indent=2) + "\n")
    _write_if_missing(workspace / ".gitignore", "*.db\n*.db-wal\n*.db-shm\n")

    _info(f"Initialized dibcord workspace in {workspace}")
    _info(f"  database  {db_path}")
    _info(f"  config    {config_path}{'' if wrote_config else ' (kept)'}")
    print(f'export DIBCORD_DB="{db_path}"')


# ===========================================================================
# Record commands
# ===========================================================================


def _write_summary(table, record: Dict[str, Any]) -> Tuple[Any, int]:
    pk = record[table.schema.primary_key]
    entry = table.cached(pk)
    return pk, len(entry.message_ids) if entry else 1


def cmd_insert(args: argparse.Namespace) -> None:
    record = _read_record(args)
    with _table_session(args) as table:
        head = table.insert(record)
        pk, chunks = _write_summary(table, record)
    if getattr(args, "json", False):
        _emit({"status": "ok", "id": pk, "head": head.id, "chunks": chunks}, pretty=False)
    else:
        _info(f"Inserted {pk} into {table.name}: {chunks} chunk(s), head {head.id}")


def cmd_update(args: argparse.Namespace) -> None:
    record = _read_record(args)
    with _table_session(args) as table:
        head = table.update(record)
        pk, chunks = _write_summary(table, record)
    if getattr(args, "json", False):
        _emit({"status": "ok", "id": pk, "head": head.id, "chunks": chunks}, pretty=False)
    else:
        _info(f"Replaced {pk} in {table.name}: {chunks} chunk(s), head {head.id}")


def cmd_find(args: argparse.Namespace) -> None:
    with _table_session(args) as table:
        found = table.find(args.id)
    if found is None:
        raise _Abort(f"Record not found: {args.id}")
    _emit(found.data, pretty=getattr(args, "json", False))


def cmd_query(args: argparse.Namespace) -> None:
    from dibcord.query import parse_conditions

    predicate = parse_conditions(args.where or [])
    with _table_session(args) as table:
        records = table.query(predicate)
    if getattr(args, "json", False):
        _emit(records)
    else:
        for r in records:
            _emit(r, pretty=False)
    _info(f"{len(records)} record(s)")


def cmd_delete(args: argparse.Namespace) -> None:
    """Delete a record; an absent key is a successful no-op."""
    with _table_session(args) as table:
        result = table.delete(args.id)
    if getattr(args, "json", False):
        _emit(result.to_dict())
    elif not result:
        _info(f"Nothing to delete: {args.id}")
    else:
        _info(f"Deleted {args.id}: {len(result.deleted_ids)} message(s) via {result.strategy}")
    if result and not result.complete:
        _warn(f"Warning: {len(result.failed_ids)} chunk(s) of {args.id} could not be deleted")


def cmd_channels(args: argparse.Namespace) -> None:
    """One line per channel: name and stored message count."""
    from dibcord.sqlite_channel import SqliteSubstrate

    config = _resolve_config(args)
    db_path = _resolve_db(args, config)
    if not Path(db_path).exists():
        raise _Abort(f"No database at {db_path} (run: dibcord init)")
    substrate = SqliteSubstrate(db_path=db_path, wal_mode=config.store.wal_mode)
    try:
        rows = [(n, substrate.count_messages(n)) for n in substrate.list_channels()]
    finally:
        substrate.close()
    if getattr(args, "json", False):
        _emit([{"name": n, "messages": c} for n, c in rows])
    else:
        for n, c in rows:
            print(f"{n}\t{c}")


# ===========================================================================
# Command: serve
# ===========================================================================


def cmd_serve(args: argparse.Namespace) -> None:
    """Run the MCP server in the foreground."""
    from dibcord.mcp import server

    try:
        import mcp.server.fastmcp  # noqa: F401
    except ImportError:
        raise _Abort("MCP support is not installed: pip install 'dibcord[mcp]'") from None

    argv = ["--db", _resolve_db(args, _resolve_config(args)),
            "--pk", _resolve_pk(args), "--transport", args.transport]
    if getattr(args, "config", None):
        argv += ["--config", args.config]
    server_args = server.build_parser().parse_args(argv)
    _info(f"dibcord MCP server on {server_args.transport} (db={server_args.db}); Ctrl+C stops it.")
    server.serve(server_args)


# ===========================================================================
# Parser and entry point
# ===========================================================================


def build_parser() -> argparse.ArgumentParser:
    # Options accepted before or after the subcommand.  SUPPRESS keeps a
    # subparser from resetting a value given at the top level.
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--db", default=argparse.SUPPRESS,
                        help=f"SQLite database (default: $DIBCORD_DB or {_DEFAULT_DB})")
    common.add_argument("--pk", default=argparse.SUPPRESS,
                        help=f"Primary-key column (default: $DIBCORD_PK or {_DEFAULT_PK})")
    common.add_argument("--config", default=argparse.SUPPRESS,
                        help="config.json path (default: $DIBCORD_CONFIG)")
    common.add_argument("-q", "--quiet", action="store_true", default=argparse.SUPPRESS,
                        help="No progress output on stderr")
    common.add_argument("--json", action="store_true", default=argparse.SUPPRESS,
                        help="JSON output")
    common.add_argument("-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
                        help="Debug logging")

    parser = argparse.ArgumentParser(
        prog="dibcord",
        description="Record tables stored as linked message chains",
        parents=[common],
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    def command(name, func, help_text):
        p = sub.add_parser(name, parents=[common], help=help_text)
        p.set_defaults(func=func)
        return p

    p = command("init", cmd_init, "Create a workspace")
    p.add_argument("path", nargs="?", default=".dibcord", help="Directory (default: .dibcord)")
    p.add_argument("--force", action="store_true", help="Recreate an existing database")

    for name, func, help_text in (
        ("insert", cmd_insert, "Insert a JSON record"),
        ("update", cmd_update, "Replace a JSON record (delete, then insert)"),
    ):
        p = command(name, func, help_text)
        p.add_argument("table")
        p.add_argument("data", nargs="?", default=None, help="JSON object (default: stdin)")

    for name, func, help_text in (
        ("find", cmd_find, "Print a record by primary key"),
        ("delete", cmd_delete, "Delete a record by primary key"),
    ):
        p = command(name, func, help_text)
        p.add_argument("table")
        p.add_argument("id", help="Primary-key value")

    p = command("query", cmd_query, "Print records matching every condition")
    p.add_argument("table")
    p.add_argument("--where", action="append", metavar="FIELD=VALUE",
                   help="Equality condition, repeatable; JSON literals are decoded")

    command("channels", cmd_channels, "List channels with message counts")

    p = command("serve", cmd_serve, "Start the MCP server")
    p.add_argument("--transport", choices=_TRANSPORTS, default="stdio")
    return parser


def main(argv: Optional[list] = None) -> None:
    """CLI entry point: dibcord <command> [args]."""
    global _quiet

    parser = build_parser()
    args = parser.parse_args(argv)
    _quiet = getattr(args, "quiet", False)
    verbose = getattr(args, "verbose", False)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s %(levelname)s %(message)s",
    )

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except _Abort as e:
        _warn(str(e))
        sys.exit(e.code)
    except _USER_ERRORS as e:
        _warn(f"Error: {e}")
        sys.exit(1)
    except BrokenPipeError:
        # Reader went away (e.g. piped into head)
        os.dup2(os.open(os.devnull, os.O_WRONLY), sys.stdout.fileno())
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(0)
    except Exception as e:
        _warn(f"Internal error: {e}")
        if verbose:
            logger.exception("Command %s failed", args.command)
        sys.exit(2)


if __name__ == "__main__":
    main()
