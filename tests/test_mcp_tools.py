"""
Tests for the MCP table tools in dibcord.mcp.tools.

Tests use direct function calls (not MCP protocol) via a mock FastMCP.
"""

import io
import json

import pytest

from dibcord.channel import InMemorySubstrate
from dibcord.database import Database
from dibcord.mcp.audit import AuditLogger
from dibcord.mcp.tools import register_table_tools
from dibcord.rate_limiter import RateLimiter


# ---------------------------------------------------------------------------
# Mock FastMCP
# ---------------------------------------------------------------------------


class MockMCP:
    """Minimal FastMCP mock that captures tool registrations."""

    def __init__(self):
        self.tools = {}

    def tool(self):
        def decorator(fn):
            self.tools[fn.__name__] = fn
            return fn
        return decorator


def _make_env(rate_limiter=None, substrate=None):
    db = Database(substrate or InMemorySubstrate())
    mcp = MockMCP()
    sink = io.StringIO()
    register_table_tools(mcp, db, rate_limiter=rate_limiter, audit=AuditLogger(output=sink))
    return {"mcp": mcp, "db": db, "audit": sink}


@pytest.fixture
def mcp_env():
    return _make_env()


def call(env, tool_name, **kwargs):
    """Call a registered MCP tool by name."""
    return env["mcp"].tools[tool_name](**kwargs)


def audit_records(env):
    return [json.loads(line) for line in env["audit"].getvalue().splitlines()]


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestToolCount:
    def test_six_tools_registered(self, mcp_env):
        assert set(mcp_env["mcp"].tools) == {
            "table_insert", "table_update", "table_delete",
            "table_find", "table_query", "table_list",
        }


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------


class TestInsertFind:
    def test_insert(self, mcp_env):
        r = call(mcp_env, "table_insert", table="Users", record={"id": "u1", "note": "n" * 9000})
        assert r["status"] == "ok"
        assert r["id"] == "u1"
        assert r["chunks"] == 3

    def test_table_linked_on_first_use(self, mcp_env):
        call(mcp_env, "table_insert", table="Users", record={"id": "u1"})
        assert mcp_env["db"].tables == ["Users"]

    def test_find(self, mcp_env):
        call(mcp_env, "table_insert", table="Users", record={"id": "u1", "name": "A"})
        r = call(mcp_env, "table_find", table="Users", pk="u1")
        assert r["status"] == "ok"
        assert r["record"] == {"id": "u1", "name": "A"}
        assert r["chunks"] == 1

    def test_find_missing(self, mcp_env):
        r = call(mcp_env, "table_find", table="Users", pk="ghost")
        assert r["status"] == "not_found"

    def test_missing_pk_rejected(self, mcp_env):
        r = call(mcp_env, "table_insert", table="Users", record={"name": "anon"})
        assert r["status"] == "rejected"
        assert "primary key" in r["message"]

    def test_substrate_error(self):
        env = _make_env(substrate=InMemorySubstrate(max_payload_chars=10))
        r = call(env, "table_insert", table="Tiny", record={"id": "x", "v": "long value"})
        assert r["status"] == "error"
        assert "Substrate error" in r["message"]


class TestUpdateDelete:
    def test_update(self, mcp_env):
        call(mcp_env, "table_insert", table="Users", record={"id": "u1", "name": "A"})
        r = call(mcp_env, "table_update", table="Users", record={"id": "u1", "name": "B"})
        assert r["status"] == "ok"
        assert call(mcp_env, "table_find", table="Users", pk="u1")["record"]["name"] == "B"

    def test_delete(self, mcp_env):
        call(mcp_env, "table_insert", table="Users", record={"id": "u1"})
        r = call(mcp_env, "table_delete", table="Users", pk="u1")
        assert r["status"] == "ok"
        assert r["strategy"] == "bulk"
        assert r["failed_ids"] == []

    def test_delete_missing(self, mcp_env):
        r = call(mcp_env, "table_delete", table="Users", pk="ghost")
        assert r["status"] == "not_found"


class TestQueryList:
    def test_query(self, mcp_env):
        for rec in ({"id": "a", "k": 1}, {"id": "b", "k": 2}, {"id": "c", "k": 1}):
            call(mcp_env, "table_insert", table="Items", record=rec)
        r = call(mcp_env, "table_query", table="Items", where=["k=1"])
        assert r["status"] == "ok"
        assert r["count"] == 2
        assert [rec["id"] for rec in r["records"]] == ["c", "a"]

    def test_query_all(self, mcp_env):
        call(mcp_env, "table_insert", table="Items", record={"id": "a"})
        assert call(mcp_env, "table_query", table="Items")["count"] == 1

    def test_query_invalid(self, mcp_env):
        r = call(mcp_env, "table_query", table="Items", where=["nonsense"])
        assert r["status"] == "rejected"

    def test_list(self, mcp_env):
        call(mcp_env, "table_insert", table="Users", record={"id": "u1"})
        call(mcp_env, "table_insert", table="Items", record={"id": "a"})
        r = call(mcp_env, "table_list")
        assert r["tables"] == ["items", "users"]
        assert r["count"] == 2


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


class TestRateLimiting:
    def test_writes_limited(self):
        env = _make_env(RateLimiter(writes_per_minute=2, reads_per_minute=100))
        call(env, "table_insert", table="T", record={"id": "1"})
        call(env, "table_insert", table="T", record={"id": "2"})
        r = call(env, "table_insert", table="T", record={"id": "3"})
        assert r["status"] == "rate_limited"
        assert r["retry_after_ms"] > 0

    def test_list_exempt(self):
        env = _make_env(RateLimiter(writes_per_minute=1, reads_per_minute=1))
        for _ in range(3):
            assert call(env, "table_list")["status"] == "ok"


class TestAudit:
    def test_one_record_per_call(self, mcp_env):
        call(mcp_env, "table_insert", table="Users", record={"id": "u1", "secret": "s" * 500})
        call(mcp_env, "table_find", table="Users", pk="ghost")
        recs = audit_records(mcp_env)
        assert [r["tool"] for r in recs] == ["table_insert", "table_find"]
        assert [r["outcome"] for r in recs] == ["ok", "not_found"]
        assert recs[0]["table"] == "Users"
        assert len(recs[0]["d"]["preview"]) <= 121
        assert "s" * 500 not in mcp_env["audit"].getvalue()

    def test_rejection_audited(self, mcp_env):
        call(mcp_env, "table_insert", table="Users", record={})
        assert audit_records(mcp_env)[-1]["outcome"] == "rejected"
