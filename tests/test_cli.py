"""
Tests for the dibcord CLI — commands via subprocess.

Every test runs the real entry point (`python -m dibcord.cli`) against a
temporary SQLite substrate so there are no side-effects on the developer
machine.
"""

import json
import os
import subprocess
import sys

import pytest


PYTHON = sys.executable
CLI = [PYTHON, "-m", "dibcord.cli"]


def run(args, *, env=None, stdin=None):
    """Run a dibcord CLI command and return CompletedProcess."""
    base = {k: v for k, v in os.environ.items() if not k.startswith("DIBCORD_")}
    return subprocess.run(
        CLI + args,
        capture_output=True,
        text=True,
        env={**base, **(env or {})},
        input=stdin,
        timeout=30,
    )


@pytest.fixture
def db(tmp_path):
    """Initialize a workspace and return the DB path."""
    db_path = str(tmp_path / "ws" / "dibcord.db")
    r = run(["init", str(tmp_path / "ws"), "--db", db_path, "-q"])
    assert r.returncode == 0, f"init failed: {r.stderr}"
    return db_path


@pytest.fixture
def populated_db(db):
    for rec in (
        {"id": "u1", "name": "A", "role": "admin", "note": "n" * 9000},
        {"id": "u2", "name": "B", "role": "user"},
        {"id": "u3", "name": "C", "role": "admin"},
    ):
        r = run(["insert", "Users", json.dumps(rec), "--db", db, "-q"])
        assert r.returncode == 0, r.stderr
    return db


# ---------------------------------------------------------------------------
# init
# ---------------------------------------------------------------------------


class TestInit:
    def test_creates_workspace(self, tmp_path):
        ws = tmp_path / "ws"
        r = run(["init", str(ws)])
        assert r.returncode == 0
        assert (ws / "dibcord.db").exists()
        assert (ws / "config.json").exists()
        assert (ws / ".gitignore").exists()
        assert "export DIBCORD_DB=" in r.stdout

    def test_config_written(self, tmp_path):
        ws = tmp_path / "ws"
        run(["init", str(ws)])
        cfg = json.loads((ws / "config.json").read_text(encoding="utf-8"))
        assert cfg["engine"]["chunk_size"] == 3800
        assert cfg["store"]["db_path"].endswith("dibcord.db")

    def test_idempotent(self, tmp_path):
        ws = tmp_path / "ws"
        run(["init", str(ws)])
        r = run(["init", str(ws)])
        assert r.returncode == 0
        assert "exists" in r.stderr

    def test_force(self, db, tmp_path):
        run(["insert", "Users", '{"id": "u1"}', "--db", db, "-q"])
        r = run(["init", str(tmp_path / "ws"), "--db", db, "--force", "-q"])
        assert r.returncode == 0
        assert run(["find", "Users", "u1", "--db", db]).returncode == 1


# ---------------------------------------------------------------------------
# insert / find
# ---------------------------------------------------------------------------


class TestInsertFind:
    def test_round_trip(self, populated_db):
        r = run(["find", "Users", "u1", "--db", populated_db])
        assert r.returncode == 0
        rec = json.loads(r.stdout)
        assert rec["name"] == "A"
        assert len(rec["note"]) == 9000

    def test_insert_json_output(self, db):
        r = run(["insert", "Users", '{"id": "x", "v": 1}', "--db", db, "--json"])
        assert r.returncode == 0
        out = json.loads(r.stdout)
        assert out["status"] == "ok"
        assert out["id"] == "x"
        assert out["chunks"] == 1

    def test_insert_from_stdin(self, db):
        r = run(["insert", "Users", "--db", db, "-q"], stdin='{"id": "s1"}')
        assert r.returncode == 0
        assert run(["find", "Users", "s1", "--db", db]).returncode == 0

    def test_missing_pk(self, db):
        r = run(["insert", "Users", '{"name": "anon"}', "--db", db])
        assert r.returncode == 1
        assert "primary key" in r.stderr

    def test_custom_pk(self, db):
        r = run(["insert", "Orders", '{"oid": "o1"}', "--db", db, "--pk", "oid", "-q"])
        assert r.returncode == 0
        r = run(["find", "Orders", "o1", "--db", db], env={"DIBCORD_PK": "oid"})
        assert r.returncode == 0

    @pytest.mark.parametrize("payload", ["not json", "[1, 2]", "   "])
    def test_bad_input(self, db, payload):
        r = run(["insert", "Users", payload, "--db", db])
        assert r.returncode == 1

    def test_find_missing(self, db):
        r = run(["find", "Users", "ghost", "--db", db])
        assert r.returncode == 1
        assert "not found" in r.stderr

    def test_db_from_env(self, db):
        r = run(["insert", "Users", '{"id": "e1"}', "-q"], env={"DIBCORD_DB": db})
        assert r.returncode == 0
        assert run(["find", "Users", "e1", "--db", db]).returncode == 0


# ---------------------------------------------------------------------------
# query
# ---------------------------------------------------------------------------


class TestQuery:
    def test_where(self, populated_db):
        r = run(["query", "Users", "--where", "role=admin", "--db", populated_db, "-q"])
        assert r.returncode == 0
        ids = [json.loads(line)["id"] for line in r.stdout.splitlines()]
        assert ids == ["u3", "u1"]

    def test_multiple_conditions(self, populated_db):
        r = run([
            "query", "Users", "--where", "role=admin", "--where", "name=C",
            "--db", populated_db, "--json",
        ])
        assert [rec["id"] for rec in json.loads(r.stdout)] == ["u3"]

    def test_all(self, populated_db):
        r = run(["query", "Users", "--db", populated_db, "--json"])
        assert len(json.loads(r.stdout)) == 3

    def test_invalid_condition(self, populated_db):
        r = run(["query", "Users", "--where", "broken", "--db", populated_db])
        assert r.returncode == 1


# ---------------------------------------------------------------------------
# update / delete
# ---------------------------------------------------------------------------


class TestUpdateDelete:
    def test_update(self, populated_db):
        r = run(["update", "Users", '{"id": "u1", "name": "Z"}', "--db", populated_db, "-q"])
        assert r.returncode == 0
        rec = json.loads(run(["find", "Users", "u1", "--db", populated_db]).stdout)
        assert rec == {"id": "u1", "name": "Z"}

    def test_delete(self, populated_db):
        r = run(["delete", "Users", "u1", "--db", populated_db, "--json"])
        assert r.returncode == 0
        out = json.loads(r.stdout)
        assert out["found"] is True
        assert out["strategy"] == "bulk"
        assert len(out["deleted_ids"]) == 3
        assert run(["find", "Users", "u1", "--db", populated_db]).returncode == 1

    def test_delete_absent_is_noop(self, db):
        r = run(["delete", "Users", "ghost", "--db", db])
        assert r.returncode == 0
        assert "Nothing to delete" in r.stderr


# ---------------------------------------------------------------------------
# channels / misc
# ---------------------------------------------------------------------------


class TestChannels:
    def test_list(self, populated_db):
        r = run(["channels", "--db", populated_db])
        assert r.returncode == 0
        assert r.stdout.strip() == "users\t5"

    def test_json(self, populated_db):
        r = run(["channels", "--db", populated_db, "--json"])
        assert json.loads(r.stdout) == [{"name": "users", "messages": 5}]

    def test_missing_database_not_created(self, tmp_path):
        missing = tmp_path / "nowhere.db"
        r = run(["channels", "--db", str(missing)])
        assert r.returncode == 1
        assert "No database" in r.stderr
        assert not missing.exists()


class TestMisc:
    def test_no_command(self):
        r = run([])
        assert r.returncode == 1

    def test_quiet_suppresses_progress(self, db):
        r = run(["insert", "Users", '{"id": "q"}', "--db", db, "-q"])
        assert r.stderr == ""
