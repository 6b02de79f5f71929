"""
Tests for dibcord.database — table registry over a channel provider.
"""

import pytest

from dibcord.channel import InMemorySubstrate
from dibcord.config import DibcordConfig, EngineConfig, RateLimitConfig, StoreConfig
from dibcord.database import Database, channel_name_for, open_database
from dibcord.rate_limiter import ThrottledChannel
from dibcord.table import ChannelTable
from dibcord.types import ChainWriteError, DibcordError, RateLimitExceeded, TableSchema


@pytest.fixture
def db():
    return Database(InMemorySubstrate())


class TestDatabase:
    def test_channel_name(self):
        assert channel_name_for("Users") == "users"

    def test_create_table_binds(self, db):
        t = db.create_table("Users", ["id", "name"], "id")
        assert t.ready
        assert t.channel.name == "users"
        assert t.schema.primary_key == "id"
        assert db.tables == ["Users"]
        assert db.table("Users") is t

    def test_engine_config_applied(self):
        cfg = DibcordConfig(engine=EngineConfig(chunk_size=50, retrieval_window=7))
        t = Database(InMemorySubstrate(), cfg).create_table("T", ["id"], "id")
        assert t.chunk_size == 50
        assert t.retrieval_window == 7

    def test_link_existing_table(self, db):
        t = ChannelTable("Orders", TableSchema(columns=("oid",), primary_key="oid"))
        db.link_table(t)
        assert t.ready
        assert "orders" in db.provider.list_channels()

    def test_tables_share_substrate_channels(self, db):
        a = db.create_table("Users", ["id"], "id")
        a.insert({"id": "u1"})
        b = db.create_table("users", ["id"], "id")
        assert b.find("u1") is not None

    def test_unknown_table(self, db):
        with pytest.raises(DibcordError):
            db.table("Nope")

    def test_close_without_resources(self, db):
        db.close()

    def test_rate_limited_channels(self):
        cfg = DibcordConfig(rate_limit=RateLimitConfig(
            enabled=True, writes_per_minute=2, reads_per_minute=100, wait=False,
        ))
        t = Database(InMemorySubstrate(), cfg).create_table("T", ["id"], "id")
        assert isinstance(t.channel, ThrottledChannel)
        t.insert({"id": "a"})
        t.insert({"id": "b"})
        with pytest.raises(ChainWriteError) as exc:
            t.insert({"id": "c"})
        assert isinstance(exc.value.cause, RateLimitExceeded)


class TestOpenDatabase:
    def test_open_on_disk(self, tmp_path):
        path = str(tmp_path / "sub" / "dibcord.db")
        db = open_database(DibcordConfig(store=StoreConfig(db_path=path)))
        t = db.create_table("Users", ["id"], "id")
        t.insert({"id": "u1", "name": "A"})
        db.close()

        db2 = open_database(DibcordConfig(store=StoreConfig(db_path=path)))
        assert db2.create_table("Users", ["id"], "id").get("u1") == {"id": "u1", "name": "A"}
        db2.close()
