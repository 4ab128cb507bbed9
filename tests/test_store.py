from __future__ import annotations

import sqlite3
from unittest.mock import patch

from skm.store import CURRENT_SCHEMA_VERSION, Store


def test_upsert_and_load_rows(tmp_path):
    store = Store(db_path=tmp_path / "cache.db")

    written = store.upsert_rows([("/work/alpha", "abc123", '{"stage": "Plan"}')])
    rows = store.load_rows()

    assert written == 1
    assert [(row.path, row.fingerprint) for row in rows] == [("/work/alpha", "abc123")]
    assert rows[0].updated_at


def test_upsert_replaces_whole_entry(tmp_path):
    store = Store(db_path=tmp_path / "cache.db")

    store.upsert_rows([("/work/alpha", "v1", '{"n": 1}')])
    store.upsert_rows([("/work/alpha", "v2", '{"n": 2}')])

    rows = store.load_rows()
    assert len(rows) == 1
    assert (rows[0].fingerprint, rows[0].payload_json) == ("v2", '{"n": 2}')


def test_upsert_deletes_removed_paths(tmp_path):
    store = Store(db_path=tmp_path / "cache.db")
    store.upsert_rows([("/work/a", "1", "{}"), ("/work/b", "2", "{}")])

    written = store.upsert_rows([("/work/c", "3", "{}")], delete_paths=["/work/a", "/work/missing"])

    assert written == 1
    assert [row.path for row in store.load_rows()] == ["/work/b", "/work/c"]


def test_replace_all(tmp_path):
    store = Store(db_path=tmp_path / "cache.db")
    store.upsert_rows([("/work/old", "x", "{}")])

    written = store.replace_all([("/work/b", "2", "{}"), ("/work/a", "1", "{}")])

    assert written == 2
    assert [row.path for row in store.load_rows()] == ["/work/a", "/work/b"]
    assert store.count() == 2
    assert store.last_updated() is not None
    assert store.replace_all([]) == 0
    assert store.count() == 0
    assert store.last_updated() is None


def test_rows_survive_reopen(tmp_path):
    db_path = tmp_path / "nested" / "cache.db"
    Store(db_path=db_path).upsert_rows([("/work/alpha", "abc", "{}")])

    reopened = Store(db_path=db_path)

    assert reopened.load_rows()[0].fingerprint == "abc"


def test_schema_version_recorded(tmp_path):
    store = Store(db_path=tmp_path / "cache.db")

    with sqlite3.connect(store.db_path) as conn:
        version = conn.execute("SELECT version FROM schema_version").fetchone()[0]

    assert version == CURRENT_SCHEMA_VERSION


def test_reset_recreates_database(tmp_path):
    store = Store(db_path=tmp_path / "cache.db")
    store.upsert_rows([("/work/alpha", "abc", "{}")])

    store.reset()

    assert store.count() == 0


def test_default_location_is_skm_dir(tmp_path):
    with patch("skm.store.get_skm_dir", return_value=tmp_path / ".skm"):
        store = Store()

    assert store.db_path == tmp_path / ".skm" / "cache.db"
    assert store.db_path.exists()
