"""Test cases for db operations."""

import sqlite3

import pytest

import db
from db import (
    _conn,
    count_progress_resets,
    delete_progress_payload,
    list_progress_users,
    load_progress_payload,
    save_progress_payload,
)
from db_pool import SQLiteConnectionPool


def test_save_and_load_payload(temp_db):
    """Snapshots are upserted per learner."""
    save_progress_payload("learner", {"version": 2, "currentChapter": 1}, 2)
    save_progress_payload("learner", {"version": 2, "currentChapter": 3}, 2)

    assert load_progress_payload("learner") == {"version": 2, "currentChapter": 3}

    with _conn() as con:
        rows = con.execute("SELECT user_id, version FROM learner_progress").fetchall()
    assert len(rows) == 1
    assert rows[0]["version"] == 2


def test_load_missing_user(temp_db):
    assert load_progress_payload("ghost") is None


@pytest.mark.parametrize("raw", ["not json", "[1, 2, 3]", "null"])
def test_load_non_object_payload(temp_db, raw):
    with _conn() as con:
        con.execute(
            "INSERT INTO learner_progress (user_id, version, payload) VALUES (?, ?, ?)",
            ("learner", 2, raw),
        )
        con.commit()

    assert load_progress_payload("learner") == {}


def test_delete_logs_reset(temp_db):
    save_progress_payload("learner", {"version": 2}, 2)

    assert delete_progress_payload("learner") is True
    assert delete_progress_payload("learner") is False
    assert count_progress_resets("learner") == 2
    assert count_progress_resets("someone-else") == 0


def test_list_progress_users(temp_db):
    save_progress_payload("ana", {"version": 2}, 2)
    save_progress_payload("ben", {"version": 2}, 2)

    users = {row["user_id"] for row in list_progress_users()}

    assert users == {"ana", "ben"}


def test_init_is_idempotent(temp_db):
    db.init()
    db.init()

    with _conn() as con:
        tables = {
            row["name"]
            for row in con.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
        }
    assert {"learner_progress", "progress_resets"} <= tables


def test_pool_reuses_connections(tmp_path):
    pool = SQLiteConnectionPool(str(tmp_path / "pool.db"), max_connections=2)

    with pool.get_connection() as first:
        first.execute("SELECT 1")
    with pool.get_connection() as second:
        assert second is first

    assert pool.created_connections == 1
    pool.close_all()
    assert pool.created_connections == 0


def test_pool_exhaustion_raises_operational_error(tmp_path):
    pool = SQLiteConnectionPool(str(tmp_path / "pool.db"), max_connections=1, timeout=0.05)

    with pool.get_connection():
        with pytest.raises(sqlite3.OperationalError, match="exhausted"):
            with pool.get_connection():
                pass
    pool.close_all()
