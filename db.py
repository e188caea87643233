import json
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from db_pool import SQLiteConnectionPool

DB_PATH = os.getenv("DB_PATH", "progress.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur

def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def reset_pool(path: Optional[str] = None) -> None:
    """Point the module at ``path`` (or ``DB_PATH``) with a fresh pool."""
    global DB_PATH, _pool
    if path is not None:
        DB_PATH = str(path)
    _pool.close_all()
    _pool = SQLiteConnectionPool(DB_PATH, max_connections=10)


def init():
    if DB_PATH != ":memory:":
        Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS learner_progress (
              user_id     TEXT PRIMARY KEY,
              version     INTEGER NOT NULL,
              payload     TEXT NOT NULL,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              updated_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS progress_resets (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id     TEXT NOT NULL,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_progress_resets_user ON progress_resets(user_id);
            """
        )
        con.commit()


def load_progress_payload(user_id: str) -> Optional[Dict[str, Any]]:
    """Return the stored snapshot for ``user_id``; ``None`` when absent.

    A row whose payload is not a JSON object is reported as ``{}`` so the
    caller default-fills it instead of treating the learner as new.
    """
    rows = _query("SELECT payload FROM learner_progress WHERE user_id = ?", (user_id,))
    if not rows:
        return None
    try:
        payload = json.loads(rows[0]["payload"])
    except (TypeError, json.JSONDecodeError):
        return {}
    return payload if isinstance(payload, dict) else {}


def save_progress_payload(user_id: str, payload: Dict[str, Any], version: int) -> None:
    """Upsert the full snapshot for ``user_id`` (last writer wins)."""
    now = datetime.now(timezone.utc).isoformat()
    _exec(
        """
        INSERT INTO learner_progress (user_id, version, payload, updated_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(user_id) DO UPDATE SET
          version = excluded.version,
          payload = excluded.payload,
          updated_at = excluded.updated_at
        """,
        (user_id, int(version), json.dumps(payload, ensure_ascii=False), now),
    )


def delete_progress_payload(user_id: str) -> bool:
    with _conn() as con:
        cur = con.execute("DELETE FROM learner_progress WHERE user_id = ?", (user_id,))
        con.execute("INSERT INTO progress_resets (user_id) VALUES (?)", (user_id,))
        con.commit()
        return cur.rowcount > 0


def count_progress_resets(user_id: str) -> int:
    rows = _query("SELECT COUNT(*) AS n FROM progress_resets WHERE user_id = ?", (user_id,))
    return int(rows[0]["n"]) if rows else 0


def list_progress_users(limit: int = 100) -> list[sqlite3.Row]:
    return _query(
        """
        SELECT user_id, version, updated_at
        FROM learner_progress
        ORDER BY updated_at DESC
        LIMIT ?
        """,
        (int(limit),),
    )
