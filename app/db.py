from __future__ import annotations

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from threading import Lock as ThreadLock
from typing import Any, Dict, Iterator, List, Optional, Sequence

from app.specialties import SPECIALTY_TABLES

logger = logging.getLogger("referraltracker.db")

PROJECT_ROOT = os.path.dirname(os.path.dirname(__file__))
DATA_DIR = os.path.join(PROJECT_ROOT, "data")
DB_PATH = os.getenv("REFTRACK_DB_PATH", os.path.join(DATA_DIR, "referraltracker.sqlite")).strip()

DB_LOCK = ThreadLock()

REFERRAL_COLUMNS = [
    ("created_at", "TEXT NOT NULL"),
    ("updated_at", "TEXT NOT NULL"),
    ("record_status", "TEXT NOT NULL DEFAULT 'active'"),
    ("location", "TEXT"),
    ("date_referral_received", "TEXT"),
    ("date_cancelled", "TEXT"),
    ("needs_call", "INTEGER"),
    ("patient_name", "TEXT"),
    ("dob", "TEXT"),
    ("phone", "TEXT"),
    ("insurance", "TEXT"),
    ("ngm_patient", "INTEGER"),
    ("referral_provider", "TEXT"),
    ("referral_provider_id", "INTEGER"),
    ("provider_practice", "TEXT"),
    ("reason", "TEXT"),
    ("forms_sent", "INTEGER"),
    ("form_received", "TEXT"),
    ("called_to_schedule", "INTEGER"),
    ("prep_instruction_sent", "INTEGER"),
    ("communication_1", "TEXT"),
    ("communication_2", "TEXT"),
    ("communication_3", "TEXT"),
    ("appt_date_time", "TEXT"),
    ("status", "TEXT"),
    ("status_updated_at", "TEXT"),
    ("email_sent_at", "TEXT"),
    ("notes", "TEXT"),
    ("notes_2", "TEXT"),
]

BOOLEAN_COLUMNS = {
    "needs_call",
    "ngm_patient",
    "forms_sent",
    "called_to_schedule",
    "prep_instruction_sent",
    "is_active",
}
JSON_COLUMNS = {"edit_history"}


class StoreError(RuntimeError):
    """Raised when the backing store rejects a query. The message is shown to the caller."""


class NotFoundError(LookupError):
    """A requested row does not exist."""


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _ensure_dirs() -> None:
    parent = os.path.dirname(DB_PATH)
    if parent:
        os.makedirs(parent, exist_ok=True)


def _ensure_schema(conn: sqlite3.Connection) -> None:
    cols_sql = ",\n            ".join(f"{name} {decl}" for name, decl in REFERRAL_COLUMNS)
    for table in SPECIALTY_TABLES.values():
        conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                {cols_sql}
            )
            """
        )
        conn.execute(
            f"CREATE INDEX IF NOT EXISTS idx_{table}_status ON {table}(record_status, status_updated_at)"
        )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS referral_providers (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            provider_practice TEXT,
            referral_provider TEXT,
            contact_phone TEXT,
            contact_email TEXT,
            address TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            edit_history TEXT NOT NULL DEFAULT '[]'
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS insurances (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            insurance TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS user_access (
            user_id TEXT PRIMARY KEY,
            email TEXT,
            display_name TEXT,
            role TEXT NOT NULL DEFAULT 'guest',
            location TEXT,
            status TEXT NOT NULL DEFAULT 'active'
        )
        """
    )
    conn.commit()


@contextmanager
def connect() -> Iterator[sqlite3.Connection]:
    """Serialized connection to the store. sqlite errors surface as StoreError."""
    with DB_LOCK:
        _ensure_dirs()
        try:
            conn = sqlite3.connect(DB_PATH, timeout=30)
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e
        conn.row_factory = sqlite3.Row
        try:
            _ensure_schema(conn)
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.warning("store.error %s: %s", e.__class__.__name__, e)
            raise StoreError(str(e)) from e
        finally:
            conn.close()


def _decode_row(row: sqlite3.Row) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key in row.keys():
        val = row[key]
        if key in BOOLEAN_COLUMNS and val is not None:
            val = bool(val)
        elif key in JSON_COLUMNS:
            try:
                val = json.loads(val or "[]")
            except ValueError:
                val = []
        out[key] = val
    return out


def _encode_value(key: str, val: Any) -> Any:
    if key in JSON_COLUMNS:
        return json.dumps(val if val is not None else [], ensure_ascii=True, default=str)
    if isinstance(val, bool):
        return int(val)
    return val


def _check_ident(name: str) -> str:
    if not name.replace("_", "").isalnum():
        raise StoreError(f"Invalid identifier: {name}")
    return name


def fetch_all(sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute(sql, tuple(params)).fetchall()
    return [_decode_row(r) for r in rows]


def fetch_one(sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
    with connect() as conn:
        row = conn.execute(sql, tuple(params)).fetchone()
    return _decode_row(row) if row else None


def insert(table: str, values: Dict[str, Any]) -> int:
    table = _check_ident(table)
    keys = [_check_ident(k) for k in values]
    placeholders = ", ".join("?" for _ in keys)
    sql = f"INSERT INTO {table} ({', '.join(keys)}) VALUES ({placeholders})"
    with connect() as conn:
        cur = conn.execute(sql, tuple(_encode_value(k, values[k]) for k in keys))
        return int(cur.lastrowid)


def update_by_id(table: str, row_id: Any, values: Dict[str, Any], id_column: str = "id") -> int:
    table = _check_ident(table)
    id_column = _check_ident(id_column)
    keys = [_check_ident(k) for k in values]
    if not keys:
        return 0
    assignments = ", ".join(f"{k} = ?" for k in keys)
    sql = f"UPDATE {table} SET {assignments} WHERE {id_column} = ?"
    params = [_encode_value(k, values[k]) for k in keys] + [row_id]
    with connect() as conn:
        cur = conn.execute(sql, tuple(params))
        return cur.rowcount


def update_where_in(table: str, column: str, ids: Sequence[Any], values: Dict[str, Any]) -> int:
    table = _check_ident(table)
    column = _check_ident(column)
    keys = [_check_ident(k) for k in values]
    if not ids or not keys:
        return 0
    assignments = ", ".join(f"{k} = ?" for k in keys)
    marks = ", ".join("?" for _ in ids)
    sql = f"UPDATE {table} SET {assignments} WHERE {column} IN ({marks})"
    params = [_encode_value(k, values[k]) for k in keys] + list(ids)
    with connect() as conn:
        cur = conn.execute(sql, tuple(params))
        return cur.rowcount


def upsert(table: str, values: Dict[str, Any], conflict_column: str) -> None:
    table = _check_ident(table)
    conflict_column = _check_ident(conflict_column)
    keys = [_check_ident(k) for k in values]
    placeholders = ", ".join("?" for _ in keys)
    updates = ", ".join(f"{k} = excluded.{k}" for k in keys if k != conflict_column)
    sql = (
        f"INSERT INTO {table} ({', '.join(keys)}) VALUES ({placeholders}) "
        f"ON CONFLICT({conflict_column}) DO UPDATE SET {updates}"
    )
    with connect() as conn:
        conn.execute(sql, tuple(_encode_value(k, values[k]) for k in keys))
