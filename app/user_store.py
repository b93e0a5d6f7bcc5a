from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List

from app.specialties import prune_pinned_keys, require_specialty, table_schema


DEFAULT_STORE_PATH = os.path.join(
    os.path.dirname(os.path.dirname(__file__)),
    "data",
    "user_prefs.json",
)
ENV_STORE_PATH = "REFTRACK_USER_STORE_PATH"

_LOCK = threading.Lock()

logger = logging.getLogger("referraltracker.user_store")


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _store_path() -> str:
    p = (os.getenv(ENV_STORE_PATH) or DEFAULT_STORE_PATH).strip()
    return p or DEFAULT_STORE_PATH


def _safe_json_load(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return data if isinstance(data, dict) else {}
    except FileNotFoundError:
        return {}
    except (OSError, ValueError):
        logger.warning("user_store unreadable at %s; starting empty", path)
        return {}


def _safe_json_write(path: str, payload: Dict[str, Any]) -> None:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    tmp = f"{path}.tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False, indent=2, default=str)
    os.replace(tmp, path)


def _user_bucket(data: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    users = data.setdefault("users", {})
    if not isinstance(users, dict):
        users = data["users"] = {}
    bucket = users.setdefault(user_id, {})
    if not isinstance(bucket, dict):
        bucket = users[user_id] = {}
    return bucket


# ---- notepad ----

def get_notepad(user_id: str) -> Dict[str, Any]:
    with _LOCK:
        data = _safe_json_load(_store_path())
    bucket = (data.get("users") or {}).get(user_id) or {}
    note = bucket.get("notepad") if isinstance(bucket, dict) else None
    if not isinstance(note, dict):
        return {"text": "", "updated_at_utc": ""}
    return {"text": str(note.get("text") or ""), "updated_at_utc": str(note.get("updated_at_utc") or "")}


def save_notepad(user_id: str, text: str) -> Dict[str, Any]:
    path = _store_path()
    note = {"text": text or "", "updated_at_utc": _utcnow_iso()}
    with _LOCK:
        data = _safe_json_load(path)
        _user_bucket(data, user_id)["notepad"] = note
        _safe_json_write(path, data)
    return note


def clear_notepad(user_id: str) -> Dict[str, Any]:
    return save_notepad(user_id, "")


# ---- pinned (frozen) columns ----

def get_pinned_columns(user_id: str, specialty: str) -> List[str]:
    name = require_specialty(specialty)
    with _LOCK:
        data = _safe_json_load(_store_path())
    bucket = (data.get("users") or {}).get(user_id) or {}
    pinned = (bucket.get("pinned_columns") or {}) if isinstance(bucket, dict) else {}
    keys = pinned.get(name) if isinstance(pinned, dict) else None
    if not isinstance(keys, list):
        return []
    return prune_pinned_keys(table_schema(name), [str(k) for k in keys])


def save_pinned_columns(user_id: str, specialty: str, keys: List[str]) -> List[str]:
    name = require_specialty(specialty)
    cleaned = prune_pinned_keys(table_schema(name), [str(k) for k in keys or []])
    path = _store_path()
    with _LOCK:
        data = _safe_json_load(path)
        bucket = _user_bucket(data, user_id)
        pinned = bucket.get("pinned_columns")
        if not isinstance(pinned, dict):
            pinned = bucket["pinned_columns"] = {}
        pinned[name] = cleaned
        _safe_json_write(path, data)
    return cleaned
