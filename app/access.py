from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from app import db

logger = logging.getLogger("referraltracker.access")

TABLE = "user_access"

ROLES = ("admin", "editor", "guest")
LOCATIONS = ("CH_Elko", "CH_LakeHavasu", "CH_Pahrump")
STATUSES = ("active", "disabled")


def normalize_status(value: Any) -> str:
    return "disabled" if str(value or "").strip().lower() == "disabled" else "active"


def can_edit(role: Optional[str]) -> bool:
    return role in ("admin", "editor")


def can_admin(role: Optional[str]) -> bool:
    return role == "admin"


def _to_view(r: Dict[str, Any]) -> Dict[str, Any]:
    role = str(r.get("role") or "guest")
    loc = r.get("location")
    return {
        "user_id": str(r.get("user_id") or ""),
        "email": r.get("email") or "",
        "display_name": r.get("display_name") or "",
        "role": role if role in ROLES else "guest",
        "location": None if loc is None else str(loc),
        "status": normalize_status(r.get("status")),
    }


def get_user_access(user_id: str) -> Optional[Dict[str, Any]]:
    if not user_id:
        return None
    r = db.fetch_one(f"SELECT * FROM {TABLE} WHERE user_id = ?", (user_id,))
    return _to_view(r) if r else None


def list_user_access() -> List[Dict[str, Any]]:
    return [_to_view(r) for r in db.fetch_all(f"SELECT * FROM {TABLE} ORDER BY user_id ASC")]


def _validate(role: str, location: Optional[str], status: str) -> None:
    if role not in ROLES:
        raise ValueError(f"Invalid role: {role}")
    if location is not None and location not in LOCATIONS:
        raise ValueError(f"Invalid location: {location}")
    if status not in STATUSES:
        raise ValueError(f"Invalid status: {status}")


def _is_dirty(original: Optional[Dict[str, Any]], row: Dict[str, Any]) -> bool:
    if original is None:
        return True
    return (
        original["role"] != row["role"]
        or (original["location"] or None) != (row["location"] or None)
        or original["status"] != row["status"]
    )


def save_user_access(rows: List[Dict[str, Any]]) -> List[str]:
    """Upsert rows whose role, location or status changed. Returns the user ids written."""
    current = {r["user_id"]: r for r in list_user_access()}
    saved: List[str] = []
    for raw in rows:
        user_id = str(raw.get("user_id") or "").strip()
        if not user_id:
            raise ValueError("user_id is required")
        role = str(raw.get("role") or "guest")
        status = normalize_status(raw.get("status"))
        location = raw.get("location") or None
        if role == "admin":
            location = None
        _validate(role, location, status)

        row = {"role": role, "location": location, "status": status}
        original = current.get(user_id)
        if not _is_dirty(original, row):
            continue

        values: Dict[str, Any] = {"user_id": user_id, **row}
        email = raw.get("email") if raw.get("email") is not None else (original or {}).get("email")
        name = raw.get("display_name") if raw.get("display_name") is not None else (original or {}).get("display_name")
        values["email"] = email or None
        values["display_name"] = name or None
        db.upsert(TABLE, values, "user_id")
        saved.append(user_id)
        logger.info("access.saved user_id=%s role=%s status=%s", user_id, role, status)
    return saved


def invite_user(
    email: str,
    role: str = "guest",
    location: Optional[str] = None,
    status: str = "active",
    display_name: str = "",
) -> Dict[str, Any]:
    """Create the credential stub and access row for `email`, then email a set-password link."""
    from app import auth

    status = normalize_status(status)
    if role == "admin":
        location = None
    location = location or None
    _validate(role, location, status)

    user_id, token = auth.create_invited_user(email, display_name)
    db.upsert(TABLE, {
        "user_id": user_id,
        "email": auth.normalize_email(email),
        "display_name": display_name or None,
        "role": role,
        "location": location,
        "status": status,
    }, "user_id")
    ok, err = auth.send_password_link(email, token, invited=True)
    logger.info("access.invited user_id=%s role=%s email_ok=%s", user_id, role, ok)
    return {"user_id": user_id, "email_sent": ok, "email_error": err}
