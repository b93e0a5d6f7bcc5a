from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from app import db

logger = logging.getLogger("referraltracker.providers")

TABLE = "referral_providers"

# Rows with this provider name only reserve a practice name.
PRACTICE_PLACEHOLDER_PROVIDER = "__practice__"

# editable field -> stored column
PROVIDER_FIELDS = {
    "practice": "provider_practice",
    "provider": "referral_provider",
    "contact_phone": "contact_phone",
    "contact_email": "contact_email",
    "address": "address",
    "is_active": "is_active",
}


def _str(v: Any) -> str:
    return "" if v is None else str(v)


def _to_view(r: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": _str(r.get("id")),
        "practice": _str(r.get("provider_practice")),
        "provider": _str(r.get("referral_provider")),
        "contact_phone": _str(r.get("contact_phone")),
        "contact_email": _str(r.get("contact_email")),
        "address": _str(r.get("address")),
        "is_active": r.get("is_active") is True,
        "edit_history": r.get("edit_history") if isinstance(r.get("edit_history"), list) else [],
    }


def _all_records() -> List[Dict[str, Any]]:
    return db.fetch_all(
        f"SELECT * FROM {TABLE} ORDER BY provider_practice ASC, referral_provider ASC, id ASC"
    )


def providers_by_id() -> Dict[str, Dict[str, Any]]:
    """Stored provider records keyed by string id, used to resolve referral rows."""
    return {str(r["id"]): r for r in _all_records()}


def list_providers(practice: Optional[str] = None, include_placeholders: bool = False) -> List[Dict[str, Any]]:
    rows = [_to_view(r) for r in _all_records()]
    if not include_placeholders:
        rows = [p for p in rows if p["provider"] != PRACTICE_PLACEHOLDER_PROVIDER]
    if practice is not None:
        wanted = practice.strip()
        rows = [p for p in rows if p["practice"] == wanted]
    return rows


def list_practices() -> List[str]:
    seen = {p["practice"].strip() for p in list_providers(include_placeholders=True)}
    return sorted((p for p in seen if p), key=str.lower)


def provider_options() -> List[Dict[str, Any]]:
    """Options for the referral form: id, name and practice, ordered by name."""
    out = [
        {"id": p["id"], "referral_provider": p["provider"].strip(), "provider_practice": p["practice"].strip()}
        for p in list_providers()
    ]
    out.sort(key=lambda p: p["referral_provider"].lower())
    return out


def _pair_key(practice: str, provider: str) -> str:
    return f"{practice.strip().lower()}|{provider.strip().lower()}"


def add_provider(
    practice: str,
    provider: str,
    contact_phone: str = "",
    contact_email: str = "",
    address: str = "",
) -> Dict[str, Any]:
    practice = (practice or "").strip()
    provider = (provider or "").strip()
    contact_phone = (contact_phone or "").strip()
    contact_email = (contact_email or "").strip()
    address = (address or "").strip()

    if not practice:
        raise ValueError("Practice is required")
    if not provider:
        raise ValueError("Provider is required")
    if not contact_email:
        raise ValueError("Email is required")

    existing = {
        _pair_key(p["practice"], p["provider"])
        for p in list_providers()
        if p["provider"].strip()
    }
    if _pair_key(practice, provider) in existing:
        raise ValueError("Provider already exists")

    values = {
        "provider_practice": practice,
        "referral_provider": provider,
        "contact_phone": contact_phone or None,
        "contact_email": contact_email or None,
        "address": address or None,
        "is_active": True,
    }
    history_entry = {"at": db.utc_now_iso(), "action": "insert", **values}
    new_id = db.insert(TABLE, {**values, "edit_history": [history_entry]})
    logger.info("provider.added id=%s", new_id)
    return _to_view({**values, "id": new_id, "edit_history": [history_entry]})


def diff_provider(original: Dict[str, Any], edited: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """Changed fields as {stored_column: {"from": old, "to": new}}."""
    changes: Dict[str, Dict[str, Any]] = {}
    for field, column in PROVIDER_FIELDS.items():
        if field not in edited:
            continue
        before = original.get(field)
        after = edited.get(field)
        if field == "is_active":
            before, after = before is True, after is True
        else:
            before, after = _str(before), _str(after)
        if before != after:
            changes[column] = {"from": before, "to": after}
    return changes


class PartialSaveError(db.StoreError):
    """A store error hit mid-batch; `saved` holds the ids written before it."""

    def __init__(self, message: str, saved: List[str]) -> None:
        super().__init__(message)
        self.saved = saved


def save_provider_changes(edits: List[Dict[str, Any]]) -> List[str]:
    """
    Persist edited directory rows. Rows that match the stored copy are skipped.
    Every dirty row is validated before the first write. A store error stops the
    batch and raises PartialSaveError carrying the ids already saved.
    """
    current = {p["id"]: p for p in list_providers(include_placeholders=True)}
    pending: List[Tuple[str, Dict[str, Any], Dict[str, Dict[str, Any]]]] = []
    for edit in edits:
        pid = _str(edit.get("id"))
        original = current.get(pid)
        if original is None:
            continue
        changes = diff_provider(original, edit)
        if not changes:
            continue
        merged = {**original, **{k: edit[k] for k in PROVIDER_FIELDS if k in edit}}
        if not _str(merged.get("contact_email")).strip():
            raise ValueError("Email is required")
        pending.append((pid, merged, changes))

    saved: List[str] = []
    for pid, merged, changes in pending:
        history = list(current[pid]["edit_history"]) + [
            {"at": db.utc_now_iso(), "action": "update", "changes": changes}
        ]
        try:
            db.update_by_id(TABLE, int(pid), {
                "provider_practice": _str(merged["practice"]),
                "referral_provider": _str(merged["provider"]),
                "contact_phone": _str(merged["contact_phone"]) or None,
                "contact_email": _str(merged["contact_email"]).strip() or None,
                "address": _str(merged["address"]) or None,
                "is_active": merged.get("is_active") is True,
                "edit_history": history,
            })
        except db.StoreError as e:
            logger.warning("provider.save_stopped id=%s saved=%d: %s", pid, len(saved), e)
            raise PartialSaveError(str(e), saved) from e
        saved.append(pid)
        logger.info("provider.updated id=%s fields=%s", pid, ",".join(sorted(changes)))
    return saved


def active_provider_contacts() -> Dict[str, Dict[str, str]]:
    out: Dict[str, Dict[str, str]] = {}
    for p in list_providers():
        email = p["contact_email"].strip()
        if not p["is_active"] or not email:
            continue
        out[p["id"]] = {"name": p["provider"].strip(), "email": email}
    return out
