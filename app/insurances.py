from __future__ import annotations

import logging
from typing import Any, Dict, List

from app import db
from app.specialties import DEFAULT_INSURANCE_OPTIONS

logger = logging.getLogger("referraltracker.insurances")

TABLE = "insurances"
LABEL_KEYS = ("insurance", "name", "label", "value", "title")


def insurance_label(record: Any) -> str:
    if not isinstance(record, dict):
        return ""
    for k in LABEL_KEYS:
        v = record.get(k)
        if isinstance(v, str) and v.strip():
            return v.strip()
    for v in record.values():
        if isinstance(v, str) and v.strip():
            return v.strip()
    return ""


def list_insurances() -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for r in db.fetch_all(f"SELECT * FROM {TABLE}"):
        label = insurance_label(r)
        if not label:
            continue
        rid = r.get("id")
        out.append({
            "id": str(rid) if rid is not None else label,
            "label": label,
            "is_active": r.get("is_active") is True,
        })
    out.sort(key=lambda x: x["label"].lower())
    return out


def insurance_options() -> List[str]:
    """Select options for the referral form. Falls back to the built-in list when the table is empty."""
    labels = sorted({r["label"] for r in list_insurances()}, key=str.lower)
    if not labels:
        return list(DEFAULT_INSURANCE_OPTIONS)
    return [""] + labels


def add_insurance(label: str) -> Dict[str, Any]:
    v = (label or "").strip()
    if not v:
        raise ValueError("Insurance is required")
    existing = {r["label"].lower() for r in list_insurances()}
    if v.lower() in existing:
        raise ValueError("Insurance already exists")
    new_id = db.insert(TABLE, {"insurance": v, "is_active": True})
    logger.info("insurance.added id=%s", new_id)
    return {"id": str(new_id), "label": v, "is_active": True}


def save_active_changes(changes: Dict[str, bool]) -> List[str]:
    """Write is_active for ids whose value differs from the stored one; returns the ids written."""
    stored = {r["id"]: r["is_active"] for r in list_insurances()}
    saved: List[str] = []
    for rid, active in changes.items():
        key = str(rid)
        if key not in stored or stored[key] == bool(active):
            continue
        db.update_by_id(TABLE, int(key), {"is_active": bool(active)})
        saved.append(key)
    if saved:
        logger.info("insurance.active_saved count=%d", len(saved))
    return saved
