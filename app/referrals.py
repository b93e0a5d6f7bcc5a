from __future__ import annotations

import logging
import re
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Tuple

from app import db
from app.dates import parse_local_date, to_iso_date, to_iso_datetime
from app.providers import providers_by_id
from app.specialties import (
    ALL_COLUMNS,
    NO_SELECTION,
    OTHER_PROVIDER_PRACTICE_VALUE,
    OTHER_PROVIDER_VALUE,
    REFERRING_PROVIDER_PRACTICE_KEY,
    SPECIALTY_TABLES,
    UNKNOWN_PROVIDER_LABEL,
    UNKNOWN_PROVIDER_VALUE,
    ColumnDef,
    editor_schema,
    require_specialty,
    slugify,
    status_label,
    table_schema,
)

logger = logging.getLogger("referraltracker.referrals")

# View-row key -> stored column
ROW_TO_COLUMN: Dict[str, str] = {
    "date_referral_received": "date_referral_received",
    "date_cancelled": "date_cancelled",
    "needs_call": "needs_call",
    "patient_name": "patient_name",
    "dob": "dob",
    "phone_number": "phone",
    "insurance": "insurance",
    "ngm_patient": "ngm_patient",
    "referring_provider": "referral_provider",
    "reason": "reason",
    "forms_sent": "forms_sent",
    "form_received": "form_received",
    "called_to_schedule": "called_to_schedule",
    "prep_instruction_sent": "prep_instruction_sent",
    "first_patient_communication": "communication_1",
    "second_patient_communication": "communication_2",
    "third_patient_communication": "communication_3",
    "appt_date_time": "appt_date_time",
    "status": "status",
    "status_updated_at": "status_updated_at",
    "email_sent_at": "email_sent_at",
    "notes": "notes",
    "notes2": "notes_2",
}

REQUIRED_KEYS = ("date_referral_received", "patient_name", "dob", "phone_number")

_TRUTHY = {"true", "yes", "y", "1", "x"}


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def normalize_boolean_loose(value: Any) -> bool:
    if value is True:
        return True
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY
    return False


def normalize_form_received(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is True:
        return "Yes- Direct"
    if value is False:
        return "No"
    return ""


def record_to_row(record: Dict[str, Any], schema: List[ColumnDef]) -> Dict[str, Any]:
    provider_id = record.get("referral_provider_id")
    row: Dict[str, Any] = {
        "id": str(record.get("id") if record.get("id") is not None else ""),
        "archived": (record.get("record_status") or "active") != "active",
        "referring_provider_id": str(provider_id) if provider_id is not None else "",
        REFERRING_PROVIDER_PRACTICE_KEY: record.get("provider_practice") or "",
        "location": record.get("location") or "",
    }
    for col in schema:
        if col.key == REFERRING_PROVIDER_PRACTICE_KEY:
            continue
        raw = record.get(ROW_TO_COLUMN.get(col.key, col.key))
        if col.type == "checkbox":
            row[col.key] = normalize_boolean_loose(raw)
        elif col.key == "form_received":
            row[col.key] = normalize_form_received(raw)
        else:
            row[col.key] = "" if raw is None else str(raw)
    return row


def _has_provider_column(schema: List[ColumnDef]) -> bool:
    return any(c.key == "referring_provider" for c in schema)


def validate_draft(draft: Dict[str, Any], schema: List[ColumnDef]) -> None:
    """Raise ValueError with the message shown on the form."""
    labels = {c.key: c.label for c in schema}
    missing: List[str] = []

    for key in REQUIRED_KEYS:
        if key in labels and not _text(draft.get(key)):
            missing.append(labels[key])

    if "phone_number" in labels:
        digits = re.sub(r"\D+", "", _text(draft.get("phone_number")))
        if len(digits) != 10:
            raise ValueError(f"{labels['phone_number']} must be exactly 10 digits")

    if _has_provider_column(schema):
        practice = _text(draft.get(REFERRING_PROVIDER_PRACTICE_KEY))
        if not practice:
            missing.append("Referral Provider Practice")
        provider_id = _text(draft.get("referring_provider_id"))
        provider_text = _text(draft.get("referring_provider"))
        if not provider_id and practice != OTHER_PROVIDER_PRACTICE_VALUE:
            missing.append("Referral Provider")
        needs_text = provider_id == OTHER_PROVIDER_VALUE or practice == OTHER_PROVIDER_PRACTICE_VALUE
        if needs_text and not provider_text:
            missing.append("Referral Provider")

    if missing:
        deduped = list(dict.fromkeys(missing))
        raise ValueError(f"Please fill: {', '.join(deduped)}")

    status = _text(draft.get("status"))
    appt = _text(draft.get("appt_date_time"))
    third = _text(draft.get("third_patient_communication"))

    if status == "APPT_SCHEDULED" and "appt_date_time" in labels and not appt:
        raise ValueError(f"{labels['appt_date_time']} must be set when Status is {status_label(status)}")

    if status == "NO_RESPONSE_3_ATTEMPTS":
        if "third_patient_communication" in labels and not third:
            raise ValueError(
                f"{labels['third_patient_communication']} must be set when Status is {status_label(status)}"
            )
        if "appt_date_time" in labels and appt:
            raise ValueError(f"{labels['appt_date_time']} must be empty when Status is {status_label(status)}")


def resolve_provider(
    draft: Dict[str, Any],
    directory: Dict[str, Dict[str, Any]],
) -> Tuple[str, Optional[int], str]:
    """(display name, directory id, practice) for the provider chosen on the form."""
    provider_id = _text(draft.get("referring_provider_id"))
    if provider_id and provider_id not in (OTHER_PROVIDER_VALUE, UNKNOWN_PROVIDER_VALUE):
        picked = directory.get(provider_id)
        if picked:
            return (
                (picked.get("referral_provider") or "").strip(),
                int(picked["id"]),
                (picked.get("provider_practice") or "").strip(),
            )

    text = _text(draft.get("referring_provider"))
    if provider_id == UNKNOWN_PROVIDER_VALUE:
        text = UNKNOWN_PROVIDER_LABEL
    practice = _text(draft.get(REFERRING_PROVIDER_PRACTICE_KEY))
    if practice == OTHER_PROVIDER_PRACTICE_VALUE:
        practice = ""
    return text, None, practice


def apply_provider_directory(
    rows: List[Dict[str, Any]],
    directory: Dict[str, Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """Refresh provider name and practice for rows linked to a directory entry."""
    if not directory:
        return rows
    out: List[Dict[str, Any]] = []
    for r in rows:
        pid = r.get("referring_provider_id") or ""
        p = directory.get(pid) if pid not in ("", OTHER_PROVIDER_VALUE, UNKNOWN_PROVIDER_VALUE) else None
        if not p:
            out.append(r)
            continue
        name = (p.get("referral_provider") or "").strip()
        practice = (p.get("provider_practice") or "").strip()
        if r.get("referring_provider") == name and r.get(REFERRING_PROVIDER_PRACTICE_KEY) == practice:
            out.append(r)
            continue
        out.append({**r, "referring_provider": name, REFERRING_PROVIDER_PRACTICE_KEY: practice})
    return out


def row_to_record(
    draft: Dict[str, Any],
    schema: List[ColumnDef],
    provider: Tuple[str, Optional[int], str],
) -> Dict[str, Any]:
    record: Dict[str, Any] = {}
    for col in schema:
        if col.key == REFERRING_PROVIDER_PRACTICE_KEY:
            continue
        column = ROW_TO_COLUMN.get(col.key)
        if column is None:
            continue
        raw = draft.get(col.key)
        if col.type == "checkbox":
            record[column] = normalize_boolean_loose(raw)
        elif col.type == "date":
            record[column] = to_iso_date(raw)
        elif col.type == "datetime":
            record[column] = to_iso_datetime(raw)
        elif col.key in ("status", "form_received"):
            record[column] = _text(raw) or None
        else:
            record[column] = "" if raw is None else str(raw)

    if _has_provider_column(schema):
        name, provider_id, practice = provider
        record["referral_provider"] = name
        record["referral_provider_id"] = provider_id
        record["provider_practice"] = practice
    return record


def _table(specialty: str) -> str:
    return SPECIALTY_TABLES[require_specialty(specialty)]


def get_record(specialty: str, row_id: Any) -> Optional[Dict[str, Any]]:
    return db.fetch_one(f"SELECT * FROM {_table(specialty)} WHERE id = ?", (row_id,))


def list_referrals(specialty: str) -> List[Dict[str, Any]]:
    name = require_specialty(specialty)
    records = db.fetch_all(
        f"SELECT * FROM {SPECIALTY_TABLES[name]} WHERE record_status = 'active' "
        "ORDER BY created_at DESC, id DESC"
    )
    schema = table_schema(name)
    rows = [record_to_row(r, schema) for r in records]
    return apply_provider_directory(rows, providers_by_id())


def create_referral(specialty: str, draft: Dict[str, Any], location: Optional[str] = None) -> Dict[str, Any]:
    name = require_specialty(specialty)
    schema = editor_schema(name)
    validate_draft(draft, schema)

    record = row_to_record(draft, schema, resolve_provider(draft, providers_by_id()))
    now = db.utc_now_iso()
    record.update({
        "record_status": "active",
        "created_at": now,
        "updated_at": now,
        "location": location,
    })
    if record.get("status"):
        record["status_updated_at"] = now

    new_id = db.insert(SPECIALTY_TABLES[name], record)
    logger.info("referral.created specialty=%s id=%s", slugify(name), new_id)
    return record_to_row({**record, "id": new_id}, table_schema(name))


def update_referral(specialty: str, row_id: Any, draft: Dict[str, Any]) -> Dict[str, Any]:
    name = require_specialty(specialty)
    existing = get_record(name, row_id)
    if not existing:
        raise db.NotFoundError("Referral not found")

    schema = editor_schema(name)
    validate_draft(draft, schema)

    record = row_to_record(draft, schema, resolve_provider(draft, providers_by_id()))
    now = db.utc_now_iso()
    record["record_status"] = existing.get("record_status") or "active"
    record["updated_at"] = now
    next_status = record.get("status") or ""
    prev_status = (existing.get("status") or "").strip()
    if next_status and next_status != prev_status:
        record["status_updated_at"] = now

    db.update_by_id(SPECIALTY_TABLES[name], existing["id"], record)
    logger.info("referral.updated specialty=%s id=%s", slugify(name), existing["id"])
    return record_to_row({**existing, **record}, table_schema(name))


def archive_referral(specialty: str, row_id: Any) -> bool:
    name = require_specialty(specialty)
    changed = db.update_by_id(
        SPECIALTY_TABLES[name],
        row_id,
        {"record_status": "archived", "updated_at": db.utc_now_iso()},
    )
    if changed:
        logger.info("referral.archived specialty=%s id=%s", slugify(name), row_id)
    return changed > 0


def _cell_text(value: Any) -> str:
    if isinstance(value, bool):
        return "yes" if value else "no"
    return "" if value is None else str(value)


def filter_rows(
    rows: Iterable[Dict[str, Any]],
    schema: List[ColumnDef],
    search_by: str = ALL_COLUMNS,
    search_text: str = "",
    date_key: str = NO_SELECTION,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
) -> List[Dict[str, Any]]:
    base = [r for r in rows if r.get("archived") is not True]

    start = parse_local_date(date_from) if date_from else None
    end = parse_local_date(date_to) if date_to else None
    if date_key and date_key != NO_SELECTION and (start or end):
        dated: List[Dict[str, Any]] = []
        for r in base:
            d = parse_local_date(r.get(date_key))
            if d is None:
                continue
            if start and d < start:
                continue
            if end and d > end:
                continue
            dated.append(r)
        base = dated

    q = (search_text or "").strip().lower()
    if not q:
        return base

    keys = [c.key for c in schema] if (not search_by or search_by == ALL_COLUMNS) else [search_by]
    return [r for r in base if any(q in _cell_text(r.get(k)).lower() for k in keys)]


def sort_rows(rows: List[Dict[str, Any]], sort_by: Optional[str] = None, direction: str = "asc") -> List[Dict[str, Any]]:
    if not sort_by or sort_by == NO_SELECTION:
        return list(rows)

    def key(r: Dict[str, Any]):
        v = r.get(sort_by)
        if isinstance(v, bool):
            return (0, v)
        return (1, ("" if v is None else str(v)).lower())

    return sorted(rows, key=key, reverse=(direction == "desc"))


_CSV_NEEDS_QUOTES = re.compile(r'[",\n\r]')


def _csv_field(value: Any) -> str:
    s = "" if value is None else str(value)
    if _CSV_NEEDS_QUOTES.search(s):
        return '"' + s.replace('"', '""') + '"'
    return s


def rows_to_csv(rows: Iterable[Dict[str, Any]], schema: List[ColumnDef]) -> str:
    lines = [",".join(_csv_field(c.label) for c in schema)]
    for r in rows:
        cells = []
        for c in schema:
            v = r.get(c.key)
            if c.type == "checkbox":
                v = "Yes" if v is True else "No"
            cells.append(_csv_field(v))
        lines.append(",".join(cells))
    return "\n".join(lines) + "\n"


def csv_filename(specialty: str, today: date) -> str:
    return f"{slugify(specialty)}_{today.isoformat()}.csv"
