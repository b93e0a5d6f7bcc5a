from __future__ import annotations

import re
from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterable, List, Optional


FIELD_TYPES = ("text", "checkbox", "date", "datetime")

REFERRING_PROVIDER_PRACTICE_KEY = "referring_provider_practice"
OTHER_PROVIDER_VALUE = "__other__"
UNKNOWN_PROVIDER_VALUE = "__unknown__"
UNKNOWN_PROVIDER_LABEL = "Unknown Referral Provider"
OTHER_PROVIDER_PRACTICE_VALUE = "__other_practice__"

# Sentinel values used by list/sort/filter selectors.
ALL_COLUMNS = "__all__"
NO_SELECTION = "__none__"


@dataclass(frozen=True)
class ColumnDef:
    key: str
    label: str
    type: str = "text"

    def __post_init__(self) -> None:
        if self.type not in FIELD_TYPES:
            raise ValueError(f"Unknown field type for {self.key}: {self.type}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


SPECIALTIES: List[str] = [
    "Colonoscopy and EGD",
    "General Surgery",
    "Spine Neuro Rajamand",
    "Ortho",
    "Ophthalmology",
    "IR Carlevato",
    "Heme Onc Rice",
    "Infusion",
    "Women's Health",
    "Cardio Deschutter",
    "Singh Cancellations",
    "Hernia Sx Waitlist",
]

SPECIALTY_TABLES: Dict[str, str] = {
    "Colonoscopy and EGD": "referrals_colonoscopy_egd",
    "General Surgery": "referrals_general_surgery",
    "Spine Neuro Rajamand": "referrals_spine_neuro_rajamand",
    "Ortho": "referrals_ortho",
    "Ophthalmology": "referrals_ophthalmology",
    "IR Carlevato": "referrals_ir_carlevato",
    "Heme Onc Rice": "referrals_heme_onc_rice",
    "Infusion": "referrals_infusion",
    "Women's Health": "referrals_womens_health",
    "Cardio Deschutter": "referrals_cardio_deschutter",
    "Singh Cancellations": "referrals_singh_cancellations",
    "Hernia Sx Waitlist": "referrals_hernia_sx_waitlist",
}

STATUS_OPTIONS: List[str] = [
    "",
    "NEW_REFERRAL",
    "IN_PROGRESS",
    "APPT_SCHEDULED",
    "NO_RESPONSE_3_ATTEMPTS",
    "NOT_INTERESTED",
    "CANCELLED/ NO_SHOW",
]

STATUS_LABELS: Dict[str, str] = {
    "NEW_REFERRAL": "New referral",
    "IN_PROGRESS": "In progress",
    "APPT_SCHEDULED": "Appt scheduled",
    "NO_RESPONSE_3_ATTEMPTS": "No response (3 attempts)",
    "NOT_INTERESTED": "Not interested",
    "CANCELLED": "Cancelled",
    "NO_SHOW": "No show",
    "CANCELLED/ NO_SHOW": "Cancelled / No show",
}

FORM_RECEIVED_OPTIONS: List[str] = ["", "Yes- Direct", "Yes- Consult", "No"]

DEFAULT_INSURANCE_OPTIONS: List[str] = [
    "",
    "Medicare",
    "Medicaid",
    "Commercial",
    "Self Pay",
    "Cash Pay",
    "Workers’ Compensation",
    "Accident / Liability",
]


def status_label(value: Optional[str]) -> str:
    v = value or ""
    return STATUS_LABELS.get(v, v)


def _col(key: str, label: str, type_: str = "text") -> ColumnDef:
    return ColumnDef(key=key, label=label, type=type_)


def _communications(labels: Iterable[str]) -> List[ColumnDef]:
    keys = [
        "first_patient_communication",
        "second_patient_communication",
        "third_patient_communication",
    ]
    return [_col(k, lbl, "datetime") for k, lbl in zip(keys, labels)]


_COMM_LABELS = ("1st Communication", "2nd Communication", "3rd Communication")


def _intake(phone_label: str = "Phone") -> List[ColumnDef]:
    return [
        _col("date_referral_received", "Date Referral Received", "date"),
        _col("patient_name", "Patient Name"),
        _col("dob", "DOB", "date"),
        _col("phone_number", phone_label),
        _col("insurance", "Insurance"),
    ]


def _standard(extra_before_provider: Optional[List[ColumnDef]] = None, notes: bool = True) -> List[ColumnDef]:
    cols = _intake()
    cols.extend(extra_before_provider or [])
    cols.append(_col("referring_provider", "Referral Provider"))
    cols.append(_col("reason", "Reason"))
    cols.extend(_communications(_COMM_LABELS))
    cols.append(_col("appt_date_time", "Appt date and time", "datetime"))
    if notes:
        cols.append(_col("notes", "Notes"))
    return cols


SCHEMAS: Dict[str, List[ColumnDef]] = {
    "Colonoscopy and EGD": _intake("Phone Number") + [
        _col("referring_provider", "Referral Provider"),
        _col("reason", "Reason"),
        _col("forms_sent", "Forms Sent", "checkbox"),
        _col("form_received", "Form Received"),
        _col("called_to_schedule", "Called to schedule", "checkbox"),
        _col("prep_instruction_sent", "Prep Instruction sent", "checkbox"),
    ] + _communications((
        "1st patient communication",
        "2nd patient communication",
        "3rd patient communication",
    )) + [
        _col("appt_date_time", "Appt date/time", "datetime"),
        _col("notes", "Notes"),
    ],
    "General Surgery": _standard(),
    "Spine Neuro Rajamand": _standard(),
    "Ortho": _intake() + [
        _col("referring_provider", "Referral Provider"),
        _col("reason", "Reason"),
        _col("notes", "Notes"),
    ] + _communications(_COMM_LABELS) + [
        _col("appt_date_time", "Appt date and time", "datetime"),
        _col("notes2", "Notes 2"),
    ],
    "Ophthalmology": _standard(notes=False),
    "IR Carlevato": _standard(notes=False),
    "Heme Onc Rice": _standard([_col("ngm_patient", "NGM Patient?", "checkbox")]),
    "Infusion": _standard([_col("ngm_patient", "NGM Patient", "checkbox")], notes=False),
    "Women's Health": _standard(),
    "Cardio Deschutter": _standard(notes=False),
    "Singh Cancellations": [
        _col("needs_call", "Needs Call", "checkbox"),
        _col("date_cancelled", "Date Cancelled", "date"),
        _col("patient_name", "Patient Name"),
        _col("dob", "DOB", "date"),
        _col("phone_number", "Phone"),
        _col("insurance", "Insurance"),
        _col("reason", "Reason"),
    ] + _communications(_COMM_LABELS) + [
        _col("appt_date_time", "Appt date and time", "datetime"),
        _col("notes", "Notes"),
    ],
    "Hernia Sx Waitlist": _intake() + [
        _col("reason", "Reason"),
    ] + _communications(_COMM_LABELS) + [
        _col("appt_date_time", "Appt date and time", "datetime"),
    ],
}


def require_specialty(specialty: str) -> str:
    name = (specialty or "").strip()
    if name in SPECIALTY_TABLES:
        return name
    # Accept the table slug as well as the display name.
    for s, table in SPECIALTY_TABLES.items():
        if name == table or name == slugify(s):
            return s
    raise KeyError(f"Unknown specialty: {specialty}")


def slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", (value or "").lower()).strip("_")


def _is_referring_provider(col: ColumnDef) -> bool:
    return col.key == "referring_provider" or bool(re.search(r"referring\s*provider", col.label, re.I))


def _index_of(schema: List[ColumnDef], pred) -> int:
    for i, c in enumerate(schema):
        if pred(c):
            return i
    return -1


def with_referring_provider_practice(schema: List[ColumnDef]) -> List[ColumnDef]:
    if any(c.key == REFERRING_PROVIDER_PRACTICE_KEY for c in schema):
        return schema
    idx = _index_of(schema, _is_referring_provider)
    if idx < 0:
        return schema
    practice = ColumnDef(REFERRING_PROVIDER_PRACTICE_KEY, "Referral Provider Practice", "text")
    return schema[:idx] + [practice] + schema[idx:]


def with_reason_notes_after_referring_provider(schema: List[ColumnDef]) -> List[ColumnDef]:
    if _index_of(schema, _is_referring_provider) < 0:
        return schema
    reason = next((c for c in schema if c.key == "reason" or c.label.strip().lower() == "reason"), None)
    notes = next((c for c in schema if c.key == "notes" or c.label.strip().lower() == "notes"), None)
    if reason is None and notes is None:
        return schema
    filtered = [c for c in schema if c is not reason and c is not notes]
    insert_at = _index_of(filtered, _is_referring_provider)
    extras = [c for c in (reason, notes) if c is not None]
    return filtered[: insert_at + 1] + extras + filtered[insert_at + 1:]


def with_status_email_sent_after_appt(schema: List[ColumnDef]) -> List[ColumnDef]:
    keys = {c.key for c in schema}
    additions: List[ColumnDef] = []
    if "status" not in keys:
        additions.append(ColumnDef("status", "Status", "text"))
    if "status_updated_at" not in keys:
        additions.append(ColumnDef("status_updated_at", "Status Updated Date", "datetime"))
    if "email_sent_at" not in keys:
        additions.append(ColumnDef("email_sent_at", "Email Sent At", "datetime"))
    if not additions:
        return schema
    idx = _index_of(schema, lambda c: c.key == "appt_date_time")
    if idx < 0:
        return schema
    return schema[: idx + 1] + additions + schema[idx + 1:]


def with_status_after_appt(schema: List[ColumnDef]) -> List[ColumnDef]:
    if any(c.key == "status" for c in schema):
        return schema
    idx = _index_of(schema, lambda c: c.key == "appt_date_time")
    if idx < 0:
        return schema
    return schema[: idx + 1] + [ColumnDef("status", "Status", "text")] + schema[idx + 1:]


def _base_with_practice(specialty: str) -> List[ColumnDef]:
    schema = with_referring_provider_practice(list(SCHEMAS[specialty]))
    if specialty == "Colonoscopy and EGD":
        schema = with_reason_notes_after_referring_provider(schema)
    return schema


def table_schema(specialty: str) -> List[ColumnDef]:
    """Columns shown in the specialty table view."""
    return with_status_email_sent_after_appt(_base_with_practice(require_specialty(specialty)))


def editor_schema(specialty: str) -> List[ColumnDef]:
    """Columns written by the add/edit form. Status timestamps are managed server-side."""
    return with_status_after_appt(_base_with_practice(require_specialty(specialty)))


_LEADING_KEYS = [
    "date_referral_received",
    "patient_name",
    "dob",
    "phone_number",
    "insurance",
    REFERRING_PROVIDER_PRACTICE_KEY,
    "referring_provider",
]

_UNPINNABLE = {"reason", "notes"}


def order_schema(cols: List[ColumnDef]) -> List[ColumnDef]:
    reason = next((c for c in cols if c.key == "reason"), None)
    notes = next((c for c in cols if c.key == "notes"), None)
    rest = [c for c in cols if c.key not in ("reason", "notes")]

    first: List[ColumnDef] = []
    for k in _LEADING_KEYS:
        col = next((c for c in rest if c.key == k), None)
        if col is not None:
            first.append(col)
    first_keys = {c.key for c in first}
    middle = [c for c in rest if c.key not in first_keys]
    extras = [c for c in (reason, notes) if c is not None]
    return first + extras + middle


def pinned_keys_in_schema_order(cols: List[ColumnDef], pinned_keys: Iterable[str]) -> List[str]:
    pinned = set(pinned_keys or []) - _UNPINNABLE
    return [c.key for c in order_schema(cols) if c.key in pinned]


def display_schema(cols: List[ColumnDef], pinned_keys: Iterable[str]) -> List[ColumnDef]:
    ordered = order_schema(cols)
    pinned = set(pinned_keys or []) - _UNPINNABLE
    if not pinned:
        return ordered
    return [c for c in ordered if c.key in pinned] + [c for c in ordered if c.key not in pinned]


def prune_pinned_keys(cols: List[ColumnDef], pinned_keys: Iterable[str]) -> List[str]:
    keys = {c.key for c in cols}
    out: List[str] = []
    for k in pinned_keys or []:
        if k in keys and k not in out:
            out.append(k)
    return out


def create_empty_draft(schema: List[ColumnDef]) -> Dict[str, Any]:
    return {c.key: (False if c.type == "checkbox" else "") for c in schema}


def date_columns(schema: List[ColumnDef]) -> List[ColumnDef]:
    return [c for c in schema if c.type in ("date", "datetime")]


def default_date_key(schema: List[ColumnDef]) -> str:
    for c in date_columns(schema):
        if c.key == "date_referral_received":
            return c.key
    return NO_SELECTION
