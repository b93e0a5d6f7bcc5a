from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from app import db
from app.dates import local_midnight_utc, parse_datetime, start_of_week, today_local
from app.email_utils import send_email
from app.providers import active_provider_contacts
from app.specialties import SPECIALTIES, SPECIALTY_TABLES, status_label

logger = logging.getLogger("referraltracker.provider_updates")

STATUS_FILTER = [
    "APPT_SCHEDULED",
    "NO_RESPONSE_3_ATTEMPTS",
    "NOT_INTERESTED",
    "CANCELLED",
    "NO_SHOW",
    "CANCELLED/ NO_SHOW",
]

ORGANISATION_NAME = "Convergence Health"
NO_PROVIDER_KEY = "(No referral provider)"
UNKNOWN_PROVIDER_NAME = "(Unknown provider)"

_CANCELLED_STATUSES = {"CANCELLED", "NO_SHOW", "CANCELLED/ NO_SHOW"}


def week_range(week_start: date) -> Tuple[datetime, datetime]:
    """Local midnight of week_start through seven days later, as UTC datetimes."""
    start = local_midnight_utc(week_start)
    end = local_midnight_utc(week_start + timedelta(days=7))
    return start, end


def current_week_start() -> date:
    return start_of_week(today_local())


def load_updates(week_start: date) -> List[Dict[str, Any]]:
    start, end = week_range(week_start)
    marks = ", ".join("?" for _ in STATUS_FILTER)
    out: List[Dict[str, Any]] = []
    for specialty in SPECIALTIES:
        records = db.fetch_all(
            f"SELECT id, patient_name, referral_provider, referral_provider_id, location, status, "
            f"status_updated_at, email_sent_at FROM {SPECIALTY_TABLES[specialty]} "
            f"WHERE record_status = 'active' AND status IN ({marks})",
            STATUS_FILTER,
        )
        for r in records:
            updated = parse_datetime(r.get("status_updated_at"))
            if updated is None or not (start <= updated < end):
                continue
            pid = r.get("referral_provider_id")
            out.append({
                "id": str(r.get("id") if r.get("id") is not None else ""),
                "specialty": specialty,
                "patient_name": r.get("patient_name") or "",
                "referral_provider": r.get("referral_provider") or "",
                "referral_provider_id": str(pid) if pid is not None else "",
                "location": r.get("location") or "",
                "status": r.get("status") or "",
                "status_updated_at": r.get("status_updated_at") or "",
                "email_sent_at": r.get("email_sent_at") or "",
                "_sort": updated,
            })
    out.sort(key=lambda r: r["_sort"], reverse=True)
    for r in out:
        del r["_sort"]
    return out


def group_by_status(rows: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    out: Dict[str, List[Dict[str, Any]]] = {}
    for r in rows:
        out.setdefault(r.get("status") or "", []).append(r)
    return out


def ordered_statuses(groups: Dict[str, List[Dict[str, Any]]]) -> List[str]:
    present = list(groups)
    preferred = [s for s in STATUS_FILTER if s in groups]
    extras = sorted(s for s in present if s not in STATUS_FILTER)
    return preferred + extras


def group_by_provider(rows: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for r in rows:
        key = (r.get("referral_provider_id") or "").strip() or NO_PROVIDER_KEY
        grouped.setdefault(key, []).append(r)
    return {
        k: sorted(grouped[k], key=lambda r: (r.get("patient_name") or "").lower())
        for k in sorted(grouped)
    }


def compute_practice_name(rows: List[Dict[str, Any]]) -> str:
    locations = {(r.get("location") or "").strip() for r in rows}
    locations.discard("")
    if len(locations) == 1:
        return next(iter(locations))
    return ORGANISATION_NAME


def build_email_for_status(
    status: str,
    provider_name: str,
    practice_name: str,
    patient_names: List[str],
) -> Dict[str, str]:
    greeting = f"Hello {provider_name or '{{Referral Provider Name}}'},\n\n"
    signature = (
        f"\n\nBest regards,\n{practice_name or '{{Practice / Location Name}}'}\n"
        f"{ORGANISATION_NAME}\n"
    )
    listing = "\n".join(f"* {n}" for n in patient_names) if patient_names else "* (No patients)"

    if status == "APPT_SCHEDULED":
        return {
            "subject": "Patient referral update - Appointment scheduled",
            "body": (
                greeting
                + "We are writing to share an update regarding patients you referred to our practice.\n\n"
                + "The following patient(s) have been **successfully scheduled for an appointment**:\n\n"
                + f"{listing}\n\n"
                + "If you have any questions or need additional information, please feel free to reach out to our team.\n\n"
                + "Thank you for continuing to refer your patients to us."
                + signature
            ),
        }

    if status == "NOT_INTERESTED":
        return {
            "subject": "Patient referral update - Not interested",
            "body": (
                greeting
                + "We wanted to provide an update regarding patients you referred to our practice.\n\n"
                + "After outreach attempts, the following patient(s) have indicated they are "
                + "**not interested in scheduling at this time**:\n\n"
                + f"{listing}\n\n"
                + "Please let us know if circumstances change or if a new referral is needed in the future.\n\n"
                + "Thank you for your continued collaboration."
                + signature
            ),
        }

    if status in _CANCELLED_STATUSES:
        return {
            "subject": "Patient referral update - Cancelled / No show",
            "body": (
                greeting
                + "We are reaching out with an update regarding patients you referred to our practice.\n\n"
                + "The following patient(s) had an appointment that was **cancelled or resulted in a no-show**:\n\n"
                + f"{listing}\n\n"
                + "Our team will follow internal protocols based on these outcomes. "
                + "Please feel free to contact us if you would like to discuss next steps.\n\n"
                + "Thank you for referring your patients to our practice."
                + signature
            ),
        }

    return {
        "subject": f"Patient referral update - {status_label(status)}",
        "body": (
            greeting
            + "We wanted to provide an update regarding patients you referred to our practice.\n\n"
            + listing
            + signature
        ),
    }


def build_drafts(
    status: str,
    rows: List[Dict[str, Any]],
    contacts: Dict[str, Dict[str, str]],
) -> Dict[str, Dict[str, Any]]:
    """One email draft per provider key for the rows carrying `status`."""
    status_rows = [r for r in rows if (r.get("status") or "") == status]
    drafts: Dict[str, Dict[str, Any]] = {}
    for key, patients in group_by_provider(status_rows).items():
        info = contacts.get(key)
        if key == NO_PROVIDER_KEY:
            provider_name = NO_PROVIDER_KEY
        else:
            provider_name = (info or {}).get("name") or UNKNOWN_PROVIDER_NAME
        draft = build_email_for_status(
            status,
            provider_name,
            compute_practice_name(patients),
            [p["patient_name"] for p in patients if p.get("patient_name")],
        )
        drafts[key] = {
            "provider_id": key,
            "provider_name": provider_name,
            "to": (info or {}).get("email", ""),
            "subject": draft["subject"],
            "body": draft["body"],
            "patients": patients,
        }
    return drafts


def overview(week_start: date) -> Dict[str, Any]:
    rows = load_updates(week_start)
    groups = group_by_status(rows)
    start, end = week_range(week_start)
    return {
        "week_start": week_start.isoformat(),
        "range": {"start": start.isoformat(), "end": end.isoformat()},
        "statuses": [
            {"status": s, "label": status_label(s), "rows": groups[s]}
            for s in ordered_statuses(groups)
        ],
    }


def send_update(
    status: str,
    provider_id: str,
    week_start: date,
    subject: Optional[str] = None,
    body: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Send one provider's draft for the week and stamp email_sent_at on its rows.
    Returns {"ok": bool, "error": code, "sent_ids": [...]}.
    """
    drafts = build_drafts(status, load_updates(week_start), active_provider_contacts())
    draft = drafts.get(provider_id)
    if draft is None:
        raise db.NotFoundError("No updates for this provider")
    if not draft["to"]:
        raise ValueError("Provider has no contact email")

    ok, err = send_email(
        draft["to"],
        (subject or "").strip() or draft["subject"],
        (body or "").strip() or draft["body"],
    )
    if not ok:
        logger.warning("provider_update.send_failed provider=%s status=%s error=%s", provider_id, status, err)
        return {"ok": False, "error": err, "sent_ids": []}

    now = db.utc_now_iso()
    by_table: Dict[str, List[int]] = {}
    for p in draft["patients"]:
        by_table.setdefault(SPECIALTY_TABLES[p["specialty"]], []).append(int(p["id"]))
    for table, ids in by_table.items():
        db.update_where_in(table, "id", ids, {"email_sent_at": now})

    sent_ids = [p["id"] for p in draft["patients"]]
    logger.info("provider_update.sent provider=%s status=%s rows=%d", provider_id, status, len(sent_ids))
    return {"ok": True, "error": "", "sent_ids": sent_ids, "email_sent_at": now}
