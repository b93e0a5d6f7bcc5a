from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Dict, List, Optional

from app import db
from app.dates import parse_local_date, start_of_week
from app.referrals import record_to_row
from app.specialties import ALL_COLUMNS, SPECIALTIES, SPECIALTY_TABLES, table_schema

logger = logging.getLogger("referraltracker.reports")

COMM_BUCKETS = ("first_only", "first_second", "all_three", "none")
COMM_LABELS = {
    "first_only": "1st only",
    "first_second": "1st + 2nd",
    "all_three": "All 3",
}


def load_report_rows() -> List[Dict[str, Any]]:
    """Active referral rows from every specialty table, each tagged with its specialty."""
    out: List[Dict[str, Any]] = []
    for specialty in SPECIALTIES:
        schema = table_schema(specialty)
        records = db.fetch_all(
            f"SELECT * FROM {SPECIALTY_TABLES[specialty]} WHERE record_status = 'active'"
        )
        out.extend({"specialty": specialty, "row": record_to_row(r, schema)} for r in records)
    return out


def filter_report_rows(
    rows: List[Dict[str, Any]],
    specialty: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
) -> List[Dict[str, Any]]:
    start = parse_local_date(date_from) if date_from else None
    end = parse_local_date(date_to) if date_to else None

    out: List[Dict[str, Any]] = []
    for item in rows:
        if specialty and specialty != ALL_COLUMNS and item["specialty"] != specialty:
            continue
        if start is None and end is None:
            out.append(item)
            continue
        received = parse_local_date(item["row"].get("date_referral_received"))
        if received is None:
            continue
        if start and received < start:
            continue
        if end and received > end:
            continue
        out.append(item)
    return out


def _filled(v: Any) -> bool:
    return isinstance(v, str) and bool(v.strip())


def communication_bucket(row: Dict[str, Any]) -> str:
    first = _filled(row.get("first_patient_communication"))
    second = _filled(row.get("second_patient_communication"))
    third = _filled(row.get("third_patient_communication"))
    if first and second and third:
        return "all_three"
    if first and second:
        return "first_second"
    if first:
        return "first_only"
    return "none"


def _pct(part: int, whole: int) -> int:
    if not whole:
        return 0
    # half-up rounding on non-negative counts
    return int(part * 100 / whole + 0.5)


def build_report(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    total = len(rows)

    by_category = Counter(item["specialty"] for item in rows)
    categories = sorted(by_category.items(), key=lambda kv: -kv[1])

    comm = Counter(communication_bucket(item["row"]) for item in rows)
    communication = {k: comm.get(k, 0) for k in COMM_BUCKETS}
    started = communication["first_only"] + communication["first_second"] + communication["all_three"]

    weekly: Counter = Counter()
    for item in rows:
        received = parse_local_date(item["row"].get("date_referral_received"))
        if received is None:
            continue
        weekly[start_of_week(received).isoformat()] += 1

    return {
        "total": total,
        "by_category": [{"label": k, "value": v} for k, v in categories],
        "communication": {
            **communication,
            "started": started,
            "started_pct": _pct(started, total),
            "all_three_pct": _pct(communication["all_three"], started),
        },
        "weekly_trend": [{"week": k, "count": weekly[k]} for k in sorted(weekly)],
    }


def communication_chart_items(report: Dict[str, Any]) -> List[Dict[str, Any]]:
    comm = report["communication"]
    return [{"key": k, "label": COMM_LABELS[k], "value": comm[k]} for k in ("first_only", "first_second", "all_three")]
