from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date
from typing import Iterator, Optional
from uuid import uuid4

from fastapi import APIRouter, HTTPException, Depends, Request
from fastapi.responses import Response

from app import charts
from app.access import LOCATIONS, ROLES, STATUSES, invite_user, list_user_access, save_user_access
from app.auth import AuthUser, require_admin, require_editor, require_user
from app.dates import today_local
from app.db import NotFoundError, StoreError
from app.email_utils import get_email_status, send_email
from app.insurances import add_insurance, insurance_options, list_insurances, save_active_changes
from app.models import (
    InsuranceActivePayload,
    InvitePayload,
    NewInsurancePayload,
    NewProviderPayload,
    NotepadPayload,
    PinnedColumnsPayload,
    ProviderChangesPayload,
    ReferralDraft,
    SendUpdatePayload,
    UserAccessPayload,
)
from app.provider_updates import (
    STATUS_FILTER,
    build_drafts,
    current_week_start,
    load_updates,
    overview as provider_updates_overview,
    send_update,
)
from app.providers import (
    PartialSaveError,
    active_provider_contacts,
    add_provider,
    list_practices,
    list_providers,
    provider_options,
    save_provider_changes,
)
from app.referrals import (
    archive_referral,
    create_referral,
    csv_filename,
    filter_rows,
    list_referrals,
    rows_to_csv,
    sort_rows,
    update_referral,
)
from app.reports import build_report, communication_chart_items, filter_report_rows, load_report_rows
from app.specialties import (
    ALL_COLUMNS,
    FORM_RECEIVED_OPTIONS,
    NO_SELECTION,
    SPECIALTIES,
    SPECIALTY_TABLES,
    STATUS_LABELS,
    STATUS_OPTIONS,
    date_columns,
    default_date_key,
    display_schema,
    editor_schema,
    order_schema,
    pinned_keys_in_schema_order,
    require_specialty,
    slugify,
    table_schema,
)
from app.usage_log import usage_logger
from app.user_store import clear_notepad, get_notepad, get_pinned_columns, save_notepad, save_pinned_columns

# NOTE: keep router prefixing handled in main.py (include_router(router, prefix="/api"))
router = APIRouter()
logger = logging.getLogger("referraltracker.api")


@contextmanager
def _domain_errors() -> Iterator[None]:
    """Map domain exceptions raised inside a route to HTTP errors."""
    try:
        yield
    except StoreError as e:
        logger.warning("store.failed %s", e)
        raise HTTPException(status_code=502, detail=str(e))
    except NotFoundError as e:
        msg = e.args[0] if e.args else "Not found"
        raise HTTPException(status_code=404, detail=str(msg))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _specialty(value: str) -> str:
    try:
        return require_specialty(value)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown specialty: {value}")


def _parse_week(value: Optional[str]) -> date:
    if not value:
        return current_week_start()
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        raise HTTPException(status_code=400, detail="week_start must be YYYY-MM-DD")


# =========================
# Specialties & schemas
# =========================

@router.get("/specialties")
def specialties(user: AuthUser = Depends(require_user)):
    with _domain_errors():
        insurance = insurance_options()
    return {
        "specialties": [
            {"name": s, "slug": slugify(s), "table": SPECIALTY_TABLES[s]} for s in SPECIALTIES
        ],
        "status_options": STATUS_OPTIONS,
        "status_labels": STATUS_LABELS,
        "form_received_options": FORM_RECEIVED_OPTIONS,
        "insurance_options": insurance,
    }


@router.get("/referrals/{specialty}/schema")
def referral_schema(specialty: str, user: AuthUser = Depends(require_user)):
    name = _specialty(specialty)
    cols = table_schema(name)
    pinned = get_pinned_columns(user.user_id, name)
    return {
        "specialty": name,
        "table": SPECIALTY_TABLES[name],
        "columns": [c.to_dict() for c in cols],
        "ordered": [c.to_dict() for c in order_schema(cols)],
        "display": [c.to_dict() for c in display_schema(cols, pinned)],
        "editor": [c.to_dict() for c in editor_schema(name)],
        "pinned": pinned_keys_in_schema_order(cols, pinned),
        "date_columns": [c.to_dict() for c in date_columns(cols)],
        "default_date_key": default_date_key(cols),
    }


@router.put("/referrals/{specialty}/pins")
def save_pins(specialty: str, payload: PinnedColumnsPayload, user: AuthUser = Depends(require_user)):
    name = _specialty(specialty)
    saved = save_pinned_columns(user.user_id, name, payload.keys)
    return {"pinned": pinned_keys_in_schema_order(table_schema(name), saved)}


def _filtered_view(
    name: str,
    search_by: str,
    q: str,
    date_key: str,
    date_from: Optional[str],
    date_to: Optional[str],
    sort_by: Optional[str],
    sort_dir: str,
):
    with _domain_errors():
        rows = list_referrals(name)
    cols = table_schema(name)
    rows = filter_rows(rows, cols, search_by, q, date_key, date_from, date_to)
    return cols, sort_rows(rows, sort_by, sort_dir)


@router.get("/referrals/{specialty}")
def referrals_list(
    specialty: str,
    search_by: str = ALL_COLUMNS,
    q: str = "",
    date_key: str = NO_SELECTION,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    sort_by: Optional[str] = None,
    sort_dir: str = "asc",
    user: AuthUser = Depends(require_user),
):
    name = _specialty(specialty)
    _, rows = _filtered_view(name, search_by, q, date_key, date_from, date_to, sort_by, sort_dir)
    return {"specialty": name, "rows": rows, "count": len(rows)}


@router.get("/referrals/{specialty}/export.csv")
def referrals_export(
    specialty: str,
    search_by: str = ALL_COLUMNS,
    q: str = "",
    date_key: str = NO_SELECTION,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    sort_by: Optional[str] = None,
    sort_dir: str = "asc",
    user: AuthUser = Depends(require_user),
):
    name = _specialty(specialty)
    cols, rows = _filtered_view(name, search_by, q, date_key, date_from, date_to, sort_by, sort_dir)
    filename = csv_filename(name, today_local())
    usage_logger.log_event("referrals_export", meta={"specialty": slugify(name), "rows": len(rows)})
    return Response(
        content=rows_to_csv(rows, cols),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/referrals/{specialty}")
def referrals_create(specialty: str, payload: ReferralDraft, user: AuthUser = Depends(require_editor)):
    name = _specialty(specialty)
    with _domain_errors():
        row = create_referral(name, payload.as_draft(), location=user.location)
    usage_logger.log_event("referral_created", meta={"specialty": slugify(name), "id": row["id"]})
    return {"row": row}


@router.put("/referrals/{specialty}/{row_id}")
def referrals_update(
    specialty: str,
    row_id: int,
    payload: ReferralDraft,
    user: AuthUser = Depends(require_editor),
):
    name = _specialty(specialty)
    with _domain_errors():
        row = update_referral(name, row_id, payload.as_draft())
    usage_logger.log_event("referral_updated", meta={"specialty": slugify(name), "id": row["id"]})
    return {"row": row}


@router.post("/referrals/{specialty}/{row_id}/archive")
def referrals_archive(specialty: str, row_id: int, user: AuthUser = Depends(require_editor)):
    name = _specialty(specialty)
    with _domain_errors():
        ok = archive_referral(name, row_id)
    if not ok:
        raise HTTPException(status_code=404, detail="Referral not found")
    usage_logger.log_event("referral_archived", meta={"specialty": slugify(name), "id": str(row_id)})
    return {"archived": True}


# =========================
# Reports
# =========================

def _report(specialty: Optional[str], date_from: Optional[str], date_to: Optional[str]):
    if specialty and specialty != ALL_COLUMNS:
        specialty = _specialty(specialty)
    with _domain_errors():
        rows = load_report_rows()
    return build_report(filter_report_rows(rows, specialty, date_from, date_to))


def _svg(content: bytes) -> Response:
    return Response(content=content, media_type="image/svg+xml", headers={"Cache-Control": "no-store"})


@router.get("/reports")
def reports(
    specialty: str = ALL_COLUMNS,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    user: AuthUser = Depends(require_user),
):
    return _report(specialty, date_from, date_to)


@router.get("/reports/charts/category.svg")
def report_category_chart(
    specialty: str = ALL_COLUMNS,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    user: AuthUser = Depends(require_user),
):
    return _svg(charts.bar_chart_svg(_report(specialty, date_from, date_to)["by_category"]))


@router.get("/reports/charts/communication.svg")
def report_communication_chart(
    specialty: str = ALL_COLUMNS,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    user: AuthUser = Depends(require_user),
):
    report = _report(specialty, date_from, date_to)
    return _svg(charts.donut_chart_svg(communication_chart_items(report)))


@router.get("/reports/charts/weekly.svg")
def report_weekly_chart(
    specialty: str = ALL_COLUMNS,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    user: AuthUser = Depends(require_user),
):
    return _svg(charts.line_chart_svg(_report(specialty, date_from, date_to)["weekly_trend"]))


# =========================
# Referral provider updates
# =========================

@router.get("/provider_updates")
def provider_updates(week_start: Optional[str] = None, user: AuthUser = Depends(require_user)):
    week = _parse_week(week_start)
    with _domain_errors():
        return provider_updates_overview(week)


@router.get("/provider_updates/drafts")
def provider_update_drafts(status: str, week_start: Optional[str] = None, user: AuthUser = Depends(require_user)):
    if status not in STATUS_FILTER:
        raise HTTPException(status_code=400, detail=f"Unsupported status: {status}")
    week = _parse_week(week_start)
    with _domain_errors():
        drafts = build_drafts(status, load_updates(week), active_provider_contacts())
    return {"status": status, "week_start": week.isoformat(), "drafts": list(drafts.values())}


@router.post("/provider_updates/send")
def provider_update_send(payload: SendUpdatePayload, user: AuthUser = Depends(require_editor)):
    week = _parse_week(payload.week_start)
    with _domain_errors():
        result = send_update(payload.status, payload.provider_id, week, payload.subject, payload.body)
    if not result["ok"]:
        usage_logger.log_event("provider_update_email", status=502, meta={"error": result["error"]})
        raise HTTPException(
            status_code=502,
            detail={"code": result["error"], "message": "Email could not be sent."},
        )
    usage_logger.log_event("provider_update_email", meta={"rows": len(result["sent_ids"])})
    return result


# =========================
# Notepad
# =========================

@router.get("/notepad")
def notepad_get(user: AuthUser = Depends(require_user)):
    return get_notepad(user.user_id)


@router.put("/notepad")
def notepad_save(payload: NotepadPayload, user: AuthUser = Depends(require_user)):
    return save_notepad(user.user_id, payload.text)


@router.delete("/notepad")
def notepad_clear(user: AuthUser = Depends(require_user)):
    return clear_notepad(user.user_id)


# =========================
# Table settings: providers
# =========================

@router.get("/providers")
def providers_list(practice: Optional[str] = None, user: AuthUser = Depends(require_user)):
    with _domain_errors():
        return {"providers": list_providers(practice)}


@router.get("/providers/practices")
def providers_practices(user: AuthUser = Depends(require_user)):
    with _domain_errors():
        return {"practices": list_practices()}


@router.get("/providers/options")
def providers_options(user: AuthUser = Depends(require_user)):
    with _domain_errors():
        return {"providers": provider_options(), "practices": list_practices()}


@router.post("/providers")
def providers_add(payload: NewProviderPayload, user: AuthUser = Depends(require_admin)):
    with _domain_errors():
        provider = add_provider(
            payload.practice,
            payload.provider,
            payload.contact_phone,
            payload.contact_email,
            payload.address,
        )
    return {"provider": provider}


@router.put("/providers")
def providers_save(payload: ProviderChangesPayload, user: AuthUser = Depends(require_admin)):
    try:
        with _domain_errors():
            saved = save_provider_changes([r.as_edit() for r in payload.rows])
    except PartialSaveError as e:
        # Rows written before the failure stay written; report both.
        return {"saved": e.saved, "error": str(e)}
    return {"saved": saved, "error": ""}


# =========================
# Table settings: insurances
# =========================

@router.get("/insurances")
def insurances_list(user: AuthUser = Depends(require_user)):
    with _domain_errors():
        return {"insurances": list_insurances()}


@router.get("/insurances/options")
def insurances_options(user: AuthUser = Depends(require_user)):
    with _domain_errors():
        return {"options": insurance_options()}


@router.post("/insurances")
def insurances_add(payload: NewInsurancePayload, user: AuthUser = Depends(require_admin)):
    with _domain_errors():
        return {"insurance": add_insurance(payload.label)}


@router.put("/insurances/active")
def insurances_active(payload: InsuranceActivePayload, user: AuthUser = Depends(require_admin)):
    with _domain_errors():
        return {"saved": save_active_changes(payload.changes)}


# =========================
# Admin: user management
# =========================

@router.get("/admin/users")
def admin_users(user: AuthUser = Depends(require_admin)):
    with _domain_errors():
        rows = list_user_access()
    return {"users": rows, "roles": list(ROLES), "locations": list(LOCATIONS), "statuses": list(STATUSES)}


@router.put("/admin/users")
def admin_users_save(payload: UserAccessPayload, user: AuthUser = Depends(require_admin)):
    with _domain_errors():
        saved = save_user_access([r.model_dump() for r in payload.rows])
    usage_logger.log_event("access_saved", meta={"count": len(saved)})
    return {"saved": saved}


@router.post("/admin/users/invite")
def admin_users_invite(payload: InvitePayload, user: AuthUser = Depends(require_admin)):
    with _domain_errors():
        result = invite_user(payload.email, payload.role, payload.location, payload.status, payload.display_name)
    usage_logger.log_event("user_invited", meta={"user_id": result["user_id"], "email_sent": result["email_sent"]})
    return result


# =========================
# Admin email diagnostics
# =========================

@router.get("/admin/email_status")
def email_status(user: AuthUser = Depends(require_admin)):
    return get_email_status()


@router.post("/admin/test_email")
def email_test(request: Request, user: AuthUser = Depends(require_admin)):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    logger.info("email.test.request request_id=%s user_id=%s", request_id, user.user_id)
    if not get_email_status().get("configured"):
        raise HTTPException(
            status_code=503,
            detail={"code": "EMAIL_NOT_CONFIGURED", "message": "Email delivery is not configured."},
        )
    ok, err_code = send_email(
        user.email,
        "Referral Tracker email test",
        "This is a test email from Referral Tracker.",
    )
    if not ok:
        logger.warning("email.test.failed request_id=%s code=%s", request_id, err_code)
        raise HTTPException(
            status_code=502,
            detail={"code": err_code or "EMAIL_SEND_FAILED", "message": "Test email failed."},
        )
    return {"ok": True, "request_id": request_id}
