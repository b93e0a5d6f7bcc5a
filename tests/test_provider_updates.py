import itertools
from datetime import date, datetime, timezone

import pytest

from app import db, provider_updates
from app.providers import active_provider_contacts, add_provider
from app.referrals import create_referral
from app.specialties import OTHER_PROVIDER_VALUE, SPECIALTY_TABLES

WEEK = date(2026, 10, 12)


@pytest.fixture
def clock(monkeypatch):
    ticks = (f"2026-10-14T18:00:{n:02d}+00:00" for n in itertools.count())
    monkeypatch.setattr(db, "utc_now_iso", lambda: next(ticks))


def _referral(specialty, patient, provider_id, status, location, appt="2026-10-20T09:00"):
    draft = {
        "date_referral_received": "2026-10-01",
        "patient_name": patient,
        "dob": "1975-06-01",
        "phone_number": "5551234567",
        "referring_provider_practice": "Valley Clinic",
        "referring_provider_id": provider_id,
        "referring_provider": "Dr. Walk-in" if provider_id == OTHER_PROVIDER_VALUE else "",
        "appt_date_time": appt,
        "status": status,
    }
    return create_referral(specialty, draft, location=location)


@pytest.fixture
def seeded(clock):
    add_provider("Valley Clinic", "Dr. Ada Park", "", "ada@valley.example")
    add_provider("North Family", "Dr. Ben Cho", "", "ben@north.example")
    rows = {
        "zed": _referral("Colonoscopy and EGD", "Zed Alpha", "1", "APPT_SCHEDULED", "CH_Elko"),
        "amy": _referral("Ortho", "amy Beta", "1", "APPT_SCHEDULED", "CH_Elko"),
        "carl": _referral("General Surgery", "Carl Gamma", "2", "NOT_INTERESTED", "CH_Reno", appt=""),
        "walk": _referral("Ortho", "Walk Delta", OTHER_PROVIDER_VALUE, "APPT_SCHEDULED", "CH_Reno"),
        "busy": _referral("Ortho", "Busy Epsilon", "1", "IN_PROGRESS", "CH_Elko"),
        "old": _referral("Ortho", "Old Zeta", "1", "APPT_SCHEDULED", "CH_Elko"),
    }
    db.update_by_id(
        SPECIALTY_TABLES["Ortho"],
        int(rows["old"]["id"]),
        {"status_updated_at": "2026-10-05T18:00:00+00:00"},
    )
    return rows


def test_week_range_uses_local_midnight():
    start, end = provider_updates.week_range(WEEK)
    assert start == datetime(2026, 10, 12, 7, 0, tzinfo=timezone.utc)
    assert end == datetime(2026, 10, 19, 7, 0, tzinfo=timezone.utc)

    # the week that crosses the end of daylight time is 169 hours long
    start, end = provider_updates.week_range(date(2026, 10, 26))
    assert end == datetime(2026, 11, 2, 8, 0, tzinfo=timezone.utc)
    assert (end - start).total_seconds() == 169 * 3600


def test_appt_scheduled_email_text():
    email = provider_updates.build_email_for_status(
        "APPT_SCHEDULED", "Dr. Ada Park", "CH_Elko", ["Amy Beta", "Zed Alpha"]
    )
    assert email["subject"] == "Patient referral update - Appointment scheduled"
    assert email["body"] == (
        "Hello Dr. Ada Park,\n\n"
        "We are writing to share an update regarding patients you referred to our practice.\n\n"
        "The following patient(s) have been **successfully scheduled for an appointment**:\n\n"
        "* Amy Beta\n* Zed Alpha\n\n"
        "If you have any questions or need additional information, please feel free to reach out to our team.\n\n"
        "Thank you for continuing to refer your patients to us.\n\n"
        "Best regards,\nCH_Elko\nConvergence Health\n"
    )


def test_email_placeholders_and_other_statuses():
    email = provider_updates.build_email_for_status("NOT_INTERESTED", "", "", [])
    assert email["subject"] == "Patient referral update - Not interested"
    assert email["body"].startswith("Hello {{Referral Provider Name}},\n\n")
    assert "* (No patients)" in email["body"]
    assert "{{Practice / Location Name}}" in email["body"]

    for status in ("CANCELLED", "NO_SHOW", "CANCELLED/ NO_SHOW"):
        email = provider_updates.build_email_for_status(status, "Dr. X", "Clinic", ["P"])
        assert email["subject"] == "Patient referral update - Cancelled / No show"

    email = provider_updates.build_email_for_status("NO_RESPONSE_3_ATTEMPTS", "Dr. X", "Clinic", ["P"])
    assert email["subject"] == "Patient referral update - No response (3 attempts)"
    assert email["body"] == (
        "Hello Dr. X,\n\n"
        "We wanted to provide an update regarding patients you referred to our practice.\n\n"
        "* P\n\nBest regards,\nClinic\nConvergence Health\n"
    )


def test_compute_practice_name():
    assert provider_updates.compute_practice_name([{"location": "CH_Elko"}, {"location": " CH_Elko"}]) == "CH_Elko"
    assert provider_updates.compute_practice_name([{"location": "CH_Elko"}, {"location": "CH_Reno"}]) == "Convergence Health"
    assert provider_updates.compute_practice_name([{"location": ""}]) == "Convergence Health"


def test_grouping_helpers():
    rows = [
        {"status": "NOT_INTERESTED", "referral_provider_id": "2", "patient_name": "b"},
        {"status": "ODD", "referral_provider_id": "", "patient_name": "c"},
        {"status": "APPT_SCHEDULED", "referral_provider_id": "2", "patient_name": "A"},
    ]
    groups = provider_updates.group_by_status(rows)
    assert provider_updates.ordered_statuses(groups) == ["APPT_SCHEDULED", "NOT_INTERESTED", "ODD"]

    by_provider = provider_updates.group_by_provider(rows)
    assert list(by_provider) == ["(No referral provider)", "2"]
    assert [r["patient_name"] for r in by_provider["2"]] == ["A", "b"]


def test_load_updates_filters_status_and_week(seeded):
    rows = provider_updates.load_updates(WEEK)
    assert [r["patient_name"] for r in rows] == ["Walk Delta", "Carl Gamma", "amy Beta", "Zed Alpha"]
    assert rows[-1]["specialty"] == "Colonoscopy and EGD"
    assert all(r["email_sent_at"] == "" for r in rows)

    assert provider_updates.load_updates(date(2026, 10, 5))[0]["patient_name"] == "Old Zeta"


def test_build_drafts_per_provider(seeded):
    rows = provider_updates.load_updates(WEEK)
    drafts = provider_updates.build_drafts("APPT_SCHEDULED", rows, active_provider_contacts())
    assert list(drafts) == ["(No referral provider)", "1"]

    ada = drafts["1"]
    assert ada["to"] == "ada@valley.example"
    assert ada["provider_name"] == "Dr. Ada Park"
    assert [p["patient_name"] for p in ada["patients"]] == ["amy Beta", "Zed Alpha"]
    assert "* amy Beta\n* Zed Alpha" in ada["body"]
    assert ada["body"].endswith("Best regards,\nCH_Elko\nConvergence Health\n")

    walk = drafts["(No referral provider)"]
    assert walk["to"] == ""
    assert walk["body"].startswith("Hello (No referral provider),")


def test_unknown_provider_name_when_contact_missing(seeded):
    rows = provider_updates.load_updates(WEEK)
    drafts = provider_updates.build_drafts("NOT_INTERESTED", rows, {})
    assert drafts["2"]["provider_name"] == "(Unknown provider)"
    assert drafts["2"]["to"] == ""


def test_overview(seeded):
    data = provider_updates.overview(WEEK)
    assert data["week_start"] == "2026-10-12"
    assert data["range"]["start"] == "2026-10-12T07:00:00+00:00"
    assert [s["status"] for s in data["statuses"]] == ["APPT_SCHEDULED", "NOT_INTERESTED"]
    assert data["statuses"][0]["label"] == "Appt scheduled"
    assert len(data["statuses"][0]["rows"]) == 3


def test_send_update_stamps_rows(seeded, monkeypatch):
    sent = []

    def fake_send(to, subject, body):
        sent.append((to, subject, body))
        return True, ""

    monkeypatch.setattr("app.provider_updates.send_email", fake_send)

    result = provider_updates.send_update("APPT_SCHEDULED", "1", WEEK, subject="Weekly update")
    assert result["ok"] is True
    assert sorted(result["sent_ids"]) == sorted([seeded["amy"]["id"], seeded["zed"]["id"]])
    assert sent[0][0] == "ada@valley.example"
    assert sent[0][1] == "Weekly update"
    assert "* amy Beta" in sent[0][2]

    stamped = {r["patient_name"]: r["email_sent_at"] for r in provider_updates.load_updates(WEEK)}
    assert stamped["amy Beta"] == result["email_sent_at"]
    assert stamped["Zed Alpha"] == result["email_sent_at"]
    assert stamped["Carl Gamma"] == ""
    assert stamped["Walk Delta"] == ""


def test_send_update_failure_leaves_rows(seeded, monkeypatch):
    monkeypatch.setattr("app.provider_updates.send_email", lambda *a: (False, "EMAIL_SEND_FAILED"))
    result = provider_updates.send_update("NOT_INTERESTED", "2", WEEK)
    assert result == {"ok": False, "error": "EMAIL_SEND_FAILED", "sent_ids": []}
    assert all(r["email_sent_at"] == "" for r in provider_updates.load_updates(WEEK))


def test_send_update_errors(seeded):
    with pytest.raises(db.NotFoundError):
        provider_updates.send_update("APPT_SCHEDULED", "2", WEEK)
    with pytest.raises(ValueError):
        provider_updates.send_update("APPT_SCHEDULED", "(No referral provider)", WEEK)
