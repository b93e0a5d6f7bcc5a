import itertools

import pytest

from app import db
from app.charts import bar_chart_svg, donut_chart_svg, line_chart_svg, short_label
from app.referrals import create_referral, archive_referral
from app.reports import (
    build_report,
    communication_bucket,
    communication_chart_items,
    filter_report_rows,
    load_report_rows,
)
from app.specialties import OTHER_PROVIDER_VALUE


def _item(specialty, received, comms=0):
    keys = ["first_patient_communication", "second_patient_communication", "third_patient_communication"]
    row = {"date_referral_received": received}
    for n, key in enumerate(keys):
        row[key] = "2026-10-06T10:00:00+00:00" if n < comms else ""
    return {"specialty": specialty, "row": row}


ITEMS = [
    _item("Ortho", "2026-10-05", 1),
    _item("Ortho", "2026-10-07", 2),
    _item("Ortho", "2026-10-13", 3),
    _item("Infusion", "2026-10-12", 0),
    _item("Infusion", "", 1),
    _item("Cardio Deschutter", "2026-09-28", 3),
]


def test_communication_bucket():
    assert communication_bucket(ITEMS[0]["row"]) == "first_only"
    assert communication_bucket(ITEMS[1]["row"]) == "first_second"
    assert communication_bucket(ITEMS[2]["row"]) == "all_three"
    assert communication_bucket(ITEMS[3]["row"]) == "none"
    # second without first is not a started sequence
    assert communication_bucket({"second_patient_communication": "x"}) == "none"


def test_build_report_counts():
    report = build_report(ITEMS)
    assert report["total"] == 6
    assert report["by_category"] == [
        {"label": "Ortho", "value": 3},
        {"label": "Infusion", "value": 2},
        {"label": "Cardio Deschutter", "value": 1},
    ]
    assert report["communication"] == {
        "first_only": 2,
        "first_second": 1,
        "all_three": 2,
        "none": 1,
        "started": 5,
        "started_pct": 83,
        "all_three_pct": 40,
    }
    assert report["weekly_trend"] == [
        {"week": "2026-09-28", "count": 1},
        {"week": "2026-10-05", "count": 2},
        {"week": "2026-10-12", "count": 2},
    ]


def test_build_report_empty():
    report = build_report([])
    assert report["total"] == 0
    assert report["communication"]["started_pct"] == 0
    assert report["communication"]["all_three_pct"] == 0
    assert report["weekly_trend"] == []


def test_filter_report_rows():
    assert len(filter_report_rows(ITEMS, specialty="Ortho")) == 3
    assert len(filter_report_rows(ITEMS, specialty="__all__")) == 6
    in_range = filter_report_rows(ITEMS, date_from="2026-10-05", date_to="2026-10-12")
    assert [i["row"]["date_referral_received"] for i in in_range] == ["2026-10-05", "2026-10-07", "2026-10-12"]
    assert filter_report_rows(ITEMS, specialty="Ortho", date_to="2026-10-01") == []


def test_communication_chart_items():
    items = communication_chart_items(build_report(ITEMS))
    assert [(i["key"], i["value"]) for i in items] == [
        ("first_only", 2), ("first_second", 1), ("all_three", 2),
    ]
    assert items[1]["label"] == "1st + 2nd"


def test_load_report_rows_skips_archived(monkeypatch):
    ticks = (f"2026-10-14T18:00:{n:02d}+00:00" for n in itertools.count())
    monkeypatch.setattr(db, "utc_now_iso", lambda: next(ticks))
    draft = {
        "date_referral_received": "2026-10-05",
        "patient_name": "Jane Roe",
        "dob": "1980-02-03",
        "phone_number": "5551234567",
        "referring_provider_practice": "Valley Clinic",
        "referring_provider_id": OTHER_PROVIDER_VALUE,
        "referring_provider": "Dr. Walk-in",
    }
    kept = create_referral("Ortho", draft)
    gone = create_referral("Women's Health", draft)
    archive_referral("Women's Health", gone["id"])

    rows = load_report_rows()
    assert [(r["specialty"], r["row"]["id"]) for r in rows] == [("Ortho", kept["id"])]


@pytest.mark.parametrize("render", [bar_chart_svg, donut_chart_svg])
def test_category_charts_render_svg(render):
    assert b"<svg" in render([])
    items = [{"key": "first_only", "label": "Colonoscopy and EGD", "value": 4},
             {"key": "all_three", "label": "Ortho", "value": 0}]
    assert b"<svg" in render(items)


def test_line_chart_renders_svg():
    assert b"<svg" in line_chart_svg([])
    assert b"<svg" in line_chart_svg(build_report(ITEMS)["weekly_trend"])


def test_bar_chart_caps_bars():
    items = [{"label": f"Cat{n}", "value": n + 1} for n in range(20)]
    svg = bar_chart_svg(items)
    assert b"<svg" in svg
    assert b"Cat11" in svg
    assert b"Cat12" not in svg
    assert short_label("Colonoscopy and EGD") == "Colonoscop…"
    assert short_label("Ortho") == "Ortho"


def test_donut_skips_zero_slices():
    items = [{"key": "first_only", "label": "Called", "value": 3},
             {"key": "all_three", "label": "Skipped", "value": 0}]
    svg = donut_chart_svg(items)
    assert b"Called" in svg
    assert b"Skipped" not in svg
