import pytest

from app import db
from app.insurances import (
    add_insurance,
    insurance_label,
    insurance_options,
    list_insurances,
    save_active_changes,
)
from app.providers import (
    PRACTICE_PLACEHOLDER_PROVIDER,
    PartialSaveError,
    active_provider_contacts,
    add_provider,
    diff_provider,
    list_practices,
    list_providers,
    provider_options,
    providers_by_id,
    save_provider_changes,
)
from app.specialties import DEFAULT_INSURANCE_OPTIONS


def _seed():
    add_provider("Valley Clinic", "Dr. Ada Park", "555-000-1111", "ada@valley.example", "1 Main St")
    add_provider("North Family", "Dr. Ben Cho", "", "ben@north.example")


def test_add_provider_validation():
    with pytest.raises(ValueError, match="Practice is required"):
        add_provider("", "Dr. X", contact_email="x@example.com")
    with pytest.raises(ValueError, match="Provider is required"):
        add_provider("Valley Clinic", "  ", contact_email="x@example.com")
    with pytest.raises(ValueError, match="Email is required"):
        add_provider("Valley Clinic", "Dr. X")

    _seed()
    with pytest.raises(ValueError, match="Provider already exists"):
        add_provider(" valley clinic ", "DR. ADA PARK", contact_email="dup@example.com")


def test_add_provider_records_insert_history():
    created = add_provider("Valley Clinic", "Dr. Ada Park", "", "ada@valley.example")
    assert created["id"] == "1"
    assert created["is_active"] is True
    history = list_providers()[0]["edit_history"]
    assert len(history) == 1
    assert history[0]["action"] == "insert"
    assert history[0]["referral_provider"] == "Dr. Ada Park"


def test_listing_practices_and_options():
    _seed()
    db.insert("referral_providers", {
        "provider_practice": "Desert Health",
        "referral_provider": PRACTICE_PLACEHOLDER_PROVIDER,
        "is_active": True,
        "edit_history": [],
    })
    assert [p["provider"] for p in list_providers()] == ["Dr. Ben Cho", "Dr. Ada Park"]
    assert [p["provider"] for p in list_providers(practice="Valley Clinic")] == ["Dr. Ada Park"]
    assert len(list_providers(include_placeholders=True)) == 3
    assert list_practices() == ["Desert Health", "North Family", "Valley Clinic"]
    assert [o["referral_provider"] for o in provider_options()] == ["Dr. Ada Park", "Dr. Ben Cho"]
    assert set(providers_by_id()) == {"1", "2", "3"}


def test_diff_provider():
    original = {"practice": "A", "provider": "Dr. A", "contact_phone": "", "is_active": True}
    edited = {"practice": "A", "provider": "Dr. B", "contact_phone": None, "is_active": False}
    assert diff_provider(original, edited) == {
        "referral_provider": {"from": "Dr. A", "to": "Dr. B"},
        "is_active": {"from": True, "to": False},
    }


def test_save_provider_changes_appends_history():
    _seed()
    assert save_provider_changes([{"id": "1", "contact_phone": "555-000-1111"}]) == []

    saved = save_provider_changes([
        {"id": "1", "contact_phone": "555-222-3333"},
        {"id": "99", "contact_phone": "ignored"},
    ])
    assert saved == ["1"]
    ada = next(p for p in list_providers() if p["id"] == "1")
    assert ada["contact_phone"] == "555-222-3333"
    assert ada["edit_history"][-1]["action"] == "update"
    assert ada["edit_history"][-1]["changes"] == {
        "contact_phone": {"from": "555-000-1111", "to": "555-222-3333"}
    }


def test_save_provider_changes_requires_email():
    _seed()
    with pytest.raises(ValueError, match="Email is required"):
        save_provider_changes([{"id": "2", "contact_email": " "}])


def test_save_provider_changes_validates_before_writing():
    _seed()
    with pytest.raises(ValueError, match="Email is required"):
        save_provider_changes([
            {"id": "1", "contact_phone": "555-999-0000"},
            {"id": "2", "contact_email": " "},
        ])
    ada = next(p for p in list_providers() if p["id"] == "1")
    assert ada["contact_phone"] == "555-000-1111"
    assert len(ada["edit_history"]) == 1


def test_save_provider_changes_keeps_ids_saved_before_store_error(monkeypatch):
    _seed()
    real_update = db.update_by_id
    calls = []

    def flaky_update(table, row_id, values):
        calls.append(row_id)
        if len(calls) > 1:
            raise db.StoreError("disk full")
        return real_update(table, row_id, values)

    monkeypatch.setattr(db, "update_by_id", flaky_update)
    with pytest.raises(PartialSaveError, match="disk full") as exc:
        save_provider_changes([
            {"id": "1", "contact_phone": "555-999-0000"},
            {"id": "2", "contact_phone": "555-999-1111"},
        ])
    assert exc.value.saved == ["1"]
    phones = {p["id"]: p["contact_phone"] for p in list_providers()}
    assert phones == {"1": "555-999-0000", "2": ""}


def test_active_contacts_skip_inactive():
    _seed()
    save_provider_changes([{"id": "2", "is_active": False}])
    assert active_provider_contacts() == {
        "1": {"name": "Dr. Ada Park", "email": "ada@valley.example"},
    }


def test_insurance_label_fallbacks():
    assert insurance_label({"insurance": " Aetna "}) == "Aetna"
    assert insurance_label({"id": 3, "title": "Cigna"}) == "Cigna"
    assert insurance_label({"id": 3, "misc": "Humana"}) == "Humana"
    assert insurance_label({"id": 3}) == ""
    assert insurance_label("Aetna") == ""


def test_insurance_options_default_when_empty():
    assert insurance_options() == DEFAULT_INSURANCE_OPTIONS


def test_add_and_toggle_insurances():
    with pytest.raises(ValueError, match="Insurance is required"):
        add_insurance("  ")
    add_insurance("Medicare")
    add_insurance("aetna")
    with pytest.raises(ValueError, match="Insurance already exists"):
        add_insurance("MEDICARE")

    assert insurance_options() == ["", "aetna", "Medicare"]
    assert [i["label"] for i in list_insurances()] == ["aetna", "Medicare"]

    assert save_active_changes({"1": False, "2": True, "7": False}) == ["1"]
    by_label = {i["label"]: i["is_active"] for i in list_insurances()}
    assert by_label == {"Medicare": False, "aetna": True}
