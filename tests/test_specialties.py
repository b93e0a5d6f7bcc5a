import unittest

from app.specialties import (
    ColumnDef,
    SPECIALTIES,
    SPECIALTY_TABLES,
    create_empty_draft,
    display_schema,
    editor_schema,
    order_schema,
    pinned_keys_in_schema_order,
    prune_pinned_keys,
    require_specialty,
    slugify,
    status_label,
    table_schema,
    with_referring_provider_practice,
    with_status_email_sent_after_appt,
)


def _keys(cols):
    return [c.key for c in cols]


class TestSpecialtySchemas(unittest.TestCase):
    def test_every_specialty_has_a_table(self):
        self.assertEqual(len(SPECIALTIES), 12)
        for s in SPECIALTIES:
            self.assertTrue(SPECIALTY_TABLES[s].startswith("referrals_"))

    def test_require_specialty_accepts_slug_and_table(self):
        self.assertEqual(require_specialty("women_s_health"), "Women's Health")
        self.assertEqual(require_specialty("referrals_ortho"), "Ortho")
        with self.assertRaises(KeyError):
            require_specialty("Dermatology")

    def test_column_type_must_be_known(self):
        self.assertEqual(ColumnDef("dob", "DOB", "date").type, "date")
        with self.assertRaises(ValueError):
            ColumnDef("dob", "DOB", "number")

    def test_slugify(self):
        self.assertEqual(slugify("Colonoscopy and EGD"), "colonoscopy_and_egd")
        self.assertEqual(slugify("  Women's Health "), "women_s_health")

    def test_general_surgery_table_schema(self):
        self.assertEqual(
            _keys(table_schema("General Surgery")),
            [
                "date_referral_received",
                "patient_name",
                "dob",
                "phone_number",
                "insurance",
                "referring_provider_practice",
                "referring_provider",
                "reason",
                "first_patient_communication",
                "second_patient_communication",
                "third_patient_communication",
                "appt_date_time",
                "status",
                "status_updated_at",
                "email_sent_at",
                "notes",
            ],
        )

    def test_colonoscopy_moves_reason_and_notes_after_provider(self):
        keys = _keys(table_schema("Colonoscopy and EGD"))
        i = keys.index("referring_provider")
        self.assertEqual(keys[i - 1], "referring_provider_practice")
        self.assertEqual(keys[i + 1: i + 3], ["reason", "notes"])
        self.assertEqual(keys[-1], "email_sent_at")

    def test_editor_schema_only_adds_status(self):
        keys = _keys(editor_schema("Ortho"))
        self.assertIn("status", keys)
        self.assertNotIn("status_updated_at", keys)
        self.assertNotIn("email_sent_at", keys)
        self.assertEqual(keys[keys.index("appt_date_time") + 1], "status")

    def test_singh_has_no_provider_columns(self):
        keys = _keys(table_schema("Singh Cancellations"))
        self.assertNotIn("referring_provider", keys)
        self.assertNotIn("referring_provider_practice", keys)
        self.assertEqual(keys[:2], ["needs_call", "date_cancelled"])

    def test_practice_insert_is_idempotent(self):
        once = with_referring_provider_practice(table_schema("Ortho"))
        self.assertEqual(_keys(once).count("referring_provider_practice"), 1)

    def test_status_columns_need_appt(self):
        cols = [ColumnDef("patient_name", "Patient Name")]
        self.assertEqual(with_status_email_sent_after_appt(cols), cols)

    def test_status_label(self):
        self.assertEqual(status_label("NO_RESPONSE_3_ATTEMPTS"), "No response (3 attempts)")
        self.assertEqual(status_label("SOMETHING_ELSE"), "SOMETHING_ELSE")
        self.assertEqual(status_label(None), "")


class TestOrderingAndPins(unittest.TestCase):
    def test_order_schema_leading_then_reason_notes(self):
        keys = _keys(order_schema(table_schema("Ortho")))
        self.assertEqual(
            keys[:9],
            [
                "date_referral_received",
                "patient_name",
                "dob",
                "phone_number",
                "insurance",
                "referring_provider_practice",
                "referring_provider",
                "reason",
                "notes",
            ],
        )
        self.assertEqual(keys[-1], "notes2")

    def test_display_schema_pins_first_and_skips_reason(self):
        cols = table_schema("General Surgery")
        keys = _keys(display_schema(cols, ["appt_date_time", "reason", "patient_name"]))
        self.assertEqual(keys[:2], ["patient_name", "appt_date_time"])
        self.assertEqual(len(keys), len(cols))
        self.assertEqual(
            pinned_keys_in_schema_order(cols, ["appt_date_time", "notes", "patient_name"]),
            ["patient_name", "appt_date_time"],
        )

    def test_display_schema_without_pins_is_ordered(self):
        cols = table_schema("Infusion")
        self.assertEqual(_keys(display_schema(cols, [])), _keys(order_schema(cols)))

    def test_prune_pinned_keys(self):
        cols = table_schema("Hernia Sx Waitlist")
        self.assertEqual(
            prune_pinned_keys(cols, ["dob", "referring_provider", "dob", "phone_number"]),
            ["dob", "phone_number"],
        )

    def test_create_empty_draft(self):
        draft = create_empty_draft(editor_schema("Heme Onc Rice"))
        self.assertIs(draft["ngm_patient"], False)
        self.assertEqual(draft["patient_name"], "")
        self.assertEqual(draft["status"], "")


if __name__ == "__main__":
    unittest.main()
