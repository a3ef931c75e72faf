"""
Tests for row normalization and validation.
"""

import pytest

from app.api.schemas.shared import ColumnMapping, ColumnMappingEntry
from app.domain.imports.validators import (
    normalize_email,
    normalize_lead_status,
    normalize_postal_code,
    normalize_text,
    try_fix_email_domain,
    validate_row,
)
from app.utils.phone import normalize_phone, phone_length_is_plausible


def _mapping(*fields):
    return ColumnMapping(
        mappings=[
            ColumnMappingEntry(source_column=field, source_index=index, target_field=field)
            for index, field in enumerate(fields)
        ]
    )


class TestEmailRepair:

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("Jean.Dupont@GmailCom", "jean.dupont@gmail.com"),
            ("marie@orangefr", "marie@orange.fr"),
            ("paul@hotmailfr", "paul@hotmail.fr"),
            ("luc@exemplefr", "luc@exemple.fr"),
            ("  contact@acme.com ", "contact@acme.com"),
        ],
    )
    def test_normalize_email(self, raw, expected):
        assert normalize_email(raw) == expected

    def test_fix_reports_rewrite(self):
        assert try_fix_email_domain("a@gmailcom") == ("a@gmail.com", True)
        assert try_fix_email_domain("a@gmail.com") == ("a@gmail.com", False)

    def test_multiple_at_signs_are_left_alone(self):
        assert try_fix_email_domain("a@@b.com") == ("a@@b.com", False)

    def test_blank_email_is_none(self):
        assert normalize_email("   ") is None
        assert normalize_email(None) is None


class TestPhoneNormalization:

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("06 12 34 56 78", "+33612345678"),
            ("p:+33612345678", "+33612345678"),
            ("0033 6 12 34 56 78", "+33612345678"),
            ("33612345678", "+33612345678"),
            ("+44 20 7946 1234", "+442079461234"),
            ("12345", "12345"),
        ],
    )
    def test_normalize_phone(self, raw, expected):
        assert normalize_phone(raw) == expected

    def test_empty_values(self):
        assert normalize_phone(None) is None
        assert normalize_phone("   ") is None
        assert normalize_phone("n/a") is None

    def test_plausible_length(self):
        assert phone_length_is_plausible("+33612345678")
        assert not phone_length_is_plausible("12345")
        assert not phone_length_is_plausible(None)


class TestFieldNormalization:

    def test_text_collapses_whitespace(self):
        assert normalize_text("  Jean   Pierre ") == "Jean Pierre"
        assert normalize_text("") is None

    def test_postal_code(self):
        assert normalize_postal_code("7500") == "07500"
        assert normalize_postal_code("75 001") == "75001"
        assert normalize_postal_code("") is None

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("Nouveau", "new"),
            ("Pas intéressé", "not_interested"),
            ("no answer", "no_answer_1"),
            ("RDV", "rdv"),
            ("something else", "new"),
            (None, "new"),
        ],
    )
    def test_lead_status(self, raw, expected):
        assert normalize_lead_status(raw) == expected


class TestValidateRow:

    def test_valid_row_is_normalized(self):
        mapping = _mapping("first_name", "last_name", "email", "phone", "company")
        result = validate_row(["Jean", "Dupont", "JEAN@GMAILCOM", "06 12 34 56 78", "Acme"], mapping)

        assert result.is_valid
        assert result.normalized_data["email"] == "jean@gmail.com"
        assert result.normalized_data["phone"] == "+33612345678"
        assert "auto-corrected" in result.warnings["email"]

    def test_missing_contact_field_is_an_error(self):
        mapping = _mapping("first_name", "last_name", "email")
        result = validate_row(["Jean", "Dupont", ""], mapping)

        assert not result.is_valid
        assert "contact" in result.errors

    def test_phone_alone_is_enough(self):
        mapping = _mapping("phone")
        result = validate_row(["0612345678"], mapping)

        assert result.is_valid
        assert result.warnings["name"] == "no name provided"
        assert result.warnings["company"] == "no company provided"

    def test_invalid_email(self):
        mapping = _mapping("email", "phone")
        result = validate_row(["not-an-email", "0612345678"], mapping)

        assert result.errors["email"] == "invalid email format"

    def test_field_too_long(self):
        mapping = _mapping("first_name", "email")
        result = validate_row(["x" * 101, "a@b.com"], mapping)

        assert result.errors["first_name"] == "must be at most 100 characters"

    def test_unusual_phone_length_is_a_warning(self):
        mapping = _mapping("phone")
        result = validate_row(["12345"], mapping)

        assert result.is_valid
        assert result.warnings["phone"] == "unusual phone number length"

    def test_short_row_fills_missing_columns(self):
        mapping = _mapping("email", "company")
        result = validate_row(["a@b.com"], mapping)

        assert result.is_valid
        assert result.normalized_data["company"] is None

    def test_unmapped_columns_are_ignored(self):
        mapping = ColumnMapping(
            mappings=[
                ColumnMappingEntry(source_column="Email", source_index=0, target_field="email"),
                ColumnMappingEntry(source_column="Misc", source_index=1, target_field=None),
            ]
        )
        result = validate_row(["a@b.com", "ignored"], mapping)

        assert result.normalized_data["email"] == "a@b.com"
        assert "ignored" not in result.normalized_data.values()

    def test_same_input_gives_same_result(self):
        mapping = _mapping("first_name", "email", "phone", "postal_code")
        row = ["  Zoé ", "zoe@yahoofr", "0033 6 00 00 00 00", "1000"]

        first = validate_row(row, mapping)
        second = validate_row(list(row), mapping)

        assert first.normalized_data == second.normalized_data
        assert first.errors == second.errors
        assert first.warnings == second.warnings
