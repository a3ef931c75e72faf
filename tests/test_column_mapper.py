"""
Tests for automatic column mapping.
"""

import pytest
from pydantic import ValidationError

from app.api.schemas.shared import ColumnMapping, ColumnMappingEntry
from app.domain.imports.column_mapper import (
    AUTO_MAP_CONFIDENCE_THRESHOLD,
    auto_map_columns,
    normalize_header,
    score_header,
)


def test_normalize_header_strips_accents_and_separators():
    assert normalize_header("Prénom") == "prenom"
    assert normalize_header("Code Postal") == "codepostal"
    assert normalize_header("e-mail") == "email"


def test_french_headers_map_exactly():
    headers = ["Prénom", "Nom", "Email", "Téléphone", "Société", "Code Postal", "Ville"]
    mapping = auto_map_columns(headers, [])

    targets = [entry.target_field for entry in mapping.mappings]
    assert targets == ["first_name", "last_name", "email", "phone", "company", "postal_code", "city"]
    assert all(entry.confidence == 1.0 for entry in mapping.mappings)
    assert all(not entry.is_manual for entry in mapping.mappings)


def test_containment_match_scores_below_exact():
    field, confidence = score_header("Mobile perso")
    assert field == "phone"
    assert AUTO_MAP_CONFIDENCE_THRESHOLD <= confidence < 1.0


def test_each_field_is_used_once():
    mapping = auto_map_columns(["Email", "E-mail"], [])

    assert mapping.mappings[0].target_field == "email"
    assert mapping.mappings[1].target_field is None


def test_unknown_header_is_left_unmapped():
    mapping = auto_map_columns(["Email", "Xyzzy"], [])

    assert mapping.mappings[1].target_field is None
    assert mapping.mappings[1].confidence == 0.0


def test_headerless_file_gets_no_proposal():
    mapping = auto_map_columns(["Column 1", "Column 2"], [["a@b.com", "0612345678"]], has_header_row=False)

    assert mapping.has_header_row is False
    assert all(entry.target_field is None for entry in mapping.mappings)
    assert mapping.mappings[0].sample_values == ["a@b.com"]


def test_sample_values_skip_blanks():
    rows = [["a@b.com"], [""], ["c@d.com"]]
    mapping = auto_map_columns(["Email"], rows)

    assert mapping.mappings[0].sample_values == ["a@b.com", "c@d.com"]


def test_mapping_rejects_duplicate_targets():
    with pytest.raises(ValidationError):
        ColumnMapping(
            mappings=[
                ColumnMappingEntry(source_column="A", source_index=0, target_field="email"),
                ColumnMappingEntry(source_column="B", source_index=1, target_field="email"),
            ]
        )


def test_mapping_requires_a_mapped_column():
    with pytest.raises(ValidationError):
        ColumnMapping(mappings=[ColumnMappingEntry(source_column="A", source_index=0)])


def test_mapping_accepts_camel_case_payload():
    mapping = ColumnMapping.model_validate(
        {
            "mappings": [{"sourceColumn": "Mail", "sourceIndex": 0, "targetField": "email", "isManual": True}],
            "hasHeaderRow": True,
            "headerRowIndex": 2,
        }
    )

    assert mapping.header_row_index == 2
    assert mapping.mappings[0].is_manual
