"""
Automatic mapping of uploaded file columns to lead fields.

Headers are compared against a dictionary of French and English aliases:
exact alias matches win outright, then containment, then fuzzy similarity.
Only matches at or above ``AUTO_MAP_CONFIDENCE_THRESHOLD`` are applied; the
user confirms or edits the result before the import starts.
"""

import logging
import re
import unicodedata
from difflib import SequenceMatcher
from typing import Dict, List, Optional, Sequence, Tuple

from app.api.schemas.shared import ColumnMapping, ColumnMappingEntry

logger = logging.getLogger(__name__)

AUTO_MAP_CONFIDENCE_THRESHOLD = 0.7
SAMPLE_VALUE_COUNT = 5
SAMPLE_VALUE_LENGTH = 50

COLUMN_ALIASES: Dict[str, List[str]] = {
    "external_id": [
        "id", "external_id", "id_externe", "identifiant", "reference", "ref",
        "numero", "code_client", "lead_id", "customer_id", "client_id",
    ],
    "first_name": [
        "prenom", "firstname", "first_name", "first name", "given_name", "given name",
    ],
    "last_name": [
        "nom", "nom_de_famille", "nom de famille", "lastname", "last_name", "last name",
        "family_name", "surname", "full_name", "fullname", "name",
    ],
    "email": [
        "email", "e-mail", "mail", "courriel", "adresse_email", "adresse_mail",
        "email_address", "email_principale", "main_email",
    ],
    "phone": [
        "telephone", "tel", "phone", "mobile", "portable", "gsm", "numero_telephone",
        "numero_tel", "phone_number", "tel_mobile", "tel_fixe", "telephone_principal",
        "main_phone", "cell", "cellphone",
    ],
    "company": [
        "entreprise", "societe", "company", "raison_sociale", "nom_entreprise",
        "organization", "organisation", "business", "firm",
    ],
    "job_title": [
        "fonction", "poste", "titre", "job_title", "job", "role", "position",
        "intitule_poste", "profession", "occupation",
    ],
    "address": [
        "adresse", "address", "rue", "street", "voie", "adresse_postale",
        "street_address", "full_address",
    ],
    "city": ["ville", "city", "commune", "localite", "town", "municipality"],
    "postal_code": [
        "code_postal", "cp", "postal_code", "postalcode", "zip", "zipcode",
        "zip_code", "postcode",
    ],
    "country": ["pays", "country", "nation"],
    "status": [
        "statut", "status", "etat", "state", "lead_status", "contact_status",
    ],
    "source": [
        "source", "origine", "provenance", "canal", "channel", "campaign", "campagne",
        "utm_source", "campaign_name", "form_name", "platform",
    ],
    "notes": [
        "notes", "note", "commentaire", "commentaires", "comment", "comments",
        "remarque", "remarques", "description", "observations", "details",
    ],
    "assigned_to": [
        "commercial", "vendeur", "assigne", "assigned_to", "assigned", "owner",
        "responsable", "sales_rep", "agent", "conseiller", "account_owner",
    ],
}


def normalize_header(name: str) -> str:
    """
    Normalize a header for comparison.

    Examples:
        "Prénom" -> "prenom"
        "Code Postal" -> "codepostal"
        "e-mail" -> "email"
    """
    decomposed = unicodedata.normalize("NFD", str(name).lower())
    without_accents = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return re.sub(r"[^a-z0-9]", "", without_accents)


_NORMALIZED_ALIASES: List[Tuple[str, str]] = [
    (normalize_header(alias), field)
    for field, aliases in COLUMN_ALIASES.items()
    for alias in aliases
]


def score_header(header: str) -> Tuple[Optional[str], float]:
    """Return the best (field, confidence) for a header, or (None, 0.0)."""
    normalized = normalize_header(header)
    if not normalized:
        return None, 0.0

    for alias, field in _NORMALIZED_ALIASES:
        if alias == normalized:
            return field, 1.0

    best_field: Optional[str] = None
    best_score = 0.0
    for alias, field in _NORMALIZED_ALIASES:
        shorter = min(len(alias), len(normalized))
        if shorter >= 3 and (alias in normalized or normalized in alias):
            score = 0.9
        else:
            score = SequenceMatcher(None, normalized, alias).ratio()
        if score > best_score:
            best_field, best_score = field, score

    return best_field, round(best_score, 3)


def _sample_values(rows: Sequence[Sequence[str]], index: int) -> List[str]:
    samples: List[str] = []
    for row in rows:
        if index >= len(row):
            continue
        value = str(row[index] or "").strip()
        if value:
            samples.append(value[:SAMPLE_VALUE_LENGTH])
        if len(samples) >= SAMPLE_VALUE_COUNT:
            break
    return samples


def auto_map_columns(
    headers: Sequence[str],
    sample_rows: Sequence[Sequence[str]] = (),
    *,
    has_header_row: bool = True,
    header_row_index: int = 0,
) -> ColumnMapping:
    """
    Propose a column mapping for a file.

    Columns are assigned in descending confidence order so the strongest
    match claims a field first; each field is used at most once.

    Args:
        headers: Column names (synthetic names when the file has no header row)
        sample_rows: First data rows, used for the preview samples
        has_header_row: Whether ``headers`` came from the file
        header_row_index: 0-based index of the header row in the file

    Returns:
        ColumnMapping with one entry per column
    """
    scored = []
    for index, header in enumerate(headers):
        field, confidence = score_header(header) if has_header_row else (None, 0.0)
        scored.append((index, header, field, confidence))

    used_fields = set()
    assignments: Dict[int, Tuple[Optional[str], float]] = {}
    for index, header, field, confidence in sorted(scored, key=lambda item: (-item[3], item[0])):
        if field and confidence >= AUTO_MAP_CONFIDENCE_THRESHOLD and field not in used_fields:
            used_fields.add(field)
            assignments[index] = (field, confidence)
        else:
            assignments[index] = (None, 0.0)

    entries = []
    for index, header, _, _ in scored:
        field, confidence = assignments[index]
        entries.append(
            ColumnMappingEntry(
                source_column=header,
                source_index=index,
                target_field=field,
                confidence=confidence,
                is_manual=False,
                sample_values=_sample_values(sample_rows, index),
            )
        )

    mapped = sum(1 for entry in entries if entry.target_field)
    logger.info(f"Auto-mapped {mapped}/{len(entries)} columns")

    # ColumnMapping requires at least one mapped column; build without
    # validation so an unmatched file still gets a proposal to edit.
    return ColumnMapping.model_construct(
        mappings=entries,
        has_header_row=has_header_row,
        header_row_index=header_row_index,
    )
