"""
Row validation and normalization for lead imports.

Everything here is pure: the same raw row and column mapping always produce
the same normalized values, errors and warnings. The parse stage relies on
that to re-process a chunk after a retry.
"""

import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Tuple

from app.api.schemas.shared import LEAD_FIELDS, ColumnMapping
from app.utils.phone import normalize_phone, phone_length_is_plausible


EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# At least one of these must survive normalization for a row to be importable
REQUIRED_CONTACT_FIELDS = ("email", "phone", "external_id")

MAX_FIELD_LENGTHS = {
    "external_id": 100,
    "first_name": 100,
    "last_name": 100,
    "email": 255,
    "phone": 40,
    "company": 200,
    "job_title": 100,
    "address": 500,
    "city": 100,
    "postal_code": 20,
    "country": 100,
    "status": 50,
    "source": 100,
    "notes": 5000,
    "assigned_to": 100,
}

# Broken public-mail domains seen in exports, mapped to their real domain
EMAIL_DOMAIN_CORRECTIONS = {
    "gmailcom": "gmail.com",
    "gmailfr": "gmail.fr",
    "gmalcom": "gmail.com",
    "gmailc": "gmail.com",
    "yahoofr": "yahoo.fr",
    "yahoocom": "yahoo.com",
    "yahoofrance": "yahoo.fr",
    "hotmailcom": "hotmail.com",
    "hotmailfr": "hotmail.fr",
    "outlookcom": "outlook.com",
    "outlookfr": "outlook.fr",
    "livecom": "live.com",
    "livefr": "live.fr",
    "lapostenet": "laposte.net",
    "orangefr": "orange.fr",
    "freefr": "free.fr",
    "sfrfr": "sfr.fr",
    "wanadoofr": "wanadoo.fr",
    "bouyguescom": "bouygues.com",
    "proximusbe": "proximus.be",
    "skynetbe": "skynet.be",
    "telenetbe": "telenet.be",
}

# Tried in order when a domain has no dot at all
_MISSING_DOT_TLDS = ("com", "fr", "net", "org", "be", "de", "eu", "io")

LEAD_STATUSES = (
    "new",
    "contacted",
    "qualified",
    "proposal",
    "negotiation",
    "won",
    "lost",
    "no_answer_1",
    "no_answer_2",
    "wrong_number",
    "not_interested",
    "callback",
    "rdv",
    "deposit",
    "relance",
    "mail",
)

LEAD_STATUS_ALIASES = {
    "nouveau": "new",
    "contacte": "contacted",
    "qualifie": "qualified",
    "proposition": "proposal",
    "negociation": "negotiation",
    "gagne": "won",
    "perdu": "lost",
    "not_interess": "not_interested",
    "not_interesse": "not_interested",
    "non_interesse": "not_interested",
    "pas_interesse": "not_interested",
    "uninterested": "not_interested",
    "no_answer": "no_answer_1",
    "no_answer1": "no_answer_1",
    "no_answer2": "no_answer_2",
    "not_answered": "no_answer_1",
    "pas_de_reponse": "no_answer_1",
    "faux_numero": "wrong_number",
    "rappeler": "callback",
    "depot": "deposit",
    "rendez_vous": "rdv",
}


@dataclass
class RowValidationResult:
    """Outcome of validating one source row."""
    normalized_data: Dict[str, Optional[str]]
    errors: Dict[str, str] = field(default_factory=dict)
    warnings: Dict[str, str] = field(default_factory=dict)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def normalize_text(value: Any) -> Optional[str]:
    """Trim and collapse internal whitespace; empty strings become None."""
    if value is None:
        return None
    text = re.sub(r"\s+", " ", str(value)).strip()
    return text or None


def try_fix_email_domain(email: str) -> Tuple[str, bool]:
    """
    Repair common domain typos in an email address.

    Args:
        email: Raw email value

    Returns:
        Tuple of (lowercased/trimmed email, whether the domain was rewritten)
    """
    cleaned = email.strip().lower()
    if cleaned.count("@") != 1:
        return cleaned, False

    local, domain = cleaned.split("@")
    if not local or not domain:
        return cleaned, False

    corrected = EMAIL_DOMAIN_CORRECTIONS.get(domain)
    if corrected:
        return f"{local}@{corrected}", True

    if "." not in domain:
        for tld in _MISSING_DOT_TLDS:
            if domain.endswith(tld) and len(domain) - len(tld) >= 2:
                return f"{local}@{domain[:-len(tld)]}.{tld}", True

    return cleaned, False


def normalize_email(value: Any) -> Optional[str]:
    """
    Lowercase, trim and repair an email address.

    Examples:
        >>> normalize_email("Jean@GmailCom")
        'jean@gmail.com'
    """
    text = normalize_text(value)
    if not text:
        return None
    fixed, _ = try_fix_email_domain(text.replace(" ", ""))
    return fixed or None


def normalize_postal_code(value: Any) -> Optional[str]:
    """Remove spaces and left-pad 4-digit French postal codes."""
    if value is None:
        return None
    code = re.sub(r"\s", "", str(value))
    if re.fullmatch(r"\d{4}", code):
        return f"0{code}"
    return code or None


def _status_key(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value.strip().lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return re.sub(r"[\s\-]+", "_", stripped)


def normalize_lead_status(value: Optional[str], fallback: str = "new") -> str:
    """Map a free-text status onto the CRM's status list, else ``fallback``."""
    if not value:
        return fallback
    key = _status_key(value)
    key = LEAD_STATUS_ALIASES.get(key, key)
    return key if key in LEAD_STATUSES else fallback


def extract_mapped_values(values: Sequence[Any], mapping: ColumnMapping) -> Dict[str, Any]:
    """Pick each mapped lead field out of a raw row by column index."""
    mapped: Dict[str, Any] = {}
    for entry in mapping.mappings:
        if not entry.target_field:
            continue
        if entry.source_index < len(values):
            mapped[entry.target_field] = values[entry.source_index]
        else:
            mapped[entry.target_field] = None
    return mapped


def validate_row(values: Sequence[Any], mapping: ColumnMapping) -> RowValidationResult:
    """
    Normalize and validate one raw row.

    Args:
        values: Ordered cell values as read from the file
        mapping: Active column mapping for the job

    Returns:
        RowValidationResult; the row is importable iff ``errors`` is empty
    """
    mapped = extract_mapped_values(values, mapping)
    errors: Dict[str, str] = {}
    warnings: Dict[str, str] = {}

    normalized: Dict[str, Optional[str]] = {}
    for lead_field in LEAD_FIELDS:
        raw = mapped.get(lead_field)
        if lead_field == "email":
            normalized[lead_field] = normalize_email(raw)
        elif lead_field == "phone":
            normalized[lead_field] = normalize_phone(raw)
        elif lead_field == "postal_code":
            normalized[lead_field] = normalize_postal_code(raw)
        else:
            normalized[lead_field] = normalize_text(raw)

    for lead_field, limit in MAX_FIELD_LENGTHS.items():
        value = normalized.get(lead_field)
        if value and len(value) > limit:
            errors[lead_field] = f"must be at most {limit} characters"

    email = normalized["email"]
    if email and "email" not in errors:
        if not EMAIL_PATTERN.match(email):
            errors["email"] = "invalid email format"
        else:
            original = normalize_text(mapped.get("email")) or ""
            if original.replace(" ", "").lower() != email:
                warnings["email"] = f"Email auto-corrected (original: {original})"

    phone = normalized["phone"]
    if phone and not phone_length_is_plausible(phone):
        warnings["phone"] = "unusual phone number length"

    if not any(normalized.get(name) for name in REQUIRED_CONTACT_FIELDS):
        errors["contact"] = "at least one contact field is required (email, phone or external id)"

    if not normalized["first_name"] and not normalized["last_name"]:
        warnings["name"] = "no name provided"
    if not normalized["company"]:
        warnings["company"] = "no company provided"

    return RowValidationResult(normalized_data=normalized, errors=errors, warnings=warnings)
