"""
Duplicate detection and resolution for committed import rows.

Two scopes are checked, in order:

* within the file: rows of this job that were already committed, kept as a
  hash of ``field:value`` keys (16-byte digests, not row copies) so memory
  stays bounded on large files;
* the database: non-deleted leads whose field matches case-insensitively.

The first configured check field that matches wins.
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.api.schemas.shared import DuplicateConfig
from app.db.models import ImportRow, Lead

logger = logging.getLogger(__name__)

# Lead columns an import may write; assigned_to is handled by assignment
UPDATABLE_LEAD_FIELDS = (
    "external_id",
    "first_name",
    "last_name",
    "email",
    "phone",
    "company",
    "job_title",
    "address",
    "city",
    "postal_code",
    "country",
    "status",
    "source",
    "notes",
)


@dataclass
class DuplicateMatch:
    is_duplicate: bool
    matched_existing: bool = False  # matched a lead that existed before this job's rows
    field: Optional[str] = None
    value: Optional[str] = None
    lead_id: Optional[str] = None
    scope: Optional[str] = None  # "file" | "database"


NO_MATCH = DuplicateMatch(is_duplicate=False)


def dedupe_key(field: str, value: str) -> str:
    return f"{field}:{value.lower().strip()}"


def _digest(key: str) -> bytes:
    return hashlib.blake2b(key.encode("utf-8"), digest_size=16).digest()


def _present(value) -> bool:
    return value is not None and str(value).strip() != ""


class DuplicateResolver:
    """
    Per-invocation duplicate checker for one job.

    The within-file index is rebuilt from the store on first use, so a
    resumed commit sees the rows earlier invocations committed.
    """

    def __init__(self, db: Session, job_id: str, config: DuplicateConfig):
        self.db = db
        self.job_id = job_id
        self.config = config
        self._seen: Dict[bytes, Tuple[str, Optional[str]]] = {}
        self._seeded = False

    def _seed(self) -> None:
        if self._seeded:
            return
        self._seeded = True
        if not self.config.check_within_file:
            return
        stmt = (
            select(ImportRow.id, ImportRow.lead_id, ImportRow.normalized_data)
            .where(ImportRow.import_job_id == self.job_id, ImportRow.status == "imported")
            .order_by(ImportRow.row_number)
            .execution_options(yield_per=1000)
        )
        for row_id, lead_id, normalized in self.db.execute(stmt):
            self._index(normalized or {}, row_id, lead_id)
        logger.info(f"Seeded within-file duplicate index for job {self.job_id} with {len(self._seen)} keys")

    def _index(self, normalized: Dict, row_id: str, lead_id: Optional[str]) -> None:
        for field in self.config.check_fields:
            value = normalized.get(field)
            if _present(value):
                self._seen.setdefault(_digest(dedupe_key(field, str(value))), (row_id, lead_id))

    def _database_match(self, field: str, value: str) -> Optional[str]:
        column = getattr(Lead, field)
        stmt = (
            select(Lead.id)
            .where(
                func.lower(func.trim(column)) == value.lower().strip(),
                Lead.deleted_at.is_(None),
            )
            .order_by(Lead.created_at, Lead.id)
            .limit(1)
        )
        return self.db.execute(stmt).scalar()

    def find(self, normalized: Dict) -> DuplicateMatch:
        """Return the first collision for a normalized row, or NO_MATCH."""
        if self.config.check_within_file:
            self._seed()
            for field in self.config.check_fields:
                value = normalized.get(field)
                if not _present(value):
                    continue
                hit = self._seen.get(_digest(dedupe_key(field, str(value))))
                if hit:
                    return DuplicateMatch(
                        is_duplicate=True,
                        matched_existing=False,
                        field=field,
                        value=str(value),
                        lead_id=hit[1],
                        scope="file",
                    )

        if self.config.check_database:
            for field in self.config.check_fields:
                value = normalized.get(field)
                if not _present(value):
                    continue
                lead_id = self._database_match(field, str(value))
                if lead_id:
                    return DuplicateMatch(
                        is_duplicate=True,
                        matched_existing=True,
                        field=field,
                        value=str(value),
                        lead_id=lead_id,
                        scope="database",
                    )

        return NO_MATCH

    def remember(self, normalized: Dict, row_id: str, lead_id: Optional[str]) -> None:
        """Record a committed row so later rows of the file collide with it."""
        if self.config.check_within_file:
            self._seed()
            self._index(normalized, row_id, lead_id)


def lead_snapshot(lead: Lead, fields: Iterable[str] = UPDATABLE_LEAD_FIELDS) -> Dict[str, Optional[str]]:
    snapshot = {field: getattr(lead, field) for field in fields}
    snapshot["assigned_to"] = lead.assigned_to
    return snapshot


def merge_into(lead: Lead, incoming: Dict[str, Optional[str]]) -> Dict[str, Optional[str]]:
    """
    Fill the lead's empty fields from the incoming row.

    Populated fields on the existing lead are never touched.

    Returns:
        Mapping of changed field -> new value
    """
    changed = {}
    for field in UPDATABLE_LEAD_FIELDS:
        value = incoming.get(field)
        if _present(value) and not _present(getattr(lead, field)):
            setattr(lead, field, value)
            changed[field] = value
    return changed


def overwrite_into(lead: Lead, incoming: Dict[str, Optional[str]]) -> Dict[str, Optional[str]]:
    """
    Replace the lead's fields with the incoming row's non-empty values.

    Blank incoming cells do not erase existing data.

    Returns:
        Mapping of changed field -> new value
    """
    changed = {}
    for field in UPDATABLE_LEAD_FIELDS:
        value = incoming.get(field)
        if _present(value) and getattr(lead, field) != value:
            setattr(lead, field, value)
            changed[field] = value
    return changed
