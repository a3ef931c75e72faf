"""
ORM models for import jobs, their rows, and the CRM records they produce.
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)

from app.db.session import Base


def _utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class ImportJob(Base):
    """One bulk import run for one uploaded file."""
    __tablename__ = "import_jobs"

    id = Column(String(36), primary_key=True, default=_new_id)
    created_by = Column(String(36), nullable=True)

    # File metadata
    file_name = Column(String(255), nullable=False)
    file_type = Column(String(10), nullable=False)  # "csv" | "xlsx" | "xls"
    file_size = Column(Integer, nullable=True)
    storage_path = Column(String(500), nullable=False)
    encoding = Column(String(40), nullable=True)
    delimiter = Column(String(4), nullable=True)
    sheet_name = Column(String(255), nullable=True)

    # Configuration (decoded through app.api.schemas.shared)
    column_mapping = Column(JSON, nullable=True)
    assignment_config = Column(JSON, nullable=True)
    duplicate_config = Column(JSON, nullable=True)

    # Progress counters
    total_rows = Column(Integer, nullable=False, default=0)
    processed_rows = Column(Integer, nullable=False, default=0)
    valid_rows = Column(Integer, nullable=False, default=0)
    invalid_rows = Column(Integer, nullable=False, default=0)
    imported_rows = Column(Integer, nullable=False, default=0)
    skipped_rows = Column(Integer, nullable=False, default=0)
    current_chunk = Column(Integer, nullable=False, default=0)
    total_chunks = Column(Integer, nullable=False, default=0)
    assignment_cursor = Column(Integer, nullable=False, default=0)  # round-robin position

    status = Column(String(20), nullable=False, default="pending", index=True)
    error_message = Column(Text, nullable=True)
    error_report_path = Column(String(500), nullable=True)
    worker_id = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


class ImportRow(Base):
    """A single source row, persisted by the parse stage."""
    __tablename__ = "import_rows"
    __table_args__ = (
        UniqueConstraint("import_job_id", "row_number", name="uq_import_rows_job_row"),
        Index("idx_import_rows_job_status_row", "import_job_id", "status", "row_number"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    import_job_id = Column(String(36), ForeignKey("import_jobs.id", ondelete="CASCADE"), nullable=False)
    row_number = Column(Integer, nullable=False)
    chunk_number = Column(Integer, nullable=False, default=0)
    raw_data = Column(JSON, nullable=False)
    normalized_data = Column(JSON, nullable=True)
    status = Column(String(20), nullable=False)
    validation_errors = Column(JSON, nullable=True)
    lead_id = Column(String(36), nullable=True)  # lead created or updated by this row
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


class Lead(Base):
    __tablename__ = "leads"

    id = Column(String(36), primary_key=True, default=_new_id)
    external_id = Column(String(100), nullable=True, index=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    email = Column(String(255), nullable=True, index=True)
    phone = Column(String(40), nullable=True, index=True)
    company = Column(String(200), nullable=True)
    job_title = Column(String(100), nullable=True)
    address = Column(String(500), nullable=True)
    city = Column(String(100), nullable=True)
    postal_code = Column(String(20), nullable=True)
    country = Column(String(100), nullable=True)
    status = Column(String(50), nullable=False, default="new")
    source = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)
    assigned_to = Column(String(36), nullable=True, index=True)
    import_job_id = Column(String(36), nullable=True)
    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class LeadHistory(Base):
    """Audit trail entry for a lead."""
    __tablename__ = "lead_history"

    id = Column(String(36), primary_key=True, default=_new_id)
    lead_id = Column(String(36), ForeignKey("leads.id", ondelete="CASCADE"), nullable=False, index=True)
    actor_id = Column(String(36), nullable=True)
    event_type = Column(String(30), nullable=False)  # "imported" | "updated"
    before_data = Column(JSON, nullable=True)
    after_data = Column(JSON, nullable=True)
    import_job_id = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), nullable=True, index=True)
    type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=True)
    link = Column(String(500), nullable=True)
    payload = Column(JSON, nullable=True)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


IMPORT_TABLES = [
    ImportJob.__table__,
    ImportRow.__table__,
    Lead.__table__,
    LeadHistory.__table__,
    Notification.__table__,
]


def init_import_tables():
    """Create import and CRM tables if they do not exist."""
    from app.db.session import get_engine
    Base.metadata.create_all(bind=get_engine(), tables=IMPORT_TABLES)
