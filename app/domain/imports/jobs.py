"""
Persistent state machine for import jobs.

Every status change is a conditional UPDATE (``WHERE status IN (...)``) so two
overlapping invocations cannot both move a job, and every counter change is an
in-place increment so overlapping invocations never lose counts. The store is
the source of truth; nothing here caches job state between calls.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from pydantic import TypeAdapter, ValidationError
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.api.schemas.shared import (
    AssignmentConfig,
    ColumnMapping,
    DuplicateConfig,
    ImportJobDetail,
    ImportJobProgress,
    NoAssignment,
)
from app.db.models import ImportJob, ImportRow

logger = logging.getLogger(__name__)


class ImportStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    QUEUED = "queued"
    PARSING = "parsing"
    IMPORTING = "importing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RowStatus(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    IMPORTED = "imported"
    SKIPPED = "skipped"


TERMINAL_STATUSES = frozenset({ImportStatus.COMPLETED, ImportStatus.FAILED, ImportStatus.CANCELLED})
ACTIVE_STATUSES = frozenset(s for s in ImportStatus if s not in TERMINAL_STATUSES)
CONFIGURABLE_STATUSES = frozenset({ImportStatus.PENDING, ImportStatus.READY})

# target status -> statuses it may be entered from
ALLOWED_SOURCES: Dict[ImportStatus, frozenset] = {
    ImportStatus.READY: CONFIGURABLE_STATUSES,
    ImportStatus.QUEUED: CONFIGURABLE_STATUSES,
    ImportStatus.PARSING: frozenset({ImportStatus.QUEUED, ImportStatus.PARSING}),
    ImportStatus.IMPORTING: frozenset({ImportStatus.QUEUED, ImportStatus.PARSING, ImportStatus.IMPORTING}),
    ImportStatus.COMPLETED: frozenset({ImportStatus.QUEUED, ImportStatus.PARSING, ImportStatus.IMPORTING}),
    ImportStatus.FAILED: ACTIVE_STATUSES,
    ImportStatus.CANCELLED: ACTIVE_STATUSES,
}

CANCELLED_MESSAGE = "Cancelled by user"

COUNTER_COLUMNS = (
    "total_rows",
    "processed_rows",
    "valid_rows",
    "invalid_rows",
    "imported_rows",
    "skipped_rows",
)


class ImportJobNotFound(Exception):
    """Raised when no job exists for an id."""
    pass


class InvalidJobTransition(Exception):
    """Raised when a job is not in a state that allows the requested action."""

    def __init__(self, job_id: str, current: str, target: str, message: Optional[str] = None):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(message or f"Import job {job_id} cannot move from '{current}' to '{target}'")


class ImportConfigError(Exception):
    """Raised when a stored or submitted job configuration cannot be decoded."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _status_value(status) -> str:
    return status.value if isinstance(status, ImportStatus) else str(status)


def is_terminal(status) -> bool:
    return _status_value(status) in {s.value for s in TERMINAL_STATUSES}


# ---------------------------------------------------------------------------
# Configuration decoding
# ---------------------------------------------------------------------------

_assignment_adapter = TypeAdapter(AssignmentConfig)


def _first_error(exc: ValidationError) -> str:
    error = exc.errors()[0]
    location = ".".join(str(part) for part in error.get("loc", ()))
    return f"{location}: {error.get('msg')}" if location else str(error.get("msg"))


def decode_assignment_config(raw: Optional[Dict[str, Any]]):
    """Decode an assignment config; missing means no assignment, unknown modes are rejected."""
    if raw is None:
        return NoAssignment()
    try:
        return _assignment_adapter.validate_python(raw)
    except ValidationError as e:
        raise ImportConfigError(f"Invalid assignment configuration ({_first_error(e)})")


def decode_duplicate_config(raw: Optional[Dict[str, Any]]) -> DuplicateConfig:
    if raw is None:
        return DuplicateConfig()
    try:
        return DuplicateConfig.model_validate(raw)
    except ValidationError as e:
        raise ImportConfigError(f"Invalid duplicate configuration ({_first_error(e)})")


def decode_column_mapping(raw: Optional[Dict[str, Any]]) -> ColumnMapping:
    if not raw:
        raise ImportConfigError("Column mapping is not configured")
    try:
        return ColumnMapping.model_validate(raw)
    except ValidationError as e:
        raise ImportConfigError(f"Invalid column mapping ({_first_error(e)})")


@dataclass
class JobConfig:
    """Configuration decoded once when a stage loads its job."""
    mapping: Optional[ColumnMapping]
    assignment: Any
    duplicates: DuplicateConfig


def load_job_config(job: ImportJob, *, require_mapping: bool = True) -> JobConfig:
    mapping = decode_column_mapping(job.column_mapping) if (require_mapping or job.column_mapping) else None
    return JobConfig(
        mapping=mapping,
        assignment=decode_assignment_config(job.assignment_config),
        duplicates=decode_duplicate_config(job.duplicate_config),
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def get_job(db: Session, job_id: str) -> ImportJob:
    job = db.get(ImportJob, job_id, populate_existing=True)
    if job is None:
        raise ImportJobNotFound(f"Import job {job_id} not found")
    return job


def count_remaining_valid_rows(db: Session, job_id: str) -> int:
    stmt = select(func.count(ImportRow.id)).where(
        ImportRow.import_job_id == job_id,
        ImportRow.status == RowStatus.VALID.value,
    )
    return int(db.execute(stmt).scalar() or 0)


def to_progress(job: ImportJob) -> ImportJobProgress:
    return ImportJobProgress(
        id=job.id,
        status=job.status,
        total_rows=job.total_rows,
        processed_rows=job.processed_rows,
        valid_rows=job.valid_rows,
        invalid_rows=job.invalid_rows,
        imported_rows=job.imported_rows,
        skipped_rows=job.skipped_rows,
        current_chunk=job.current_chunk,
        total_chunks=job.total_chunks,
        error_message=job.error_message,
        started_at=job.started_at,
        completed_at=job.completed_at,
        updated_at=job.updated_at,
    )


def to_detail(job: ImportJob) -> ImportJobDetail:
    return ImportJobDetail(
        **to_progress(job).model_dump(),
        file_name=job.file_name,
        file_type=job.file_type,
        file_size=job.file_size,
        encoding=job.encoding,
        delimiter=job.delimiter,
        sheet_name=job.sheet_name,
        column_mapping=job.column_mapping,
        assignment_config=job.assignment_config,
        duplicate_config=job.duplicate_config,
        error_report_path=job.error_report_path,
        worker_id=job.worker_id,
        created_by=job.created_by,
        created_at=job.created_at,
    )


def get_progress(db: Session, job_id: str) -> ImportJobProgress:
    return to_progress(get_job(db, job_id))


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def create_job(
    db: Session,
    *,
    file_name: str,
    file_type: str,
    storage_path: str,
    file_size: Optional[int] = None,
    encoding: Optional[str] = None,
    delimiter: Optional[str] = None,
    sheet_name: Optional[str] = None,
    column_mapping: Optional[ColumnMapping] = None,
    total_rows: int = 0,
    created_by: Optional[str] = None,
    job_id: Optional[str] = None,
) -> ImportJob:
    """Create a job in ``pending`` with its file metadata and proposed mapping."""
    job = ImportJob(
        file_name=file_name,
        file_type=file_type,
        storage_path=storage_path,
        file_size=file_size,
        encoding=encoding,
        delimiter=delimiter,
        sheet_name=sheet_name,
        column_mapping=column_mapping.model_dump(by_alias=True) if column_mapping is not None else None,
        assignment_config=NoAssignment().model_dump(by_alias=True),
        duplicate_config=DuplicateConfig().model_dump(by_alias=True),
        total_rows=total_rows,
        created_by=created_by,
        status=ImportStatus.PENDING.value,
    )
    if job_id:
        job.id = job_id
    db.add(job)
    db.commit()
    db.refresh(job)
    logger.info(f"Created import job {job.id} for {file_name} ({total_rows} rows)")
    return job


def transition(
    db: Session,
    job_id: str,
    target: ImportStatus,
    *,
    from_statuses: Optional[Iterable[ImportStatus]] = None,
    commit: bool = True,
    **values: Any,
) -> bool:
    """
    Move a job to ``target`` if its current status allows it.

    Args:
        db: Session
        job_id: Job to move
        target: Desired status
        from_statuses: Override the statuses the move is allowed from
        commit: Commit immediately (False when part of a larger transaction)
        **values: Extra columns to set alongside the status

    Returns:
        True if this call moved the job, False if its status did not match
    """
    sources = from_statuses if from_statuses is not None else ALLOWED_SOURCES[target]
    stmt = (
        update(ImportJob)
        .where(ImportJob.id == job_id, ImportJob.status.in_([_status_value(s) for s in sources]))
        .values(status=target.value, **values)
        .execution_options(synchronize_session=False)
    )
    moved = db.execute(stmt).rowcount == 1
    if commit:
        db.commit()
    if moved:
        logger.info(f"Import job {job_id} -> {target.value}")
    return moved


def require_transition(db: Session, job_id: str, target: ImportStatus, **kwargs: Any) -> None:
    """Like :func:`transition` but raises when the job could not be moved."""
    if transition(db, job_id, target, **kwargs):
        return
    job = get_job(db, job_id)
    raise InvalidJobTransition(job_id, job.status, target.value)


def increment_counters(db: Session, job_id: str, **deltas: int) -> None:
    """Add to job counters in place; does not commit."""
    values = {}
    for name, delta in deltas.items():
        if name not in COUNTER_COLUMNS:
            raise ValueError(f"Unknown counter: {name}")
        if delta:
            values[name] = getattr(ImportJob, name) + delta
    if not values:
        return
    db.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


def advance_chunk(db: Session, job_id: str, chunk: int) -> None:
    """Raise ``current_chunk`` to ``chunk``; never moves it backwards. Does not commit."""
    db.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id, ImportJob.current_chunk < chunk)
        .values(current_chunk=chunk)
        .execution_options(synchronize_session=False)
    )


def set_total_chunks(db: Session, job_id: str, total_rows: int, total_chunks: int) -> None:
    db.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id)
        .values(total_rows=total_rows, total_chunks=total_chunks)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def take_assignment_slot(db: Session, job_id: str) -> int:
    """
    Reserve the next round-robin position for this job.

    Runs inside the caller's row transaction: the increment and the lead
    write commit or roll back together, so a retried row reuses its slot.
    """
    db.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id)
        .values(assignment_cursor=ImportJob.assignment_cursor + 1)
        .execution_options(synchronize_session=False)
    )
    cursor = db.execute(select(ImportJob.assignment_cursor).where(ImportJob.id == job_id)).scalar()
    return int(cursor) - 1


def record_dispatch(db: Session, job_id: str, worker_id: Optional[str]) -> None:
    db.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id)
        .values(worker_id=worker_id)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def mark_failed(db: Session, job_id: str, message: str) -> bool:
    """Fail a non-terminal job with a diagnostic message."""
    moved = transition(
        db,
        job_id,
        ImportStatus.FAILED,
        error_message=message[:2000],
        completed_at=_utcnow(),
    )
    if moved:
        logger.error(f"Import job {job_id} failed: {message}")
    return moved


def cancel_job(db: Session, job_id: str) -> ImportJob:
    require_transition(
        db,
        job_id,
        ImportStatus.CANCELLED,
        error_message=CANCELLED_MESSAGE,
        completed_at=_utcnow(),
    )
    return get_job(db, job_id)


def parse_finished(job: ImportJob) -> bool:
    """True once every row of the file has been persisted."""
    return job.processed_rows >= job.total_rows


def complete_if_exhausted(db: Session, job_id: str) -> bool:
    """
    Mark the job completed when no ``valid`` rows remain.

    A job whose parse stage is still producing rows is left alone even with
    zero valid rows, since more may arrive.
    """
    job = get_job(db, job_id)
    if is_terminal(job.status) or not parse_finished(job):
        return False
    if count_remaining_valid_rows(db, job_id) > 0:
        return False
    return transition(db, job_id, ImportStatus.COMPLETED, completed_at=_utcnow())


def ensure_importing(db: Session, job_id: str) -> bool:
    """Force a drifted non-terminal job (e.g. left at ``queued``) into ``importing``."""
    return transition(db, job_id, ImportStatus.IMPORTING)


def save_mapping(db: Session, job_id: str, mapping: ColumnMapping) -> ImportJob:
    """Store a confirmed mapping and move the job to ``ready``."""
    require_transition(
        db,
        job_id,
        ImportStatus.READY,
        column_mapping=mapping.model_dump(by_alias=True),
    )
    return get_job(db, job_id)


def save_options(
    db: Session,
    job_id: str,
    assignment_raw: Optional[Dict[str, Any]],
    duplicates: DuplicateConfig,
) -> ImportJob:
    """Validate and store assignment/duplicate options while the job is configurable."""
    assignment = decode_assignment_config(assignment_raw)
    stmt = (
        update(ImportJob)
        .where(ImportJob.id == job_id, ImportJob.status.in_([s.value for s in CONFIGURABLE_STATUSES]))
        .values(
            assignment_config=assignment.model_dump(by_alias=True),
            duplicate_config=duplicates.model_dump(by_alias=True),
        )
        .execution_options(synchronize_session=False)
    )
    updated = db.execute(stmt).rowcount == 1
    db.commit()
    if not updated:
        job = get_job(db, job_id)
        raise InvalidJobTransition(
            job_id, job.status, job.status, f"Options can only be changed before the import starts (status: {job.status})"
        )
    return get_job(db, job_id)
