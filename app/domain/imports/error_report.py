"""
CSV error report for the invalid rows of an import.

Layout: ``Row, Errors, <raw columns...>`` where the raw columns are every
distinct source column name seen across the invalid rows, in first-seen
order. The errors cell reads ``field: message; field: message``.
"""
import csv
import io
import logging
from typing import Dict, List

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.db.models import ImportJob, ImportRow
from app.db.session import session_scope
from app.domain.imports.jobs import RowStatus, get_job
from app.integrations import storage

logger = logging.getLogger(__name__)

REPORT_CONTENT_TYPE = "text/csv"


def format_errors(errors: Dict[str, str]) -> str:
    return "; ".join(f"{field}: {message}" for field, message in (errors or {}).items())


def build_error_report(db: Session, job_id: str) -> str:
    """Generate the report from the job's invalid rows."""
    stmt = (
        select(ImportRow.row_number, ImportRow.raw_data, ImportRow.validation_errors)
        .where(ImportRow.import_job_id == job_id, ImportRow.status == RowStatus.INVALID.value)
        .order_by(ImportRow.row_number)
    )
    rows = db.execute(stmt).all()

    columns: List[str] = []
    seen = set()
    for _, raw_data, _ in rows:
        for column in (raw_data or {}):
            if column not in seen:
                seen.add(column)
                columns.append(column)

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(["Row", "Errors", *columns])
    for row_number, raw_data, errors in rows:
        raw_data = raw_data or {}
        writer.writerow([row_number, format_errors(errors), *[raw_data.get(column, "") for column in columns]])

    logger.info(f"Built error report for job {job_id} with {len(rows)} invalid rows")
    return buffer.getvalue()


def materialize_error_report(job_id: str) -> str:
    """Generate the report, store it, and record its path on the job."""
    with session_scope() as db:
        content = build_error_report(db, job_id)
        path = storage.error_report_path(job_id)
        storage.upload_file(content.encode("utf-8"), path, content_type=REPORT_CONTENT_TYPE)
        db.execute(
            update(ImportJob)
            .where(ImportJob.id == job_id)
            .values(error_report_path=path)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    logger.info(f"Stored error report for job {job_id} at {path}")
    return path


def load_error_report(db: Session, job_id: str) -> str:
    """Return the stored report, generating it on demand when none is available."""
    job = get_job(db, job_id)
    if job.error_report_path:
        try:
            return storage.download_file(job.error_report_path).decode("utf-8")
        except storage.StorageError as e:
            logger.warning(f"Stored error report for job {job_id} unavailable ({e}); regenerating")
    return build_error_report(db, job_id)
