"""
Parse stage: reads the stored file, validates each data row and persists it
as an ``ImportRow``.

One invocation handles one chunk of ``settings.parse_chunk_size`` rows (or,
in direct dispatch mode, every remaining chunk). Chunk boundaries come from
absolute row numbers, so a retried chunk covers exactly the same rows, and
only the rows of the chunks being handled are built. Rows
already stored for the job are not inserted again and only newly inserted
rows move the counters, which makes re-running a chunk harmless.
"""
import logging
import math
from itertools import islice
from typing import Iterator, List, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.api.schemas.shared import ColumnMapping, ParseChunkResult
from app.core.config import settings
from app.db.models import ImportJob, ImportRow
from app.db.session import session_scope
from app.domain import notifications
from app.domain.imports import commit_worker, dispatch, error_report, jobs
from app.domain.imports.file_reader import FileParseError, SourceRow, iter_data_rows
from app.domain.imports.jobs import ImportStatus, RowStatus
from app.domain.imports.validators import validate_row
from app.domain.notifications import PostBatchTasks
from app.integrations import storage

logger = logging.getLogger(__name__)

PARSEABLE_STATUSES = {
    ImportStatus.QUEUED.value,
    ImportStatus.PARSING.value,
    ImportStatus.IMPORTING.value,
}


def _fail(db: Session, job_id: str, message: str) -> None:
    tasks = PostBatchTasks()
    if jobs.mark_failed(db, job_id, message):
        tasks.add("notify_failed", notifications.notify_import_failed, job_id, message)
    tasks.run()


def persist_chunk(
    db: Session,
    job_id: str,
    mapping: ColumnMapping,
    chunk_rows: List[SourceRow],
    chunk: int,
) -> ParseChunkResult:
    """
    Validate and store one chunk of rows, skipping rows that already exist.

    Counters and ``current_chunk`` move in the same transaction as the rows.

    Raises:
        IntegrityError: If an overlapping invocation inserted the same rows first
    """
    result = ParseChunkResult(import_job_id=job_id, status=ImportStatus.PARSING.value, chunk=chunk)
    if not chunk_rows:
        return result

    first, last = chunk_rows[0].row_number, chunk_rows[-1].row_number
    existing = set(
        db.execute(
            select(ImportRow.row_number).where(
                ImportRow.import_job_id == job_id,
                ImportRow.row_number >= first,
                ImportRow.row_number <= last,
            )
        ).scalars()
    )

    try:
        for source_row in chunk_rows:
            if source_row.row_number in existing:
                continue
            verdict = validate_row(source_row.values, mapping)
            db.add(
                ImportRow(
                    import_job_id=job_id,
                    row_number=source_row.row_number,
                    chunk_number=chunk,
                    raw_data=source_row.raw_data,
                    normalized_data=verdict.normalized_data,
                    status=RowStatus.VALID.value if verdict.is_valid else RowStatus.INVALID.value,
                    validation_errors=None if verdict.is_valid else verdict.errors,
                )
            )
            result.inserted += 1
            if verdict.is_valid:
                result.valid += 1
            else:
                result.invalid += 1

        jobs.increment_counters(
            db,
            job_id,
            processed_rows=result.inserted,
            valid_rows=result.valid,
            invalid_rows=result.invalid,
        )
        jobs.advance_chunk(db, job_id, chunk + 1)
        db.commit()
    except Exception:
        db.rollback()
        raise

    if existing:
        logger.info(f"Chunk {chunk} of job {job_id}: {len(existing)} rows already stored, skipped")
    logger.info(
        f"Parsed chunk {chunk} of job {job_id}: inserted={result.inserted} "
        f"valid={result.valid} invalid={result.invalid}"
    )
    return result


def finish_parse(db: Session, job_id: str) -> str:
    """
    Hand a fully parsed job to the commit stage.

    Jobs without valid rows complete immediately; otherwise the job moves to
    ``importing`` and the commit stage is queued or run in-process.

    Returns:
        The job status after the hand-off
    """
    job = jobs.get_job(db, job_id)
    if jobs.is_terminal(job.status):
        return job.status

    tasks = PostBatchTasks()
    if job.invalid_rows > 0:
        tasks.add("error_report", error_report.materialize_error_report, job_id)

    if job.valid_rows == 0:
        if jobs.complete_if_exhausted(db, job_id):
            tasks.add("notify_completed", notifications.notify_import_completed, job_id)
        tasks.run()
        return jobs.get_job(db, job_id).status

    jobs.transition(db, job_id, ImportStatus.IMPORTING)
    tasks.run()

    if dispatch.uses_queue():
        dispatch.enqueue_commit(db, job_id, 0)
    else:
        commit_worker.run_commit_stage(job_id)

    return jobs.get_job(db, job_id).status


def _read_rows(job: ImportJob, config: jobs.JobConfig, start_chunk: int, chunk_size: int) -> Iterator[SourceRow]:
    content = storage.download_file(job.storage_path)
    return iter_data_rows(
        content,
        job.file_type,
        encoding=job.encoding,
        delimiter=job.delimiter,
        sheet_name=job.sheet_name,
        has_header_row=config.mapping.has_header_row,
        header_row_index=config.mapping.header_row_index,
        start=start_chunk * chunk_size,
    )


def _parse_chunks(db: Session, job_id: str, start_chunk: int) -> Tuple[ParseChunkResult, bool]:
    """Persist chunks from ``start_chunk``; the flag is True when the last chunk is stored."""
    job = jobs.get_job(db, job_id)
    result = ParseChunkResult(import_job_id=job_id, status=job.status, chunk=start_chunk)

    if job.status not in PARSEABLE_STATUSES:
        logger.warning(f"Parse task for job {job_id} ignored in status {job.status}")
        return result, False

    try:
        config = jobs.load_job_config(job)
    except jobs.ImportConfigError as e:
        _fail(db, job_id, str(e))
        result.status = ImportStatus.FAILED.value
        return result, False

    jobs.transition(db, job_id, ImportStatus.PARSING)
    job = jobs.get_job(db, job_id)

    chunk_size = settings.parse_chunk_size
    total_chunks = math.ceil(job.total_rows / chunk_size)
    if job.total_chunks != total_chunks:
        jobs.set_total_chunks(db, job_id, job.total_rows, total_chunks)

    rows = _read_rows(job, config, start_chunk, chunk_size)
    chunk = start_chunk
    while chunk < total_chunks:
        if jobs.get_job(db, job_id).status not in PARSEABLE_STATUSES:
            logger.info(f"Parse of job {job_id} stopped before chunk {chunk}: job is no longer active")
            result.status = jobs.get_job(db, job_id).status
            return result, False

        try:
            chunk_rows = list(islice(rows, chunk_size))
        except FileParseError as e:
            _fail(db, job_id, f"Could not parse file: {e}")
            result.status = ImportStatus.FAILED.value
            return result, False
        if not chunk_rows:
            _fail(db, job_id, f"Could not parse file: chunk {chunk} is past the end of the stored file")
            result.status = ImportStatus.FAILED.value
            return result, False

        try:
            result = persist_chunk(db, job_id, config.mapping, chunk_rows, chunk)
        except IntegrityError:
            logger.warning(f"Chunk {chunk} of job {job_id} raced another invocation; leaving it to retry")
            raise

        next_chunk = chunk + 1
        if next_chunk >= total_chunks:
            break
        if dispatch.uses_queue():
            dispatch.enqueue_parse(db, job_id, next_chunk)
            result.next_chunk = next_chunk
            result.status = jobs.get_job(db, job_id).status
            return result, False
        chunk = next_chunk

    return result, True


def run_parse_stage(job_id: str, start_chunk: int = 0) -> ParseChunkResult:
    """
    Parse stage entry point for a queue callback or direct call.

    In queue mode transient failures (store, storage, queue) propagate so the
    queue retries the same chunk. In direct mode nothing retries, so they fail
    the job instead. Unreadable files and bad configuration always fail the job.

    Args:
        job_id: Import job id
        start_chunk: 0-based chunk to process

    Returns:
        ParseChunkResult for the last chunk handled by this invocation
    """
    with session_scope() as db:
        try:
            result, finished = _parse_chunks(db, job_id, start_chunk)
        except (jobs.ImportJobNotFound, IntegrityError):
            raise
        except Exception as e:
            if dispatch.uses_queue():
                raise
            db.rollback()
            logger.exception(f"Parse of job {job_id} failed at chunk {start_chunk} in direct mode")
            _fail(db, job_id, f"Parsing failed: {e}")
            return ParseChunkResult(import_job_id=job_id, status=ImportStatus.FAILED.value, chunk=start_chunk)

        if finished:
            result.status = finish_parse(db, job_id)
        return result
