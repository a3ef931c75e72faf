"""
Bulk contact import endpoints.

Lifecycle: upload -> confirm mapping -> set options -> start. Processing then
runs in queue-driven stages (``/parse`` and ``/commit`` callbacks) while the
client follows progress over SSE. Resume re-drives the commit stage for a job
whose worker chain stopped.
"""
import asyncio
import json
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.api.schemas.shared import (
    ColumnMapping,
    CommitTaskPayload,
    ImportJobDetail,
    ImportJobProgress,
    ImportOptionsRequest,
    JobActionResponse,
    ParseTaskPayload,
    ResumeResponse,
    ResumeStatusResponse,
    UploadResponse,
)
from app.core.config import settings
from app.db.session import get_db, session_scope
from app.domain.imports import commit_worker, dispatch, error_report, jobs, parse_worker
from app.domain.imports.column_mapper import auto_map_columns
from app.domain.imports.file_reader import FileParseError, inspect_file
from app.domain.imports.jobs import ImportStatus
from app.integrations import queue, storage

router = APIRouter(prefix="/api/import", tags=["imports"])

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = settings.upload_max_file_size_mb * 1024 * 1024


@contextmanager
def _job_errors():
    """Translate import domain errors into HTTP errors."""
    try:
        yield
    except jobs.ImportJobNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (jobs.InvalidJobTransition, jobs.ImportConfigError) as e:
        raise HTTPException(status_code=400, detail=str(e))


def _ensure_within_size_limit(file_size: int, file_name: str) -> None:
    if file_size > MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=413,
            detail=(
                f"{file_name} is too large. "
                f"Maximum allowed upload size is {settings.upload_max_file_size_mb}MB."
            ),
        )


@router.post("/upload", response_model=UploadResponse)
async def upload_import_file(
    file: UploadFile = File(...),
    created_by: Optional[str] = Form(None),
    db: Session = Depends(get_db),
):
    """
    Store an uploaded contact file and create a ``pending`` import job.

    The response carries the detected headers and a proposed column mapping
    for the user to confirm.
    """
    file_name = file.filename or "upload.csv"
    content = await file.read()
    _ensure_within_size_limit(len(content), file_name)
    if not content:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")

    try:
        inspection = inspect_file(content, file_name)
    except FileParseError as e:
        raise HTTPException(status_code=400, detail=str(e))

    mapping = auto_map_columns(
        inspection.headers,
        inspection.sample_rows,
        has_header_row=inspection.has_header_row,
        header_row_index=inspection.header_row_index,
    )

    job_id = str(uuid.uuid4())
    path = storage.import_file_path(job_id, file_name)
    try:
        storage.upload_file(content, path, content_type=file.content_type)
    except storage.StorageError as e:
        logger.error(f"Could not store upload {file_name}: {e}")
        raise HTTPException(status_code=500, detail=f"Could not store file: {e}")

    job = jobs.create_job(
        db,
        file_name=file_name,
        file_type=inspection.file_type,
        storage_path=path,
        file_size=len(content),
        encoding=inspection.encoding,
        delimiter=inspection.delimiter,
        sheet_name=inspection.sheet_name,
        column_mapping=mapping,
        total_rows=inspection.total_rows,
        created_by=created_by,
        job_id=job_id,
    )

    return UploadResponse(
        success=True,
        import_job_id=job.id,
        file_name=job.file_name,
        file_type=job.file_type,
        total_rows=job.total_rows,
        headers=inspection.headers,
        column_mapping=mapping.model_dump(by_alias=True),
        encoding=job.encoding,
        delimiter=job.delimiter,
        sheet_name=job.sheet_name,
    )


@router.post("/parse")
async def parse_callback(request: Request):
    """Queue callback running one parse chunk."""
    body = await request.body()
    _verify_queue_request(request, body, queue.PARSE_CALLBACK_PATH)
    try:
        payload = ParseTaskPayload.model_validate_json(body)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid parse task: {e}")

    try:
        with _job_errors():
            result = await run_in_threadpool(
                parse_worker.run_parse_stage, payload.import_job_id, payload.start_chunk
            )
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Parse task for job {payload.import_job_id} failed; leaving it to the queue to retry")
        raise HTTPException(status_code=500, detail=str(e))
    return result.model_dump(by_alias=True)


@router.post("/commit")
async def commit_callback(request: Request):
    """Queue callback running one commit batch."""
    body = await request.body()
    _verify_queue_request(request, body, queue.COMMIT_CALLBACK_PATH)
    try:
        payload = CommitTaskPayload.model_validate_json(body)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid commit task: {e}")

    try:
        with _job_errors():
            result = await run_in_threadpool(commit_worker.run_commit_batch, payload.import_job_id)
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Commit task for job {payload.import_job_id} failed; leaving it to the queue to retry")
        raise HTTPException(status_code=500, detail=str(e))

    if result.stopped_reason == "dispatch_failed":
        # the queue redelivers this task, which picks up the remaining rows
        raise HTTPException(status_code=500, detail="Could not queue the next commit batch")
    return result.model_dump(by_alias=True)


def _verify_queue_request(request: Request, body: bytes, path: str) -> None:
    if not settings.queue_verify_signatures:
        return
    try:
        queue.verify_signature(request.headers.get(queue.SIGNATURE_HEADER), body, queue.callback_url(path))
    except queue.QueueSignatureError as e:
        logger.warning(f"Rejected queue callback on {path}: {e}")
        raise HTTPException(status_code=401, detail="Invalid queue signature")


@router.get("/{job_id}", response_model=ImportJobProgress)
async def get_import_progress(job_id: str, db: Session = Depends(get_db)):
    with _job_errors():
        return jobs.get_progress(db, job_id)


@router.get("/{job_id}/details", response_model=ImportJobDetail)
async def get_import_details(job_id: str, db: Session = Depends(get_db)):
    with _job_errors():
        return jobs.to_detail(jobs.get_job(db, job_id))


@router.patch("/{job_id}/mapping", response_model=ImportJobDetail)
async def update_column_mapping(job_id: str, mapping: ColumnMapping, db: Session = Depends(get_db)):
    """Confirm the column mapping; the job moves to ``ready``."""
    with _job_errors():
        job = jobs.save_mapping(db, job_id, mapping)
    return jobs.to_detail(job)


@router.patch("/{job_id}/options", response_model=ImportJobDetail)
async def update_import_options(job_id: str, options: ImportOptionsRequest, db: Session = Depends(get_db)):
    """Set the assignment and duplicate handling options before start."""
    with _job_errors():
        job = jobs.save_options(db, job_id, options.assignment_config, options.duplicate_config)
    return jobs.to_detail(job)


@router.post("/{job_id}/start", response_model=JobActionResponse)
async def start_import(job_id: str, background_tasks: BackgroundTasks, db: Session = Depends(get_db)):
    """
    Queue a configured job for processing.

    The first parse task is published to the queue; if publishing fails the
    job is marked failed. In direct dispatch mode the parse stage runs after
    the response is sent.
    """
    with _job_errors():
        job = jobs.get_job(db, job_id)
        if job.status not in {s.value for s in jobs.CONFIGURABLE_STATUSES}:
            raise HTTPException(
                status_code=400,
                detail=f"Import can only be started from pending or ready (status: {job.status})",
            )
        jobs.load_job_config(job)
        jobs.require_transition(db, job_id, ImportStatus.QUEUED, started_at=datetime.now(timezone.utc))

    if not dispatch.uses_queue():
        # the parse stage opens its own session
        db.close()
        background_tasks.add_task(parse_worker.run_parse_stage, job_id, 0)
        return JobActionResponse(
            success=True, import_job_id=job_id, status=ImportStatus.QUEUED.value, message="Import started"
        )

    try:
        message_id = dispatch.enqueue_parse(db, job_id, 0)
    except queue.QueuePublishError as e:
        jobs.mark_failed(db, job_id, f"Could not start processing: {e}")
        raise HTTPException(status_code=500, detail=f"Could not start processing: {e}")

    return JobActionResponse(
        success=True,
        import_job_id=job_id,
        status=ImportStatus.QUEUED.value,
        message="Import queued",
        message_id=message_id,
    )


@router.post("/{job_id}/cancel", response_model=JobActionResponse)
async def cancel_import(job_id: str, db: Session = Depends(get_db)):
    """Cancel a job that has not finished. Rows already committed stay committed."""
    with _job_errors():
        job = jobs.cancel_job(db, job_id)
    return JobActionResponse(
        success=True, import_job_id=job.id, status=job.status, message=jobs.CANCELLED_MESSAGE
    )


@router.post("/{job_id}/resume", response_model=ResumeResponse)
def resume_import(job_id: str, db: Session = Depends(get_db)):
    """
    Re-drive the commit stage of a stalled job.

    Runs one commit batch in this request; in queue mode the batch schedules
    its own continuation when rows remain.
    """
    with _job_errors():
        job = jobs.get_job(db, job_id)

        if job.status == ImportStatus.COMPLETED.value:
            return ResumeResponse(success=True, message="Import is already completed")
        if job.status in (ImportStatus.FAILED.value, ImportStatus.CANCELLED.value):
            raise HTTPException(status_code=400, detail=f"Cannot resume a {job.status} import")
        if job.status in {s.value for s in jobs.CONFIGURABLE_STATUSES}:
            raise HTTPException(status_code=400, detail="Import has not been started")

        remaining = jobs.count_remaining_valid_rows(db, job_id)
        logger.info(f"Resuming import job {job_id} with {remaining} valid rows left")
        # the worker uses its own session
        db.close()
        result = commit_worker.run_commit_batch(job_id)

    message = f"Commit stopped: {result.stopped_reason}" if result.stopped_reason else None
    if result.stopped_reason == "parse_incomplete":
        message = "Parsing has not finished for this import; there are no rows to commit yet"

    return ResumeResponse(
        success=result.stopped_reason not in ("locked", "not_started", "terminal", "parse_incomplete"),
        result=result,
        remaining_before=remaining,
        message=message,
    )


@router.get("/{job_id}/resume", response_model=ResumeStatusResponse)
async def get_resume_status(job_id: str, db: Session = Depends(get_db)):
    with _job_errors():
        job = jobs.get_job(db, job_id)
        return ResumeStatusResponse(
            job=jobs.to_detail(job),
            remaining_valid_rows=jobs.count_remaining_valid_rows(db, job_id),
        )


@router.get("/{job_id}/error-report")
async def download_error_report(job_id: str, db: Session = Depends(get_db)):
    """Download the invalid rows of a job as CSV."""
    with _job_errors():
        job = jobs.get_job(db, job_id)
        content = error_report.load_error_report(db, job_id)

    base_name = job.file_name.rsplit(".", 1)[0] or "import"
    return StreamingResponse(
        iter([content.encode("utf-8")]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{base_name}-errors.csv"'},
    )


def _read_progress(job_id: str) -> Optional[ImportJobProgress]:
    with session_scope() as db:
        try:
            return jobs.get_progress(db, job_id)
        except jobs.ImportJobNotFound:
            return None


def _sse(event: dict) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"


async def _progress_events(job_id: str):
    loop = asyncio.get_running_loop()
    last_payload = None
    last_sent = loop.time()

    while True:
        snapshot = await run_in_threadpool(_read_progress, job_id)
        now = datetime.now(timezone.utc).isoformat()
        if snapshot is None:
            yield _sse({"type": "error", "data": {"message": f"Import job {job_id} not found"}, "timestamp": now})
            return

        payload = snapshot.model_dump(mode="json", by_alias=True)
        terminal = jobs.is_terminal(snapshot.status)
        if payload != last_payload:
            yield _sse({"type": "complete" if terminal else "progress", "data": payload, "timestamp": now})
            last_payload = payload
            last_sent = loop.time()
        elif loop.time() - last_sent >= settings.progress_heartbeat_seconds:
            yield ": heartbeat\n\n"
            last_sent = loop.time()

        if terminal:
            await asyncio.sleep(settings.progress_close_delay_seconds)
            return
        await asyncio.sleep(settings.progress_poll_interval_seconds)


@router.get("/{job_id}/status")
async def stream_import_status(job_id: str, db: Session = Depends(get_db)):
    """
    Server-sent progress events for a job.

    Sends the current state immediately, then one event per change. The stream
    ends shortly after the job reaches a terminal status.
    """
    with _job_errors():
        jobs.get_job(db, job_id)
    return StreamingResponse(
        _progress_events(job_id),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
