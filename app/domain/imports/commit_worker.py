"""
Commit stage: turns ``valid`` import rows into leads, one bounded batch per call.

Each row is handled in its own transaction. The lead write, the lead history
entry and the round-robin slot are flushed first; the row is then claimed
with ``UPDATE import_rows SET status = ... WHERE status = 'valid'``. If that
claim matches nothing, another invocation got there first and the whole row
transaction is rolled back. A row therefore leaves ``valid`` exactly once and
the job counter moves in the same commit, so re-running a batch (queue retry,
duplicate delivery, manual resume) never double-creates a lead or
double-counts.
"""
import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.api.schemas.shared import CommitBatchResult
from app.core.config import settings
from app.db.models import ImportJob, ImportRow, Lead, LeadHistory
from app.db.session import session_scope
from app.domain import notifications
from app.domain.imports import dispatch, jobs
from app.domain.imports.assignment import AssignmentResolver
from app.domain.imports.dedupe import (
    DuplicateResolver,
    lead_snapshot,
    merge_into,
    overwrite_into,
)
from app.domain.imports.jobs import ImportStatus, RowStatus
from app.domain.imports.validators import normalize_lead_status
from app.domain.notifications import PostBatchTasks
from app.integrations.queue import QueuePublishError
from app.utils.locks import JobLockManager

logger = logging.getLogger(__name__)

CREATE_FIELDS = (
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
class _PendingRow:
    id: str
    row_number: int
    normalized: Dict[str, Optional[str]]


def incoming_lead_values(normalized: Dict[str, Optional[str]]) -> Dict[str, Optional[str]]:
    """Lead values carried by the row itself, used to update an existing lead."""
    values = {field: normalized.get(field) for field in CREATE_FIELDS}
    if values["status"]:
        values["status"] = normalize_lead_status(values["status"], settings.default_lead_status)
    return values


def new_lead_values(normalized: Dict[str, Optional[str]], file_name: str) -> Dict[str, Optional[str]]:
    """Lead values for a new lead, with the import defaults filled in."""
    values = incoming_lead_values(normalized)
    values["status"] = values["status"] or settings.default_lead_status
    values["source"] = values["source"] or f"Import {file_name}"
    values["country"] = values["country"] or settings.default_lead_country
    return values


def _commit_row(
    db: Session,
    job: ImportJob,
    config: jobs.JobConfig,
    resolver: DuplicateResolver,
    assigner: AssignmentResolver,
    row: _PendingRow,
) -> Optional[str]:
    """
    Process one row in its own transaction.

    Returns:
        The row's new status, or None if another invocation already claimed it
    """
    strategy = config.duplicates.strategy
    lead_id: Optional[str] = None
    outcome = RowStatus.SKIPPED

    try:
        match = resolver.find(row.normalized)
        if match.is_duplicate:
            lead = db.get(Lead, match.lead_id) if match.lead_id else None
            if strategy != "skip" and lead is not None and lead.deleted_at is None:
                before = lead_snapshot(lead)
                incoming = incoming_lead_values(row.normalized)
                changed = merge_into(lead, incoming) if strategy == "merge" else overwrite_into(lead, incoming)
                if changed:
                    db.add(
                        LeadHistory(
                            lead_id=lead.id,
                            actor_id=job.created_by,
                            event_type="updated",
                            before_data={field: before.get(field) for field in changed},
                            after_data=changed,
                            import_job_id=job.id,
                        )
                    )
                lead_id = lead.id
                outcome = RowStatus.IMPORTED
        else:
            lead = Lead(
                **new_lead_values(row.normalized, job.file_name),
                assigned_to=assigner.resolve(row.normalized),
                import_job_id=job.id,
                created_by=job.created_by,
            )
            db.add(lead)
            db.flush()
            db.add(
                LeadHistory(
                    lead_id=lead.id,
                    actor_id=job.created_by,
                    event_type="imported",
                    after_data=lead_snapshot(lead),
                    import_job_id=job.id,
                )
            )
            lead_id = lead.id
            outcome = RowStatus.IMPORTED

        claimed = db.execute(
            update(ImportRow)
            .where(ImportRow.id == row.id, ImportRow.status == RowStatus.VALID.value)
            .values(status=outcome.value, lead_id=lead_id)
            .execution_options(synchronize_session=False)
        ).rowcount == 1
        if not claimed:
            db.rollback()
            logger.info(f"Row {row.row_number} of job {job.id} was already committed elsewhere")
            return None

        counter = "imported_rows" if outcome == RowStatus.IMPORTED else "skipped_rows"
        jobs.increment_counters(db, job.id, **{counter: 1})
        db.commit()
    except Exception:
        db.rollback()
        raise

    if outcome == RowStatus.IMPORTED:
        resolver.remember(row.normalized, row.id, lead_id)
    return outcome.value


def _select_batch(db: Session, job_id: str, batch_size: int):
    stmt = (
        select(ImportRow.id, ImportRow.row_number, ImportRow.normalized_data)
        .where(ImportRow.import_job_id == job_id, ImportRow.status == RowStatus.VALID.value)
        .order_by(ImportRow.row_number)
        .limit(batch_size)
    )
    return [_PendingRow(id=r[0], row_number=r[1], normalized=r[2] or {}) for r in db.execute(stmt)]


def _current_status(db: Session, job_id: str) -> Optional[str]:
    return db.execute(select(ImportJob.status).where(ImportJob.id == job_id)).scalar()


def _run_batch(
    db: Session,
    job_id: str,
    batch_size: int,
    deadline: float,
    schedule_next: bool,
) -> CommitBatchResult:
    tasks = PostBatchTasks()
    job = jobs.get_job(db, job_id)
    result = CommitBatchResult(import_job_id=job_id, status=job.status)

    if jobs.is_terminal(job.status):
        logger.info(f"Commit skipped for job {job_id}: already {job.status}")
        result.stopped_reason = "terminal"
        return result
    if job.status in {s.value for s in jobs.CONFIGURABLE_STATUSES}:
        logger.warning(f"Commit refused for job {job_id}: import has not been started")
        result.stopped_reason = "not_started"
        return result

    try:
        config = jobs.load_job_config(job, require_mapping=False)
    except jobs.ImportConfigError as e:
        if jobs.mark_failed(db, job_id, str(e)):
            tasks.add("notify_failed", notifications.notify_import_failed, job_id, str(e))
        tasks.run()
        result.status = ImportStatus.FAILED.value
        return result

    if jobs.count_remaining_valid_rows(db, job_id) == 0:
        if not jobs.parse_finished(job):
            logger.info(
                f"Nothing to commit for job {job_id}: parse stopped at {job.processed_rows}/{job.total_rows} rows"
            )
            result.stopped_reason = "parse_incomplete"
            return result
        if jobs.complete_if_exhausted(db, job_id):
            tasks.add("notify_completed", notifications.notify_import_completed, job_id)
        tasks.run()
        result.status = _current_status(db, job_id) or result.status
        return result

    previous_status = job.status
    if previous_status != ImportStatus.IMPORTING.value:
        if not jobs.ensure_importing(db, job_id):
            job = jobs.get_job(db, job_id)
            logger.warning(f"Commit refused for job {job_id} in status {job.status}")
            result.status = job.status
            result.stopped_reason = "not_started" if not jobs.is_terminal(job.status) else "terminal"
            return result
        logger.info(f"Job {job_id} moved from {previous_status} to importing before commit")
        job = jobs.get_job(db, job_id)

    resolver = DuplicateResolver(db, job_id, config.duplicates)
    assigner = AssignmentResolver(config.assignment, lambda: jobs.take_assignment_slot(db, job_id))

    batch = _select_batch(db, job_id, batch_size)
    logger.info(f"Committing {len(batch)} rows for job {job_id}")

    for row in batch:
        if time.monotonic() >= deadline:
            result.stopped_reason = "time_budget"
            break
        current = _current_status(db, job_id)
        if current != ImportStatus.IMPORTING.value:
            result.stopped_reason = "cancelled" if current == ImportStatus.CANCELLED.value else "status_changed"
            break
        outcome = _commit_row(db, job, config, resolver, assigner, row)
        if outcome is None:
            continue
        result.processed += 1
        if outcome == RowStatus.IMPORTED.value:
            result.imported += 1
        else:
            result.skipped += 1

    result.remaining = jobs.count_remaining_valid_rows(db, job_id)

    if result.stopped_reason in ("cancelled", "status_changed"):
        logger.info(f"Commit for job {job_id} stopped: job is no longer importing")
    elif result.remaining == 0:
        if jobs.complete_if_exhausted(db, job_id):
            tasks.add("notify_completed", notifications.notify_import_completed, job_id)
    elif schedule_next and dispatch.uses_queue():
        job = jobs.get_job(db, job_id)
        try:
            dispatch.enqueue_commit(db, job_id, job.imported_rows + job.skipped_rows)
        except QueuePublishError as e:
            logger.error(f"Could not queue next commit batch for job {job_id}: {e}")
            result.stopped_reason = "dispatch_failed"

    tasks.run()
    result.status = _current_status(db, job_id) or result.status
    logger.info(
        f"Commit batch for job {job_id}: processed={result.processed} imported={result.imported} "
        f"skipped={result.skipped} remaining={result.remaining} status={result.status}"
    )
    return result


def run_commit_batch(
    job_id: str,
    *,
    batch_size: Optional[int] = None,
    deadline: Optional[float] = None,
    schedule_next: bool = True,
) -> CommitBatchResult:
    """
    Commit one bounded batch of ``valid`` rows for a job.

    Safe to call any number of times, concurrently or after a crash: only rows
    still ``valid`` are selected and each is claimed conditionally.

    Args:
        job_id: Import job id
        batch_size: Maximum rows to process (defaults to settings.commit_batch_size)
        deadline: ``time.monotonic()`` value after which no new row is started
        schedule_next: In queue mode, publish a follow-up task if rows remain

    Returns:
        CommitBatchResult describing what this call did
    """
    batch_size = batch_size or settings.commit_batch_size
    if deadline is None:
        deadline = time.monotonic() + settings.commit_time_budget_seconds

    with JobLockManager.try_acquire(f"import-commit:{job_id}") as acquired:
        with session_scope() as db:
            if not acquired:
                job = jobs.get_job(db, job_id)
                return CommitBatchResult(
                    import_job_id=job_id,
                    status=job.status,
                    remaining=jobs.count_remaining_valid_rows(db, job_id),
                    stopped_reason="locked",
                )
            return _run_batch(db, job_id, batch_size, deadline, schedule_next)


def run_commit_stage(job_id: str, *, batch_size: Optional[int] = None) -> CommitBatchResult:
    """
    Run commit batches in-process until the job is done or a batch stops early.

    Used when stages are dispatched directly instead of through the queue.
    """
    deadline = time.monotonic() + settings.commit_time_budget_seconds
    total = CommitBatchResult(import_job_id=job_id, status="")
    while True:
        result = run_commit_batch(job_id, batch_size=batch_size, deadline=deadline, schedule_next=False)
        total.processed += result.processed
        total.imported += result.imported
        total.skipped += result.skipped
        total.remaining = result.remaining
        total.status = result.status
        total.stopped_reason = result.stopped_reason
        if result.stopped_reason or result.remaining == 0 or result.processed == 0:
            return total
