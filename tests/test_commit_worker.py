"""
Tests for the commit stage: batching, resume, duplicates and assignment.
"""

import time
from dataclasses import replace

import pytest
from sqlalchemy import func, select

from app.api.schemas.shared import DuplicateConfig
from app.db.models import ImportRow, Lead, LeadHistory, Notification
from app.domain.imports import commit_worker, jobs, parse_worker
from app.domain.imports.assignment import AssignmentResolver
from app.domain.imports.dedupe import DuplicateResolver
from app.domain.imports.jobs import ImportStatus
from app.integrations import queue

CSV = (
    "Prénom,Nom,Email,Société,Statut\n"
    "Jean,Dupont,jean@acme.com,Acme,Nouveau\n"
    "Marie,Curie,marie@acme.com,,Pas intéressé\n"
    "Paul,Martin,paul@acme.com,Initech,\n"
    "Luc,Durand,luc@acme.com,,rappeler\n"
)


@pytest.fixture
def parsed_job(make_job, monkeypatch, import_settings, fake_queue):
    """Create a job and run its parse stage without running the commit stage."""

    def _parsed(csv_text=CSV, **kwargs):
        monkeypatch.setattr(import_settings, "stage_dispatch_mode", "queue")
        job_id = make_job(csv_text, **kwargs)
        parse_worker.run_parse_stage(job_id, 0)
        fake_queue.published.clear()
        monkeypatch.setattr(import_settings, "stage_dispatch_mode", "direct")
        return job_id

    return _parsed


def _leads(db, job_id):
    stmt = (
        select(Lead)
        .join(ImportRow, ImportRow.lead_id == Lead.id)
        .where(ImportRow.import_job_id == job_id)
        .order_by(ImportRow.row_number)
    )
    return db.execute(stmt).scalars().all()


def _lead_count(db):
    return db.execute(select(func.count(Lead.id))).scalar()


def test_parse_leaves_rows_valid(db, parsed_job):
    job_id = parsed_job()

    job = jobs.get_job(db, job_id)
    assert job.status == ImportStatus.IMPORTING.value
    assert jobs.count_remaining_valid_rows(db, job_id) == 4


def test_single_row_batches_complete_the_job(db, parsed_job):
    job_id = parsed_job()

    results = []
    for _ in range(10):
        result = commit_worker.run_commit_batch(job_id, batch_size=1, schedule_next=False)
        results.append(result)
        job = jobs.get_job(db, job_id)
        assert job.imported_rows + job.skipped_rows <= job.valid_rows <= job.total_rows
        if result.status == ImportStatus.COMPLETED.value:
            break

    assert [r.processed for r in results] == [1, 1, 1, 1]
    job = jobs.get_job(db, job_id)
    assert job.status == ImportStatus.COMPLETED.value
    assert job.imported_rows == 4
    assert job.completed_at is not None
    assert _lead_count(db) == 4


def test_rerun_after_completion_is_a_no_op(db, parsed_job):
    job_id = parsed_job()
    commit_worker.run_commit_stage(job_id)

    again = commit_worker.run_commit_batch(job_id)

    assert again.stopped_reason == "terminal"
    assert again.processed == 0
    assert _lead_count(db) == 4
    assert jobs.get_job(db, job_id).imported_rows == 4


def test_claimed_rows_are_not_committed_twice(db, parsed_job):
    job_id = parsed_job()
    commit_worker.run_commit_batch(job_id, batch_size=2, schedule_next=False)

    second = commit_worker.run_commit_batch(job_id, batch_size=10, schedule_next=False)

    assert second.processed == 2
    assert _lead_count(db) == 4
    statuses = db.execute(
        select(ImportRow.status).where(ImportRow.import_job_id == job_id)
    ).scalars().all()
    assert statuses == ["imported"] * 4


def test_rows_claimed_by_another_invocation_are_rolled_back(db, parsed_job):
    job_id = parsed_job(assignment={"mode": "round_robin", "userIds": ["u1", "u2"]})
    stale_batch = commit_worker._select_batch(db, job_id, 2)

    commit_worker.run_commit_batch(job_id, batch_size=2, schedule_next=False)

    job = jobs.get_job(db, job_id)
    # the late invocation neither sees the committed rows nor finds duplicates
    config = replace(
        jobs.load_job_config(job, require_mapping=False),
        duplicates=DuplicateConfig(check_database=False, check_within_file=False),
    )
    resolver = DuplicateResolver(db, job_id, config.duplicates)
    assigner = AssignmentResolver(config.assignment, lambda: jobs.take_assignment_slot(db, job_id))

    outcomes = [commit_worker._commit_row(db, job, config, resolver, assigner, row) for row in stale_batch]

    assert outcomes == [None, None]
    assert _lead_count(db) == 2
    job = jobs.get_job(db, job_id)
    assert (job.imported_rows, job.skipped_rows) == (2, 0)
    assert job.assignment_cursor == 2
    history = db.execute(select(func.count(LeadHistory.id)).where(LeadHistory.import_job_id == job_id)).scalar()
    assert history == 2


def test_new_leads_get_defaults_and_history(db, parsed_job):
    job_id = parsed_job()
    commit_worker.run_commit_stage(job_id)

    leads = _leads(db, job_id)
    assert [lead.status for lead in leads] == ["new", "not_interested", "new", "callback"]
    assert leads[0].source == "Import leads.csv"
    assert leads[0].country == "France"
    assert leads[0].created_by == "user-admin"
    assert leads[0].import_job_id == job_id

    events = db.execute(
        select(LeadHistory.event_type).where(LeadHistory.import_job_id == job_id)
    ).scalars().all()
    assert events == ["imported"] * 4


def test_round_robin_continues_across_batches(db, parsed_job):
    job_id = parsed_job(assignment={"mode": "round_robin", "userIds": ["u1", "u2", "u3"]})

    for _ in range(4):
        commit_worker.run_commit_batch(job_id, batch_size=1, schedule_next=False)

    assert [lead.assigned_to for lead in _leads(db, job_id)] == ["u1", "u2", "u3", "u1"]
    assert jobs.get_job(db, job_id).assignment_cursor == 4


def test_within_file_duplicates_are_skipped(db, parsed_job):
    csv_text = "Email,Nom\na@acme.com,First\nA@ACME.com,Second\nb@acme.com,Third\n"
    job_id = parsed_job(csv_text)

    result = commit_worker.run_commit_stage(job_id)

    assert (result.imported, result.skipped) == (2, 1)
    job = jobs.get_job(db, job_id)
    assert (job.imported_rows, job.skipped_rows) == (2, 1)
    assert _lead_count(db) == 2


def test_skip_existing_database_lead(db, parsed_job):
    db.add(Lead(email="jean@acme.com", status="won"))
    db.commit()
    job_id = parsed_job()

    commit_worker.run_commit_stage(job_id)

    job = jobs.get_job(db, job_id)
    assert (job.imported_rows, job.skipped_rows) == (3, 1)
    assert _lead_count(db) == 4


def test_merge_fills_empty_fields_of_existing_lead(db, parsed_job):
    existing = Lead(email="marie@acme.com", first_name="M.", company=None, status="won")
    db.add(existing)
    db.commit()
    job_id = parsed_job(
        "Prénom,Email,Société\nMarie,marie@acme.com,Radium SA\n",
        duplicates=DuplicateConfig(strategy="merge"),
    )

    commit_worker.run_commit_stage(job_id)

    db.refresh(existing)
    assert existing.first_name == "M."
    assert existing.company == "Radium SA"
    assert existing.status == "won"
    assert _lead_count(db) == 1

    row = db.execute(select(ImportRow).where(ImportRow.import_job_id == job_id)).scalar_one()
    assert row.status == "imported"
    assert row.lead_id == existing.id

    history = db.execute(
        select(LeadHistory).where(LeadHistory.lead_id == existing.id)
    ).scalar_one()
    assert history.event_type == "updated"
    assert history.before_data == {"company": None}
    assert history.after_data == {"company": "Radium SA"}


def test_overwrite_replaces_existing_values(db, parsed_job):
    existing = Lead(email="marie@acme.com", first_name="M.", company="Old", status="won", assigned_to="u9")
    db.add(existing)
    db.commit()
    job_id = parsed_job(
        "Prénom,Email,Société\nMarie,marie@acme.com,\n",
        duplicates=DuplicateConfig(strategy="overwrite"),
        assignment={"mode": "specific", "userId": "u1"},
    )

    commit_worker.run_commit_stage(job_id)

    db.refresh(existing)
    assert existing.first_name == "Marie"
    assert existing.company == "Old"
    assert existing.assigned_to == "u9"


def test_cancelled_job_stops_committing(db, parsed_job):
    job_id = parsed_job()
    commit_worker.run_commit_batch(job_id, batch_size=1, schedule_next=False)
    jobs.cancel_job(db, job_id)

    result = commit_worker.run_commit_batch(job_id, schedule_next=False)

    assert result.stopped_reason == "terminal"
    assert result.processed == 0
    assert _lead_count(db) == 1
    assert jobs.count_remaining_valid_rows(db, job_id) == 3


def test_time_budget_stops_before_next_row(db, parsed_job):
    job_id = parsed_job()

    result = commit_worker.run_commit_batch(job_id, deadline=time.monotonic() - 1, schedule_next=False)

    assert result.stopped_reason == "time_budget"
    assert result.processed == 0
    assert result.remaining == 4


def test_drifted_job_is_forced_to_importing(db, parsed_job):
    job_id = parsed_job()
    jobs.transition(db, job_id, ImportStatus.PARSING, from_statuses=[ImportStatus.IMPORTING])

    result = commit_worker.run_commit_batch(job_id, schedule_next=False)

    assert result.processed == 4
    assert result.status == ImportStatus.COMPLETED.value


def test_unstarted_job_is_refused(db, make_job):
    job_id = make_job(CSV, start=False)

    result = commit_worker.run_commit_batch(job_id, schedule_next=False)

    assert result.stopped_reason == "not_started"
    assert jobs.get_job(db, job_id).status == ImportStatus.READY.value


def test_queue_mode_schedules_next_batch(db, parsed_job, import_settings, fake_queue, monkeypatch):
    job_id = parsed_job()
    monkeypatch.setattr(import_settings, "stage_dispatch_mode", "queue")

    result = commit_worker.run_commit_batch(job_id, batch_size=1)

    assert result.remaining == 3
    assert fake_queue.published == [(queue.COMMIT_CALLBACK_PATH, {"importJobId": job_id, "batchMarker": 1})]


def test_failed_continuation_is_reported(db, parsed_job, import_settings, fake_queue, monkeypatch):
    job_id = parsed_job()
    monkeypatch.setattr(import_settings, "stage_dispatch_mode", "queue")
    fake_queue.fail = True

    result = commit_worker.run_commit_batch(job_id, batch_size=1)

    assert result.stopped_reason == "dispatch_failed"
    assert result.processed == 1
    assert jobs.get_job(db, job_id).status == ImportStatus.IMPORTING.value


def test_completion_sends_notification(db, parsed_job):
    job_id = parsed_job()
    commit_worker.run_commit_stage(job_id)

    notification = db.execute(select(Notification)).scalar_one()
    assert notification.type == "import_completed"
    assert notification.user_id == "user-admin"
    assert notification.payload["importedRows"] == 4
