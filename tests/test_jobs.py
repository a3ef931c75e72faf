"""
Tests for the import job state machine and counters.
"""

import pytest

from app.api.schemas.shared import DuplicateConfig
from app.domain.imports import jobs
from app.domain.imports.jobs import ImportStatus, InvalidJobTransition

CSV = "Prénom,Nom,Email\nJean,Dupont,jean@acme.com\nMarie,Curie,marie@acme.com\n"


def test_configured_job_defaults(db, make_job):
    job_id = make_job(CSV, start=False)
    job = jobs.get_job(db, job_id)

    # make_job confirms the mapping, which moves the job to ready
    assert job.status == ImportStatus.READY.value
    assert job.total_rows == 2
    assert job.assignment_config == {"mode": "none"}
    assert job.duplicate_config["strategy"] == "skip"
    assert job.duplicate_config["checkFields"] == ["email"]


def test_get_unknown_job(db):
    with pytest.raises(jobs.ImportJobNotFound):
        jobs.get_job(db, "missing")


def test_transition_is_conditional(db, make_job):
    job_id = make_job(CSV)

    assert jobs.transition(db, job_id, ImportStatus.PARSING)
    # a second start of the same job is refused
    assert not jobs.transition(db, job_id, ImportStatus.QUEUED)
    with pytest.raises(InvalidJobTransition):
        jobs.require_transition(db, job_id, ImportStatus.READY)


def test_terminal_jobs_never_move(db, make_job):
    job_id = make_job(CSV)
    jobs.cancel_job(db, job_id)

    for target in (ImportStatus.PARSING, ImportStatus.IMPORTING, ImportStatus.COMPLETED, ImportStatus.FAILED):
        assert not jobs.transition(db, job_id, target)
    assert jobs.get_job(db, job_id).status == ImportStatus.CANCELLED.value


def test_cancel_sets_message(db, make_job):
    job_id = make_job(CSV)
    job = jobs.cancel_job(db, job_id)

    assert job.status == ImportStatus.CANCELLED.value
    assert job.error_message == jobs.CANCELLED_MESSAGE
    assert job.completed_at is not None
    with pytest.raises(InvalidJobTransition):
        jobs.cancel_job(db, job_id)


def test_mark_failed_only_once(db, make_job):
    job_id = make_job(CSV)

    assert jobs.mark_failed(db, job_id, "boom")
    assert not jobs.mark_failed(db, job_id, "again")
    assert jobs.get_job(db, job_id).error_message == "boom"


def test_counters_increment_in_place(db, make_job):
    job_id = make_job(CSV)

    jobs.increment_counters(db, job_id, processed_rows=2, valid_rows=1, invalid_rows=1)
    jobs.increment_counters(db, job_id, imported_rows=1)
    db.commit()

    job = jobs.get_job(db, job_id)
    assert (job.processed_rows, job.valid_rows, job.invalid_rows, job.imported_rows) == (2, 1, 1, 1)
    with pytest.raises(ValueError):
        jobs.increment_counters(db, job_id, bogus=1)


def test_chunk_pointer_never_moves_back(db, make_job):
    job_id = make_job(CSV)

    jobs.advance_chunk(db, job_id, 3)
    jobs.advance_chunk(db, job_id, 1)
    db.commit()

    assert jobs.get_job(db, job_id).current_chunk == 3


def test_assignment_slot_is_persisted(db, make_job):
    job_id = make_job(CSV)

    assert [jobs.take_assignment_slot(db, job_id) for _ in range(3)] == [0, 1, 2]
    db.commit()
    assert jobs.get_job(db, job_id).assignment_cursor == 3


def test_complete_waits_for_parse(db, make_job):
    job_id = make_job(CSV)
    jobs.transition(db, job_id, ImportStatus.IMPORTING)

    # nothing parsed yet: zero valid rows does not mean done
    assert not jobs.complete_if_exhausted(db, job_id)

    jobs.increment_counters(db, job_id, processed_rows=2, invalid_rows=2)
    db.commit()
    assert jobs.complete_if_exhausted(db, job_id)
    assert jobs.get_job(db, job_id).status == ImportStatus.COMPLETED.value


def test_options_only_before_start(db, make_job):
    job_id = make_job(CSV, start=False)

    job = jobs.save_options(
        db,
        job_id,
        {"mode": "round_robin", "userIds": ["u1", "u2"]},
        DuplicateConfig(strategy="merge", check_fields=["phone"]),
    )
    assert job.assignment_config == {"mode": "round_robin", "userIds": ["u1", "u2"]}
    assert job.duplicate_config["strategy"] == "merge"

    with pytest.raises(jobs.ImportConfigError):
        jobs.save_options(db, job_id, {"mode": "nobody"}, DuplicateConfig())

    jobs.require_transition(db, job_id, ImportStatus.QUEUED)
    with pytest.raises(InvalidJobTransition):
        jobs.save_options(db, job_id, None, DuplicateConfig())


def test_progress_snapshot(db, make_job):
    job_id = make_job(CSV)
    progress = jobs.get_progress(db, job_id).model_dump(by_alias=True)

    assert progress["id"] == job_id
    assert progress["status"] == "queued"
    assert progress["totalRows"] == 2
    assert progress["importedRows"] == 0
