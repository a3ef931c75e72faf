"""
Pytest configuration and fixtures for the import engine tests.

Tests run against an in-memory SQLite database shared by every session, with
storage and the queue replaced by in-memory fakes. Stages are dispatched
in-process unless a test switches ``stage_dispatch_mode`` back to "queue".
"""

import os

# The app lifespan must not try to reach PostgreSQL during tests.
os.environ.setdefault("SKIP_DB_INIT", "1")

import uuid

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

import app.db.session as db_session
from app.api.schemas.shared import ColumnMapping, DuplicateConfig
from app.core.config import settings
from app.db.models import IMPORT_TABLES
from app.db.session import Base
from app.domain.imports import jobs
from app.domain.imports.column_mapper import auto_map_columns
from app.domain.imports.file_reader import inspect_file
from app.domain.imports.jobs import ImportStatus
from app.integrations import queue, storage


class FakeStorage:
    """In-memory object store keyed by path."""

    def __init__(self):
        self.files = {}

    def upload_file(self, file_content, file_path, content_type=None):
        self.files[file_path] = file_content
        return {"file_id": "etag", "file_path": file_path, "size": len(file_content)}

    def download_file(self, file_path):
        if file_path not in self.files:
            raise storage.StorageNotFoundError(f"File not found: {file_path}")
        return self.files[file_path]


class FakeQueue:
    """Records published tasks instead of calling QStash."""

    def __init__(self):
        self.published = []
        self.fail = False

    def publish_task(self, path, body, *, retries=None, timeout=None):
        if self.fail:
            raise queue.QueuePublishError("QStash publish failed: 503")
        self.published.append((path, body))
        return f"msg-{len(self.published)}"


@pytest.fixture(autouse=True)
def import_settings(monkeypatch):
    monkeypatch.setattr(settings, "stage_dispatch_mode", "direct")
    monkeypatch.setattr(settings, "queue_verify_signatures", False)
    monkeypatch.setattr(settings, "parse_chunk_size", 500)
    monkeypatch.setattr(settings, "commit_batch_size", 100)
    monkeypatch.setattr(settings, "progress_poll_interval_seconds", 0.01)
    monkeypatch.setattr(settings, "progress_close_delay_seconds", 0.0)
    return settings


@pytest.fixture
def engine(monkeypatch):
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine, tables=IMPORT_TABLES)
    monkeypatch.setattr(db_session, "_engine", engine)
    monkeypatch.setattr(db_session, "SessionLocal", None)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = db_session.get_session_local()()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fake_storage(monkeypatch):
    fake = FakeStorage()
    monkeypatch.setattr(storage, "upload_file", fake.upload_file)
    monkeypatch.setattr(storage, "download_file", fake.download_file)
    return fake


@pytest.fixture
def fake_queue(monkeypatch):
    fake = FakeQueue()
    monkeypatch.setattr(queue, "publish_task", fake.publish_task)
    return fake


@pytest.fixture
def make_job(db, fake_storage):
    """
    Factory creating a configured job from CSV text.

    The job goes through the same steps as the API: inspect, auto-map,
    store, confirm mapping, set options and (by default) queue it.
    """

    def _make(
        csv_text,
        *,
        file_name="leads.csv",
        assignment=None,
        duplicates=None,
        start=True,
        created_by="user-admin",
    ):
        content = csv_text.encode("utf-8")
        inspection = inspect_file(content, file_name)
        mapping = auto_map_columns(
            inspection.headers,
            inspection.sample_rows,
            has_header_row=inspection.has_header_row,
            header_row_index=inspection.header_row_index,
        )
        job_id = str(uuid.uuid4())
        path = storage.import_file_path(job_id, file_name)
        fake_storage.files[path] = content

        jobs.create_job(
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
        jobs.save_mapping(db, job_id, ColumnMapping.model_validate(mapping.model_dump(by_alias=True)))
        if assignment is not None or duplicates is not None:
            jobs.save_options(db, job_id, assignment, duplicates or DuplicateConfig())
        if start:
            jobs.require_transition(db, job_id, ImportStatus.QUEUED)
        return job_id

    return _make
