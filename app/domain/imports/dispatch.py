"""
Publishing import stages to the queue.
"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.domain.imports import jobs
from app.integrations import queue

logger = logging.getLogger(__name__)


def uses_queue() -> bool:
    return settings.stage_dispatch_mode != "direct"


def enqueue_parse(db: Session, job_id: str, start_chunk: int) -> str:
    """Publish a parse task for a chunk and record the message id on the job."""
    message_id = queue.publish_task(
        queue.PARSE_CALLBACK_PATH,
        {"importJobId": job_id, "startChunk": start_chunk},
        retries=settings.queue_retries,
        timeout=settings.parse_task_timeout,
    )
    jobs.record_dispatch(db, job_id, message_id)
    return message_id


def enqueue_commit(db: Session, job_id: str, batch_marker: Optional[int] = None) -> str:
    """Publish a commit task and record the message id on the job."""
    message_id = queue.publish_task(
        queue.COMMIT_CALLBACK_PATH,
        {"importJobId": job_id, "batchMarker": batch_marker},
        retries=settings.queue_retries,
        timeout=settings.commit_task_timeout,
    )
    jobs.record_dispatch(db, job_id, message_id)
    logger.info(f"Queued commit batch {batch_marker} for import job {job_id}")
    return message_id
