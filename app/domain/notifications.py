"""
User notifications for import outcomes, and the post-batch task list that
sends them.

Notifications run after a stage's row work has committed. A failing
notification is logged and never changes job or row state.
"""
import logging
from typing import Any, Callable, List, Optional, Tuple

from app.db.models import ImportJob, Notification
from app.db.session import session_scope

logger = logging.getLogger(__name__)


class PostBatchTasks:
    """Side effects collected during a stage and run once its rows are committed."""

    def __init__(self):
        self._tasks: List[Tuple[str, Callable[..., Any], tuple]] = []

    def add(self, name: str, func: Callable[..., Any], *args: Any) -> None:
        self._tasks.append((name, func, args))

    def __len__(self) -> int:
        return len(self._tasks)

    def run(self) -> int:
        """Run every task; returns how many failed."""
        failures = 0
        for name, func, args in self._tasks:
            try:
                func(*args)
            except Exception:
                failures += 1
                logger.exception(f"Post-batch task '{name}' failed; import outcome unaffected")
        self._tasks.clear()
        return failures


def _create_notification(
    user_id: Optional[str],
    type_: str,
    title: str,
    message: str,
    link: Optional[str] = None,
    payload: Optional[dict] = None,
) -> None:
    with session_scope() as db:
        db.add(
            Notification(
                user_id=user_id,
                type=type_,
                title=title,
                message=message,
                link=link,
                payload=payload,
            )
        )
        db.commit()


def notify_import_completed(job_id: str) -> None:
    with session_scope() as db:
        job = db.get(ImportJob, job_id)
        if job is None:
            return
        user_id = job.created_by
        file_name = job.file_name
        payload = {
            "importJobId": job.id,
            "importedRows": job.imported_rows,
            "skippedRows": job.skipped_rows,
            "invalidRows": job.invalid_rows,
        }

    _create_notification(
        user_id,
        "import_completed",
        "Import completed",
        f"{file_name}: {payload['importedRows']} imported, {payload['skippedRows']} skipped, "
        f"{payload['invalidRows']} invalid",
        link=f"/import/{job_id}",
        payload=payload,
    )
    logger.info(f"Sent completion notification for import job {job_id}")


def notify_import_failed(job_id: str, error_message: str) -> None:
    with session_scope() as db:
        job = db.get(ImportJob, job_id)
        if job is None:
            return
        user_id = job.created_by
        file_name = job.file_name

    _create_notification(
        user_id,
        "import_failed",
        "Import failed",
        f"{file_name}: {error_message}",
        link=f"/import/{job_id}",
        payload={"importJobId": job_id, "errorMessage": error_message},
    )
    logger.info(f"Sent failure notification for import job {job_id}")
