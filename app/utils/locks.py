import hashlib
import logging
import threading
from contextlib import contextmanager
from typing import Set

from sqlalchemy import text

from app.db.session import get_engine

logger = logging.getLogger(__name__)


def _advisory_key(name: str) -> int:
    """Stable signed 64-bit key for pg advisory locks."""
    digest = hashlib.blake2b(name.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


class JobLockManager:
    """
    Best-effort, non-blocking per-job locks.

    Used to let a duplicate queue delivery give up early instead of racing
    another invocation over the same rows. Nothing depends on the lock for
    correctness: rows are claimed by status, so callers must behave the same
    when the lock is unavailable. On PostgreSQL a session advisory lock is
    used so separate processes see each other; elsewhere the lock is
    in-process only.
    """
    # names currently held in this process; entries leave on release
    _held: Set[str] = set()
    _global_lock = threading.Lock()

    @classmethod
    def _claim(cls, name: str) -> bool:
        with cls._global_lock:
            if name in cls._held:
                return False
            cls._held.add(name)
            return True

    @classmethod
    def _release(cls, name: str) -> None:
        with cls._global_lock:
            cls._held.discard(name)

    @classmethod
    def held_count(cls) -> int:
        with cls._global_lock:
            return len(cls._held)

    @classmethod
    @contextmanager
    def try_acquire(cls, name: str):
        """Yield True if the lock was taken, False if someone else holds it."""
        engine = get_engine()
        if engine.dialect.name == "postgresql":
            with cls._try_advisory(engine, name) as acquired:
                yield acquired
            return

        acquired = cls._claim(name)
        if not acquired:
            logger.info(f"Lock '{name}' is held by another invocation")
        try:
            yield acquired
        finally:
            if acquired:
                cls._release(name)

    @staticmethod
    @contextmanager
    def _try_advisory(engine, name: str):
        key = _advisory_key(name)
        with engine.connect() as conn:
            acquired = bool(conn.execute(text("SELECT pg_try_advisory_lock(:key)"), {"key": key}).scalar())
            if not acquired:
                logger.info(f"Advisory lock '{name}' is held by another invocation")
            try:
                yield acquired
            finally:
                if acquired:
                    conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": key})
                    conn.commit()
