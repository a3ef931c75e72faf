"""
Upstash QStash integration: publishing stage callbacks and verifying the
signature QStash attaches when it calls us back.

QStash delivers at least once and retries non-2xx responses, so stage
handlers must be idempotent and must only answer 2xx after success.
"""
import base64
import hashlib
import logging
from typing import Any, Dict, Optional

import requests
from jose import JWTError, jwt

from app.core.config import settings

logger = logging.getLogger(__name__)

PARSE_CALLBACK_PATH = "/api/import/parse"
COMMIT_CALLBACK_PATH = "/api/import/commit"

PUBLISH_TIMEOUT_SECONDS = 10
SIGNATURE_HEADER = "Upstash-Signature"


class QueueError(Exception):
    """Base exception for queue operations."""
    pass


class QueuePublishError(QueueError):
    """Raised when a task cannot be handed to the queue."""
    pass


class QueueSignatureError(QueueError):
    """Raised when an inbound callback's signature does not verify."""
    pass


def callback_url(path: str) -> str:
    return f"{settings.app_base_url.rstrip('/')}{path}"


def publish_task(
    path: str,
    body: Dict[str, Any],
    *,
    retries: Optional[int] = None,
    timeout: Optional[str] = None,
) -> str:
    """
    Publish a JSON task that QStash will POST to one of our callback routes.

    Args:
        path: Callback route (e.g. PARSE_CALLBACK_PATH)
        body: JSON payload delivered to the callback
        retries: Delivery retries after the first attempt
        timeout: Per-delivery timeout in QStash duration format (e.g. "5m")

    Returns:
        The QStash message id

    Raises:
        QueuePublishError: If the queue is not configured or rejects the task
    """
    if not settings.qstash_token:
        raise QueuePublishError("QSTASH_TOKEN is not configured")

    destination = callback_url(path)
    headers = {
        "Authorization": f"Bearer {settings.qstash_token}",
        "Content-Type": "application/json",
        "Upstash-Retries": str(settings.queue_retries if retries is None else retries),
    }
    if timeout:
        headers["Upstash-Timeout"] = timeout

    try:
        response = requests.post(
            f"{settings.qstash_url.rstrip('/')}/v2/publish/{destination}",
            json=body,
            headers=headers,
            timeout=PUBLISH_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        message_id = response.json().get("messageId")
    except requests.RequestException as e:
        logger.error(f"Queue publish to {destination} failed: {e}")
        raise QueuePublishError(f"Queue publish failed: {e}")
    except ValueError as e:
        raise QueuePublishError(f"Queue returned an unreadable response: {e}")

    if not message_id:
        raise QueuePublishError("Queue response did not include a message id")

    logger.info(f"Published task to {destination} (message {message_id})")
    return message_id


def _body_hash(body: bytes) -> str:
    digest = hashlib.sha256(body).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def _verify_with_key(signature: str, key: str, body: bytes, url: Optional[str]) -> None:
    claims = jwt.decode(
        signature,
        key,
        algorithms=["HS256"],
        issuer="Upstash",
        subject=url,
        options={"verify_aud": False},
    )
    if str(claims.get("body", "")).rstrip("=") != _body_hash(body):
        raise JWTError("body hash mismatch")


def verify_signature(signature: Optional[str], body: bytes, url: Optional[str] = None) -> None:
    """
    Verify a QStash callback signature against the current and next signing keys.

    Raises:
        QueueSignatureError: If the signature is missing or matches neither key
    """
    if not signature:
        raise QueueSignatureError(f"Missing {SIGNATURE_HEADER} header")

    keys = [k for k in (settings.qstash_current_signing_key, settings.qstash_next_signing_key) if k]
    if not keys:
        raise QueueSignatureError("No QStash signing keys configured")

    last_error: Optional[Exception] = None
    for key in keys:
        try:
            _verify_with_key(signature, key, body, url)
            return
        except JWTError as e:
            last_error = e

    logger.warning(f"Rejected queue callback signature: {last_error}")
    raise QueueSignatureError("Invalid queue signature")
