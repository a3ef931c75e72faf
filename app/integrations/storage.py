"""
S3-compatible object storage for uploaded import files and error reports.
Works with AWS S3, Backblaze B2, MinIO, Wasabi and other S3 APIs via boto3.
"""
import logging
import re
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.core.config import settings

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class StorageConnectionError(StorageError):
    """Raised when the storage client cannot be created."""
    pass


class StorageUploadError(StorageError):
    """Raised when file upload fails."""
    pass


class StorageDownloadError(StorageError):
    """Raised when file download fails."""
    pass


class StorageNotFoundError(StorageDownloadError):
    """Raised when the requested object does not exist."""
    pass


def get_storage_client():
    """
    Get an S3-compatible storage client.

    Returns:
        boto3 S3 client configured for the storage provider

    Raises:
        StorageConnectionError: If configuration is incomplete or the client cannot be built
    """
    if not all([settings.storage_access_key_id, settings.storage_secret_access_key, settings.storage_bucket_name]):
        raise StorageConnectionError(
            "Storage configuration is incomplete. Please set STORAGE_ACCESS_KEY_ID, "
            "STORAGE_SECRET_ACCESS_KEY, and STORAGE_BUCKET_NAME in your environment."
        )

    config = Config(
        signature_version="s3v4",
        retries={"max_attempts": 3, "mode": "standard"},
    )

    client_kwargs = {
        "service_name": "s3",
        "aws_access_key_id": settings.storage_access_key_id,
        "aws_secret_access_key": settings.storage_secret_access_key,
        "config": config,
    }
    if settings.storage_endpoint_url:
        client_kwargs["endpoint_url"] = settings.storage_endpoint_url
    if settings.storage_region:
        client_kwargs["region_name"] = settings.storage_region

    try:
        return boto3.client(**client_kwargs)
    except (BotoCoreError, ValueError) as e:
        logger.error(f"Failed to create storage client: {e}")
        raise StorageConnectionError(f"Failed to connect to storage: {str(e)}")


def safe_file_name(file_name: str) -> str:
    """Keep a readable object key segment: letters, digits, dot, dash, underscore."""
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", file_name or "").strip("._")
    return cleaned or "upload"


def import_file_path(job_id: str, file_name: str) -> str:
    return f"{settings.import_storage_folder}/{job_id}/{safe_file_name(file_name)}"


def error_report_path(job_id: str) -> str:
    return f"{settings.import_storage_folder}/{job_id}/error-report.csv"


def upload_file(
    file_content: bytes,
    file_path: str,
    content_type: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Upload bytes to a storage key.

    Args:
        file_content: The file content as bytes
        file_path: Full object key (e.g., "imports/<job id>/leads.csv")
        content_type: Optional MIME type

    Returns:
        Dictionary with ``file_id`` (ETag), ``file_path`` and ``size``

    Raises:
        StorageUploadError: If upload fails
    """
    client = get_storage_client()
    params = {
        "Bucket": settings.storage_bucket_name,
        "Key": file_path,
        "Body": file_content,
    }
    if content_type:
        params["ContentType"] = content_type

    try:
        response = client.put_object(**params)
    except ClientError as e:
        error_code = e.response.get("Error", {}).get("Code", "Unknown")
        logger.error(f"Storage upload failed: {error_code} - {str(e)}")
        raise StorageUploadError(f"Upload failed: {str(e)}")
    except BotoCoreError as e:
        logger.error(f"Unexpected error during upload: {str(e)}")
        raise StorageUploadError(f"Upload failed: {str(e)}")

    return {
        "file_id": response.get("ETag", "").strip('"'),
        "file_path": file_path,
        "size": len(file_content),
    }


def download_file(file_path: str) -> bytes:
    """
    Download an object's bytes.

    Raises:
        StorageNotFoundError: If the key does not exist
        StorageDownloadError: If download fails for any other reason
    """
    client = get_storage_client()
    try:
        response = client.get_object(Bucket=settings.storage_bucket_name, Key=file_path)
        return response["Body"].read()
    except ClientError as e:
        error_code = e.response.get("Error", {}).get("Code", "Unknown")
        if error_code in ("NoSuchKey", "404"):
            raise StorageNotFoundError(f"File not found: {file_path}")
        logger.error(f"Storage download failed: {error_code} - {str(e)}")
        raise StorageDownloadError(f"Download failed: {str(e)}")
    except BotoCoreError as e:
        logger.error(f"Unexpected error during download: {str(e)}")
        raise StorageDownloadError(f"Download failed: {str(e)}")
