"""MinIO storage client singleton for attachment storage."""
from __future__ import annotations

from functools import lru_cache
from urllib.parse import urlparse

import urllib3
from minio import Minio
from minio.error import S3Error

from app.config import get_settings

NOT_FOUND_CODES = ("NoSuchKey", "NoSuchObject", "NotFound")


class StorageError(Exception):
    """Storage client could not be configured or initialized."""
    pass


def is_not_found(exc: S3Error) -> bool:
    return getattr(exc, "code", "") in NOT_FOUND_CODES


def build_http_client(connect_timeout_sec: float, read_timeout_sec: float) -> urllib3.PoolManager:
    """HTTP pool with bounded timeouts so no storage call can hang a worker."""
    return urllib3.PoolManager(
        timeout=urllib3.Timeout(connect=connect_timeout_sec, read=read_timeout_sec),
        retries=urllib3.Retry(total=2, backoff_factor=0.2, status_forcelist=[500, 502, 503, 504]),
        maxsize=10,
    )


@lru_cache(maxsize=1)
def get_minio_client() -> tuple[Minio, str]:
    """Get MinIO client singleton and bucket name.

    Returns:
        Tuple of (Minio client, bucket name)

    Raises:
        StorageError: If MinIO is not configured or initialization fails
    """
    settings = get_settings()
    endpoint = (settings.minio_endpoint or "").strip()
    if not endpoint:
        raise StorageError("MinIO endpoint is not configured")

    secure = settings.minio_secure
    if endpoint.startswith("http://") or endpoint.startswith("https://"):
        parsed = urlparse(endpoint)
        secure = parsed.scheme == "https"
        endpoint = (parsed.netloc or parsed.path).rstrip("/")

    access_key = (settings.minio_access_key or "").strip()
    secret_key = (settings.minio_secret_key or "").strip()
    bucket = (settings.minio_bucket or "").strip()
    if not access_key or not secret_key or not bucket:
        raise StorageError("MinIO credentials/bucket are not configured")

    client = Minio(
        endpoint,
        access_key=access_key,
        secret_key=secret_key,
        secure=secure,
        http_client=build_http_client(settings.minio_connect_timeout_sec, settings.minio_read_timeout_sec),
    )

    # Check/create bucket once at startup
    try:
        if not client.bucket_exists(bucket):
            client.make_bucket(bucket)
    except S3Error as exc:
        raise StorageError(f"Failed to initialize MinIO bucket: {exc.code}") from exc
    except Exception as exc:
        # Network issues (connection refused/timeouts) may raise non-S3 exceptions.
        raise StorageError(f"Failed to initialize MinIO bucket: {exc}") from exc

    return client, bucket
