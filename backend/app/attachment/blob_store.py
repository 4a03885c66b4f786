"""Blob store adapter: the only code that talks to the external object store / CDN."""
from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from typing import Protocol
from uuid import UUID

from minio import Minio
from minio.error import S3Error

from app.common.storage import get_minio_client, is_not_found
from app.config import get_settings

logger = logging.getLogger(__name__)


class BlobStoreError(Exception):
    """An upload/exists/delete call against the external store failed (including timeouts)."""


@dataclass(frozen=True)
class BlobMetadata:
    attachment_id: UUID
    organization_id: str
    owner_type: str
    file_name: str
    mime_type: str


def build_object_key(prefix: str, organization_id: str, attachment_id: UUID) -> str:
    """Deterministic key: retrying an upload overwrites the same object instead of duplicating it."""
    parts = [p.strip("/") for p in (prefix, organization_id, str(attachment_id)) if p and p.strip("/")]
    return "/".join(parts)


class BlobStore(Protocol):
    def upload(self, data: bytes, meta: BlobMetadata) -> str: ...

    def exists(self, external_id: str) -> bool: ...

    def delete(self, external_id: str) -> None: ...

    def presigned_url(self, external_id: str) -> str: ...


class MinioBlobStore:
    def __init__(self, client: Minio, bucket: str, *, prefix: str = "", presign_expires_sec: int = 3600) -> None:
        self.client = client
        self.bucket = bucket
        self.prefix = prefix
        self.presign_expires_sec = presign_expires_sec

    def upload(self, data: bytes, meta: BlobMetadata) -> str:
        object_key = build_object_key(self.prefix, meta.organization_id, meta.attachment_id)
        try:
            self.client.put_object(
                bucket_name=self.bucket,
                object_name=object_key,
                data=io.BytesIO(data),
                length=len(data),
                content_type=meta.mime_type or "application/octet-stream",
                metadata={
                    "attachment-id": str(meta.attachment_id),
                    "owner-type": meta.owner_type,
                },
            )
        except S3Error as exc:
            raise BlobStoreError(f"upload failed: {exc.code}") from exc
        except Exception as exc:
            # Connection refused / timeouts surface as urllib3 errors, not S3Error.
            raise BlobStoreError(f"upload failed: {exc}") from exc
        return object_key

    def exists(self, external_id: str) -> bool:
        try:
            self.client.stat_object(self.bucket, external_id)
            return True
        except S3Error as exc:
            if is_not_found(exc):
                return False
            raise BlobStoreError(f"exists check failed: {exc.code}") from exc
        except Exception as exc:
            raise BlobStoreError(f"exists check failed: {exc}") from exc

    def delete(self, external_id: str) -> None:
        try:
            self.client.remove_object(self.bucket, external_id)
        except S3Error as exc:
            if is_not_found(exc):
                logger.info("object already absent", extra={"external_id": external_id})
                return
            raise BlobStoreError(f"delete failed: {exc.code}") from exc
        except Exception as exc:
            raise BlobStoreError(f"delete failed: {exc}") from exc

    def presigned_url(self, external_id: str) -> str:
        try:
            return self.client.presigned_get_object(
                self.bucket,
                external_id,
                expires=timedelta(seconds=self.presign_expires_sec),
            )
        except Exception as exc:
            raise BlobStoreError(f"presign failed: {exc}") from exc


@lru_cache(maxsize=1)
def get_blob_store() -> MinioBlobStore:
    """Blob store singleton over the shared MinIO client.

    Raises:
        StorageError: If MinIO is not configured or initialization fails
    """
    settings = get_settings()
    client, bucket = get_minio_client()
    return MinioBlobStore(
        client,
        bucket,
        prefix=settings.minio_prefix,
        presign_expires_sec=settings.minio_presign_expires_sec,
    )
