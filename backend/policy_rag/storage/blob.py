"""
Blob Storage — Organization-Prefixed Object Store

Every object lives under its organization's prefix:

    s3://<BUCKET>/organizations/<organization_id>/documents/<document_id><ext>

Keys are built server-side from the document id and the detected extension,
never from client input. Every put/get/delete takes the caller's
organization_id and refuses a key outside that organization's prefix with
IsolationViolation, so a guessed or leaked key cannot be used to reach
another tenant's file.

SSE-KMS is applied on upload when S3_KMS_KEY_ARN is configured; otherwise
the bucket's default encryption applies.
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional, Protocol, Union

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from policy_rag.core.config import settings
from policy_rag.core.errors import IsolationViolation, StorageError

logger = logging.getLogger(__name__)

IdLike = Union[uuid.UUID, str]


# ---------------------------------------------------------------------------
# Key layout
# ---------------------------------------------------------------------------

def organization_prefix(organization_id: IdLike) -> str:
    if organization_id is None or organization_id == "":
        raise IsolationViolation("Blob access attempted without an organization_id")
    return f"organizations/{organization_id}/"


def document_key(organization_id: IdLike, document_id: IdLike, extension: str) -> str:
    """organizations/<org>/documents/<doc><ext>; extension includes the dot."""
    safe_ext = extension.replace("/", "").replace("..", "")
    return f"{organization_prefix(organization_id)}documents/{document_id}{safe_ext}"


def ensure_within_organization(organization_id: IdLike, key: str) -> str:
    """Return ``key`` unchanged if it sits under the organization's prefix."""
    prefix = organization_prefix(organization_id)
    if not key.startswith(prefix) or ".." in key.split("/"):
        logger.critical(
            "ISOLATION VIOLATION | blob key outside org prefix | org=%s key=%s",
            organization_id, key,
        )
        raise IsolationViolation(f"Key '{key}' is outside organization {organization_id}")
    return key


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class BlobStore(Protocol):
    async def put(
        self, organization_id: IdLike, key: str, data: bytes, content_type: str,
    ) -> str: ...

    async def get(self, organization_id: IdLike, key: str) -> bytes: ...

    async def delete(self, organization_id: IdLike, key: str) -> None: ...


# ---------------------------------------------------------------------------
# S3 implementation
# ---------------------------------------------------------------------------

class S3BlobStore:
    """
    Async S3 adapter (aioboto3).

    Credentials come from the environment: the task role in production,
    AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY in local dev.
    """

    def __init__(
        self,
        bucket:      Optional[str] = None,
        region:      Optional[str] = None,
        kms_key_arn: Optional[str] = None,
    ) -> None:
        self._bucket  = bucket or settings.s3_bucket
        self._region  = region or settings.aws_region
        self._kms_key = settings.s3_kms_key_arn if kms_key_arn is None else kms_key_arn
        self._session = aioboto3.Session()

    def _client(self):
        return self._session.client("s3", region_name=self._region)

    def _sse_params(self) -> dict:
        if not self._kms_key:
            return {}
        return {"ServerSideEncryption": "aws:kms", "SSEKMSKeyId": self._kms_key}

    async def put(
        self, organization_id: IdLike, key: str, data: bytes, content_type: str,
    ) -> str:
        ensure_within_organization(organization_id, key)
        try:
            async with self._client() as s3:
                await s3.put_object(
                    Bucket=self._bucket,
                    Key=key,
                    Body=data,
                    ContentType=content_type,
                    Metadata={"organization_id": str(organization_id)},
                    **self._sse_params(),
                )
        except (ClientError, BotoCoreError) as exc:
            logger.error("S3 upload failed | org=%s key=%s error=%s", organization_id, key, exc)
            raise StorageError(f"Upload to storage failed: {exc}") from exc

        logger.info("S3 upload ok | org=%s key=%s size=%d", organization_id, key, len(data))
        return key

    async def get(self, organization_id: IdLike, key: str) -> bytes:
        ensure_within_organization(organization_id, key)
        try:
            async with self._client() as s3:
                resp = await s3.get_object(Bucket=self._bucket, Key=key)
                return await resp["Body"].read()
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "404"):
                raise StorageError(f"Stored file not found: {key}") from exc
            raise StorageError(f"Download from storage failed: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"Download from storage failed: {exc}") from exc

    async def delete(self, organization_id: IdLike, key: str) -> None:
        ensure_within_organization(organization_id, key)
        try:
            async with self._client() as s3:
                await s3.delete_object(Bucket=self._bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Delete from storage failed: {exc}") from exc
        logger.info("S3 delete | org=%s key=%s", organization_id, key)
