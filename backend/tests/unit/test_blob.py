"""
Unit Tests — Blob storage
══════════════════════════
Tests for:
  • key layout helpers (organization prefix, document keys)
  • ensure_within_organization — foreign / traversal keys refused
  • S3BlobStore — isolation check before any S3 call, SSE-KMS params,
    botocore errors mapped to StorageError

The aioboto3 client is replaced with an AsyncMock; no network calls.
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from policy_rag.core.errors import IsolationViolation, StorageError
from policy_rag.storage.blob import (
    S3BlobStore,
    document_key,
    ensure_within_organization,
    organization_prefix,
)

ORG   = uuid.UUID("aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa")
OTHER = uuid.UUID("bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb")
DOC   = uuid.UUID("12345678-1234-1234-1234-123456789abc")


def _mock_s3():
    """(client_factory, s3) where client_factory() is an async context manager yielding s3."""
    s3 = AsyncMock()
    context = MagicMock()
    context.__aenter__.return_value = s3
    context.__aexit__.return_value = False
    return MagicMock(return_value=context), s3


def _client_error(code: str, operation: str = "GetObject") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


# ─────────────────────────────────────────────────────────────────────────────
# Key layout
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.isolation
class TestKeyLayout:

    def test_document_key(self):
        assert document_key(ORG, DOC, ".pdf") == (
            "organizations/aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa/documents/"
            "12345678-1234-1234-1234-123456789abc.pdf"
        )

    def test_extension_cannot_escape_prefix(self):
        key = document_key(ORG, DOC, "/../../x")
        assert key.startswith(organization_prefix(ORG))
        assert ".." not in key

    @pytest.mark.parametrize("missing", [None, ""])
    def test_prefix_requires_organization(self, missing):
        with pytest.raises(IsolationViolation):
            organization_prefix(missing)

    def test_own_key_is_accepted(self):
        key = document_key(ORG, DOC, ".txt")
        assert ensure_within_organization(ORG, key) == key
        assert ensure_within_organization(str(ORG), key) == key

    @pytest.mark.parametrize(
        "key",
        [
            f"organizations/{OTHER}/documents/{DOC}.txt",
            f"documents/{DOC}.txt",
            f"organizations/{ORG}/../{OTHER}/documents/{DOC}.txt",
            f"organizations/{ORG}",
        ],
    )
    def test_foreign_or_traversal_key_is_refused(self, key):
        with pytest.raises(IsolationViolation):
            ensure_within_organization(ORG, key)


# ─────────────────────────────────────────────────────────────────────────────
# S3BlobStore
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestS3BlobStore:

    @pytest.fixture
    def s3_store(self) -> S3BlobStore:
        return S3BlobStore(bucket="test-bucket", region="us-east-1", kms_key_arn="")

    @pytest.mark.isolation
    @pytest.mark.parametrize("operation", ["put", "get", "delete"])
    async def test_foreign_key_is_refused_before_any_s3_call(self, s3_store, operation):
        factory, s3 = _mock_s3()
        foreign_key = document_key(OTHER, DOC, ".txt")
        args = {
            "put":    (ORG, foreign_key, b"data", "text/plain"),
            "get":    (ORG, foreign_key),
            "delete": (ORG, foreign_key),
        }[operation]

        with patch.object(s3_store, "_client", factory):
            with pytest.raises(IsolationViolation):
                await getattr(s3_store, operation)(*args)

        factory.assert_not_called()

    async def test_put_sends_object_with_org_metadata(self, s3_store):
        factory, s3 = _mock_s3()
        key = document_key(ORG, DOC, ".pdf")

        with patch.object(s3_store, "_client", factory):
            assert await s3_store.put(ORG, key, b"%PDF-1.4", "application/pdf") == key

        s3.put_object.assert_awaited_once_with(
            Bucket="test-bucket",
            Key=key,
            Body=b"%PDF-1.4",
            ContentType="application/pdf",
            Metadata={"organization_id": str(ORG)},
        )

    async def test_put_applies_kms_when_configured(self):
        kms_store = S3BlobStore(bucket="test-bucket", region="us-east-1", kms_key_arn="arn:aws:kms:key/1")
        factory, s3 = _mock_s3()

        with patch.object(kms_store, "_client", factory):
            await kms_store.put(ORG, document_key(ORG, DOC, ".txt"), b"x", "text/plain")

        kwargs = s3.put_object.await_args.kwargs
        assert kwargs["ServerSideEncryption"] == "aws:kms"
        assert kwargs["SSEKMSKeyId"] == "arn:aws:kms:key/1"

    async def test_get_reads_body(self, s3_store):
        factory, s3 = _mock_s3()
        body = AsyncMock()
        body.read.return_value = b"policy text"
        s3.get_object.return_value = {"Body": body}

        with patch.object(s3_store, "_client", factory):
            data = await s3_store.get(ORG, document_key(ORG, DOC, ".txt"))

        assert data == b"policy text"

    async def test_missing_object_maps_to_storage_error(self, s3_store):
        factory, s3 = _mock_s3()
        s3.get_object.side_effect = _client_error("NoSuchKey")

        with patch.object(s3_store, "_client", factory):
            with pytest.raises(StorageError) as exc_info:
                await s3_store.get(ORG, document_key(ORG, DOC, ".txt"))

        assert "not found" in exc_info.value.message

    async def test_put_failure_maps_to_storage_error(self, s3_store):
        factory, s3 = _mock_s3()
        s3.put_object.side_effect = EndpointConnectionError(endpoint_url="https://s3.amazonaws.com")

        with patch.object(s3_store, "_client", factory):
            with pytest.raises(StorageError):
                await s3_store.put(ORG, document_key(ORG, DOC, ".txt"), b"x", "text/plain")

    async def test_delete_failure_maps_to_storage_error(self, s3_store):
        factory, s3 = _mock_s3()
        s3.delete_object.side_effect = _client_error("AccessDenied", "DeleteObject")

        with patch.object(s3_store, "_client", factory):
            with pytest.raises(StorageError):
                await s3_store.delete(ORG, document_key(ORG, DOC, ".txt"))
