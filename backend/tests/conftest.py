"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  session-scoped  : rsa keys, test_jwks
  function-scoped : engine, store, blobs, publisher, embedding_client,
                    pipeline, service, retrieval, organizations, api client

Environment strategy:
  - Every test gets its own in-memory SQLite database (aiosqlite + StaticPool),
    built from the ORM metadata. No PostgreSQL needed.
  - Blob storage is an in-memory dict that enforces the organization prefix
    exactly like S3BlobStore.
  - Embeddings are a deterministic bag-of-words model (no network): texts
    that share words are similar, texts that share none score 0.
  - JWT tokens are built with a test RSA key — no live identity provider.
  - The task publisher only records calls; tests drive the pipeline directly.

How to run:
  pytest                          # all tests
  pytest -m unit                  # unit tests only
  pytest -m integration           # API tests through the ASGI app
  pytest tests/unit/test_auth.py  # single file
"""

from __future__ import annotations

import base64
import hashlib
import io
import math
import os
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from httpx import AsyncClient
from langchain_core.embeddings import Embeddings

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any app imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("DATABASE_URL",          "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("AWS_REGION",            "us-east-1")
os.environ.setdefault("AWS_ACCESS_KEY_ID",     "test")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "test")
os.environ.setdefault("S3_BUCKET",             "test-bucket")
os.environ.setdefault("OPENAI_API_KEY",        "sk-test-key")
os.environ.setdefault("CELERY_BROKER_URL",     "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("APP_ENV",               "development")
os.environ.setdefault("DEBUG",                 "false")
os.environ.setdefault("AUTH_ISSUER",           "https://test.auth.example.com/")
os.environ.setdefault("AUTH_AUDIENCE",         "test-api-audience")

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from policy_rag.core.errors import StorageError  # noqa: E402
from policy_rag.db.session import build_session_factory, create_all  # noqa: E402
from policy_rag.models.tenancy import Role  # noqa: E402
from policy_rag.processing.embeddings import EmbeddingClient  # noqa: E402
from policy_rag.rag.retriever import RetrievalEngine  # noqa: E402
from policy_rag.services.ingestion import DocumentService  # noqa: E402
from policy_rag.services.pipeline import IngestionPipeline  # noqa: E402
from policy_rag.storage.blob import ensure_within_organization  # noqa: E402
from policy_rag.store.tenant_store import TenantStore  # noqa: E402

TEST_KID      = "test-key-id-2026"
TEST_ISSUER   = os.environ["AUTH_ISSUER"]
TEST_AUDIENCE = os.environ["AUTH_AUDIENCE"]

EMBEDDING_DIMS = 256

VACATION_TEXT = (
    "Annual Leave Policy\n\n"
    "Employees receive 15 vacation days per year. Unused vacation days may be "
    "carried over to the next calendar year up to a maximum of five days."
)


# ─────────────────────────────────────────────────────────────────────────────
# Deterministic embeddings
# ─────────────────────────────────────────────────────────────────────────────

_TOKEN = re.compile(r"[a-z0-9]+")


def bag_of_words_vector(text: str, dims: int = EMBEDDING_DIMS) -> list[float]:
    """Hash every word of 4+ characters into a bucket; L2-normalize."""
    vector = [0.0] * dims
    for token in _TOKEN.findall(text.lower()):
        if len(token) < 4:
            continue
        bucket = int(hashlib.md5(token.encode()).hexdigest(), 16) % dims
        vector[bucket] += 1.0
    norm = math.sqrt(sum(v * v for v in vector))
    return [v / norm for v in vector] if norm else vector


class FakeEmbeddings(Embeddings):
    """langchain_core Embeddings with no network; counts calls."""

    def __init__(self, dims: int = EMBEDDING_DIMS) -> None:
        self.dims = dims
        self.document_calls = 0
        self.query_calls = 0

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        self.document_calls += 1
        return [bag_of_words_vector(t, self.dims) for t in texts]

    def embed_query(self, text: str) -> list[float]:
        self.query_calls += 1
        return bag_of_words_vector(text, self.dims)


# ─────────────────────────────────────────────────────────────────────────────
# In-memory collaborators
# ─────────────────────────────────────────────────────────────────────────────

class InMemoryBlobStore:
    """BlobStore backed by a dict; enforces the organization prefix like S3BlobStore."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.content_types: dict[str, str] = {}
        self.fail_puts = False

    async def put(self, organization_id, key: str, data: bytes, content_type: str) -> str:
        ensure_within_organization(organization_id, key)
        if self.fail_puts:
            raise StorageError("Upload to storage failed: simulated outage")
        self.objects[key] = data
        self.content_types[key] = content_type
        return key

    async def get(self, organization_id, key: str) -> bytes:
        ensure_within_organization(organization_id, key)
        try:
            return self.objects[key]
        except KeyError:
            raise StorageError(f"Stored file not found: {key}") from None

    async def delete(self, organization_id, key: str) -> None:
        ensure_within_organization(organization_id, key)
        self.objects.pop(key, None)


@dataclass
class RecordingPublisher:
    """Task publisher that records (document_id, organization_id) instead of hitting a broker."""

    calls: list[tuple[uuid.UUID, uuid.UUID]] = field(default_factory=list)
    fail: bool = False

    async def publish_ingestion_task(self, document_id, organization_id) -> None:
        if self.fail:
            raise ConnectionError("broker unavailable")
        self.calls.append((document_id, organization_id))

    @property
    def document_ids(self) -> list[uuid.UUID]:
        return [doc_id for doc_id, _ in self.calls]


# ─────────────────────────────────────────────────────────────────────────────
# Database + services
# ─────────────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory database per test; StaticPool keeps one shared connection."""
    test_engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_all(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def store(engine) -> TenantStore:
    return TenantStore(build_session_factory(engine))


@pytest.fixture
def blobs() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def fake_embeddings() -> FakeEmbeddings:
    return FakeEmbeddings()


@pytest.fixture
def embedding_client(fake_embeddings) -> EmbeddingClient:
    return EmbeddingClient(fake_embeddings, dimensions=EMBEDDING_DIMS, timeout_seconds=5.0)


@pytest.fixture
def pipeline(store, blobs, embedding_client) -> IngestionPipeline:
    return IngestionPipeline(store, blobs, embedding_client)


@pytest.fixture
def service(store, blobs, publisher, pipeline) -> DocumentService:
    return DocumentService(store, blobs, publisher, pipeline)


@pytest.fixture
def retrieval(store, embedding_client) -> RetrievalEngine:
    return RetrievalEngine(store, embedding_client)


# ─────────────────────────────────────────────────────────────────────────────
# Organizations, members and callers
# ─────────────────────────────────────────────────────────────────────────────

ORG_A_ID = uuid.UUID("aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa")
ORG_B_ID = uuid.UUID("bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb")


@pytest_asyncio.fixture
async def org_a(store):
    return await store.create_organization("Acme Corp", organization_id=ORG_A_ID)


@pytest_asyncio.fixture
async def org_b(store):
    return await store.create_organization("Globex", organization_id=ORG_B_ID)


@pytest.fixture
def make_caller():
    """Factory: CallerContext for a user in an organization (no membership row needed)."""
    from policy_rag.auth.context import CallerContext

    def _build(organization_id: uuid.UUID, role: str = Role.ADMIN.value, user_id: str = "auth0|admin") -> CallerContext:
        return CallerContext(user_id=user_id, organization_id=organization_id, role=role)

    return _build


@pytest.fixture
def admin_a(org_a, make_caller):
    return make_caller(org_a.id, user_id="auth0|alice")


@pytest.fixture
def admin_b(org_b, make_caller):
    return make_caller(org_b.id, user_id="auth0|bruno")


@pytest.fixture
def upload_text(service):
    """Factory: upload a .txt document through DocumentService and return the Document."""

    async def _upload(
        caller,
        text: str = VACATION_TEXT,
        *,
        title: str = "Annual Leave Policy",
        filename: str = "leave-policy.txt",
        lifecycle_status: str = "published",
        enabled: bool = True,
        category: Optional[str] = "HR",
    ):
        doc, _ = await service.upload(
            caller,
            filename=filename,
            data=text.encode("utf-8"),
            title=title,
            category=category,
            lifecycle_status=lifecycle_status,
            enabled=enabled,
        )
        return doc

    return _upload


# ─────────────────────────────────────────────────────────────────────────────
# Sample file bytes
# ─────────────────────────────────────────────────────────────────────────────

def _pdf_escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")


def build_pdf(lines: list[str]) -> bytes:
    """
    Minimal single-page PDF with a Helvetica text layer (one Tj per line).
    An empty ``lines`` list produces a page with no content stream, which is
    what a scanned, image-only page looks like to a text extractor.
    """
    objects: list[bytes] = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
    ]
    if lines:
        ops = ["BT", "/F1 12 Tf", "14 TL", "72 720 Td"]
        for line in lines:
            ops.append(f"({_pdf_escape(line)}) Tj T*")
        ops.append("ET")
        stream = "\n".join(ops).encode("latin-1")
        objects.append(
            b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
            b"/Contents 4 0 R /Resources << /Font << /F1 5 0 R >> >> >>"
        )
        objects.append(
            b"<< /Length " + str(len(stream)).encode() + b" >>\nstream\n" + stream + b"\nendstream"
        )
        objects.append(b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>")
    else:
        objects.append(b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] /Resources << >> >>")

    out = io.BytesIO()
    out.write(b"%PDF-1.4\n")
    offsets: list[int] = []
    for number, body in enumerate(objects, start=1):
        offsets.append(out.tell())
        out.write(f"{number} 0 obj\n".encode() + body + b"\nendobj\n")

    xref_at = out.tell()
    out.write(f"xref\n0 {len(objects) + 1}\n".encode())
    out.write(b"0000000000 65535 f \n")
    for offset in offsets:
        out.write(f"{offset:010d} 00000 n \n".encode())
    out.write(
        f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R >>\nstartxref\n{xref_at}\n%%EOF\n".encode()
    )
    return out.getvalue()


@pytest.fixture
def text_pdf_bytes() -> bytes:
    return build_pdf([
        "Annual Leave Policy",
        "Employees receive 15 vacation days per year.",
    ])


@pytest.fixture
def blank_pdf_bytes() -> bytes:
    """A PDF with no text layer (scanned / image-only)."""
    return build_pdf([])


@pytest.fixture
def docx_bytes() -> bytes:
    import docx

    document = docx.Document()
    document.add_heading("Remote Work Policy", level=1)
    document.add_paragraph("Employees may work remotely up to three days per week.")
    document.add_paragraph("Managers approve remote work schedules quarterly.")
    buffer = io.BytesIO()
    document.save(buffer)
    return buffer.getvalue()


@pytest.fixture
def exe_bytes() -> bytes:
    """Windows PE executable — rejected by the magic-byte check."""
    return b"MZ\x90\x00" + b"\x00" * 100


# ─────────────────────────────────────────────────────────────────────────────
# RSA key pair + JWKS for signing test JWTs (generated once per session)
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture(scope="session")
def rsa_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def rsa_private_key_pem(rsa_private_key) -> bytes:
    """PEM-encoded private key bytes (used by jose.jwt.encode)."""
    return rsa_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


@pytest.fixture(scope="session")
def test_jwks(rsa_private_key) -> dict:
    """JWKS document holding the test public key, as served at /.well-known/jwks.json."""
    numbers = rsa_private_key.public_key().public_numbers()

    def _b64url(n: int) -> str:
        length = (n.bit_length() + 7) // 8
        return base64.urlsafe_b64encode(n.to_bytes(length, "big")).rstrip(b"=").decode()

    return {
        "keys": [
            {
                "kty": "RSA",
                "use": "sig",
                "alg": "RS256",
                "kid": TEST_KID,
                "n":   _b64url(numbers.n),
                "e":   _b64url(numbers.e),
            }
        ]
    }


@pytest.fixture
def make_token(rsa_private_key_pem):
    """
    Factory fixture: returns a function that builds signed test JWTs.

    Usage:
        token = make_token("auth0|alice")
        token = make_token("auth0|alice", expired=True)
    """
    from jose import jwt as jose_jwt

    def _build(
        sub:      str = "auth0|alice",
        *,
        expired:  bool = False,
        audience: str = TEST_AUDIENCE,
        issuer:   str = TEST_ISSUER,
        kid:      str = TEST_KID,
    ) -> str:
        now = int(time.time())
        claims = {
            "sub":   sub,
            "email": f"{sub.split('|')[-1]}@example.com",
            "iss":   issuer,
            "aud":   audience,
            "iat":   now,
            "exp":   now - 60 if expired else now + 3600,
        }
        return jose_jwt.encode(claims, rsa_private_key_pem, algorithm="RS256", headers={"kid": kid})

    return _build


@pytest.fixture
def jwks_patched(test_jwks):
    """Serve the test JWKS instead of fetching from the issuer."""
    from unittest.mock import AsyncMock, patch

    from policy_rag.auth import token as token_module

    token_module._JWKS_CACHE.clear()
    with patch.object(token_module, "_fetch_jwks", new=AsyncMock(return_value=test_jwks)) as fetch:
        yield fetch
    token_module._JWKS_CACHE.clear()


# ─────────────────────────────────────────────────────────────────────────────
# FastAPI app with infrastructure overridden
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def app_with_overrides(store, blobs, publisher, embedding_client, jwks_patched):
    """
    FastAPI app with infrastructure dependencies overridden:
      - get_tenant_store     → in-memory SQLite store
      - get_blob_store       → InMemoryBlobStore
      - get_embedding_client → bag-of-words embeddings
      - get_task_publisher   → RecordingPublisher

    JWT verification and membership checks run for real.
    """
    from policy_rag.auth.dependencies import (
        get_blob_store,
        get_embedding_client,
        get_task_publisher,
        get_tenant_store,
    )
    from policy_rag.main import app

    app.dependency_overrides[get_tenant_store]     = lambda: store
    app.dependency_overrides[get_blob_store]       = lambda: blobs
    app.dependency_overrides[get_embedding_client] = lambda: embedding_client
    app.dependency_overrides[get_task_publisher]   = lambda: publisher

    yield app

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def async_client(app_with_overrides) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client using the overridden app."""
    from httpx import ASGITransport

    transport = ASGITransport(app=app_with_overrides)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
