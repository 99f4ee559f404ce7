"""
Domain exception hierarchy.

Every error the engine raises deliberately derives from PolicyRagError and
carries a stable ``error_code``. The API layer renders these into the
uniform ErrorResponse envelope (see main.py); workers map them onto the
document processing state machine.

  PolicyRagError
    ├── ExtractionFailure        terminal for the given bytes
    │     ├── UnsupportedType
    │     ├── EmptyOrImageOnly
    │     └── CorruptFile
    ├── EmbeddingServiceError    timeout / rate limit / auth / bad vector
    ├── RetrievalError           search could not run (≠ zero results)
    ├── StorageError             blob store put/get/delete failed
    ├── IsolationViolation       programming error: missing/mismatched org
    ├── OrganizationRequired     caller has no organization context
    ├── NotFound                 missing OR owned by another organization
    ├── InvalidTransition        illegal processing state change
    └── ValidationFailed         bad upload / metadata input
"""

from __future__ import annotations


class PolicyRagError(Exception):
    error_code: str = "INTERNAL_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

class ExtractionFailure(PolicyRagError):
    """Text could not be extracted. Retrying with identical bytes fails the same way."""
    error_code = "EXTRACTION_FAILED"


class UnsupportedType(ExtractionFailure):
    error_code = "UNSUPPORTED_TYPE"


class EmptyOrImageOnly(ExtractionFailure):
    error_code = "EMPTY_OR_IMAGE_ONLY"


class CorruptFile(ExtractionFailure):
    error_code = "CORRUPT_FILE"


# ---------------------------------------------------------------------------
# External services
# ---------------------------------------------------------------------------

class EmbeddingServiceError(PolicyRagError):
    error_code = "EMBEDDING_SERVICE_ERROR"


class RetrievalError(PolicyRagError):
    error_code = "RETRIEVAL_UNAVAILABLE"


class StorageError(PolicyRagError):
    error_code = "STORAGE_ERROR"


# ---------------------------------------------------------------------------
# Tenancy
# ---------------------------------------------------------------------------

class IsolationViolation(PolicyRagError):
    """A query reached the data layer without (or with the wrong) organization scope."""
    error_code = "ISOLATION_VIOLATION"


class OrganizationRequired(PolicyRagError):
    error_code = "ORGANIZATION_REQUIRED"


class NotFound(PolicyRagError):
    error_code = "NOT_FOUND"

    def __init__(self, resource: str, resource_id: object) -> None:
        # Same message whether the row is absent or belongs to another tenant.
        super().__init__(f"{resource} '{resource_id}' was not found in your organization.")
        self.resource = resource
        self.resource_id = resource_id


# ---------------------------------------------------------------------------
# State machine / input
# ---------------------------------------------------------------------------

class InvalidTransition(PolicyRagError):
    error_code = "INVALID_TRANSITION"


class ValidationFailed(PolicyRagError):
    error_code = "VALIDATION_ERROR"

    def __init__(self, message: str, *, error_code: str | None = None, field: str | None = None) -> None:
        super().__init__(message)
        if error_code:
            self.error_code = error_code
        self.field = field
