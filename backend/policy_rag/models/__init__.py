from policy_rag.models.base import Base
from policy_rag.models.documents import (
    AuditLog,
    Chunk,
    Document,
    LifecycleStatus,
    ProcessingStatus,
)
from policy_rag.models.tenancy import Membership, Organization, Role

__all__ = [
    "AuditLog",
    "Base",
    "Chunk",
    "Document",
    "LifecycleStatus",
    "Membership",
    "Organization",
    "ProcessingStatus",
    "Role",
]
