"""
SQLAlchemy ORM Models — Organizations & Memberships

Organization is the tenant boundary: every Document, Chunk and AuditLog row
references exactly one organization, set at creation and never reassigned.

Membership links an external identity-provider subject (the JWT ``sub``)
to an organization with a role. A user may belong to several organizations,
each with an independent role; (user_id, organization_id) is unique.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from policy_rag.models.base import Base, utcnow


class Role(str, Enum):
    EMPLOYEE = "employee"
    MANAGER  = "manager"
    ADMIN    = "admin"


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<Organization id={self.id} name={self.name!r}>"


class Membership(Base):
    __tablename__ = "memberships"
    __table_args__ = (
        CheckConstraint(
            "role IN ('employee', 'manager', 'admin')",
            name="memberships_role_check",
        ),
        UniqueConstraint("user_id", "organization_id", name="uq_memberships_user_org"),
        Index("idx_memberships_user_id", "user_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Identity-provider subject (JWT sub claim)",
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    role: Mapped[str] = mapped_column(Text, nullable=False, default=Role.EMPLOYEE.value)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<Membership user={self.user_id!r} org={self.organization_id} "
            f"role={self.role}>"
        )
