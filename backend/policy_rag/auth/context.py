"""Resolved caller identity: who is calling, for which organization, with which role."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID


@dataclass(frozen=True)
class CallerContext:
    user_id:         str    # JWT sub
    organization_id: UUID   # from X-Organization-ID, verified against memberships
    role:            str    # employee | manager | admin (from the membership row)
    email:           str = ""
