"""
Role-Based Access Control (RBAC)

Role hierarchy (highest → lowest privilege):
    admin > manager > employee

The role is per organization: it comes from the caller's membership row,
never from the token. Every route declares its minimum role:

    @router.delete("/documents/{document_id}")
    async def delete_doc(
        document_id: UUID,
        caller: CallerContext = RequireAdmin,
    ): ...

The dependency raises 403 if the caller's role is below the requirement
and passes the full CallerContext through to the handler.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, status

from policy_rag.auth.context import CallerContext
from policy_rag.auth.dependencies import get_caller
from policy_rag.schemas.documents import AuthErrors

# ---------------------------------------------------------------------------
# Role ordering: higher value = more privilege
# ---------------------------------------------------------------------------

_ROLE_ORDER: dict[str, int] = {
    "employee": 0,
    "manager":  1,
    "admin":    2,
}


def has_role(user_role: str, required_role: str) -> bool:
    """Return True if user_role meets or exceeds required_role. Unknown roles never pass."""
    user_level     = _ROLE_ORDER.get(user_role, -1)
    required_level = _ROLE_ORDER.get(required_role, 999)
    return user_level >= required_level


# ---------------------------------------------------------------------------
# Dependency factory
# ---------------------------------------------------------------------------

def require_role(minimum_role: str):
    """
    Returns a FastAPI dependency that resolves the CallerContext and
    checks its role against ``minimum_role`` ("employee" | "manager" | "admin").
    """
    if minimum_role not in _ROLE_ORDER:
        raise ValueError(f"Unknown role '{minimum_role}'")

    async def _dependency(
        caller: Annotated[CallerContext, Depends(get_caller)],
    ) -> CallerContext:
        if not has_role(caller.role, minimum_role):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=AuthErrors.forbidden(minimum_role, caller.role).model_dump(),
            )
        return caller

    return _dependency


# ---------------------------------------------------------------------------
# Convenience aliases for common roles
# ---------------------------------------------------------------------------

RequireEmployee = Depends(require_role("employee"))
RequireManager  = Depends(require_role("manager"))
RequireAdmin    = Depends(require_role("admin"))
