from policy_rag.auth.context import CallerContext
from policy_rag.auth.token import TokenPayload, get_current_user, verify_token

__all__ = [
    "CallerContext",
    "TokenPayload", "get_current_user", "verify_token",
]
