from fastapi import Request, HTTPException, status
from typing import Optional
import logging
from auth import decode_access_token

logger = logging.getLogger(__name__)

# Platform roles carried in the JWT "role" claim; clinic roles are resolved separately
PLATFORM_ROLE_HIERARCHY = {
    "ROLE_OWNER": 3,
    "ROLE_ADMIN": 2,
    "ROLE_USER": 1,
}

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current user from JWT token."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ")[1]
    return decode_access_token(token)

async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user or not user.get("user_id"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    request.state.user = user
    return user

async def require_admin(request: Request) -> dict:
    """Require platform admin role (sweep triggers and other operator endpoints)."""
    user = await require_auth(request)
    user_role = user.get("role")

    if PLATFORM_ROLE_HIERARCHY.get(user_role, 0) < PLATFORM_ROLE_HIERARCHY["ROLE_ADMIN"]:
        logger.warning("Admin route denied: user_id=%s role=%s path=%s", user.get("user_id"), user_role, request.url.path)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )

    return user
