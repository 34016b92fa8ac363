"""Bearer tokens for the EMR API.

Tokens are HS256 JWTs issued by the platform's auth service with the shared
JWT_SECRET. This service only reads two claims: the user id ("user_id", or
"sub" on tokens minted by other services) and the platform role ("role").
Clinic roles are never taken from the token.
"""
from jose import JWTError, jwt
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict
import logging
import os

logger = logging.getLogger(__name__)

JWT_SECRET = os.getenv("JWT_SECRET", "your-secret-key-change-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRATION_HOURS = int(os.getenv("JWT_EXPIRATION_HOURS", "24"))

def create_access_token(data: Dict, expires_delta: Optional[timedelta] = None) -> str:
    """Mint a token for operator scripts and tests."""
    claims = data.copy()
    lifetime = expires_delta or timedelta(hours=JWT_EXPIRATION_HOURS)
    claims["exp"] = datetime.now(timezone.utc) + lifetime
    return jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALGORITHM)

def decode_access_token(token: str) -> Optional[Dict]:
    """Verified claims with user_id filled in, or None for a bad/expired token."""
    try:
        claims = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM], options={"require_exp": True})
    except JWTError as e:
        logger.debug(f"Rejected bearer token: {e}")
        return None

    if not claims.get("user_id") and claims.get("sub"):
        claims["user_id"] = str(claims["sub"])
    return claims
