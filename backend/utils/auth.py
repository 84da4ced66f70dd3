"""
Authentication utilities

Requests carry a Supabase access token. It is verified locally with the
project's JWT secret; the account id is the token's "sub" claim.
"""
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional
import jwt
import os

security = HTTPBearer(auto_error=False)
JWT_ALGORITHM = "HS256"
JWT_AUDIENCE = "authenticated"


def _jwt_secret() -> str:
    return os.environ.get('SUPABASE_JWT_SECRET', '')


async def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)):
    """Verify JWT token and return current user"""
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Authentication required")

    secret = _jwt_secret()
    if not secret:
        raise HTTPException(status_code=401, detail="Authentication is not configured")

    try:
        payload = jwt.decode(
            credentials.credentials,
            secret,
            algorithms=[JWT_ALGORITHM],
            audience=JWT_AUDIENCE
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")

    return {"id": user_id, "email": payload.get("email")}


def require_same_user(user: dict, user_id: str):
    """Reject requests that act on another user's account."""
    if user["id"] != user_id:
        raise HTTPException(status_code=403, detail="Cannot act on another user's account")
