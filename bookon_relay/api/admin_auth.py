"""
Admin authentication dependency - BookOn JWT bearer token with role == "admin".
"""
import logging

from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from bookon_relay.database import get_db
from bookon_relay.models.user import User

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Dependency to extract and verify the user from a JWT Bearer token."""
    import jwt as pyjwt
    from bookon_relay.realtime.auth import decode_access_token, token_subject
    from bookon_relay.services.business_store import get_active_user

    try:
        payload = decode_access_token(credentials.credentials)
    except pyjwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except pyjwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = token_subject(payload)
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token payload")

    user = await get_active_user(db, user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    return user


async def get_current_admin(
    user: User = Depends(get_current_user),
) -> User:
    """Dependency that requires the authenticated user to be an admin."""
    if user.role != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
