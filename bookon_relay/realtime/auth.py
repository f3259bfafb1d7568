"""
Realtime credential and room-access collaborators.

Tokens are issued by the main BookOn API (HS256, claims: userId/sub, role, exp);
the relay only verifies them. Both checks hit the users table so a
deactivated account loses access immediately.
"""
import logging
from typing import Optional

logger = logging.getLogger(__name__)


def decode_access_token(token: str) -> dict:
    """Decode and verify a BookOn access token. Raises jwt.InvalidTokenError."""
    import jwt
    from bookon_relay.config import get_settings
    settings = get_settings()
    secret = settings.jwt_secret or settings.app_secret_key
    if not secret:
        raise jwt.InvalidTokenError("JWT secret not configured")
    return jwt.decode(token, secret, algorithms=[settings.jwt_algorithm])


def token_subject(payload: dict) -> Optional[str]:
    subject = payload.get("userId") or payload.get("user_id") or payload.get("sub")
    return str(subject) if subject else None


async def authenticate_token(token: str) -> Optional[str]:
    """Resolve a token to an active user's id, or None."""
    import jwt
    if not token:
        return None
    try:
        payload = decode_access_token(token)
    except jwt.ExpiredSignatureError:
        logger.info("Realtime token expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.info("Realtime token rejected: %s", str(e))
        return None

    user_id = token_subject(payload)
    if not user_id:
        return None

    from bookon_relay.database import async_session_factory
    from bookon_relay.services.business_store import get_active_user
    async with async_session_factory() as db:
        user = await get_active_user(db, user_id)
    if user is None:
        logger.info("Realtime token for unknown or inactive user %s", user_id[:8])
        return None
    return str(user.id)


async def authorize_room(identity: str, room_id: str) -> bool:
    """Admins may join any venue room; other users only their own venue."""
    from bookon_relay.database import async_session_factory
    from bookon_relay.services.business_store import get_active_user
    async with async_session_factory() as db:
        user = await get_active_user(db, identity)
    if user is None:
        return False
    if user.role == "admin":
        return True
    return user.venue_id is not None and str(user.venue_id) == str(room_id)
