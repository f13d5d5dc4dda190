from datetime import datetime, timedelta, timezone

from fastapi import Header
from jose import JWTError, jwt

from consumerauth.config import settings
from consumerauth.core.actor import ANONYMOUS, Actor
from consumerauth.core.exceptions import UnauthorizedError


def create_user_token(actor: Actor) -> str:
    """Create a JWT describing an authenticated user."""
    expire = datetime.now(timezone.utc) + timedelta(hours=settings.jwt_expire_hours)
    payload = {
        "sub": str(actor.id),
        "name": actor.name,
        "email": actor.email,
        "email_verified": actor.email_confirmed,
        "roles": sorted(actor.roles),
        "blocked": actor.blocked,
        "locked": actor.locked,
        "type": "user",
        "exp": expire,
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Actor:
    """Decode and validate a user JWT. Returns the Actor it describes."""
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise UnauthorizedError("Invalid or expired token")
    if payload.get("sub") is None:
        raise UnauthorizedError("Token missing subject")
    if payload.get("type") != "user":
        raise UnauthorizedError("Not a user token")
    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError):
        raise UnauthorizedError("Token subject is not a user id")
    return Actor(
        id=user_id,
        name=payload.get("name", ""),
        email=payload.get("email", ""),
        email_confirmed=bool(payload.get("email_verified")),
        roles=frozenset(payload.get("roles") or ()),
        blocked=bool(payload.get("blocked")),
        locked=bool(payload.get("locked")),
    )


def get_current_actor(authorization: str = Header(None)) -> Actor:
    """FastAPI dependency that extracts the Actor from the Authorization header.

    Missing credentials yield the anonymous actor so the lifecycle checks can
    report ``not_logged_in`` themselves.
    """
    if not authorization:
        return ANONYMOUS

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise UnauthorizedError("Authorization header must be: Bearer <token>")

    return decode_token(parts[1])
