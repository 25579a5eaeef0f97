"""
Request authentication.

Identity tokens are issued by the identity service and only verified here.
Maintenance endpoints (cron runners, provider callbacks) use a shared secret.
"""
import secrets
from datetime import datetime, timedelta
from typing import Optional

import jwt

from leadclock.config import settings

ACCESS_TOKEN_TYPE = "access"


def create_access_token(claims: dict, expires_in: Optional[timedelta] = None) -> str:
    """Sign an access token carrying user_id, workspace_id and role claims."""
    issued_at = datetime.utcnow()
    lifetime = expires_in or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    payload = {**claims, "type": ACCESS_TOKEN_TYPE, "iat": issued_at, "exp": issued_at + lifetime}
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> Optional[dict]:
    """Claims of a valid, unexpired access token, or None."""
    try:
        claims = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
            options={"require": ["exp"]}
        )
    except jwt.InvalidTokenError:
        return None
    if claims.get("type") != ACCESS_TOKEN_TYPE:
        return None
    return claims


def verify_maintenance_token(candidate: Optional[str]) -> bool:
    if not candidate or not settings.MAINTENANCE_TOKEN:
        return False
    return secrets.compare_digest(candidate, settings.MAINTENANCE_TOKEN)
