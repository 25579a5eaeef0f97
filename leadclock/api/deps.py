"""
API dependencies - shared across all routes.
"""
import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from leadclock.core.exceptions import UnauthorizedError, ForbiddenError
from leadclock.core.security import decode_access_token, verify_maintenance_token
from leadclock.models.workspace import MemberRoles


bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class RequestContext:
    """Caller identity resolved from the bearer token."""
    user_id: uuid.UUID
    workspace_id: uuid.UUID
    role: str

    @property
    def is_manager(self) -> bool:
        return self.role in MemberRoles.MANAGEMENT


async def get_request_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)
) -> RequestContext:
    """Decode the bearer JWT into a RequestContext."""
    if not credentials:
        raise UnauthorizedError()

    payload = decode_access_token(credentials.credentials)
    if not payload:
        raise UnauthorizedError()

    try:
        return RequestContext(
            user_id=uuid.UUID(payload["user_id"]),
            workspace_id=uuid.UUID(payload["workspace_id"]),
            role=payload.get("role") or MemberRoles.AGENT
        )
    except (KeyError, ValueError, TypeError):
        raise UnauthorizedError("Token is missing identity claims")


async def require_manager(context: RequestContext = Depends(get_request_context)) -> RequestContext:
    """Owners, admins and managers only."""
    if not context.is_manager:
        raise ForbiddenError("Only workspace managers can do this")
    return context


async def require_maintenance_token(
    x_maintenance_token: Optional[str] = Header(default=None)
) -> None:
    """Guard for cron-style maintenance endpoints."""
    if not verify_maintenance_token(x_maintenance_token):
        raise UnauthorizedError("Invalid maintenance token")
