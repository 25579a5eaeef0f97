"""
Event log repository.
"""
import uuid
from typing import Optional
from datetime import datetime

from sqlmodel.ext.asyncio.session import AsyncSession

from leadclock.core.pagination import Page
from leadclock.models.event_log import EventLog
from leadclock.repositories.base import BaseRepository


class EventLogRepository(BaseRepository[EventLog]):
    """Repository for EventLog operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(EventLog, session)

    async def append(
        self,
        lead_id: uuid.UUID,
        workspace_id: uuid.UUID,
        event_type: str,
        payload: Optional[dict] = None,
        actor_user_id: Optional[uuid.UUID] = None,
        occurred_at: Optional[datetime] = None
    ) -> EventLog:
        """Add an event inside the caller's transaction."""
        event = EventLog(
            lead_id=lead_id,
            workspace_id=workspace_id,
            event_type=event_type,
            payload=payload or {},
            actor_user_id=actor_user_id,
            occurred_at=occurred_at or datetime.utcnow()
        )
        self.session.add(event)
        await self.session.flush()
        return event

    async def list_for_lead(
        self,
        workspace_id: uuid.UUID,
        lead_id: uuid.UUID,
        page: int = 1,
        limit: int = 50
    ) -> Page:
        """Lead timeline, newest first."""
        return await self.list_paginated(
            workspace_id=workspace_id,
            filters={"lead_id": lead_id},
            page=page,
            limit=limit,
            order_by="occurred_at"
        )
