"""
SLA state and escalation repositories.
"""
import uuid
from typing import Optional, List, Tuple
from datetime import datetime

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from leadclock.models.sla import SLAState
from leadclock.models.lead import Lead
from leadclock.models.escalation import EscalationEvent, EscalationLevels
from leadclock.repositories.base import BaseRepository


class SLAStateRepository(BaseRepository[SLAState]):
    """Repository for SLAState operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(SLAState, session)

    async def get_by_lead(self, lead_id: uuid.UUID) -> Optional[SLAState]:
        return await self.get_by_field("lead_id", lead_id)

    async def stop(
        self,
        lead_id: uuid.UUID,
        reason: str,
        proof_event_id: Optional[uuid.UUID] = None,
        stopped_at: Optional[datetime] = None
    ) -> bool:
        """Stop the clock unless it is already stopped."""
        rows = await self.guarded_update(
            SLAState.lead_id == lead_id,
            SLAState.stopped_at.is_(None),
            values={
                "stopped_at": stopped_at or datetime.utcnow(),
                "stop_reason": reason,
                "stop_proof_event_id": proof_event_id,
            }
        )
        return rows == 1

    async def mark_breached(self, state_id: uuid.UUID, breached_at: datetime) -> bool:
        """Set breached_at on a running clock."""
        rows = await self.guarded_update(
            SLAState.id == state_id,
            SLAState.breached_at.is_(None),
            SLAState.stopped_at.is_(None),
            values={"breached_at": breached_at}
        )
        return rows == 1

    async def list_breach_candidates(self, now: datetime) -> List[SLAState]:
        query = select(SLAState).execution_options(populate_existing=True).where(
            SLAState.stopped_at.is_(None),
            SLAState.breached_at.is_(None),
            SLAState.deadline_at <= now
        )
        result = await self.session.exec(query)
        return result.all()

    async def list_running_for_workspace(self, workspace_id: uuid.UUID) -> List[Tuple[SLAState, Lead]]:
        """Running clocks of a workspace with their leads."""
        query = (
            select(SLAState, Lead).execution_options(populate_existing=True)
            .join(Lead, Lead.id == SLAState.lead_id)
            .where(
                Lead.workspace_id == workspace_id,
                SLAState.stopped_at.is_(None),
                SLAState.breached_at.is_(None)
            )
        )
        result = await self.session.exec(query)
        return result.all()


class EscalationRepository(BaseRepository[EscalationEvent]):
    """Repository for EscalationEvent operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(EscalationEvent, session)

    async def highest_level(self, lead_id: uuid.UUID) -> Optional[str]:
        """Most severe level recorded for a lead, or None."""
        query = select(EscalationEvent.level).where(EscalationEvent.lead_id == lead_id)
        result = await self.session.exec(query)
        levels = result.all()
        if not levels:
            return None
        return max(levels, key=EscalationLevels.rank)

    async def exists(self, lead_id: uuid.UUID, level: str) -> bool:
        query = select(EscalationEvent.id).where(
            EscalationEvent.lead_id == lead_id,
            EscalationEvent.level == level
        )
        result = await self.session.exec(query)
        return result.first() is not None

    async def list_for_lead(self, lead_id: uuid.UUID) -> List[EscalationEvent]:
        query = select(EscalationEvent).execution_options(populate_existing=True).where(
            EscalationEvent.lead_id == lead_id
        ).order_by(EscalationEvent.created_at)
        result = await self.session.exec(query)
        return result.all()
