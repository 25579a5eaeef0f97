"""
Outbound message, proof and pending agent reply repositories.
"""
import uuid
from typing import Optional, List
from datetime import datetime

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from leadclock.models.outbound import OutboundMessage, MessageStatus
from leadclock.models.proof import ProofEvent
from leadclock.models.agent_reply import PendingAgentReply, AgentReplyStatus, AgentReplyTypes
from leadclock.repositories.base import BaseRepository


class OutboundMessageRepository(BaseRepository[OutboundMessage]):
    """Repository for OutboundMessage operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(OutboundMessage, session)

    async def list_queued(self, limit: int) -> List[OutboundMessage]:
        """Oldest queued messages first."""
        query = select(OutboundMessage).execution_options(populate_existing=True).where(
            OutboundMessage.status == MessageStatus.QUEUED
        ).order_by(OutboundMessage.created_at).limit(limit)
        result = await self.session.exec(query)
        return result.all()

    async def transition(self, message_id: uuid.UUID, status: str, values: dict) -> bool:
        """QUEUED -> SENT/FAILED, exactly once."""
        values = dict(values)
        values["status"] = status
        rows = await self.guarded_update(
            OutboundMessage.id == message_id,
            OutboundMessage.status == MessageStatus.QUEUED,
            values=values
        )
        return rows == 1

    async def stamp_status(
        self,
        lead_id: uuid.UUID,
        provider_message_id: str,
        field: str,
        when: datetime
    ) -> int:
        """Set delivered_at/read_at on the message a callback refers to."""
        column = getattr(OutboundMessage, field)
        return await self.guarded_update(
            OutboundMessage.lead_id == lead_id,
            OutboundMessage.provider_message_id == provider_message_id,
            column.is_(None),
            values={field: when}
        )


class ProofEventRepository(BaseRepository[ProofEvent]):
    """Repository for ProofEvent operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(ProofEvent, session)

    async def get_by_key(
        self,
        lead_id: uuid.UUID,
        channel: str,
        provider_message_id: str,
        type: str
    ) -> Optional[ProofEvent]:
        query = select(ProofEvent).execution_options(populate_existing=True).where(
            ProofEvent.lead_id == lead_id,
            ProofEvent.channel == channel,
            ProofEvent.provider_message_id == provider_message_id,
            ProofEvent.type == type
        )
        result = await self.session.exec(query)
        return result.first()


class AgentReplyRepository(BaseRepository[PendingAgentReply]):
    """Repository for PendingAgentReply operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(PendingAgentReply, session)

    async def list_followup_candidates(self, replied_before: datetime, confirmed_value: str) -> List[PendingAgentReply]:
        """Confirmed handovers old enough for an outcome question."""
        query = select(PendingAgentReply).execution_options(populate_existing=True).where(
            PendingAgentReply.type == AgentReplyTypes.HANDOVER_CONFIRMATION,
            PendingAgentReply.status == AgentReplyStatus.REPLIED,
            PendingAgentReply.reply_value == confirmed_value,
            PendingAgentReply.replied_at <= replied_before
        )
        result = await self.session.exec(query)
        return result.all()

    async def has_followup(self, lead_id: uuid.UUID) -> bool:
        query = select(PendingAgentReply.id).where(
            PendingAgentReply.lead_id == lead_id,
            PendingAgentReply.type == AgentReplyTypes.OUTCOME_FOLLOWUP
        )
        result = await self.session.exec(query)
        return result.first() is not None

    async def get_open_for_agent(self, agent_phone: str, now: datetime) -> Optional[PendingAgentReply]:
        """Most recent unexpired pending question for an agent phone."""
        query = select(PendingAgentReply).execution_options(populate_existing=True).where(
            PendingAgentReply.agent_phone == agent_phone,
            PendingAgentReply.status == AgentReplyStatus.PENDING,
            PendingAgentReply.expires_at > now
        ).order_by(PendingAgentReply.created_at.desc())
        result = await self.session.exec(query)
        return result.first()

    async def mark_replied(self, reply_id: uuid.UUID, value: str, when: datetime) -> bool:
        rows = await self.guarded_update(
            PendingAgentReply.id == reply_id,
            PendingAgentReply.status == AgentReplyStatus.PENDING,
            values={"status": AgentReplyStatus.REPLIED, "reply_value": value, "replied_at": when}
        )
        return rows == 1

    async def expire_due(self, now: datetime) -> int:
        return await self.guarded_update(
            PendingAgentReply.status == AgentReplyStatus.PENDING,
            PendingAgentReply.expires_at <= now,
            values={"status": AgentReplyStatus.EXPIRED}
        )
