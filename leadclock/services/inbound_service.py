"""
Inbound WhatsApp routing.
A message from an agent with an open question is an agent reply;
otherwise it is matched to a lead of the workspace by phone.
"""
import logging
from typing import Optional

from sqlmodel.ext.asyncio.session import AsyncSession

from leadclock.models.autopilot import RunStatus
from leadclock.models.event_log import EventTypes
from leadclock.repositories.autopilot_repo import AutopilotRunRepository
from leadclock.repositories.event_repo import EventLogRepository
from leadclock.repositories.lead_repo import LeadRepository
from leadclock.schemas.messaging import InboundWhatsApp, InboundResult
from leadclock.services.autopilot_service import AutopilotService
from leadclock.services.notification_service import NotificationService

logger = logging.getLogger(__name__)


def normalize_phone(phone: str) -> str:
    """Strip the provider's channel prefix ("whatsapp:+40...")."""
    value = (phone or "").strip()
    if value.lower().startswith("whatsapp:"):
        value = value[len("whatsapp:"):]
    return value.strip()


class InboundService:
    """Routes inbound WhatsApp messages."""

    def __init__(self, session: AsyncSession, autopilot: Optional[AutopilotService] = None):
        self.session = session
        self.autopilot = autopilot or AutopilotService(session)
        self.notifications = NotificationService(session, self.autopilot.dispatch)
        self.lead_repo = LeadRepository(session)
        self.run_repo = AutopilotRunRepository(session)
        self.event_repo = EventLogRepository(session)

    async def handle_whatsapp(self, inbound: InboundWhatsApp) -> InboundResult:
        phone = normalize_phone(inbound.from_phone)

        agent_result = await self.notifications.process_agent_reply(phone, inbound.text)
        if agent_result is not None:
            return InboundResult(
                handled_as="agent_reply",
                lead_id=agent_result.lead_id,
                action=agent_result.action
            )

        lead = await self.lead_repo.find_by_phone(inbound.workspace_id, phone)
        if not lead:
            logger.warning(f"Inbound WhatsApp from unknown number in workspace {inbound.workspace_id}")
            return InboundResult(handled_as="unmatched")

        run = await self.run_repo.get_by_lead(lead.id)
        if not run:
            # First contact from the lead's side: open the conversation, keep the text on the timeline
            await self.event_repo.append(
                lead_id=lead.id,
                workspace_id=lead.workspace_id,
                event_type=EventTypes.AUTOPILOT_INBOUND,
                payload={
                    "text": inbound.text,
                    "node_before": None,
                    "provider_message_id": inbound.provider_message_id
                }
            )
            await self.session.commit()
            result = await self.autopilot.start_autopilot(lead.workspace_id, lead.id)
            action = "autopilot_started" if result.created else "noop"
            return InboundResult(handled_as="lead_reply", lead_id=lead.id, action=action)

        reply = await self.autopilot.process_autopilot_reply(lead.id, inbound.text, lead.workspace_id)
        if reply.stale:
            action = "stale"
        elif reply.handed_over:
            action = "handed_over"
        elif reply.status != RunStatus.ACTIVE:
            action = "recorded"
        else:
            action = "replied"
        return InboundResult(handled_as="lead_reply", lead_id=lead.id, action=action)
