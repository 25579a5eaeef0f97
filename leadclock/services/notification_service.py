"""
Agent notifications over WhatsApp.
Handover alerts, escalation notices, agent replies and outcome follow-ups.
All outgoing text goes through the dispatch queue.
"""
import uuid
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlmodel.ext.asyncio.session import AsyncSession

from leadclock.config import settings
from leadclock.models.agent_reply import PendingAgentReply, AgentReplyTypes
from leadclock.models.event_log import EventTypes
from leadclock.models.lead import Lead
from leadclock.models.outbound import OutboundMessage, MessageRecipients
from leadclock.models.proof import ProofChannels
from leadclock.models.workspace import User
from leadclock.repositories.event_repo import EventLogRepository
from leadclock.repositories.lead_repo import LeadRepository
from leadclock.repositories.member_repo import MemberRepository, UserRepository
from leadclock.repositories.outbound_repo import AgentReplyRepository
from leadclock.schemas.messaging import AgentReplyResult, FollowupSummary
from leadclock.services.dispatch_service import DispatchService
from leadclock.services.proof_service import ProofService

logger = logging.getLogger(__name__)

HANDOVER_CONFIRMED = "1"
HANDOVER_DECLINED = "2"

HANDOVER_OPTIONS = {
    HANDOVER_CONFIRMED: "confirmed",
    HANDOVER_DECLINED: "declined",
}

OUTCOME_OPTIONS = {
    "1": "meeting_scheduled",
    "2": "not_interested",
    "3": "still_talking",
}

OUTCOME_LABELS = {
    "meeting_scheduled": "Meeting scheduled",
    "not_interested": "Not interested",
    "still_talking": "Still talking",
}

HANDOVER_HELP_TEXT = "Reply with 1 or 2:\n1 - I'm on it\n2 - Can't take it now"
OUTCOME_HELP_TEXT = "Reply with 1, 2 or 3:\n1 - Meeting scheduled\n2 - Not interested\n3 - Still talking"


def lead_link(lead_id: uuid.UUID) -> str:
    return f"{settings.APP_BASE_URL.rstrip('/')}/app/leads/{lead_id}"


def build_handover_message(lead: Lead, reason: Optional[str]) -> str:
    """Text sent to the agent taking over a lead."""
    return "\n".join([
        "New lead to take over",
        f"Name: {lead.display_name}",
        f"Phone: {(lead.phone or '').strip() or '-'}",
        f"Email: {(lead.email or '').strip() or '-'}",
        f"Reason: {(reason or '').strip() or 'Autopilot handover'}",
        f"Link: {lead_link(lead.id)}",
        "",
        HANDOVER_HELP_TEXT,
    ])


class NotificationService:
    """Service for agent-facing WhatsApp notifications."""

    def __init__(self, session: AsyncSession, dispatch: Optional[DispatchService] = None):
        self.session = session
        self.dispatch = dispatch or DispatchService(session)
        self.reply_repo = AgentReplyRepository(session)
        self.lead_repo = LeadRepository(session)
        self.member_repo = MemberRepository(session)
        self.user_repo = UserRepository(session)
        self.event_repo = EventLogRepository(session)

    async def notify_member(
        self,
        lead: Lead,
        user: User,
        text: str,
        blocked_event_type: str,
        context: Optional[dict] = None
    ) -> Optional[OutboundMessage]:
        """
        Queue a message to a workspace member. Missing phone appends
        blocked_event_type instead. Does not commit.
        """
        phone = (user.phone or "").strip()
        if not phone:
            payload = {"reason": "missing_agent_phone", "user_id": str(user.id)}
            payload.update(context or {})
            await self.event_repo.append(
                lead_id=lead.id,
                workspace_id=lead.workspace_id,
                event_type=blocked_event_type,
                payload=payload
            )
            logger.warning(f"Notification to user {user.id} for lead {lead.id} blocked: missing phone")
            return None

        return await self.dispatch.enqueue_message(
            lead_id=lead.id,
            workspace_id=lead.workspace_id,
            text=text,
            to_phone=phone,
            recipient=MessageRecipients.AGENT
        )

    async def notify_handover(
        self,
        lead: Lead,
        agent: User,
        scenario_id: Optional[uuid.UUID],
        reason: Optional[str]
    ) -> Optional[PendingAgentReply]:
        """
        Queue the handover alert and track the agent's confirmation.
        Does not commit.
        """
        context = {"handover_user_id": str(agent.id), "scenario_id": str(scenario_id) if scenario_id else None}
        message = await self.notify_member(
            lead,
            agent,
            build_handover_message(lead, reason),
            EventTypes.HANDOVER_NOTIFICATION_BLOCKED,
            context
        )
        if message is None:
            return None

        pending = await self.reply_repo.create({
            "lead_id": lead.id,
            "workspace_id": lead.workspace_id,
            "agent_user_id": agent.id,
            "agent_phone": message.to_phone,
            "type": AgentReplyTypes.HANDOVER_CONFIRMATION,
            "expires_at": datetime.utcnow() + timedelta(hours=settings.PENDING_REPLY_TTL_HOURS),
            "outbound_message_id": message.id
        })
        await self.event_repo.append(
            lead_id=lead.id,
            workspace_id=lead.workspace_id,
            event_type=EventTypes.HANDOVER_NOTIFICATION_QUEUED,
            payload={**context, "outbound_message_id": str(message.id), "to_phone": message.to_phone}
        )
        return pending

    async def process_agent_reply(self, agent_phone: str, text: str) -> Optional[AgentReplyResult]:
        """
        Handle an agent's WhatsApp answer to a pending question.
        Returns None when the phone has no open question.
        """
        now = datetime.utcnow()
        pending = await self.reply_repo.get_open_for_agent(agent_phone, now)
        if not pending:
            return None

        answer = text.strip()
        if pending.type == AgentReplyTypes.HANDOVER_CONFIRMATION:
            return await self._handover_reply(pending, answer, now)
        if pending.type == AgentReplyTypes.OUTCOME_FOLLOWUP:
            return await self._outcome_reply(pending, answer, now)
        return AgentReplyResult(ok=False, action="unknown_type", lead_id=pending.lead_id)

    async def _send_help(self, pending: PendingAgentReply, help_text: str) -> AgentReplyResult:
        await self.dispatch.enqueue_message(
            lead_id=pending.lead_id,
            workspace_id=pending.workspace_id,
            text=help_text,
            to_phone=pending.agent_phone,
            recipient=MessageRecipients.AGENT
        )
        await self.session.commit()
        return AgentReplyResult(ok=True, action="help_sent", lead_id=pending.lead_id)

    async def _handover_reply(self, pending: PendingAgentReply, answer: str, now: datetime) -> AgentReplyResult:
        lead_id = pending.lead_id
        action = HANDOVER_OPTIONS.get(answer)
        if not action:
            return await self._send_help(pending, HANDOVER_HELP_TEXT)

        if not await self.reply_repo.mark_replied(pending.id, answer, now):
            await self.session.rollback()
            return AgentReplyResult(ok=False, action="already_replied", lead_id=lead_id)

        workspace_id = pending.workspace_id
        agent_user_id = pending.agent_user_id
        event_payload = {
            "agent_user_id": str(agent_user_id),
            "agent_phone": pending.agent_phone,
            "channel": ProofChannels.WHATSAPP
        }

        if action == "confirmed":
            await self.event_repo.append(
                lead_id=lead_id,
                workspace_id=workspace_id,
                event_type=EventTypes.AGENT_CONFIRMED_HANDOVER,
                payload=event_payload,
                actor_user_id=agent_user_id,
                occurred_at=now
            )
            await self.lead_repo.claim_owner(lead_id, agent_user_id)
            await self.session.commit()

            await ProofService(self.session).record_manual_proof(
                workspace_id=workspace_id,
                lead_id=lead_id,
                user_id=agent_user_id,
                channel=ProofChannels.WHATSAPP,
                note="Agent confirmed handover via WhatsApp"
            )
            logger.info(f"Agent {agent_user_id} confirmed handover of lead {lead_id}")
            return AgentReplyResult(ok=True, action="agent_confirmed", lead_id=lead_id)

        await self.event_repo.append(
            lead_id=lead_id,
            workspace_id=workspace_id,
            event_type=EventTypes.AGENT_DECLINED_HANDOVER,
            payload=event_payload,
            actor_user_id=agent_user_id,
            occurred_at=now
        )
        lead = await self.lead_repo.get(lead_id)
        agent = await self.user_repo.get(agent_user_id)
        agent_label = (agent.full_name or agent.email) if agent else "Agent"
        text = f"{agent_label} can't take lead {lead.display_name}. The lead needs reassignment.\n{lead_link(lead_id)}"
        for _, manager in await self.member_repo.list_managers(workspace_id):
            await self.notify_member(
                lead, manager, text, EventTypes.HANDOVER_NOTIFICATION_BLOCKED,
                {"declined_by": str(agent_user_id)}
            )
        await self.session.commit()
        logger.info(f"Agent {agent_user_id} declined handover of lead {lead_id}")
        return AgentReplyResult(ok=True, action="agent_declined", lead_id=lead_id)

    async def _outcome_reply(self, pending: PendingAgentReply, answer: str, now: datetime) -> AgentReplyResult:
        lead_id = pending.lead_id
        outcome = OUTCOME_OPTIONS.get(answer)
        if not outcome:
            return await self._send_help(pending, OUTCOME_HELP_TEXT)

        if not await self.reply_repo.mark_replied(pending.id, answer, now):
            await self.session.rollback()
            return AgentReplyResult(ok=False, action="already_replied", lead_id=lead_id)

        await self.event_repo.append(
            lead_id=pending.lead_id,
            workspace_id=pending.workspace_id,
            event_type=EventTypes.AGENT_OUTCOME_REPORTED,
            payload={
                "agent_user_id": str(pending.agent_user_id),
                "outcome": outcome,
                "outcome_label": OUTCOME_LABELS[outcome],
                "channel": ProofChannels.WHATSAPP
            },
            actor_user_id=pending.agent_user_id,
            occurred_at=now
        )
        await self.session.commit()
        return AgentReplyResult(ok=True, action=f"outcome_{outcome}", lead_id=pending.lead_id)

    async def send_outcome_followups(self, now: Optional[datetime] = None) -> FollowupSummary:
        """
        Ask agents how confirmed handovers went, once per lead,
        OUTCOME_FOLLOWUP_DELAY_HOURS after the confirmation.
        """
        now = now or datetime.utcnow()
        cutoff = now - timedelta(hours=settings.OUTCOME_FOLLOWUP_DELAY_HOURS)
        candidates = await self.reply_repo.list_followup_candidates(cutoff, HANDOVER_CONFIRMED)

        summary = FollowupSummary()
        seen = set()
        for reply in candidates:
            if reply.lead_id in seen or await self.reply_repo.has_followup(reply.lead_id):
                continue
            seen.add(reply.lead_id)

            lead = await self.lead_repo.get(reply.lead_id)
            lead_name = lead.display_name if lead and lead.display_name != "-" else "the lead"
            text = "\n".join([
                f"How did it go with {lead_name}?",
                "",
                OUTCOME_HELP_TEXT.split("\n", 1)[1],
            ])
            message = await self.dispatch.enqueue_message(
                lead_id=reply.lead_id,
                workspace_id=reply.workspace_id,
                text=text,
                to_phone=reply.agent_phone,
                recipient=MessageRecipients.AGENT
            )
            await self.reply_repo.create({
                "lead_id": reply.lead_id,
                "workspace_id": reply.workspace_id,
                "agent_user_id": reply.agent_user_id,
                "agent_phone": reply.agent_phone,
                "type": AgentReplyTypes.OUTCOME_FOLLOWUP,
                "expires_at": now + timedelta(hours=settings.PENDING_REPLY_TTL_HOURS),
                "outbound_message_id": message.id
            })
            await self.event_repo.append(
                lead_id=reply.lead_id,
                workspace_id=reply.workspace_id,
                event_type=EventTypes.OUTCOME_FOLLOWUP_QUEUED,
                payload={"agent_user_id": str(reply.agent_user_id), "outbound_message_id": str(message.id)},
                occurred_at=now
            )
            await self.session.commit()
            summary.followups_queued += 1

        if summary.followups_queued:
            logger.info(f"Queued {summary.followups_queued} outcome follow-ups")
        return summary

    async def expire_pending_replies(self, now: Optional[datetime] = None) -> int:
        """PENDING -> EXPIRED for questions past their deadline."""
        expired = await self.reply_repo.expire_due(now or datetime.utcnow())
        await self.session.commit()
        if expired:
            logger.info(f"Expired {expired} pending agent replies")
        return expired
