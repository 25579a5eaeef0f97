"""
Escalation engine - staged alerts for leads whose SLA clock is running.
REMINDER -> REASSIGN -> MANAGER_ALERT, at most one new level per lead per pass.
"""
import uuid
import logging
from datetime import datetime
from typing import Optional, List, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel.ext.asyncio.session import AsyncSession

from leadclock.config import settings
from leadclock.models.escalation import EscalationLevels
from leadclock.models.event_log import EventTypes
from leadclock.models.lead import Lead
from leadclock.models.workspace import User
from leadclock.repositories.event_repo import EventLogRepository
from leadclock.repositories.lead_repo import LeadRepository
from leadclock.repositories.member_repo import MemberRepository, WorkspaceRepository
from leadclock.repositories.sla_repo import SLAStateRepository, EscalationRepository
from leadclock.schemas.sla import EscalationSummary
from leadclock.services.notification_service import NotificationService, lead_link

logger = logging.getLogger(__name__)

LEVEL_EVENT_TYPES = {
    EscalationLevels.REMINDER: EventTypes.ESCALATION_REMINDER,
    EscalationLevels.REASSIGN: EventTypes.ESCALATION_REASSIGN,
    EscalationLevels.MANAGER_ALERT: EventTypes.ESCALATION_MANAGER_ALERT,
}


def level_thresholds() -> List[Tuple[str, float]]:
    return [
        (EscalationLevels.REMINDER, settings.ESCALATION_REMIND_AT_PCT),
        (EscalationLevels.REASSIGN, settings.ESCALATION_REASSIGN_AT_PCT),
        (EscalationLevels.MANAGER_ALERT, settings.ESCALATION_MANAGER_ALERT_AT_PCT),
    ]


def compute_elapsed_pct(started_at: datetime, deadline_at: datetime, now: datetime) -> float:
    """Share of the SLA window consumed, in percent (window floored at 1 second)."""
    total = max(1.0, (deadline_at - started_at).total_seconds())
    elapsed = max(0.0, (now - started_at).total_seconds())
    return elapsed / total * 100


def next_level(highest: Optional[str], owner_available: bool) -> Optional[str]:
    """
    The only level a lead may move to next.
    Without an available owner a reminder is pointless, so REASSIGN comes first.
    """
    if highest is None:
        return EscalationLevels.REMINDER if owner_available else EscalationLevels.REASSIGN
    rank = EscalationLevels.rank(highest)
    if rank + 1 >= len(EscalationLevels.ORDER):
        return None
    return EscalationLevels.ORDER[rank + 1]


class EscalationService:
    """Service for staged lead escalation."""

    def __init__(self, session: AsyncSession, notifications: Optional[NotificationService] = None):
        self.session = session
        self.sla_repo = SLAStateRepository(session)
        self.escalation_repo = EscalationRepository(session)
        self.lead_repo = LeadRepository(session)
        self.member_repo = MemberRepository(session)
        self.workspace_repo = WorkspaceRepository(session)
        self.event_repo = EventLogRepository(session)
        self.notifications = notifications or NotificationService(session)

    async def detect_escalations(
        self,
        workspace_id: uuid.UUID,
        now: Optional[datetime] = None
    ) -> EscalationSummary:
        """Evaluate every running clock of a workspace against the thresholds."""
        now = now or datetime.utcnow()
        thresholds = dict(level_thresholds())
        running = await self.sla_repo.list_running_for_workspace(workspace_id)
        targets = [(state.lead_id, state.started_at, state.deadline_at) for state, _ in running]
        await self.session.commit()

        summary = EscalationSummary()
        for lead_id, started_at, deadline_at in targets:
            summary.evaluated += 1
            lead = await self.lead_repo.get(lead_id)
            elapsed_pct = compute_elapsed_pct(started_at, deadline_at, now)

            owner_available = False
            if lead.owner_user_id:
                owner_available = await self.member_repo.get_available_member(
                    workspace_id, lead.owner_user_id
                ) is not None

            highest = await self.escalation_repo.highest_level(lead_id)
            level = next_level(highest, owner_available)
            if level is None or elapsed_pct < thresholds[level]:
                continue

            created = await self._record_level(lead, level, elapsed_pct, thresholds[level], now)
            if not created:
                continue

            if level == EscalationLevels.REMINDER:
                summary.reminders += 1
            elif level == EscalationLevels.REASSIGN:
                summary.reassignments += 1
            else:
                summary.manager_alerts += 1

            await self._apply_side_effects(lead_id, level, elapsed_pct, now)

        if summary.reminders or summary.reassignments or summary.manager_alerts:
            logger.info(
                f"Escalations for workspace {workspace_id}: evaluated={summary.evaluated} "
                f"reminders={summary.reminders} reassignments={summary.reassignments} "
                f"manager_alerts={summary.manager_alerts}"
            )
        return summary

    async def detect_all(self, now: Optional[datetime] = None) -> EscalationSummary:
        """detect_escalations over every workspace."""
        now = now or datetime.utcnow()
        workspace_ids = [workspace.id for workspace in await self.workspace_repo.list(order_desc=False)]
        total = EscalationSummary()
        for workspace_id in workspace_ids:
            summary = await self.detect_escalations(workspace_id, now)
            total.evaluated += summary.evaluated
            total.reminders += summary.reminders
            total.reassignments += summary.reassignments
            total.manager_alerts += summary.manager_alerts
        return total

    async def _record_level(
        self,
        lead: Lead,
        level: str,
        elapsed_pct: float,
        threshold_pct: float,
        now: datetime
    ) -> bool:
        """Insert the escalation event; False when another pass already did."""
        if await self.escalation_repo.exists(lead.id, level):
            return False

        lead_id = lead.id
        try:
            await self.escalation_repo.create({
                "lead_id": lead_id,
                "workspace_id": lead.workspace_id,
                "level": level,
                "elapsed_pct": round(elapsed_pct, 2),
                "threshold_pct": threshold_pct,
                "created_at": now
            })
        except IntegrityError:
            await self.session.rollback()
            logger.warning(f"Escalation {level} for lead {lead_id} lost a race, skipping")
            return False

        await self.event_repo.append(
            lead_id=lead_id,
            workspace_id=lead.workspace_id,
            event_type=LEVEL_EVENT_TYPES[level],
            payload={
                "level": level,
                "elapsed_pct": round(elapsed_pct, 2),
                "threshold_pct": threshold_pct,
                "owner_user_id": str(lead.owner_user_id) if lead.owner_user_id else None
            },
            occurred_at=now
        )
        await self.session.commit()
        return True

    async def _apply_side_effects(self, lead_id: uuid.UUID, level: str, elapsed_pct: float, now: datetime) -> None:
        """Notifications after the escalation is committed; failures are only recorded."""
        lead = await self.lead_repo.get(lead_id)
        workspace_id = lead.workspace_id
        try:
            if level == EscalationLevels.REMINDER:
                await self._remind_owner(lead, elapsed_pct)
            elif level == EscalationLevels.REASSIGN:
                await self._reassign(lead, now)
            else:
                await self._alert_managers(lead, elapsed_pct)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Escalation {level} notification for lead {lead_id} failed: {e}")
            await self.event_repo.append(
                lead_id=lead_id,
                workspace_id=workspace_id,
                event_type=EventTypes.ESCALATION_NOTIFICATION_BLOCKED,
                payload={"level": level, "reason": "enqueue_error"}
            )
            await self.session.commit()

    async def _notify(self, lead: Lead, user: User, text: str, level: str) -> None:
        await self.notifications.notify_member(
            lead, user, text, EventTypes.ESCALATION_NOTIFICATION_BLOCKED, {"level": level}
        )

    async def _remind_owner(self, lead: Lead, elapsed_pct: float) -> None:
        row = await self.member_repo.get_member(lead.workspace_id, lead.owner_user_id)
        if row is None:
            return
        _, owner = row
        text = (
            f"Reminder: lead {lead.display_name} is at {int(elapsed_pct)}% of its response window "
            f"with no contact yet.\n{lead_link(lead.id)}"
        )
        await self._notify(lead, owner, text, EscalationLevels.REMINDER)

    async def _reassign(self, lead: Lead, now: datetime) -> None:
        previous_owner_id = lead.owner_user_id
        candidate = await self.member_repo.next_available_agent(lead.workspace_id, exclude_user_id=previous_owner_id)
        if candidate is None:
            logger.warning(f"No available agent to reassign lead {lead.id}")
            return

        member, new_owner = candidate
        await self.lead_repo.set_owner(lead.id, new_owner.id)
        await self.member_repo.touch_assigned(member.id, now)
        await self.event_repo.append(
            lead_id=lead.id,
            workspace_id=lead.workspace_id,
            event_type=EventTypes.LEAD_REASSIGNED,
            payload={
                "previous_owner_user_id": str(previous_owner_id) if previous_owner_id else None,
                "owner_user_id": str(new_owner.id),
                "method": "escalation"
            },
            occurred_at=now
        )
        await self._notify(
            lead, new_owner,
            f"Lead {lead.display_name} was assigned to you by escalation. Contact them now.\n{lead_link(lead.id)}",
            EscalationLevels.REASSIGN
        )
        if previous_owner_id:
            row = await self.member_repo.get_member(lead.workspace_id, previous_owner_id)
            if row is not None:
                await self._notify(
                    lead, row[1],
                    f"Lead {lead.display_name} was moved to another agent.",
                    EscalationLevels.REASSIGN
                )

    async def _alert_managers(self, lead: Lead, elapsed_pct: float) -> None:
        text = (
            f"Manager alert: lead {lead.display_name} is at {int(elapsed_pct)}% of its response window "
            f"with no proof of contact.\n{lead_link(lead.id)}"
        )
        for _, manager in await self.member_repo.list_managers(lead.workspace_id):
            await self._notify(lead, manager, text, EscalationLevels.MANAGER_ALERT)
