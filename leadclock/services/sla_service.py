"""
SLA clock engine - start, stop and breach detection.
Every transition is a guarded update so concurrent callers are safe.
"""
import uuid
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel.ext.asyncio.session import AsyncSession

from leadclock.core.exceptions import NotFoundError, SLAAlreadyRunningError
from leadclock.models.event_log import EventTypes
from leadclock.models.sla import SLAState
from leadclock.repositories.event_repo import EventLogRepository
from leadclock.repositories.lead_repo import LeadRepository
from leadclock.repositories.sla_repo import SLAStateRepository
from leadclock.schemas.sla import SLAStopResult, BreachSummary

logger = logging.getLogger(__name__)


def compute_deadline(started_at: datetime, sla_minutes: int) -> datetime:
    """Deadline for a clock started at started_at."""
    return started_at + timedelta(minutes=sla_minutes)


class SLAService:
    """Service for the per-lead response clock."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.sla_repo = SLAStateRepository(session)
        self.lead_repo = LeadRepository(session)
        self.event_repo = EventLogRepository(session)

    async def get_state(self, lead_id: uuid.UUID) -> Optional[SLAState]:
        return await self.sla_repo.get_by_lead(lead_id)

    async def start_clock(
        self,
        lead_id: uuid.UUID,
        deadline_at: datetime,
        started_at: Optional[datetime] = None,
        commit: bool = True
    ) -> SLAState:
        """
        Create the SLA state for a lead.

        Raises:
            NotFoundError: lead does not exist
            SLAAlreadyRunningError: the lead already has a clock
        """
        lead = await self.lead_repo.get(lead_id)
        if not lead:
            raise NotFoundError("Lead", str(lead_id), code="LEAD_NOT_FOUND")

        if await self.sla_repo.get_by_lead(lead_id):
            raise SLAAlreadyRunningError(str(lead_id))

        started_at = started_at or datetime.utcnow()
        try:
            state = await self.sla_repo.create({
                "lead_id": lead_id,
                "started_at": started_at,
                "deadline_at": deadline_at
            })
        except IntegrityError as e:
            # A concurrent start won the unique(lead_id) race
            await self.session.rollback()
            raise SLAAlreadyRunningError(str(lead_id)) from e

        await self.event_repo.append(
            lead_id=lead_id,
            workspace_id=lead.workspace_id,
            event_type=EventTypes.SLA_STARTED,
            payload={
                "started_at": started_at.isoformat(),
                "deadline_at": deadline_at.isoformat()
            },
            occurred_at=started_at
        )

        if commit:
            await self.session.commit()
        logger.info(f"SLA clock started for lead {lead_id}, deadline {deadline_at.isoformat()}")
        return state

    async def stop_clock(
        self,
        lead_id: uuid.UUID,
        reason: str,
        proof_event_id: Optional[uuid.UUID] = None
    ) -> SLAStopResult:
        """
        Stop a lead's clock. Idempotent: a second call reports already_stopped.
        """
        stopped_at = datetime.utcnow()
        lead = await self.lead_repo.get(lead_id)
        if not lead:
            raise NotFoundError("Lead", str(lead_id), code="LEAD_NOT_FOUND")

        did_stop = await self.sla_repo.stop(lead_id, reason, proof_event_id, stopped_at)
        if not did_stop:
            await self.session.rollback()
            logger.info(f"SLA clock for lead {lead_id} already stopped (or missing)")
            return SLAStopResult(already_stopped=True)

        await self.event_repo.append(
            lead_id=lead_id,
            workspace_id=lead.workspace_id,
            event_type=EventTypes.SLA_STOPPED,
            payload={
                "reason": reason,
                "proof_event_id": str(proof_event_id) if proof_event_id else None
            },
            occurred_at=stopped_at
        )
        await self.session.commit()

        logger.info(f"SLA clock stopped for lead {lead_id}: {reason}")
        return SLAStopResult(already_stopped=False, stopped_at=stopped_at)

    async def detect_breaches(self, now: Optional[datetime] = None) -> BreachSummary:
        """
        Mark every overdue running clock as breached.
        Each candidate is handled in its own transaction.
        """
        now = now or datetime.utcnow()
        candidates = await self.sla_repo.list_breach_candidates(now)
        # Plain values; the session is committed once per candidate
        targets = [(state.id, state.lead_id, state.deadline_at) for state in candidates]
        await self.session.commit()

        breached = 0
        for state_id, lead_id, deadline_at in targets:
            did_breach = await self.sla_repo.mark_breached(state_id, now)
            if not did_breach:
                await self.session.rollback()
                logger.warning(f"SLA breach for lead {lead_id} lost a race, skipping")
                continue

            lead = await self.lead_repo.get(lead_id)
            await self.event_repo.append(
                lead_id=lead_id,
                workspace_id=lead.workspace_id,
                event_type=EventTypes.SLA_BREACHED,
                payload={
                    "deadline_at": deadline_at.isoformat(),
                    "breached_at": now.isoformat()
                },
                occurred_at=now
            )
            await self.session.commit()
            breached += 1

        if targets:
            logger.info(f"SLA breach scan: processed={len(targets)} breached={breached}")
        return BreachSummary(processed=len(targets), breached=breached)
