"""
Lead service - intake, lookup and status management.
"""
import uuid
import logging
from typing import Optional
from datetime import datetime

from sqlmodel.ext.asyncio.session import AsyncSession

from leadclock.config import settings
from leadclock.core.exceptions import NotFoundError, ValidationError
from leadclock.core.pagination import Page
from leadclock.models.event_log import EventTypes
from leadclock.models.lead import Lead, LeadStatus
from leadclock.models.sla import SLAState, SLAStopReasons
from leadclock.repositories.autopilot_repo import AutopilotRunRepository
from leadclock.repositories.event_repo import EventLogRepository
from leadclock.repositories.lead_repo import LeadRepository
from leadclock.repositories.member_repo import WorkspaceRepository, MemberRepository
from leadclock.repositories.sla_repo import EscalationRepository
from leadclock.schemas.lead import LeadCreate, LeadDetailResponse, SLAStateResponse
from leadclock.schemas.sla import SLAStartRequest, SLAStopResult
from leadclock.services.autopilot_service import AutopilotService
from leadclock.services.escalation_service import EscalationService
from leadclock.services.sla_service import SLAService, compute_deadline

logger = logging.getLogger(__name__)


class LeadService:
    """Service for lead operations."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.lead_repo = LeadRepository(session)
        self.workspace_repo = WorkspaceRepository(session)
        self.member_repo = MemberRepository(session)
        self.event_repo = EventLogRepository(session)
        self.run_repo = AutopilotRunRepository(session)
        self.escalation_repo = EscalationRepository(session)
        self.sla_service = SLAService(session)

    async def ingest_lead(
        self,
        workspace_id: uuid.UUID,
        lead_data: LeadCreate,
        actor_user_id: Optional[uuid.UUID] = None
    ) -> Lead:
        """
        Create a lead and start its response clock.
        Leads re-sent with the same (source, external_id) are returned as is.
        """
        workspace = await self.workspace_repo.get(workspace_id)
        if not workspace:
            raise NotFoundError("Workspace", str(workspace_id), code="WORKSPACE_NOT_FOUND")

        if lead_data.external_id:
            existing = await self.lead_repo.get_by_external_id(
                workspace_id, lead_data.source, lead_data.external_id
            )
            if existing:
                logger.info(f"Lead {lead_data.source}/{lead_data.external_id} already ingested as {existing.id}")
                return existing

        if lead_data.owner_user_id:
            if not await self.member_repo.get_member(workspace_id, lead_data.owner_user_id):
                raise ValidationError("owner is not a member of this workspace", field="owner_user_id")

        data = lead_data.model_dump()
        data["workspace_id"] = workspace_id
        data["status"] = LeadStatus.NEW
        data["custom_fields"] = data.get("custom_fields") or {}
        lead = await self.lead_repo.create(data)

        now = datetime.utcnow()
        await self.event_repo.append(
            lead_id=lead.id,
            workspace_id=workspace_id,
            event_type=EventTypes.LEAD_RECEIVED,
            payload={
                "source": lead.source,
                "external_id": lead.external_id,
                "owner_user_id": str(lead.owner_user_id) if lead.owner_user_id else None
            },
            actor_user_id=actor_user_id,
            occurred_at=now
        )
        sla_minutes = workspace.sla_minutes or settings.DEFAULT_SLA_MINUTES
        await self.sla_service.start_clock(
            lead.id, compute_deadline(now, sla_minutes), started_at=now, commit=False
        )
        await self.session.commit()
        logger.info(f"Lead {lead.id} received for workspace {workspace_id} (sla {sla_minutes} min)")

        if workspace.autopilot_enabled:
            await AutopilotService(self.session).start_autopilot(workspace_id, lead.id)

        return lead

    async def get(self, workspace_id: uuid.UUID, lead_id: uuid.UUID) -> Lead:
        """Get a lead by ID."""
        lead = await self.lead_repo.get_in_workspace(workspace_id, lead_id)
        if not lead:
            raise NotFoundError("Lead", str(lead_id), code="LEAD_NOT_FOUND")
        return lead

    async def get_lead(self, workspace_id: uuid.UUID, lead_id: uuid.UUID) -> LeadDetailResponse:
        """Lead with its SLA clock, autopilot status and highest escalation."""
        lead = await self.get(workspace_id, lead_id)
        sla_state = await self.sla_service.get_state(lead_id)
        run = await self.run_repo.get_by_lead(lead_id)

        detail = LeadDetailResponse.model_validate(lead)
        detail.sla = SLAStateResponse.model_validate(sla_state) if sla_state else None
        detail.autopilot_status = run.status if run else None
        detail.escalation_level = await self.escalation_repo.highest_level(lead_id)
        return detail

    async def list_leads(
        self,
        workspace_id: uuid.UUID,
        status: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20
    ) -> Page:
        """List leads; running clocks are checked for escalation first."""
        await EscalationService(self.session).detect_escalations(workspace_id)
        return await self.lead_repo.search(workspace_id, status, search, page, limit)

    async def update_status(
        self,
        workspace_id: uuid.UUID,
        lead_id: uuid.UUID,
        status: str,
        actor_user_id: Optional[uuid.UUID] = None
    ) -> Lead:
        """Change the lead status."""
        if status not in LeadStatus.ALL:
            raise ValidationError(f"unknown status '{status}'", field="status")

        lead = await self.get(workspace_id, lead_id)
        previous = lead.status
        if previous == status:
            return lead

        await self.lead_repo.set_status(lead_id, status)
        await self.event_repo.append(
            lead_id=lead_id,
            workspace_id=workspace_id,
            event_type=EventTypes.LEAD_STATUS_CHANGED,
            payload={"from": previous, "to": status},
            actor_user_id=actor_user_id
        )
        await self.session.commit()
        return await self.lead_repo.get(lead_id)

    async def list_events(
        self,
        workspace_id: uuid.UUID,
        lead_id: uuid.UUID,
        page: int = 1,
        limit: int = 50
    ) -> Page:
        """Lead timeline, newest first."""
        await self.get(workspace_id, lead_id)
        return await self.event_repo.list_for_lead(workspace_id, lead_id, page, limit)

    async def start_sla(
        self,
        workspace_id: uuid.UUID,
        lead_id: uuid.UUID,
        request: SLAStartRequest
    ) -> SLAState:
        """Start a clock by hand; the deadline defaults to the workspace SLA."""
        await self.get(workspace_id, lead_id)
        started_at = request.started_at or datetime.utcnow()
        deadline_at = request.deadline_at
        if deadline_at is None:
            workspace = await self.workspace_repo.get(workspace_id)
            deadline_at = compute_deadline(started_at, workspace.sla_minutes or settings.DEFAULT_SLA_MINUTES)
        if deadline_at <= started_at:
            raise ValidationError("deadline must be after start", field="deadline_at")
        return await self.sla_service.start_clock(lead_id, deadline_at, started_at=started_at)

    async def stop_sla(
        self,
        workspace_id: uuid.UUID,
        lead_id: uuid.UUID,
        reason: str = SLAStopReasons.MANUAL
    ) -> SLAStopResult:
        await self.get(workspace_id, lead_id)
        return await self.sla_service.stop_clock(lead_id, reason)
