"""
SLA maintenance routes - breach and escalation runners.
Meant to be called by an external scheduler.
"""
import uuid
from typing import Optional
from fastapi import APIRouter, Depends
from sqlmodel.ext.asyncio.session import AsyncSession

from leadclock.config import settings
from leadclock.database import get_session
from leadclock.schemas.sla import BreachSummary, EscalationSummary
from leadclock.services.escalation_service import EscalationService
from leadclock.services.sla_service import SLAService
from leadclock.api.deps import require_maintenance_token

router = APIRouter(
    prefix=f"{settings.API_PREFIX}/sla",
    tags=["sla"],
    dependencies=[Depends(require_maintenance_token)]
)


@router.post("/run-breach", response_model=BreachSummary)
async def run_breach_detection(session: AsyncSession = Depends(get_session)):
    """Mark overdue running clocks as breached."""
    sla_service = SLAService(session)
    return await sla_service.detect_breaches()


@router.post("/run-escalations", response_model=EscalationSummary)
async def run_escalations(
    workspace_id: Optional[uuid.UUID] = None,
    session: AsyncSession = Depends(get_session)
):
    """Escalate running clocks of one workspace, or of all of them."""
    escalation_service = EscalationService(session)
    if workspace_id:
        return await escalation_service.detect_escalations(workspace_id)
    return await escalation_service.detect_all()
