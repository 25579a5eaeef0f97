"""
Messaging routes - dispatch runner, agent follow-ups, provider callbacks
and inbound WhatsApp.
"""
from typing import Optional
from fastapi import APIRouter, Depends
from sqlmodel.ext.asyncio.session import AsyncSession

from leadclock.config import settings
from leadclock.database import get_session
from leadclock.schemas.messaging import (
    DispatchRequest,
    DispatchSummary,
    DeliveryStatusCallback,
    DeliveryStatusResult,
    InboundWhatsApp,
    InboundResult,
    FollowupSummary,
)
from leadclock.services.dispatch_service import DispatchService
from leadclock.services.inbound_service import InboundService
from leadclock.services.notification_service import NotificationService
from leadclock.services.proof_service import ProofService
from leadclock.api.deps import require_maintenance_token

router = APIRouter(prefix=settings.API_PREFIX, tags=["messaging"])


@router.post(
    "/messaging/run-dispatch",
    response_model=DispatchSummary,
    dependencies=[Depends(require_maintenance_token)]
)
async def run_dispatch(
    data: Optional[DispatchRequest] = None,
    session: AsyncSession = Depends(get_session)
):
    """Send queued messages, oldest first."""
    dispatch_service = DispatchService(session)
    return await dispatch_service.dispatch_queued(data.limit if data else None)


@router.post(
    "/messaging/run-followups",
    response_model=FollowupSummary,
    dependencies=[Depends(require_maintenance_token)]
)
async def run_followups(session: AsyncSession = Depends(get_session)):
    """Queue outcome follow-ups and expire unanswered agent questions."""
    notification_service = NotificationService(session)
    summary = await notification_service.send_outcome_followups()
    summary.expired = await notification_service.expire_pending_replies()
    return summary


@router.post(
    "/proof/whatsapp/status",
    response_model=DeliveryStatusResult,
    dependencies=[Depends(require_maintenance_token)]
)
async def whatsapp_status_callback(
    data: DeliveryStatusCallback,
    session: AsyncSession = Depends(get_session)
):
    """Provider delivery/read receipt."""
    proof_service = ProofService(session)
    return await proof_service.record_delivery_status(
        data.lead_id, data.provider, data.provider_message_id, data.status
    )


@router.post(
    "/messaging/whatsapp/inbound",
    response_model=InboundResult,
    dependencies=[Depends(require_maintenance_token)]
)
async def whatsapp_inbound(
    data: InboundWhatsApp,
    session: AsyncSession = Depends(get_session)
):
    """Inbound WhatsApp message from a lead or an agent."""
    inbound_service = InboundService(session)
    return await inbound_service.handle_whatsapp(data)
