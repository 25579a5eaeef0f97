"""
Leads API routes.
"""
import uuid
from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlmodel.ext.asyncio.session import AsyncSession

from leadclock.config import settings
from leadclock.core.pagination import Page
from leadclock.database import get_session
from leadclock.services.lead_service import LeadService
from leadclock.services.proof_service import ProofService
from leadclock.schemas.lead import (
    LeadCreate, LeadStatusUpdate, LeadResponse, LeadDetailResponse,
    EventLogResponse, ManualProofCreate, ProofEventResponse, SLAStateResponse
)
from leadclock.schemas.sla import SLAStartRequest, SLAStopRequest, SLAStopResult
from leadclock.api.deps import RequestContext, get_request_context

router = APIRouter(prefix=f"{settings.API_PREFIX}/leads", tags=["leads"])


@router.post("", response_model=LeadResponse, status_code=201)
async def create_lead(
    lead_data: LeadCreate,
    context: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session)
):
    """Lead intake: creates the lead and starts its SLA clock."""
    lead_service = LeadService(session)
    return await lead_service.ingest_lead(context.workspace_id, lead_data, context.user_id)


@router.get("", response_model=Page[LeadResponse])
async def list_leads(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[str] = None,
    search: Optional[str] = None,
    context: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session)
):
    """List leads with filtering and pagination."""
    lead_service = LeadService(session)
    return await lead_service.list_leads(context.workspace_id, status, search, page, limit)


@router.get("/{lead_id}", response_model=LeadDetailResponse)
async def get_lead(
    lead_id: uuid.UUID,
    context: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session)
):
    lead_service = LeadService(session)
    return await lead_service.get_lead(context.workspace_id, lead_id)


@router.patch("/{lead_id}/status", response_model=LeadResponse)
async def update_lead_status(
    lead_id: uuid.UUID,
    data: LeadStatusUpdate,
    context: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session)
):
    lead_service = LeadService(session)
    return await lead_service.update_status(context.workspace_id, lead_id, data.status, context.user_id)


@router.get("/{lead_id}/events", response_model=Page[EventLogResponse])
async def list_lead_events(
    lead_id: uuid.UUID,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    context: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session)
):
    """Lead timeline, newest first."""
    lead_service = LeadService(session)
    return await lead_service.list_events(context.workspace_id, lead_id, page, limit)


@router.post("/{lead_id}/proof", response_model=ProofEventResponse, status_code=201)
async def record_manual_proof(
    lead_id: uuid.UUID,
    data: ManualProofCreate,
    context: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session)
):
    """Agent-entered proof of contact. Stops the SLA clock."""
    proof_service = ProofService(session)
    return await proof_service.record_manual_proof(
        context.workspace_id, lead_id, context.user_id, data.channel, data.note
    )


@router.post("/{lead_id}/sla/start", response_model=SLAStateResponse, status_code=201)
async def start_sla(
    lead_id: uuid.UUID,
    data: SLAStartRequest,
    context: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session)
):
    lead_service = LeadService(session)
    return await lead_service.start_sla(context.workspace_id, lead_id, data)


@router.post("/{lead_id}/sla/stop", response_model=SLAStopResult)
async def stop_sla(
    lead_id: uuid.UUID,
    data: SLAStopRequest,
    context: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session)
):
    lead_service = LeadService(session)
    return await lead_service.stop_sla(context.workspace_id, lead_id, data.reason)
