"""
Autopilot API routes.
"""
import uuid
from typing import List
from fastapi import APIRouter, Depends
from sqlmodel.ext.asyncio.session import AsyncSession

from leadclock.config import settings
from leadclock.database import get_session
from leadclock.schemas.autopilot import (
    AutopilotStartRequest,
    AutopilotReplyRequest,
    SwitchScenarioRequest,
    AutopilotRunResponse,
    AutopilotStartResult,
    AutopilotReplyResult,
    ScenarioResponse,
    SetDefaultResult,
)
from leadclock.services.autopilot_service import AutopilotService
from leadclock.api.deps import RequestContext, get_request_context, require_manager

router = APIRouter(prefix=f"{settings.API_PREFIX}/autopilot", tags=["autopilot"])


@router.post("/start", response_model=AutopilotStartResult)
async def start_autopilot(
    data: AutopilotStartRequest,
    context: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session)
):
    """Start the autopilot for a lead (idempotent)."""
    autopilot_service = AutopilotService(session)
    return await autopilot_service.start_autopilot(context.workspace_id, data.lead_id, data.scenario_id)


@router.post("/reply", response_model=AutopilotReplyResult)
async def process_reply(
    data: AutopilotReplyRequest,
    context: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session)
):
    """Feed a lead reply into its autopilot run."""
    autopilot_service = AutopilotService(session)
    return await autopilot_service.process_autopilot_reply(data.lead_id, data.text, context.workspace_id)


@router.post("/runs/{run_id}/switch-scenario", response_model=AutopilotRunResponse)
async def switch_scenario(
    run_id: uuid.UUID,
    data: SwitchScenarioRequest,
    context: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session)
):
    autopilot_service = AutopilotService(session)
    return await autopilot_service.switch_scenario(context.workspace_id, run_id, data.scenario_id)


@router.get("/scenarios", response_model=List[ScenarioResponse])
async def list_scenarios(
    context: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session)
):
    autopilot_service = AutopilotService(session)
    return await autopilot_service.list_scenarios(context.workspace_id)


@router.post("/scenarios/{scenario_id}/set-default", response_model=SetDefaultResult)
async def set_default_scenario(
    scenario_id: uuid.UUID,
    context: RequestContext = Depends(require_manager),
    session: AsyncSession = Depends(get_session)
):
    """Make a scenario the default and migrate every run to it."""
    autopilot_service = AutopilotService(session)
    return await autopilot_service.set_default_scenario(context.workspace_id, scenario_id)
