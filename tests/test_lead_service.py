"""
Unit tests for lead intake, lead management and inbound WhatsApp routing.
"""
import uuid
from datetime import datetime, timedelta

import pytest
from sqlmodel import select

from leadclock.core.exceptions import NotFoundError, ValidationError
from leadclock.models.autopilot import RunStatus
from leadclock.models.event_log import EventTypes
from leadclock.models.lead import LeadStatus
from leadclock.models.outbound import OutboundMessage
from leadclock.schemas.lead import LeadCreate
from leadclock.schemas.messaging import InboundWhatsApp
from leadclock.schemas.sla import SLAStartRequest
from leadclock.services.autopilot_service import AutopilotService, WELCOME_TEXT
from leadclock.services.inbound_service import InboundService, normalize_phone
from leadclock.services.lead_service import LeadService
from leadclock.services.notification_service import NotificationService
from leadclock.services.sla_service import SLAService
from tests.factories import add_lead, add_member, add_scenario, events_of


class TestIngestLead:

    @pytest.mark.asyncio
    async def test_creates_lead_and_starts_clock(self, session, workspace):
        lead = await LeadService(session).ingest_lead(
            workspace.id, LeadCreate(first_name="Ana", phone="+40712345678", source="webhook")
        )

        assert lead.status == LeadStatus.NEW
        state = await SLAService(session).get_state(lead.id)
        assert state.deadline_at - state.started_at == timedelta(minutes=15)
        received = await events_of(session, lead.id, EventTypes.LEAD_RECEIVED)
        assert received[0].payload["source"] == "webhook"
        assert len(await events_of(session, lead.id, EventTypes.SLA_STARTED)) == 1

    @pytest.mark.asyncio
    async def test_duplicate_external_id_returns_existing_lead(self, session, workspace):
        service = LeadService(session)
        data = LeadCreate(first_name="Ana", source="facebook", external_id="fb-123")

        first = await service.ingest_lead(workspace.id, data)
        second = await service.ingest_lead(workspace.id, data)

        assert second.id == first.id
        assert len(await events_of(session, first.id, EventTypes.LEAD_RECEIVED)) == 1

    @pytest.mark.asyncio
    async def test_owner_must_be_member(self, session, workspace):
        with pytest.raises(ValidationError):
            await LeadService(session).ingest_lead(
                workspace.id, LeadCreate(first_name="Ana", owner_user_id=uuid.uuid4())
            )

    @pytest.mark.asyncio
    async def test_unknown_workspace(self, session, workspace):
        with pytest.raises(NotFoundError) as exc:
            await LeadService(session).ingest_lead(uuid.uuid4(), LeadCreate(first_name="Ana"))
        assert exc.value.code == "WORKSPACE_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_autopilot_workspace_starts_run(self, session, workspace):
        workspace.autopilot_enabled = True
        session.add(workspace)
        await session.commit()

        lead = await LeadService(session).ingest_lead(
            workspace.id, LeadCreate(first_name="Ana", phone="+40712345678")
        )

        run = await AutopilotService(session).get_run_for_lead(lead.id)
        assert run.status == RunStatus.ACTIVE
        messages = (await session.exec(select(OutboundMessage))).all()
        assert [m.text for m in messages] == [WELCOME_TEXT]


class TestLeadManagement:

    @pytest.mark.asyncio
    async def test_update_status_logs_transition(self, session, workspace):
        lead = await add_lead(session, workspace)

        updated = await LeadService(session).update_status(workspace.id, lead.id, LeadStatus.QUALIFIED)

        assert updated.status == LeadStatus.QUALIFIED
        changed = await events_of(session, lead.id, EventTypes.LEAD_STATUS_CHANGED)
        assert changed[0].payload == {"from": LeadStatus.NEW, "to": LeadStatus.QUALIFIED}

    @pytest.mark.asyncio
    async def test_update_status_rejects_unknown_value(self, session, workspace):
        lead = await add_lead(session, workspace)
        with pytest.raises(ValidationError):
            await LeadService(session).update_status(workspace.id, lead.id, "WON")

    @pytest.mark.asyncio
    async def test_detail_includes_clock_and_autopilot(self, session, workspace):
        service = LeadService(session)
        lead = await service.ingest_lead(workspace.id, LeadCreate(first_name="Ana", phone="+40712345678"))
        await AutopilotService(session).start_autopilot(workspace.id, lead.id)

        detail = await service.get_lead(workspace.id, lead.id)

        assert detail.sla is not None
        assert detail.sla.stopped_at is None
        assert detail.autopilot_status == RunStatus.ACTIVE
        assert detail.escalation_level is None

    @pytest.mark.asyncio
    async def test_lead_from_other_workspace_is_hidden(self, session, workspace):
        lead = await add_lead(session, workspace)
        with pytest.raises(NotFoundError):
            await LeadService(session).get_lead(uuid.uuid4(), lead.id)

    @pytest.mark.asyncio
    async def test_list_leads_filters_by_status(self, session, workspace):
        await add_lead(session, workspace, phone="+40711111111")
        qualified = await add_lead(session, workspace, phone="+40722222222")
        service = LeadService(session)
        await service.update_status(workspace.id, qualified.id, LeadStatus.QUALIFIED)

        result = await service.list_leads(workspace.id, status=LeadStatus.QUALIFIED)

        assert result.total == 1
        assert result.items[0].id == qualified.id


class TestManualClock:

    @pytest.mark.asyncio
    async def test_start_defaults_to_workspace_sla(self, session, workspace):
        lead = await add_lead(session, workspace)
        started = datetime(2026, 1, 5, 10, 0)

        state = await LeadService(session).start_sla(workspace.id, lead.id, SLAStartRequest(started_at=started))

        assert state.deadline_at == datetime(2026, 1, 5, 10, 15)

    @pytest.mark.asyncio
    async def test_deadline_must_follow_start(self, session, workspace):
        lead = await add_lead(session, workspace)
        started = datetime(2026, 1, 5, 10, 0)

        with pytest.raises(ValidationError):
            await LeadService(session).start_sla(
                workspace.id, lead.id, SLAStartRequest(started_at=started, deadline_at=started)
            )

    @pytest.mark.asyncio
    async def test_stop(self, session, workspace):
        lead = await add_lead(session, workspace)
        service = LeadService(session)
        await service.start_sla(workspace.id, lead.id, SLAStartRequest())

        result = await service.stop_sla(workspace.id, lead.id)

        assert result.already_stopped is False


class TestInbound:

    def test_normalize_phone(self):
        assert normalize_phone(" whatsapp:+40712345678 ") == "+40712345678"
        assert normalize_phone("+40712345678") == "+40712345678"

    @pytest.mark.asyncio
    async def test_unknown_number_is_unmatched(self, session, workspace):
        result = await InboundService(session).handle_whatsapp(
            InboundWhatsApp(workspace_id=workspace.id, from_phone="+40799999999", text="hello")
        )
        assert result.handled_as == "unmatched"

    @pytest.mark.asyncio
    async def test_first_message_starts_autopilot(self, session, workspace):
        lead = await add_lead(session, workspace)

        result = await InboundService(session).handle_whatsapp(
            InboundWhatsApp(workspace_id=workspace.id, from_phone="whatsapp:+40712345678", text="hello")
        )

        assert result.handled_as == "lead_reply"
        assert result.lead_id == lead.id
        assert result.action == "autopilot_started"
        inbound = await events_of(session, lead.id, EventTypes.AUTOPILOT_INBOUND)
        assert inbound[0].payload["text"] == "hello"

    @pytest.mark.asyncio
    async def test_reply_advances_run(self, session, workspace):
        await add_scenario(session, workspace, max_questions=3, is_default=True)
        lead = await add_lead(session, workspace)
        await AutopilotService(session).start_autopilot(workspace.id, lead.id)

        result = await InboundService(session).handle_whatsapp(
            InboundWhatsApp(workspace_id=workspace.id, from_phone="+40712345678", text="I want a price")
        )

        assert result.action == "replied"
        run = await AutopilotService(session).get_run_for_lead(lead.id)
        assert run.state_json["answers"] == {"intent": "pricing"}

    @pytest.mark.asyncio
    async def test_agent_with_open_question_is_agent_reply(self, session, workspace):
        agent = await add_member(session, workspace, "agent@acme.test", phone="+40700000050")
        lead = await add_lead(session, workspace)
        await NotificationService(session).notify_handover(lead, agent, None, None)
        await session.commit()

        result = await InboundService(session).handle_whatsapp(
            InboundWhatsApp(workspace_id=workspace.id, from_phone="whatsapp:+40700000050", text="1")
        )

        assert result.handled_as == "agent_reply"
        assert result.action == "agent_confirmed"
        assert result.lead_id == lead.id
