"""
Unit tests for the autopilot conversation engine.
"""
import uuid

import pytest
from sqlmodel import select

from leadclock.config import settings
from leadclock.core.exceptions import AIPlannerError, NotFoundError, WorkspaceMismatchError
from leadclock.models.agent_reply import PendingAgentReply, AgentReplyTypes
from leadclock.models.autopilot import AutopilotRun, ScenarioModes, RunStatus, RunNodes
from leadclock.models.event_log import EventTypes
from leadclock.models.outbound import OutboundMessage, MessageRecipients
from leadclock.models.workspace import Workspace, WorkspaceMember
from leadclock.repositories.autopilot_repo import AutopilotRunRepository, ScenarioRepository
from leadclock.services.autopilot_service import AutopilotService, WELCOME_TEXT, DEFAULT_SCENARIO_NAME
from tests.factories import FakeChatProvider, SlowChatProvider, add_lead, add_member, add_scenario, events_of

AI_QUESTION = '{"nextText": "Which service are you interested in?", "intent": "pricing", "shouldHandover": false}'


class BumpingChatProvider(FakeChatProvider):
    """Simulates a concurrent reply landing while the model is thinking."""

    def __init__(self, session, lead_id, responses):
        super().__init__(responses)
        self.session = session
        self.lead_id = lead_id

    async def complete(self, messages):
        await AutopilotRunRepository(self.session).guarded_update(
            AutopilotRun.lead_id == self.lead_id,
            values={"revision": AutopilotRun.revision + 1}
        )
        await self.session.commit()
        return await super().complete(messages)


class TestScenarios:

    @pytest.mark.asyncio
    async def test_default_is_seeded(self, session, workspace):
        scenarios = await AutopilotService(session).list_scenarios(workspace.id)

        assert len(scenarios) == 1
        assert scenarios[0].name == DEFAULT_SCENARIO_NAME
        assert scenarios[0].mode == ScenarioModes.RULES
        assert scenarios[0].is_default

    @pytest.mark.asyncio
    async def test_oldest_scenario_is_promoted(self, session, workspace):
        first = await add_scenario(session, workspace, name="First")
        await add_scenario(session, workspace, name="Second")

        default = await AutopilotService(session).ensure_default_scenario(workspace.id)

        assert default.id == first.id
        assert len(await ScenarioRepository(session).list_for_workspace(workspace.id)) == 2

    @pytest.mark.asyncio
    async def test_set_default_migrates_runs(self, session, workspace):
        service = AutopilotService(session)
        leads = [
            await add_lead(session, workspace, phone="+40711111111"),
            await add_lead(session, workspace, phone="+40722222222"),
        ]
        for lead in leads:
            await service.start_autopilot(workspace.id, lead.id)
        target = await add_scenario(session, workspace, name="Booking")

        result = await service.set_default_scenario(workspace.id, target.id)

        assert result.migrated_runs == 2
        assert result.audited is True
        assert (await ScenarioRepository(session).get_default(workspace.id)).id == target.id
        for lead in leads:
            run = await service.get_run_for_lead(lead.id)
            assert run.scenario_id == target.id
            assert run.current_step == RunNodes.START
            assert len(await events_of(session, lead.id, EventTypes.AUTOPILOT_SCENARIO_MIGRATED)) == 1

    @pytest.mark.asyncio
    async def test_set_default_above_audit_limit_skips_run_events(self, session, workspace, monkeypatch):
        monkeypatch.setattr(settings, "AUTOPILOT_MIGRATE_AUDIT_LIMIT", 1)
        service = AutopilotService(session)
        leads = [
            await add_lead(session, workspace, phone="+40711111111"),
            await add_lead(session, workspace, phone="+40722222222"),
        ]
        for lead in leads:
            await service.start_autopilot(workspace.id, lead.id)
        target = await add_scenario(session, workspace, name="Booking")

        result = await service.set_default_scenario(workspace.id, target.id)

        assert result.migrated_runs == 2
        assert result.audited is False
        for lead in leads:
            assert await events_of(session, lead.id, EventTypes.AUTOPILOT_SCENARIO_MIGRATED) == []
            assert (await service.get_run_for_lead(lead.id)).scenario_id == target.id

    @pytest.mark.asyncio
    async def test_set_default_unknown_scenario(self, session, workspace):
        with pytest.raises(NotFoundError) as exc:
            await AutopilotService(session).set_default_scenario(workspace.id, uuid.uuid4())
        assert exc.value.code == "SCENARIO_NOT_FOUND"


class TestStartAutopilot:

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, session, workspace):
        lead = await add_lead(session, workspace)
        service = AutopilotService(session)

        first = await service.start_autopilot(workspace.id, lead.id)
        second = await service.start_autopilot(workspace.id, lead.id)

        assert first.created is True
        assert first.queued_message_id is not None
        assert first.run.last_outbound_at is not None
        assert second.created is False
        assert second.run.id == first.run.id
        assert len(await events_of(session, lead.id, EventTypes.AUTOPILOT_STARTED)) == 1
        messages = (await session.exec(select(OutboundMessage))).all()
        assert [m.text for m in messages] == [WELCOME_TEXT]

    @pytest.mark.asyncio
    async def test_missing_phone_blocks_welcome(self, session, workspace):
        lead = await add_lead(session, workspace, phone=None)

        result = await AutopilotService(session).start_autopilot(workspace.id, lead.id)

        assert result.created is True
        assert result.message_blocked is True
        assert result.blocked_reason == "missing_phone"
        assert result.run.last_outbound_at is None
        blocked = await events_of(session, lead.id, EventTypes.MESSAGE_BLOCKED)
        assert blocked[0].payload["reason"] == "missing_phone"
        assert (await session.exec(select(OutboundMessage))).all() == []

    @pytest.mark.asyncio
    async def test_unknown_scenario(self, session, workspace):
        lead = await add_lead(session, workspace)
        with pytest.raises(NotFoundError) as exc:
            await AutopilotService(session).start_autopilot(workspace.id, lead.id, uuid.uuid4())
        assert exc.value.code == "SCENARIO_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_lead_in_other_workspace(self, session, workspace):
        lead = await add_lead(session, workspace)
        with pytest.raises(NotFoundError) as exc:
            await AutopilotService(session).start_autopilot(uuid.uuid4(), lead.id)
        assert exc.value.code == "LEAD_NOT_FOUND"


class TestSwitchScenario:

    @pytest.mark.asyncio
    async def test_switch_restarts_from_first_node(self, session, workspace):
        original = await add_scenario(session, workspace, name="First", max_questions=3, is_default=True)
        target = await add_scenario(session, workspace, name="Second")
        lead = await add_lead(session, workspace)
        service = AutopilotService(session)
        started = await service.start_autopilot(workspace.id, lead.id)
        await service.process_autopilot_reply(lead.id, "I want a price for whitening")

        run = await service.switch_scenario(workspace.id, started.run.id, target.id)

        assert run.scenario_id == target.id
        assert run.status == RunStatus.ACTIVE
        assert run.current_step == RunNodes.START
        assert run.state_json == {"node": "q1", "answers": {}, "question_index": 0}
        assert run.revision == 2
        switched = await events_of(session, lead.id, EventTypes.AUTOPILOT_SCENARIO_SWITCHED)
        assert switched[0].payload["from_scenario_id"] == str(original.id)
        assert switched[0].payload["to_scenario_id"] == str(target.id)

    @pytest.mark.asyncio
    async def test_scenario_from_other_workspace(self, session, workspace):
        other = Workspace(name="Other")
        session.add(other)
        await session.commit()
        foreign = await add_scenario(session, other, name="Foreign")
        lead = await add_lead(session, workspace)
        service = AutopilotService(session)
        started = await service.start_autopilot(workspace.id, lead.id)

        with pytest.raises(WorkspaceMismatchError):
            await service.switch_scenario(workspace.id, started.run.id, foreign.id)

    @pytest.mark.asyncio
    async def test_unknown_run(self, session, workspace):
        scenario = await add_scenario(session, workspace)
        with pytest.raises(NotFoundError) as exc:
            await AutopilotService(session).switch_scenario(workspace.id, uuid.uuid4(), scenario.id)
        assert exc.value.code == "RUN_NOT_FOUND"


class TestProcessReply:

    @pytest.mark.asyncio
    async def test_max_questions_forces_handover(self, session, workspace):
        await add_scenario(session, workspace, mode=ScenarioModes.AI, max_questions=2, is_default=True)
        lead = await add_lead(session, workspace)
        provider = FakeChatProvider([AI_QUESTION])
        service = AutopilotService(session, ai_provider=provider)
        await service.start_autopilot(workspace.id, lead.id)

        first = await service.process_autopilot_reply(lead.id, "How much is whitening?")
        second = await service.process_autopilot_reply(lead.id, "Whitening")
        third = await service.process_autopilot_reply(lead.id, "Hello?")

        assert first.status == RunStatus.ACTIVE
        assert first.node == "q2"
        assert second.handed_over is True
        assert second.handover_reason == "max_questions"
        assert third.status == RunStatus.HANDED_OVER
        assert len(provider.calls) == 2

        run = await service.get_run_for_lead(lead.id)
        assert run.status == RunStatus.HANDED_OVER
        assert run.state_json["node"] == RunNodes.HANDOVER
        assert run.state_json["answers"]["intent"] == "pricing"
        assert len(await events_of(session, lead.id, EventTypes.AUTOPILOT_AI_PLANNED)) == 2
        assert len(await events_of(session, lead.id, EventTypes.AUTOPILOT_INBOUND)) == 3
        blocked = await events_of(session, lead.id, EventTypes.HANDOVER_NOTIFICATION_BLOCKED)
        assert blocked[0].payload["reason"] == "no_agent"

    @pytest.mark.asyncio
    async def test_ai_failure_leaves_run_untouched(self, session, workspace):
        await add_scenario(session, workspace, mode=ScenarioModes.AI, max_questions=3, is_default=True)
        lead = await add_lead(session, workspace)
        service = AutopilotService(session, ai_provider=FakeChatProvider(["Sorry, I can't do JSON"]))
        await service.start_autopilot(workspace.id, lead.id)

        with pytest.raises(AIPlannerError):
            await service.process_autopilot_reply(lead.id, "How much is whitening?")

        run = await service.get_run_for_lead(lead.id)
        assert run.revision == 0
        assert run.current_step == RunNodes.START
        assert run.state_json["question_index"] == 0
        assert run.last_inbound_at is not None
        failed = await events_of(session, lead.id, EventTypes.AUTOPILOT_AI_FAILED)
        assert len(failed) == 1
        assert failed[0].payload["node"] == RunNodes.START
        assert len((await session.exec(select(OutboundMessage))).all()) == 1

    @pytest.mark.asyncio
    async def test_provider_crash_is_recorded(self, session, workspace):
        await add_scenario(session, workspace, mode=ScenarioModes.AI, max_questions=3, is_default=True)
        lead = await add_lead(session, workspace)
        lead_id = lead.id
        provider = FakeChatProvider([ConnectionError("connection reset by peer")])
        service = AutopilotService(session, ai_provider=provider)
        await service.start_autopilot(workspace.id, lead_id)

        with pytest.raises(AIPlannerError):
            await service.process_autopilot_reply(lead_id, "How much is whitening?")

        run = await service.get_run_for_lead(lead_id)
        assert run.revision == 0
        assert run.state_json["question_index"] == 0
        failed = await events_of(session, lead_id, EventTypes.AUTOPILOT_AI_FAILED)
        assert len(failed) == 1
        assert "ConnectionError" in failed[0].payload["error"]

    @pytest.mark.asyncio
    async def test_slow_model_is_cut_off_and_recorded(self, session, workspace, monkeypatch):
        monkeypatch.setattr(settings, "AI_TIMEOUT_SECONDS", 0.05)
        await add_scenario(session, workspace, mode=ScenarioModes.AI, max_questions=3, is_default=True)
        lead = await add_lead(session, workspace)
        lead_id = lead.id
        service = AutopilotService(session, ai_provider=SlowChatProvider())
        await service.start_autopilot(workspace.id, lead_id)

        with pytest.raises(AIPlannerError):
            await service.process_autopilot_reply(lead_id, "How much is whitening?")

        run = await service.get_run_for_lead(lead_id)
        assert run.status == RunStatus.ACTIVE
        assert run.revision == 0
        failed = await events_of(session, lead_id, EventTypes.AUTOPILOT_AI_FAILED)
        assert "timed out" in failed[0].payload["error"]

    @pytest.mark.asyncio
    async def test_concurrent_write_marks_reply_stale(self, session, workspace):
        await add_scenario(session, workspace, mode=ScenarioModes.AI, max_questions=3, is_default=True)
        lead = await add_lead(session, workspace)
        lead_id = lead.id
        provider = BumpingChatProvider(session, lead_id, [AI_QUESTION])
        service = AutopilotService(session, ai_provider=provider)
        await service.start_autopilot(workspace.id, lead_id)

        result = await service.process_autopilot_reply(lead_id, "How much is whitening?")

        assert result.stale is True
        assert result.node == RunNodes.START
        run = await service.get_run_for_lead(lead_id)
        assert run.revision == 1
        assert run.state_json["question_index"] == 0
        assert len((await session.exec(select(OutboundMessage))).all()) == 1

    @pytest.mark.asyncio
    async def test_handover_notifies_available_agent(self, session, workspace):
        await add_scenario(session, workspace, max_questions=1, is_default=True)
        agent = await add_member(session, workspace, "agent@acme.test", phone="+40700000050")
        lead = await add_lead(session, workspace)
        service = AutopilotService(session)
        await service.start_autopilot(workspace.id, lead.id)

        result = await service.process_autopilot_reply(lead.id, "I need a quote for implants")

        assert result.handed_over is True
        pending = (await session.exec(select(PendingAgentReply))).all()
        assert len(pending) == 1
        assert pending[0].agent_user_id == agent.id
        assert pending[0].agent_phone == "+40700000050"
        assert pending[0].type == AgentReplyTypes.HANDOVER_CONFIRMATION

        handover = await events_of(session, lead.id, EventTypes.AUTOPILOT_HANDOVER)
        assert handover[0].payload["handover_user_id"] == str(agent.id)
        recipients = [m.recipient for m in (await session.exec(select(OutboundMessage))).all()]
        assert sorted(recipients) == sorted([MessageRecipients.LEAD, MessageRecipients.LEAD, MessageRecipients.AGENT])

        member = (await session.exec(
            select(WorkspaceMember)
            .where(WorkspaceMember.user_id == agent.id)
            .execution_options(populate_existing=True)
        )).first()
        assert member.last_assigned_at is not None

    @pytest.mark.asyncio
    async def test_handover_prefers_lead_owner(self, session, workspace):
        await add_scenario(session, workspace, max_questions=1, is_default=True)
        await add_member(session, workspace, "idle@acme.test", phone="+40700000060")
        owner = await add_member(session, workspace, "owner@acme.test", phone="+40700000070")
        lead = await add_lead(session, workspace, owner=owner)
        service = AutopilotService(session)
        await service.start_autopilot(workspace.id, lead.id)

        await service.process_autopilot_reply(lead.id, "I need a quote for implants")

        pending = (await session.exec(select(PendingAgentReply))).all()
        assert pending[0].agent_user_id == owner.id

    @pytest.mark.asyncio
    async def test_handover_skips_unavailable_owner(self, session, workspace):
        await add_scenario(session, workspace, max_questions=1, is_default=True)
        backup = await add_member(session, workspace, "backup@acme.test", phone="+40700000060")
        owner = await add_member(
            session, workspace, "owner@acme.test", phone="+40700000070", is_available=False
        )
        lead = await add_lead(session, workspace, owner=owner)
        service = AutopilotService(session)
        await service.start_autopilot(workspace.id, lead.id)

        result = await service.process_autopilot_reply(lead.id, "I need a quote for implants")

        assert result.handed_over is True
        pending = (await session.exec(select(PendingAgentReply))).all()
        assert [p.agent_user_id for p in pending] == [backup.id]
        agent_messages = (await session.exec(
            select(OutboundMessage).where(OutboundMessage.recipient == MessageRecipients.AGENT)
        )).all()
        assert [m.to_phone for m in agent_messages] == ["+40700000060"]

    @pytest.mark.asyncio
    async def test_reply_without_run(self, session, workspace):
        lead = await add_lead(session, workspace)
        with pytest.raises(NotFoundError) as exc:
            await AutopilotService(session).process_autopilot_reply(lead.id, "hello")
        assert exc.value.code == "RUN_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_reply_from_other_workspace(self, session, workspace):
        lead = await add_lead(session, workspace)
        with pytest.raises(NotFoundError) as exc:
            await AutopilotService(session).process_autopilot_reply(lead.id, "hello", workspace_id=uuid.uuid4())
        assert exc.value.code == "LEAD_NOT_FOUND"
