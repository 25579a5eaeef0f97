"""
Autopilot conversation engine.

A run moves ACTIVE -> HANDED_OVER. Replies are processed in three phases:
  A) load the run and log the inbound text (short transaction)
  B) plan the next message with the AI or rules planner (no transaction)
  C) persist with a guarded update on (status, revision) and queue messages
"""
import uuid
import logging
from datetime import datetime
from typing import Optional, List

from sqlalchemy.exc import IntegrityError
from sqlmodel.ext.asyncio.session import AsyncSession

from leadclock.config import settings
from leadclock.core.exceptions import NotFoundError, WorkspaceMismatchError, AIPlannerError
from leadclock.models.autopilot import (
    AutopilotScenario, AutopilotRun, ScenarioTypes, ScenarioModes, RunStatus, RunNodes
)
from leadclock.models.event_log import EventTypes
from leadclock.models.lead import Lead
from leadclock.models.outbound import OutboundMessage, MessageRecipients
from leadclock.models.workspace import User
from leadclock.repositories.autopilot_repo import ScenarioRepository, AutopilotRunRepository
from leadclock.repositories.event_repo import EventLogRepository
from leadclock.repositories.lead_repo import LeadRepository
from leadclock.repositories.member_repo import WorkspaceRepository, MemberRepository
from leadclock.schemas.autopilot import (
    ConversationState,
    AutopilotDecision,
    AutopilotStartResult,
    AutopilotReplyResult,
    AutopilotRunResponse,
    SetDefaultResult,
)
from leadclock.services.ai_planner import AIPlanner, RulesPlanner
from leadclock.services.dispatch_service import DispatchService
from leadclock.services.integrations.ai import OpenAIChatProvider
from leadclock.services.integrations.base import ChatCompletionProvider
from leadclock.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

WELCOME_TEXT = (
    "Hi! Thanks for reaching out. I'm the virtual assistant and I'll help you "
    "with the next steps. What can I help you with today?"
)
DEFAULT_SCENARIO_NAME = "Default Qualification"


class AutopilotService:
    """Service for autopilot runs and scenarios."""

    def __init__(
        self,
        session: AsyncSession,
        ai_provider: Optional[ChatCompletionProvider] = None,
        dispatch: Optional[DispatchService] = None,
        notifications: Optional[NotificationService] = None
    ):
        self.session = session
        self._ai_provider = ai_provider
        self.dispatch = dispatch or DispatchService(session)
        self.notifications = notifications or NotificationService(session, self.dispatch)
        self.run_repo = AutopilotRunRepository(session)
        self.scenario_repo = ScenarioRepository(session)
        self.lead_repo = LeadRepository(session)
        self.workspace_repo = WorkspaceRepository(session)
        self.member_repo = MemberRepository(session)
        self.event_repo = EventLogRepository(session)
        self.rules_planner = RulesPlanner()

    @property
    def ai_planner(self) -> AIPlanner:
        if self._ai_provider is None:
            self._ai_provider = OpenAIChatProvider()
        return AIPlanner(self._ai_provider)

    # ------------------------------------------------------------------
    # Scenarios
    # ------------------------------------------------------------------

    async def ensure_default_scenario(self, workspace_id: uuid.UUID) -> AutopilotScenario:
        """
        Return the workspace default, promoting the oldest scenario or
        seeding a RULES scenario when there is none. Commits only when
        it changes something.
        """
        default = await self.scenario_repo.get_default(workspace_id)
        if default:
            return default

        scenarios = await self.scenario_repo.list_for_workspace(workspace_id)
        try:
            if scenarios:
                await self.scenario_repo.mark_default(scenarios[0].id)
                scenario_id = scenarios[0].id
            else:
                seeded = await self.scenario_repo.create({
                    "workspace_id": workspace_id,
                    "name": DEFAULT_SCENARIO_NAME,
                    "scenario_type": ScenarioTypes.QUALIFY_ONLY,
                    "mode": ScenarioModes.RULES,
                    "max_questions": settings.AUTOPILOT_DEFAULT_MAX_QUESTIONS,
                    "is_default": True
                })
                scenario_id = seeded.id
            await self.session.commit()
            logger.info(f"Default scenario {scenario_id} set for workspace {workspace_id}")
        except IntegrityError:
            # Another request set the default first
            await self.session.rollback()
            logger.warning(f"Default scenario for workspace {workspace_id} created concurrently")

        return await self.scenario_repo.get_default(workspace_id)

    async def list_scenarios(self, workspace_id: uuid.UUID) -> List[AutopilotScenario]:
        await self.ensure_default_scenario(workspace_id)
        return await self.scenario_repo.list_for_workspace(workspace_id)

    async def set_default_scenario(self, workspace_id: uuid.UUID, scenario_id: uuid.UUID) -> SetDefaultResult:
        """
        Make scenario_id the workspace default and migrate every run to it
        from the first node. Per-run audit events are written only up to
        AUTOPILOT_MIGRATE_AUDIT_LIMIT runs.
        """
        scenario = await self.scenario_repo.get_in_workspace(workspace_id, scenario_id)
        if not scenario:
            raise NotFoundError("Scenario", str(scenario_id), code="SCENARIO_NOT_FOUND")

        await self.scenario_repo.clear_default(workspace_id, scenario_id)
        await self.scenario_repo.mark_default(scenario_id)

        runs = await self.run_repo.list_ids_for_workspace(workspace_id)
        state = ConversationState.reset().model_dump()
        migrated = await self.run_repo.reset_all(workspace_id, scenario_id, state)

        audited = migrated <= settings.AUTOPILOT_MIGRATE_AUDIT_LIMIT
        if audited:
            for run_id, lead_id in runs:
                await self.event_repo.append(
                    lead_id=lead_id,
                    workspace_id=workspace_id,
                    event_type=EventTypes.AUTOPILOT_SCENARIO_MIGRATED,
                    payload={"run_id": str(run_id), "scenario_id": str(scenario_id)}
                )
        else:
            logger.warning(
                f"Migrated {migrated} runs of workspace {workspace_id} to scenario {scenario_id}; "
                f"per-run audit skipped (limit {settings.AUTOPILOT_MIGRATE_AUDIT_LIMIT})"
            )

        await self.session.commit()
        logger.info(f"Scenario {scenario_id} is now default for workspace {workspace_id}")
        return SetDefaultResult(scenario_id=scenario_id, migrated_runs=migrated, audited=audited)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def get_run_for_lead(self, lead_id: uuid.UUID) -> Optional[AutopilotRun]:
        return await self.run_repo.get_by_lead(lead_id)

    async def start_autopilot(
        self,
        workspace_id: uuid.UUID,
        lead_id: uuid.UUID,
        scenario_id: Optional[uuid.UUID] = None
    ) -> AutopilotStartResult:
        """Create the run for a lead and queue the welcome message. Idempotent."""
        lead = await self.lead_repo.get_in_workspace(workspace_id, lead_id)
        if not lead:
            raise NotFoundError("Lead", str(lead_id), code="LEAD_NOT_FOUND")

        existing = await self.run_repo.get_by_lead(lead_id)
        if existing:
            return AutopilotStartResult(run=AutopilotRunResponse.model_validate(existing), created=False)

        if scenario_id:
            scenario = await self.scenario_repo.get_in_workspace(workspace_id, scenario_id)
            if not scenario:
                raise NotFoundError("Scenario", str(scenario_id), code="SCENARIO_NOT_FOUND")
        else:
            scenario = await self.ensure_default_scenario(workspace_id)

        now = datetime.utcnow()
        state = ConversationState.reset()
        has_phone = bool((lead.phone or "").strip())
        try:
            run = await self.run_repo.create({
                "lead_id": lead_id,
                "workspace_id": workspace_id,
                "scenario_id": scenario.id,
                "status": RunStatus.ACTIVE,
                "current_step": state.node,
                "state_json": state.model_dump(),
                "last_outbound_at": now if has_phone else None
            })
        except IntegrityError:
            await self.session.rollback()
            run = await self.run_repo.get_by_lead(lead_id)
            return AutopilotStartResult(run=AutopilotRunResponse.model_validate(run), created=False)

        await self.event_repo.append(
            lead_id=lead_id,
            workspace_id=workspace_id,
            event_type=EventTypes.AUTOPILOT_STARTED,
            payload={"run_id": str(run.id), "scenario_id": str(scenario.id), "mode": scenario.mode},
            occurred_at=now
        )
        message = await self._queue_lead_message(lead, WELCOME_TEXT, run.id)
        await self.session.commit()

        logger.info(f"Autopilot started for lead {lead_id} with scenario {scenario.id}")
        return AutopilotStartResult(
            run=AutopilotRunResponse.model_validate(run),
            created=True,
            queued_message_id=message.id if message else None,
            message_blocked=message is None,
            blocked_reason=None if message else "missing_phone"
        )

    async def switch_scenario(
        self,
        workspace_id: uuid.UUID,
        run_id: uuid.UUID,
        to_scenario_id: uuid.UUID
    ) -> AutopilotRun:
        """Point a run at another scenario and restart it from the first node."""
        run = await self.run_repo.get_in_workspace(workspace_id, run_id)
        if not run:
            raise NotFoundError("Autopilot run", str(run_id), code="RUN_NOT_FOUND")

        scenario = await self.scenario_repo.get(to_scenario_id)
        if not scenario:
            raise NotFoundError("Scenario", str(to_scenario_id), code="SCENARIO_NOT_FOUND")
        if scenario.workspace_id != run.workspace_id:
            raise WorkspaceMismatchError("Scenario")

        from_scenario_id = run.scenario_id
        await self.run_repo.reset(run.id, scenario.id, ConversationState.reset().model_dump())
        await self.event_repo.append(
            lead_id=run.lead_id,
            workspace_id=run.workspace_id,
            event_type=EventTypes.AUTOPILOT_SCENARIO_SWITCHED,
            payload={
                "run_id": str(run.id),
                "from_scenario_id": str(from_scenario_id),
                "to_scenario_id": str(scenario.id)
            }
        )
        await self.session.commit()

        logger.info(f"Run {run_id} switched from scenario {from_scenario_id} to {scenario.id}")
        return await self.run_repo.get(run_id)

    async def process_autopilot_reply(
        self,
        lead_id: uuid.UUID,
        inbound_text: str,
        workspace_id: Optional[uuid.UUID] = None
    ) -> AutopilotReplyResult:
        """
        Advance a run with the lead's reply.

        Raises:
            NotFoundError: no lead or no run for the lead
            AIPlannerError: the AI planner failed; the run is left untouched
        """
        # Phase A
        lead = await self.lead_repo.get(lead_id)
        if not lead or (workspace_id and lead.workspace_id != workspace_id):
            raise NotFoundError("Lead", str(lead_id), code="LEAD_NOT_FOUND")
        run = await self.run_repo.get_by_lead(lead_id)
        if not run:
            raise NotFoundError("Autopilot run", str(lead_id), code="RUN_NOT_FOUND")

        scenario = await self.scenario_repo.get(run.scenario_id)
        if not scenario:
            scenario = await self.ensure_default_scenario(lead.workspace_id)
        workspace = await self.workspace_repo.get(lead.workspace_id)

        state = ConversationState.load(run.state_json)
        revision = run.revision
        now = datetime.utcnow()
        await self.event_repo.append(
            lead_id=lead_id,
            workspace_id=lead.workspace_id,
            event_type=EventTypes.AUTOPILOT_INBOUND,
            payload={
                "text": inbound_text,
                "node_before": state.node,
                "scenario_id": str(scenario.id),
                "mode": scenario.mode
            },
            occurred_at=now
        )
        await self.run_repo.guarded_update(AutopilotRun.id == run.id, values={"last_inbound_at": now})
        await self.session.commit()

        if run.status != RunStatus.ACTIVE:
            return AutopilotReplyResult(run_id=run.id, status=run.status, node=state.node)

        # Phase B
        decision = await self._plan(scenario, lead, state, inbound_text, workspace)

        # Phase C
        return await self._apply_decision(run, lead, scenario, state, revision, decision)

    async def _plan(
        self,
        scenario: AutopilotScenario,
        lead: Lead,
        state: ConversationState,
        inbound_text: str,
        workspace
    ) -> AutopilotDecision:
        company_name = workspace.company_name if workspace else None
        if scenario.mode != ScenarioModes.AI:
            return self.rules_planner.plan(scenario, lead, state, inbound_text, company_name)

        try:
            return await self.ai_planner.plan(
                scenario, lead, state, inbound_text,
                company_name=company_name,
                company_description=workspace.company_description if workspace else None
            )
        except AIPlannerError as e:
            logger.error(f"AI planner failed for lead {lead.id}: {e.message}")
            await self.event_repo.append(
                lead_id=lead.id,
                workspace_id=lead.workspace_id,
                event_type=EventTypes.AUTOPILOT_AI_FAILED,
                payload={"scenario_id": str(scenario.id), "error": e.message, "node": state.node}
            )
            await self.session.commit()
            raise

    async def _apply_decision(
        self,
        run: AutopilotRun,
        lead: Lead,
        scenario: AutopilotScenario,
        state: ConversationState,
        revision: int,
        decision: AutopilotDecision
    ) -> AutopilotReplyResult:
        answers = {**state.answers, **decision.answers}
        if decision.intent and "intent" not in answers:
            answers["intent"] = decision.intent
        question_index = state.question_index + 1

        handover = decision.should_handover
        handover_reason = decision.handover_reason
        if question_index >= scenario.max_questions:
            handover = True
            handover_reason = handover_reason or "max_questions"
        elif scenario.required_slots and all((answers.get(s) or "").strip() for s in scenario.required_slots):
            handover = True
            handover_reason = handover_reason or "qualification_complete"

        node = RunNodes.HANDOVER if handover else f"q{question_index + 1}"
        new_state = ConversationState(node=node, answers=answers, question_index=question_index)
        text = decision.next_text
        will_send = bool(text) and bool((lead.phone or "").strip())

        values = {
            "current_step": node,
            "state_json": new_state.model_dump(),
        }
        if handover:
            values["status"] = RunStatus.HANDED_OVER
        if will_send:
            values["last_outbound_at"] = datetime.utcnow()

        run_id, run_status = run.id, run.status
        if not await self.run_repo.save_state(run_id, revision, values):
            await self.session.rollback()
            logger.warning(f"Run {run_id} changed concurrently at revision {revision}, reply not applied")
            return AutopilotReplyResult(
                run_id=run_id, status=run_status, node=state.node, stale=True, decision=decision
            )

        if scenario.mode == ScenarioModes.AI:
            await self.event_repo.append(
                lead_id=lead.id,
                workspace_id=lead.workspace_id,
                event_type=EventTypes.AUTOPILOT_AI_PLANNED,
                payload={
                    "intent": decision.intent,
                    "should_handover": decision.should_handover,
                    "question_index": question_index,
                    "node_after": node
                }
            )

        message = None
        if text:
            message = await self._queue_lead_message(lead, text, run.id)

        if handover:
            await self._handover(lead, scenario, run.id, handover_reason, answers)

        await self.session.commit()

        if handover:
            logger.info(f"Run {run.id} handed over ({handover_reason})")
        return AutopilotReplyResult(
            run_id=run.id,
            status=RunStatus.HANDED_OVER if handover else RunStatus.ACTIVE,
            node=node,
            handed_over=handover,
            handover_reason=handover_reason if handover else None,
            queued_message_id=message.id if message else None,
            message_blocked=bool(text) and message is None,
            blocked_reason="missing_phone" if text and message is None else None,
            decision=decision
        )

    async def _handover(
        self,
        lead: Lead,
        scenario: AutopilotScenario,
        run_id: uuid.UUID,
        reason: Optional[str],
        answers: dict
    ) -> None:
        agent = await self._handover_target(lead, scenario)
        await self.event_repo.append(
            lead_id=lead.id,
            workspace_id=lead.workspace_id,
            event_type=EventTypes.AUTOPILOT_HANDOVER,
            payload={
                "run_id": str(run_id),
                "scenario_id": str(scenario.id),
                "handover_user_id": str(agent.id) if agent else None,
                "reason": reason,
                "answers": answers
            }
        )
        if agent is None:
            logger.warning(f"No agent available for handover of lead {lead.id}")
            await self.event_repo.append(
                lead_id=lead.id,
                workspace_id=lead.workspace_id,
                event_type=EventTypes.HANDOVER_NOTIFICATION_BLOCKED,
                payload={"reason": "no_agent", "scenario_id": str(scenario.id)}
            )
            return
        await self.notifications.notify_handover(lead, agent, scenario.id, reason)

    async def _handover_target(self, lead: Lead, scenario: AutopilotScenario) -> Optional[User]:
        """Scenario handover user, then the lead owner, then the next available agent."""
        for user_id in (scenario.handover_user_id, lead.owner_user_id):
            if not user_id:
                continue
            row = await self.member_repo.get_available_member(lead.workspace_id, user_id)
            if row is not None:
                return row[1]

        candidate = await self.member_repo.next_available_agent(lead.workspace_id)
        if candidate is None:
            return None
        member, user = candidate
        await self.member_repo.touch_assigned(member.id)
        return user

    async def _queue_lead_message(
        self,
        lead: Lead,
        text: str,
        run_id: uuid.UUID
    ) -> Optional[OutboundMessage]:
        """Queue text to the lead, or log message_blocked when there is no phone."""
        phone = (lead.phone or "").strip()
        if not phone:
            await self.event_repo.append(
                lead_id=lead.id,
                workspace_id=lead.workspace_id,
                event_type=EventTypes.MESSAGE_BLOCKED,
                payload={"reason": "missing_phone", "run_id": str(run_id)}
            )
            logger.warning(f"Autopilot message for lead {lead.id} blocked: missing phone")
            return None

        return await self.dispatch.enqueue_message(
            lead_id=lead.id,
            workspace_id=lead.workspace_id,
            text=text,
            to_phone=phone,
            recipient=MessageRecipients.LEAD
        )
