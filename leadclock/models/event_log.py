"""
Event log model - append-only audit trail per lead.
Every engine writes here inside its own transaction.
"""
import uuid
from datetime import datetime
from typing import Optional, Dict, Any

from sqlmodel import SQLModel, Field

from leadclock.models.columns import json_column


class EventLog(SQLModel, table=True):
    """
    Timeline entry for a lead.
    Rows are never updated or deleted.
    """
    __tablename__ = "event_log"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    lead_id: uuid.UUID = Field(foreign_key="lead.id", index=True)
    workspace_id: uuid.UUID = Field(foreign_key="workspace.id", index=True)
    actor_user_id: Optional[uuid.UUID] = Field(default=None, foreign_key="user.id")

    event_type: str = Field(index=True)

    payload: Dict[str, Any] = Field(default={}, sa_column=json_column())
    # Example: {"reason": "proof_delivered", "proof_event_id": "..."}

    occurred_at: datetime = Field(default_factory=datetime.utcnow, index=True)


# Event type constants for consistency
class EventTypes:
    # Lead
    LEAD_RECEIVED = "lead_received"
    LEAD_REASSIGNED = "lead_reassigned"
    LEAD_STATUS_CHANGED = "lead_status_changed"

    # SLA clock
    SLA_STARTED = "sla_started"
    SLA_STOPPED = "sla_stopped"
    SLA_BREACHED = "sla_breached"

    # Escalation
    ESCALATION_REMINDER = "escalation_reminder"
    ESCALATION_REASSIGN = "escalation_reassign"
    ESCALATION_MANAGER_ALERT = "escalation_manager_alert"
    ESCALATION_NOTIFICATION_BLOCKED = "escalation_notification_blocked"

    # Autopilot
    AUTOPILOT_STARTED = "autopilot_started"
    AUTOPILOT_INBOUND = "autopilot_inbound"
    AUTOPILOT_AI_PLANNED = "autopilot_ai_planned"
    AUTOPILOT_AI_FAILED = "autopilot_ai_failed"
    AUTOPILOT_HANDOVER = "autopilot_handover"
    AUTOPILOT_SCENARIO_SWITCHED = "autopilot_scenario_switched"
    AUTOPILOT_SCENARIO_MIGRATED = "autopilot_scenario_migrated"

    # Messaging
    MESSAGE_QUEUED = "message_queued"
    MESSAGE_BLOCKED = "message_blocked"
    MESSAGE_SENT = "message_sent"
    MESSAGE_FAILED = "message_failed"

    # Proof
    PROOF_STATUS = "proof_status"
    PROOF_MANUAL = "proof_manual"

    # Agent notifications
    HANDOVER_NOTIFICATION_QUEUED = "handover_notification_queued"
    HANDOVER_NOTIFICATION_BLOCKED = "handover_notification_blocked"
    OUTCOME_FOLLOWUP_QUEUED = "outcome_followup_queued"
    AGENT_CONFIRMED_HANDOVER = "agent_confirmed_handover"
    AGENT_DECLINED_HANDOVER = "agent_declined_handover"
    AGENT_OUTCOME_REPORTED = "agent_outcome_reported"
