"""
Autopilot models - scenarios and per-lead conversation runs.
"""
import uuid
from datetime import datetime
from typing import Optional, Dict, Any, List

from sqlmodel import SQLModel, Field
from sqlalchemy import Index, text

from leadclock.models.columns import json_column


class ScenarioTypes:
    QUALIFY_ONLY = "QUALIFY_ONLY"
    QUALIFY_AND_BOOK = "QUALIFY_AND_BOOK"


class ScenarioModes:
    RULES = "RULES"
    AI = "AI"


class RunStatus:
    ACTIVE = "ACTIVE"
    HANDED_OVER = "HANDED_OVER"


class RunNodes:
    START = "q1"
    HANDOVER = "handover"


class AutopilotScenario(SQLModel, table=True):
    """
    Conversation script for a workspace.
    At most one scenario per workspace is the default.
    """
    __tablename__ = "autopilot_scenario"
    __table_args__ = (
        Index(
            "uq_autopilot_scenario_default",
            "workspace_id",
            unique=True,
            postgresql_where=text("is_default"),
            sqlite_where=text("is_default"),
        ),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    workspace_id: uuid.UUID = Field(foreign_key="workspace.id", index=True)

    name: str
    scenario_type: str = Field(default=ScenarioTypes.QUALIFY_ONLY)  # QUALIFY_ONLY, QUALIFY_AND_BOOK
    mode: str = Field(default=ScenarioModes.RULES)  # RULES, AI
    max_questions: int = Field(default=2)
    is_default: bool = Field(default=False)

    # Prompt and its template variables
    ai_prompt: Optional[str] = None
    agent_name: Optional[str] = None
    company_name: Optional[str] = None
    company_description: Optional[str] = None
    offer_summary: Optional[str] = None
    calendar_link: Optional[str] = None

    handover_user_id: Optional[uuid.UUID] = Field(default=None, foreign_key="user.id")

    required_slots: List[str] = Field(default=[], sa_column=json_column())
    # Example: ["name", "service"]

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class AutopilotRun(SQLModel, table=True):
    """
    Conversation state for one lead. One run per lead.
    revision increments on every state write and guards concurrent replies.
    """
    __tablename__ = "autopilot_run"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    lead_id: uuid.UUID = Field(foreign_key="lead.id", unique=True, index=True)
    workspace_id: uuid.UUID = Field(foreign_key="workspace.id", index=True)
    scenario_id: uuid.UUID = Field(foreign_key="autopilot_scenario.id", index=True)

    status: str = Field(default=RunStatus.ACTIVE, index=True)  # ACTIVE, HANDED_OVER
    current_step: str = Field(default=RunNodes.START)

    state_json: Dict[str, Any] = Field(default={}, sa_column=json_column())
    # Shape: {"node": "q1", "answers": {}, "question_index": 0}

    revision: int = Field(default=0)

    last_inbound_at: Optional[datetime] = None
    last_outbound_at: Optional[datetime] = None

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
