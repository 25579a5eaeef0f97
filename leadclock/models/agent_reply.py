"""
Pending agent reply model - tracks questions sent to agents over WhatsApp.
"""
import uuid
from datetime import datetime
from typing import Optional

from sqlmodel import SQLModel, Field


class AgentReplyTypes:
    HANDOVER_CONFIRMATION = "handover_confirmation"
    OUTCOME_FOLLOWUP = "outcome_followup"


class AgentReplyStatus:
    PENDING = "PENDING"
    REPLIED = "REPLIED"
    EXPIRED = "EXPIRED"


class PendingAgentReply(SQLModel, table=True):
    __tablename__ = "pending_agent_reply"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    lead_id: uuid.UUID = Field(foreign_key="lead.id", index=True)
    workspace_id: uuid.UUID = Field(foreign_key="workspace.id", index=True)
    agent_user_id: uuid.UUID = Field(foreign_key="user.id", index=True)
    agent_phone: str

    type: str  # handover_confirmation, outcome_followup
    status: str = Field(default=AgentReplyStatus.PENDING, index=True)  # PENDING, REPLIED, EXPIRED

    expires_at: datetime
    reply_value: Optional[str] = None
    replied_at: Optional[datetime] = None

    outbound_message_id: Optional[uuid.UUID] = Field(default=None, foreign_key="outbound_message.id")

    created_at: datetime = Field(default_factory=datetime.utcnow)
