"""
Outbound message model - the dispatch queue.
"""
import uuid
from datetime import datetime
from typing import Optional

from sqlmodel import SQLModel, Field


class MessageStatus:
    QUEUED = "QUEUED"
    SENT = "SENT"
    FAILED = "FAILED"


class MessageRecipients:
    LEAD = "lead"
    AGENT = "agent"


class FailureReasons:
    MISSING_TO_PHONE = "missing_toPhone"
    PROVIDER_ERROR = "provider_error"


class OutboundMessage(SQLModel, table=True):
    """
    Message waiting for (or done with) delivery.
    status leaves QUEUED exactly once.
    """
    __tablename__ = "outbound_message"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    lead_id: uuid.UUID = Field(foreign_key="lead.id", index=True)
    workspace_id: uuid.UUID = Field(foreign_key="workspace.id", index=True)

    channel: str = Field(default="whatsapp")
    recipient: str = Field(default=MessageRecipients.LEAD)  # lead, agent
    status: str = Field(default=MessageStatus.QUEUED, index=True)  # QUEUED, SENT, FAILED

    to_phone: Optional[str] = None
    text: str

    # Provider results
    provider: Optional[str] = None
    provider_message_id: Optional[str] = Field(default=None, index=True)
    sent_at: Optional[datetime] = None
    failure_reason: Optional[str] = None  # missing_toPhone, provider_error
    error_message: Optional[str] = None

    # Status callbacks
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
