"""
Proof event model - evidence that a lead was contacted.
"""
import uuid
from datetime import datetime
from typing import Optional

from sqlmodel import SQLModel, Field
from sqlalchemy import UniqueConstraint


class ProofTypes:
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    READ = "READ"


class ProofChannels:
    WHATSAPP = "whatsapp"
    PHONE = "phone"
    EMAIL = "email"
    OTHER = "other"


class ProofEvent(SQLModel, table=True):
    """
    One row per (lead, channel, provider message, type).
    Provider callbacks are deduplicated on that key.
    """
    __tablename__ = "proof_event"
    __table_args__ = (
        UniqueConstraint(
            "lead_id", "channel", "provider_message_id", "type",
            name="uq_proof_event_key",
        ),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    lead_id: uuid.UUID = Field(foreign_key="lead.id", index=True)
    workspace_id: uuid.UUID = Field(foreign_key="workspace.id", index=True)

    channel: str = Field(default=ProofChannels.WHATSAPP)
    provider: str  # mock, twilio, manual
    provider_message_id: str = Field(index=True)
    type: str  # SENT, DELIVERED, READ

    is_manual: bool = Field(default=False)
    note: Optional[str] = None
    actor_user_id: Optional[uuid.UUID] = Field(default=None, foreign_key="user.id")

    occurred_at: datetime = Field(default_factory=datetime.utcnow)
