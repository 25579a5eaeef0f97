"""
SLA state model - one response deadline per lead.
"""
import uuid
from datetime import datetime
from typing import Optional

from sqlmodel import SQLModel, Field


class SLAStopReasons:
    PROOF_SENT = "proof_sent"
    PROOF_DELIVERED = "proof_delivered"
    PROOF_READ = "proof_read"
    PROOF_MANUAL = "proof_manual"
    MANUAL = "manual"


class SLAState(SQLModel, table=True):
    """
    Response clock for a lead.
    stopped_at and breached_at are set once and never cleared.
    A stopped clock never gains breached_at.
    """
    __tablename__ = "sla_state"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    lead_id: uuid.UUID = Field(foreign_key="lead.id", unique=True, index=True)

    started_at: datetime = Field(default_factory=datetime.utcnow)
    deadline_at: datetime = Field(index=True)

    stopped_at: Optional[datetime] = Field(default=None, index=True)
    stop_reason: Optional[str] = None
    stop_proof_event_id: Optional[uuid.UUID] = None

    breached_at: Optional[datetime] = Field(default=None, index=True)

    @property
    def is_running(self) -> bool:
        return self.stopped_at is None and self.breached_at is None
