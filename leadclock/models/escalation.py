"""
Escalation event model.
"""
import uuid
from datetime import datetime

from sqlmodel import SQLModel, Field
from sqlalchemy import UniqueConstraint


class EscalationLevels:
    REMINDER = "REMINDER"
    REASSIGN = "REASSIGN"
    MANAGER_ALERT = "MANAGER_ALERT"

    # Strictly increasing severity
    ORDER = (REMINDER, REASSIGN, MANAGER_ALERT)

    @classmethod
    def rank(cls, level: str) -> int:
        return cls.ORDER.index(level)


class EscalationEvent(SQLModel, table=True):
    """
    Immutable record that a lead reached an escalation level.
    At most one row per (lead, level).
    """
    __tablename__ = "escalation_event"
    __table_args__ = (
        UniqueConstraint("lead_id", "level", name="uq_escalation_lead_level"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    lead_id: uuid.UUID = Field(foreign_key="lead.id", index=True)
    workspace_id: uuid.UUID = Field(foreign_key="workspace.id", index=True)

    level: str  # REMINDER, REASSIGN, MANAGER_ALERT
    elapsed_pct: float
    threshold_pct: float

    created_at: datetime = Field(default_factory=datetime.utcnow)
