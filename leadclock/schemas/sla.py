"""
SLA and escalation schemas.
"""
from typing import Optional
from datetime import datetime, timezone
from pydantic import BaseModel, Field, field_validator


class SLAStartRequest(BaseModel):
    """Start a clock; deadline defaults to now + workspace SLA minutes."""
    deadline_at: Optional[datetime] = None
    started_at: Optional[datetime] = None

    @field_validator("deadline_at", "started_at")
    @classmethod
    def _naive_utc(cls, value):
        # Stored timestamps are naive UTC
        if value is not None and value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value


class SLAStopRequest(BaseModel):
    reason: str = Field(default="manual", pattern="^(manual|proof_manual)$")


class SLAStopResult(BaseModel):
    already_stopped: bool
    stopped_at: Optional[datetime] = None


class BreachSummary(BaseModel):
    processed: int = 0
    breached: int = 0


class EscalationSummary(BaseModel):
    evaluated: int = 0
    reminders: int = 0
    reassignments: int = 0
    manager_alerts: int = 0
