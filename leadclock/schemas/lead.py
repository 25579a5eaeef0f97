"""
Lead schemas.
"""
import uuid
from typing import Optional
from datetime import datetime
from pydantic import BaseModel, EmailStr, Field

from leadclock.models.lead import LeadStatus


class LeadCreate(BaseModel):
    """Intake payload for a new lead."""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    source: str = "manual"
    external_id: Optional[str] = None
    owner_user_id: Optional[uuid.UUID] = None
    custom_fields: Optional[dict] = {}

    class Config:
        json_schema_extra = {
            "example": {
                "first_name": "Ana",
                "last_name": "Pop",
                "phone": "+40712345678",
                "email": "ana@example.com",
                "source": "webhook"
            }
        }


class LeadStatusUpdate(BaseModel):
    """Change the status of a lead."""
    status: str = Field(..., pattern="^(" + "|".join(LeadStatus.ALL) + ")$")


class LeadResponse(BaseModel):
    """Lead response."""
    id: uuid.UUID
    workspace_id: uuid.UUID
    owner_user_id: Optional[uuid.UUID]
    first_name: Optional[str]
    last_name: Optional[str]
    email: Optional[str]
    phone: Optional[str]
    source: str
    external_id: Optional[str]
    status: str
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class SLAStateResponse(BaseModel):
    """SLA clock snapshot."""
    lead_id: uuid.UUID
    started_at: datetime
    deadline_at: datetime
    stopped_at: Optional[datetime]
    stop_reason: Optional[str]
    breached_at: Optional[datetime]
    stop_proof_event_id: Optional[uuid.UUID]

    class Config:
        from_attributes = True


class LeadDetailResponse(LeadResponse):
    """Lead with its SLA clock and autopilot summary."""
    sla: Optional[SLAStateResponse] = None
    autopilot_status: Optional[str] = None
    escalation_level: Optional[str] = None


class EventLogResponse(BaseModel):
    """Timeline entry."""
    id: uuid.UUID
    lead_id: uuid.UUID
    event_type: str
    payload: dict
    actor_user_id: Optional[uuid.UUID]
    occurred_at: datetime

    class Config:
        from_attributes = True


class ManualProofCreate(BaseModel):
    """Manual proof of contact recorded by an agent."""
    channel: str = Field(default="phone", pattern="^(whatsapp|phone|email|other)$")
    note: Optional[str] = Field(default=None, max_length=1000)


class ProofEventResponse(BaseModel):
    id: uuid.UUID
    lead_id: uuid.UUID
    channel: str
    provider: str
    provider_message_id: str
    type: str
    is_manual: bool
    note: Optional[str]
    occurred_at: datetime

    class Config:
        from_attributes = True
