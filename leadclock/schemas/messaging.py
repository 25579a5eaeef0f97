"""
Messaging, dispatch and proof callback schemas.
"""
import uuid
from typing import Optional
from pydantic import BaseModel, Field, field_validator


class DispatchRequest(BaseModel):
    limit: Optional[int] = Field(default=None, ge=1, le=500)


class DispatchSummary(BaseModel):
    """
    Counters of one dispatch batch; processed == sent + failed + skipped.
    skipped counts messages another dispatcher moved out of QUEUED first
    (lost races). It stays zero when a single dispatcher runs, so then
    processed == sent + failed.
    """
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0


class DeliveryStatusCallback(BaseModel):
    """Provider delivery/read receipt."""
    lead_id: uuid.UUID
    provider: str = "stub"
    provider_message_id: str = Field(..., min_length=1)
    status: str = Field(..., pattern="^(DELIVERED|READ)$")

    @field_validator("status", mode="before")
    @classmethod
    def _upper_status(cls, value):
        return value.upper() if isinstance(value, str) else value


class DeliveryStatusResult(BaseModel):
    proof_event_id: uuid.UUID
    reused: bool
    sla_stopped: bool = False


class InboundWhatsApp(BaseModel):
    """Inbound WhatsApp message from a lead or an agent."""
    workspace_id: uuid.UUID
    from_phone: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1)
    provider: str = "stub"
    provider_message_id: Optional[str] = None


class InboundResult(BaseModel):
    handled_as: str  # lead_reply, agent_reply, unmatched
    lead_id: Optional[uuid.UUID] = None
    action: Optional[str] = None


class AgentReplyResult(BaseModel):
    ok: bool
    action: str
    lead_id: Optional[uuid.UUID] = None


class FollowupSummary(BaseModel):
    followups_queued: int = 0
    expired: int = 0
