"""
Lead model - the inbound contact that carries a response obligation.
"""
import uuid
from datetime import datetime
from typing import Optional

from sqlmodel import SQLModel, Field

from leadclock.models.columns import json_column


class LeadStatus:
    NEW = "NEW"
    OPEN = "OPEN"
    QUALIFIED = "QUALIFIED"
    NOT_QUALIFIED = "NOT_QUALIFIED"
    SPAM = "SPAM"
    ARCHIVED = "ARCHIVED"

    ALL = (NEW, OPEN, QUALIFIED, NOT_QUALIFIED, SPAM, ARCHIVED)


class Lead(SQLModel, table=True):
    """
    Lead entity - scoped to a workspace, optionally owned by an agent.
    Never physically deleted; ARCHIVED is the end of its life.
    """
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    workspace_id: uuid.UUID = Field(foreign_key="workspace.id", index=True)
    owner_user_id: Optional[uuid.UUID] = Field(default=None, foreign_key="user.id", index=True)

    # Identity
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = Field(default=None, index=True)
    phone: Optional[str] = Field(default=None, index=True)

    # Source tracking
    source: str = Field(default="manual", index=True)  # manual, webhook, facebook, embed_form
    external_id: Optional[str] = None

    status: str = Field(default=LeadStatus.NEW, index=True)

    # Raw intake payload
    custom_fields: dict = Field(default={}, sa_column=json_column())

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def display_name(self) -> str:
        name = " ".join(part for part in (self.first_name, self.last_name) if part).strip()
        return name or "-"
