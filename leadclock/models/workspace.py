"""
Workspace, user and membership models.
Every lead, scenario and message is scoped to a workspace.
"""
import uuid
from datetime import datetime
from typing import Optional, List

from sqlmodel import SQLModel, Field, Relationship


class MemberRoles:
    OWNER = "owner"
    ADMIN = "admin"
    MANAGER = "manager"
    AGENT = "agent"

    # Roles that receive manager alerts
    MANAGEMENT = (OWNER, ADMIN, MANAGER)


class Workspace(SQLModel, table=True):
    """
    Workspace/Tenant model.
    Carries the response settings the engines read.
    """
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    name: str = Field(index=True)

    # Company profile (autopilot prompt variables)
    company_name: Optional[str] = None
    company_description: Optional[str] = None

    # Response settings
    sla_minutes: int = Field(default=15)
    autopilot_enabled: bool = Field(default=False)
    timezone: str = Field(default="UTC")

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    # Relationships
    members: List["WorkspaceMember"] = Relationship(back_populates="workspace")


class WorkspaceMember(SQLModel, table=True):
    """
    Junction table for User-Workspace membership.
    Holds the role and the agent availability toggle.
    """
    __tablename__ = "workspace_member"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: uuid.UUID = Field(foreign_key="user.id", index=True)
    workspace_id: uuid.UUID = Field(foreign_key="workspace.id", index=True)

    # Role in this workspace
    role: str = Field(default=MemberRoles.AGENT)  # owner, admin, manager, agent

    # Status
    is_active: bool = Field(default=True)
    is_available: bool = Field(default=True)

    # Round-robin bookkeeping for reassignment and handover
    last_assigned_at: Optional[datetime] = None

    # Timestamps
    joined_at: datetime = Field(default_factory=datetime.utcnow)

    # Relationships
    user: "User" = Relationship(back_populates="memberships")
    workspace: Workspace = Relationship(back_populates="members")


class User(SQLModel, table=True):
    """
    User model (identity is managed externally; this is the local profile).
    """
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)

    email: str = Field(unique=True, index=True)
    full_name: Optional[str] = None
    phone: Optional[str] = None  # WhatsApp number for agent notifications

    is_active: bool = Field(default=True)

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    # Relationships
    memberships: List[WorkspaceMember] = Relationship(back_populates="user")
