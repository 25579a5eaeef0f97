"""
Workspace and membership repositories.
"""
import uuid
from typing import Optional, List, Tuple
from datetime import datetime

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from leadclock.models.workspace import Workspace, WorkspaceMember, User, MemberRoles
from leadclock.repositories.base import BaseRepository


class WorkspaceRepository(BaseRepository[Workspace]):
    """Repository for Workspace operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(Workspace, session)


class UserRepository(BaseRepository[User]):
    """Repository for User operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(User, session)


class MemberRepository(BaseRepository[WorkspaceMember]):
    """Repository for workspace membership and agent selection."""

    def __init__(self, session: AsyncSession):
        super().__init__(WorkspaceMember, session)

    async def get_member(self, workspace_id: uuid.UUID, user_id: uuid.UUID) -> Optional[Tuple[WorkspaceMember, User]]:
        query = (
            select(WorkspaceMember, User).execution_options(populate_existing=True)
            .join(User, User.id == WorkspaceMember.user_id)
            .where(
                WorkspaceMember.workspace_id == workspace_id,
                WorkspaceMember.user_id == user_id
            )
        )
        result = await self.session.exec(query)
        return result.first()

    async def get_available_member(self, workspace_id: uuid.UUID, user_id: uuid.UUID) -> Optional[Tuple[WorkspaceMember, User]]:
        """Member row if the user is an active, available member."""
        row = await self.get_member(workspace_id, user_id)
        if row is None:
            return None
        member, user = row
        if not (member.is_active and member.is_available and user.is_active):
            return None
        return row

    async def next_available_agent(
        self,
        workspace_id: uuid.UUID,
        exclude_user_id: Optional[uuid.UUID] = None
    ) -> Optional[Tuple[WorkspaceMember, User]]:
        """Least-recently-assigned available member (never-assigned first)."""
        query = (
            select(WorkspaceMember, User).execution_options(populate_existing=True)
            .join(User, User.id == WorkspaceMember.user_id)
            .where(
                WorkspaceMember.workspace_id == workspace_id,
                WorkspaceMember.is_active == True,  # noqa: E712
                WorkspaceMember.is_available == True,  # noqa: E712
                User.is_active == True  # noqa: E712
            )
            .order_by(
                WorkspaceMember.last_assigned_at.is_not(None),
                WorkspaceMember.last_assigned_at,
                WorkspaceMember.joined_at
            )
        )
        if exclude_user_id:
            query = query.where(WorkspaceMember.user_id != exclude_user_id)
        result = await self.session.exec(query)
        return result.first()

    async def list_managers(self, workspace_id: uuid.UUID) -> List[Tuple[WorkspaceMember, User]]:
        """Active owners, admins and managers."""
        query = (
            select(WorkspaceMember, User).execution_options(populate_existing=True)
            .join(User, User.id == WorkspaceMember.user_id)
            .where(
                WorkspaceMember.workspace_id == workspace_id,
                WorkspaceMember.is_active == True,  # noqa: E712
                WorkspaceMember.role.in_(MemberRoles.MANAGEMENT)
            )
        )
        result = await self.session.exec(query)
        return result.all()

    async def touch_assigned(self, member_id: uuid.UUID, when: Optional[datetime] = None) -> None:
        await self.guarded_update(
            WorkspaceMember.id == member_id,
            values={"last_assigned_at": when or datetime.utcnow()}
        )
