"""
Lead repository with search and ownership operations.
"""
import uuid
from typing import Optional
from datetime import datetime

from sqlmodel import select, or_
from sqlmodel.ext.asyncio.session import AsyncSession

from leadclock.models.lead import Lead, LeadStatus
from leadclock.repositories.base import BaseRepository
from leadclock.core.pagination import Page, fetch_page


class LeadRepository(BaseRepository[Lead]):
    """Repository for Lead operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(Lead, session)

    async def search(
        self,
        workspace_id: uuid.UUID,
        status: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20
    ) -> Page:
        """Search leads of a workspace."""
        query = select(Lead).execution_options(populate_existing=True).where(Lead.workspace_id == workspace_id)

        if status:
            query = query.where(Lead.status == status)
        if search:
            search_term = f"%{search}%"
            query = query.where(
                or_(
                    Lead.first_name.ilike(search_term),
                    Lead.last_name.ilike(search_term),
                    Lead.email.ilike(search_term),
                    Lead.phone.ilike(search_term)
                )
            )

        return await fetch_page(self.session, query.order_by(Lead.created_at.desc()), page, limit)

    async def get_by_external_id(self, workspace_id: uuid.UUID, source: str, external_id: str) -> Optional[Lead]:
        """Get lead by source-specific id (for deduplication)."""
        query = select(Lead).execution_options(populate_existing=True).where(
            Lead.workspace_id == workspace_id,
            Lead.source == source,
            Lead.external_id == external_id
        )
        result = await self.session.exec(query)
        return result.first()

    async def set_owner(self, lead_id: uuid.UUID, owner_user_id: uuid.UUID) -> bool:
        """Move a lead to a new owner."""
        rows = await self.guarded_update(
            Lead.id == lead_id,
            values={"owner_user_id": owner_user_id, "updated_at": datetime.utcnow()}
        )
        return rows == 1

    async def claim_owner(self, lead_id: uuid.UUID, owner_user_id: uuid.UUID) -> bool:
        """Set the owner only if the lead has none."""
        rows = await self.guarded_update(
            Lead.id == lead_id,
            Lead.owner_user_id.is_(None),
            values={"owner_user_id": owner_user_id, "updated_at": datetime.utcnow()}
        )
        return rows == 1

    async def set_status(self, lead_id: uuid.UUID, status: str) -> bool:
        """Update lead status."""
        rows = await self.guarded_update(
            Lead.id == lead_id,
            values={"status": status, "updated_at": datetime.utcnow()}
        )
        return rows == 1

    async def find_by_phone(self, workspace_id: uuid.UUID, phone: str) -> Optional[Lead]:
        """Most recent live lead of a workspace with this phone number."""
        query = (
            select(Lead).execution_options(populate_existing=True)
            .where(
                Lead.workspace_id == workspace_id,
                Lead.phone == phone,
                Lead.status.not_in([LeadStatus.SPAM, LeadStatus.ARCHIVED])
            )
            .order_by(Lead.created_at.desc())
        )
        result = await self.session.exec(query)
        return result.first()
