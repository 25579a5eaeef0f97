"""
Base repository with generic CRUD operations.
Repositories flush but never commit; services own the transaction.
"""
import uuid
from typing import TypeVar, Generic, Type, Optional, List, Any

from sqlmodel import SQLModel, select
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlalchemy import update

from leadclock.core.pagination import Page, fetch_page

ModelType = TypeVar("ModelType", bound=SQLModel)


class BaseRepository(Generic[ModelType]):
    """
    Generic repository with CRUD operations.
    Inherit and specify the model class.
    """

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        self.model = model
        self.session = session

    async def create(self, obj_in: dict) -> ModelType:
        """Create a new record inside the current transaction."""
        db_obj = self.model(**obj_in)
        self.session.add(db_obj)
        await self.session.flush()
        await self.session.refresh(db_obj)
        return db_obj

    async def get(self, id: uuid.UUID) -> Optional[ModelType]:
        """Get a record by ID (reloaded, guarded updates bypass the identity map)."""
        return await self.session.get(self.model, id, populate_existing=True)

    async def get_by_field(self, field: str, value: Any) -> Optional[ModelType]:
        """Get a record by a specific field."""
        query = select(self.model).where(getattr(self.model, field) == value).execution_options(
            populate_existing=True
        )
        result = await self.session.exec(query)
        return result.first()

    async def get_in_workspace(self, workspace_id: uuid.UUID, id: uuid.UUID) -> Optional[ModelType]:
        """Get a record by ID, scoped to a workspace."""
        query = select(self.model).where(
            self.model.id == id,
            self.model.workspace_id == workspace_id
        ).execution_options(populate_existing=True)
        result = await self.session.exec(query)
        return result.first()

    def _select(self):
        return select(self.model).execution_options(populate_existing=True)

    def _apply_filters(self, query, workspace_id: Optional[uuid.UUID], filters: Optional[dict]):
        if workspace_id and hasattr(self.model, "workspace_id"):
            query = query.where(self.model.workspace_id == workspace_id)

        if filters:
            for field, value in filters.items():
                if hasattr(self.model, field) and value is not None:
                    query = query.where(getattr(self.model, field) == value)
        return query

    def _ordered(self, workspace_id: Optional[uuid.UUID], filters: Optional[dict], order_by: str, order_desc: bool):
        query = self._apply_filters(self._select(), workspace_id, filters)
        if hasattr(self.model, order_by):
            order_column = getattr(self.model, order_by)
            query = query.order_by(order_column.desc() if order_desc else order_column)
        return query

    async def list(
        self,
        workspace_id: Optional[uuid.UUID] = None,
        filters: Optional[dict] = None,
        order_by: str = "created_at",
        order_desc: bool = True
    ) -> List[ModelType]:
        """List all records with optional filters."""
        result = await self.session.exec(self._ordered(workspace_id, filters, order_by, order_desc))
        return result.all()

    async def list_paginated(
        self,
        workspace_id: Optional[uuid.UUID] = None,
        filters: Optional[dict] = None,
        page: int = 1,
        limit: int = 20,
        order_by: str = "created_at",
        order_desc: bool = True
    ) -> Page:
        """One page of records, newest first by default."""
        query = self._ordered(workspace_id, filters, order_by, order_desc)
        return await fetch_page(self.session, query, page, limit)

    async def guarded_update(self, *where, values: dict) -> int:
        """
        Conditional UPDATE ... WHERE <guards>.
        Returns the number of rows affected; zero means another writer won.
        """
        stmt = (
            update(self.model)
            .where(*where)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.exec(stmt)
        return result.rowcount
