"""
Offset pagination shared by the list endpoints.
"""
from typing import TypeVar, Generic, List

from pydantic import BaseModel, computed_field
from sqlmodel import select, func
from sqlmodel.ext.asyncio.session import AsyncSession

T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    """One page of a listing plus the counters the UI pages on."""
    items: List[T]
    total: int
    page: int
    limit: int

    @computed_field
    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit > 0 else 0

    @computed_field
    @property
    def has_next(self) -> bool:
        return self.page < self.pages

    @computed_field
    @property
    def has_prev(self) -> bool:
        return self.page > 1


async def fetch_page(session: AsyncSession, query, page: int, limit: int) -> Page:
    """
    Count the rows of an ordered select, then load the requested slice.
    page is 1-based.
    """
    count_query = select(func.count()).select_from(query.order_by(None).subquery())
    total = (await session.exec(count_query)).one()

    rows = await session.exec(query.offset((page - 1) * limit).limit(limit))
    return Page(items=rows.all(), total=total, page=page, limit=limit)
