"""Base repository shared by the package tables."""

from typing import Any, Generic, TypeVar

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from hoard.db.base import Base

T = TypeVar("T", bound=Base)


class BaseRepository(Generic[T]):
    """Async CRUD over one table, bound to the caller's session.

    Repositories never commit; ``StateStore.transaction`` owns the boundary.
    """

    def __init__(self, session: AsyncSession, model_class: type[T]):
        self.session = session
        self.model_class = model_class

    async def get_by_id(self, pk_field: str, pk_value: Any) -> T | None:
        stmt = select(self.model_class).where(getattr(self.model_class, pk_field) == pk_value)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, **kwargs: Any) -> T:
        """Insert a row and flush so its generated id is available."""
        row = self.model_class(**kwargs)
        self.session.add(row)
        await self.session.flush()
        return row

    async def update(self, row: T, **kwargs: Any) -> T:
        for key, value in kwargs.items():
            setattr(row, key, value)
        await self.session.flush()
        return row

    async def delete_where_in(self, field: str, values: list[Any]) -> None:
        if not values:
            return
        await self.session.execute(delete(self.model_class).where(getattr(self.model_class, field).in_(values)))
