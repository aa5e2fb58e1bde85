"""Shared plumbing for the table repositories.

A repository wraps one ``AsyncSession`` for the duration of a
``session_scope`` block. It never commits; the scope does. Callers that
share a database across coroutines hold the component's write lock around
the whole block, so nothing here locks.
"""

from typing import Any, Generic, TypeVar

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ampel_sync.db.models import Base

RowT = TypeVar("RowT", bound=Base)


class BaseRepository(Generic[RowT]):
    """Primary-key lookup, counting and unit-of-work helpers for one table."""

    def __init__(self, session: AsyncSession, row_type: type[RowT]) -> None:
        self._session = session
        self._row_type = row_type

    async def get_by_id(self, id: int) -> RowT | None:
        return await self._session.get(self._row_type, id)

    async def _first_where(self, *criteria: Any) -> RowT | None:
        """The single row matching ``criteria``, if any."""
        result = await self._session.execute(select(self._row_type).where(*criteria))
        return result.scalar_one_or_none()

    async def count(self, *criteria: Any) -> int:
        stmt = select(func.count()).select_from(self._row_type)
        if criteria:
            stmt = stmt.where(*criteria)
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    def add(self, row: RowT) -> RowT:
        """Stage a new row; ids are assigned on the next flush."""
        self._session.add(row)
        return row

    async def flush(self) -> None:
        await self._session.flush()

    async def delete(self, row: RowT) -> None:
        await self._session.delete(row)
