"""
Dialect-aware DML helpers.

INSERT ... ON CONFLICT DO NOTHING is the storage-level idempotency backstop.
PostgreSQL runs in production; SQLite backs the in-memory test database.
"""

from collections.abc import Sequence
from typing import Any
from uuid import UUID

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from bitindie.db.models import Base
from bitindie.exceptions import DatabaseError


def _insert_for(session: AsyncSession, model: type[Base]) -> Any:
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise DatabaseError(f"INSERT ... ON CONFLICT not supported on dialect {dialect}")


async def insert_or_ignore(
    session: AsyncSession,
    model: type[Base],
    values: dict[str, Any],
    conflict_columns: Sequence[str],
) -> UUID | None:
    """
    Insert a row unless it collides on conflict_columns.

    Returns:
        New row id, or None when the row already existed
    """
    stmt = (
        _insert_for(session, model)
        .values(**values)
        .on_conflict_do_nothing(index_elements=list(conflict_columns))
        .returning(model.id)  # type: ignore[attr-defined]
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()
