"""Dialect-aware statement helpers."""

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from practicegate.models.base import Base


async def insert_ignore(
    session: AsyncSession,
    model: type[Base],
    values: dict[str, Any],
) -> bool:
    """Insert a row unless it violates a unique constraint.

    Runs ``INSERT ... ON CONFLICT DO NOTHING`` so concurrent first-touch
    creation yields exactly one row without a savepoint round trip.

    Returns:
        True if this call inserted the row.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model).values(**values).on_conflict_do_nothing()
    elif dialect == "sqlite":
        stmt = sqlite.insert(model).values(**values).on_conflict_do_nothing()
    else:
        raise NotImplementedError(f"insert_ignore is not supported on {dialect}")

    result = await session.execute(stmt)
    return bool(result.rowcount)
