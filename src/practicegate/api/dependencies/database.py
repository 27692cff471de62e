"""Database session dependency."""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession

from practicegate.core.database import get_session_context


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield a request-scoped session; committed on success, rolled back on error."""
    async with get_session_context() as session:
        yield session
