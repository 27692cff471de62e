"""Caller identity dependencies.

Authentication happens upstream: the identity provider forwards the
authenticated user id in a trusted header and the API only parses it.
"""

from typing import Annotated
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status

from practicegate.core.config import Settings, get_settings
from practicegate.core.logging import bind_contextvars


async def get_current_user_id(
    request: Request,
    settings: Annotated[Settings, Depends(get_settings)],
) -> UUID:
    """Authenticated user id from the identity header."""
    raw_user_id = request.headers.get(settings.user_id_header)
    if not raw_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authenticated user",
        )

    try:
        user_id = UUID(raw_user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Malformed authenticated user id",
        ) from None

    bind_contextvars(user_id=str(user_id))
    return user_id


CurrentUserId = Annotated[UUID, Depends(get_current_user_id)]
