"""Export scope authorization.

Requesters may always export their own data. Exporting another user's data
needs elevation, which is decided by an ``ExportAuthorizer``.
"""

from collections.abc import Iterable
from typing import Protocol
from uuid import UUID


class ExportAuthorizer(Protocol):
    """Decides whether a requester may export a subject's data."""

    async def can_export(self, requester_id: UUID, subject_user_id: UUID) -> bool: ...


class OwnerOrElevatedAuthorizer:
    """Owner-only access plus a configured set of elevated requesters."""

    def __init__(self, elevated_user_ids: Iterable[UUID | str] = ()) -> None:
        self.elevated_user_ids = frozenset(UUID(str(uid)) for uid in elevated_user_ids)

    async def can_export(self, requester_id: UUID, subject_user_id: UUID) -> bool:
        if requester_id == subject_user_id:
            return True
        return requester_id in self.elevated_user_ids
