"""
Identity collaborator used by clearance changes.

Only what the monitoring core needs: look up and update a user's clearance.
Credentials and sessions belong to the surrounding system.
"""

import asyncio
from typing import Protocol

from pydantic import BaseModel, ConfigDict

from core.domain.clearance import ClearanceLevel


class UserRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    staff_id: str
    name: str
    clearance_level: ClearanceLevel


class UserDirectory(Protocol):
    async def get_user(self, user_id: int) -> UserRecord | None: ...

    async def set_clearance(self, user_id: int, level: ClearanceLevel) -> UserRecord | None:
        """Update and return the user, or None if unknown."""
        ...

    async def list_users(self) -> list[UserRecord]: ...


class InMemoryUserDirectory:
    """Process-local user directory."""

    def __init__(self, users: list[UserRecord] | None = None) -> None:
        self._users: dict[int, UserRecord] = {user.user_id: user for user in users or []}
        self._lock = asyncio.Lock()

    async def get_user(self, user_id: int) -> UserRecord | None:
        async with self._lock:
            return self._users.get(user_id)

    async def set_clearance(self, user_id: int, level: ClearanceLevel) -> UserRecord | None:
        async with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return None
            updated = user.model_copy(update={"clearance_level": level})
            self._users[user_id] = updated
            return updated

    async def list_users(self) -> list[UserRecord]:
        async with self._lock:
            return sorted(self._users.values(), key=lambda user: user.user_id)
