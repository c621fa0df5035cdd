"""Presence registry: which users are online and through which connections.

A user has a presence entry if and only if it holds at least one live
connection. Each entry is guarded by its own lock so that register and
deregister calls for one user are serialized while different users never
contend with each other.
"""
import asyncio
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel

from .directory import IdentityDirectory, UserProfile
from ..auth.roles import Role
from ..errors import NotFound, UnauthorizedUser
from ..logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Connection:
    user_id: str
    connection_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class PresenceEntry:
    user_id: str
    display_name: str
    role: Role
    connection_ids: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class PresenceChange:
    user_id: str
    connection_id: str
    became_online: bool = False
    became_offline: bool = False


class OnlineUser(BaseModel):
    userId: str
    displayName: str
    role: Role


class PresenceRegistry:
    def __init__(self, directory: IdentityDirectory):
        self._directory = directory
        self._entries: Dict[str, PresenceEntry] = {}
        self._owners: Dict[str, str] = {}  # connection id -> user id
        # per-user locks live only while someone holds or waits on them
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _user_lock(self, user_id: str):
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[user_id] -= 1
            if not self._lock_users[user_id]:
                del self._lock_users[user_id]
                del self._locks[user_id]

    async def register(self, connection: Connection) -> PresenceChange:
        try:
            profile = self._directory.resolve_user(connection.user_id)
        except NotFound:
            raise UnauthorizedUser(f"Unknown user '{connection.user_id}'")
        if not profile.is_approved:
            raise UnauthorizedUser(f"User '{connection.user_id}' is not approved")

        async with self._user_lock(connection.user_id):
            entry = self._entries.get(connection.user_id)
            became_online = entry is None
            if became_online:
                entry = PresenceEntry(
                    user_id=profile.user_id,
                    display_name=profile.display_name,
                    role=profile.role,
                )
            if connection.connection_id not in entry.connection_ids:
                entry.connection_ids.append(connection.connection_id)
            # publish only once the entry is complete
            self._entries[connection.user_id] = entry
            self._owners[connection.connection_id] = connection.user_id

        if became_online:
            logger.info("%s is now online", connection.user_id)
        return PresenceChange(
            user_id=connection.user_id,
            connection_id=connection.connection_id,
            became_online=became_online,
        )

    async def deregister(self, connection_id: str) -> Optional[PresenceChange]:
        user_id = self._owners.get(connection_id)
        if user_id is None:
            return None

        async with self._user_lock(user_id):
            if self._owners.pop(connection_id, None) is None:
                # lost a race with a duplicate disconnect
                return None
            entry = self._entries[user_id]
            entry.connection_ids.remove(connection_id)
            became_offline = not entry.connection_ids
            if became_offline:
                del self._entries[user_id]

        if became_offline:
            logger.info("%s is now offline", user_id)
        return PresenceChange(
            user_id=user_id,
            connection_id=connection_id,
            became_offline=became_offline,
        )

    def snapshot(self) -> List[OnlineUser]:
        return [
            OnlineUser(userId=entry.user_id, displayName=entry.display_name, role=entry.role)
            for entry in list(self._entries.values())
        ]

    def is_online(self, user_id: str) -> bool:
        return user_id in self._entries

    def online_user_ids(self) -> List[str]:
        return list(self._entries)

    def connections_of(self, user_id: str) -> List[str]:
        entry = self._entries.get(user_id)
        return list(entry.connection_ids) if entry else []

    def connections_for(self, user_ids: Iterable[str]) -> List[str]:
        """live connection ids of the given users, each listed once"""
        targets: Dict[str, None] = {}
        for user_id in user_ids:
            for connection_id in self.connections_of(user_id):
                targets[connection_id] = None
        return list(targets)

    def refresh_profile(self, profile: UserProfile):
        entry = self._entries.get(profile.user_id)
        if entry is not None:
            entry.display_name = profile.display_name
            entry.role = profile.role
