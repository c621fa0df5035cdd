"""Identity directory: the engine's read model of user profiles.

Profiles are loaded once from the user lookup at startup and updated in
place whenever a profile changes (signup, approval, role change). The
engine never queries the database on the message path.
"""
from typing import Dict, Iterable, List, Optional, Set, Tuple

from pydantic import BaseModel

from ..auth.roles import Role, UserStatus
from ..errors import NotFound
from ..logger import get_logger

logger = get_logger(__name__)


class UserProfile(BaseModel):
    user_id: str
    display_name: str
    avatar: Optional[str] = None
    role: Role = Role.MEMBER
    status: UserStatus = UserStatus.PENDING

    @property
    def is_approved(self) -> bool:
        return self.status == UserStatus.APPROVED


class IdentityDirectory:
    def __init__(self, profiles: Iterable[UserProfile] = ()):
        self._profiles: Dict[str, UserProfile] = {}
        self._blocks: Set[Tuple[str, str]] = set()
        self.load(profiles)

    def load(self, profiles: Iterable[UserProfile]):
        self._profiles = {profile.user_id: profile for profile in profiles}
        logger.info("Identity directory loaded with %d profiles", len(self._profiles))

    def resolve_user(self, user_id: str) -> UserProfile:
        profile = self._profiles.get(user_id)
        if profile is None:
            raise NotFound(f"User '{user_id}' not found")
        return profile

    def find(self, user_id: str) -> Optional[UserProfile]:
        return self._profiles.get(user_id)

    def list_approved_users(self) -> List[UserProfile]:
        return [p for p in self._profiles.values() if p.is_approved]

    def upsert(self, profile: UserProfile):
        self._profiles[profile.user_id] = profile

    def block(self, user_id: str, target_id: str):
        self.resolve_user(target_id)
        self._blocks.add((user_id, target_id))

    def unblock(self, user_id: str, target_id: str):
        self._blocks.discard((user_id, target_id))

    def is_blocked(self, a: str, b: str) -> bool:
        """True when either user blocked the other"""
        return (a, b) in self._blocks or (b, a) in self._blocks
