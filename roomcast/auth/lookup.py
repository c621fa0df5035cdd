"""User lookup capability backed by the users table."""
from typing import List

from sqlalchemy.orm import Session

from .models import User
from .roles import UserStatus
from ..chat.directory import UserProfile
from ..errors import NotFound


def profile_from_user(user: User) -> UserProfile:
    return UserProfile(
        user_id=user.username,
        display_name=user.display_name or user.username,
        avatar=user.avatar,
        role=user.role_enum,
        status=UserStatus(user.status),
    )


class SqlUserLookup:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    def resolve_user(self, user_id: str) -> UserProfile:
        db: Session = self._session_factory()
        try:
            user = db.query(User).filter(User.username == user_id).first()
            if user is None:
                raise NotFound(f"User '{user_id}' not found")
            return profile_from_user(user)
        finally:
            db.close()

    def list_users(self) -> List[UserProfile]:
        db: Session = self._session_factory()
        try:
            return [profile_from_user(user) for user in db.query(User).all()]
        finally:
            db.close()

    def list_approved_users(self) -> List[UserProfile]:
        return [profile for profile in self.list_users() if profile.is_approved]
