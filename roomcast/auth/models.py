from sqlalchemy import Column, Integer, String, DateTime
from datetime import datetime

from .roles import Role, UserStatus
from ..database import Base



class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, index=True, nullable=False)
    email = Column(String(100), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    display_name = Column(String(50))
    avatar = Column(String(255))
    role = Column(String(20), default=Role.MEMBER.value)  # member, moderator, co-owner, owner
    status = Column(String(20), default=UserStatus.PENDING.value)
    created_at = Column(DateTime, default=datetime.utcnow)
    last_seen = Column(DateTime)



    def __repr__(self):
        return f"<User {self.username} ({self.role}, {self.status})>"


    @property
    def is_approved(self):
        return self.status == UserStatus.APPROVED.value


    @property
    def role_enum(self) -> Role:
        return Role(self.role or Role.MEMBER.value)
