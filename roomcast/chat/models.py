from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey, Boolean, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
from ..database import Base





class Room(Base):
    __tablename__ = "rooms"

    id = Column(Integer, primary_key=True, index=True)
    room_key = Column(String(120), unique=True, index=True, nullable=False)
    kind = Column(String(20), nullable=False, default="channel")
    visibility = Column(String(20), nullable=False, default="public")
    created_by = Column(String(50))
    created_at = Column(DateTime, default=datetime.utcnow)

    messages = relationship("Message", back_populates="room", cascade="all, delete-orphan")
    members = relationship("RoomMember", back_populates="room", cascade="all, delete-orphan")


    def __repr__(self):
        return f"<Room '{self.room_key}' ({self.kind})>"




class RoomMember(Base):
    __tablename__ = "room_members"
    __table_args__ = (UniqueConstraint("room_id", "user_id"),)

    id = Column(Integer, primary_key=True)
    room_id = Column(Integer, ForeignKey("rooms.id"), nullable=False, index=True)
    user_id = Column(String(50), nullable=False)

    room = relationship("Room", back_populates="members")




class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (UniqueConstraint("room_id", "seq"),)

    id = Column(Integer, primary_key=True, index=True)
    seq = Column(Integer, nullable=False)  # per-room message id
    content = Column(Text, nullable=False)
    timestamp = Column(DateTime, index=True)
    reply_to = Column(Integer)
    is_deleted = Column(Boolean, default=False)
    author_id = Column(String(50), nullable=False)
    room_id = Column(Integer, ForeignKey("rooms.id"), nullable=False)

    room = relationship("Room", back_populates="messages")



    def __repr__(self):
        return f"<Message {self.seq} by {self.author_id}>"
