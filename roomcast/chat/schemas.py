from pydantic import BaseModel, Field, TypeAdapter, validator
from typing import Annotated, List, Literal, Optional, Union
from datetime import datetime

from .directory import IdentityDirectory
from .rooms import Message, Poll, Room, RoomKind, Visibility
from ..auth.roles import Role
from ..config import settings



# ---------------------------------------------------------------------------
# inbound websocket events
# ---------------------------------------------------------------------------

def _clean_content(v):
    if not v.strip():
        raise ValueError('Message cannot be empty')
    if len(v) > settings.MAX_MESSAGE_LENGTH:
        raise ValueError(f'Message is too long (max {settings.MAX_MESSAGE_LENGTH} characters)')
    return v.strip()


class Authenticate(BaseModel):
    type: Literal["authenticate"]
    token: str


class JoinRoom(BaseModel):
    type: Literal["join-room"]
    roomId: str


class LeaveRoom(BaseModel):
    type: Literal["leave-room"]
    roomId: str


class SendMessage(BaseModel):
    type: Literal["send-message"]
    roomId: str
    content: str
    replyTo: Optional[int] = None

    @validator('content')
    def content_must_not_be_empty(cls, v):
        return _clean_content(v)


class SendDirectMessage(BaseModel):
    type: Literal["send-dm"]
    recipientId: str
    content: str

    @validator('content')
    def content_must_not_be_empty(cls, v):
        return _clean_content(v)


class Typing(BaseModel):
    type: Literal["typing"]
    roomId: str


class StopTyping(BaseModel):
    type: Literal["stop-typing"]
    roomId: str


class CreateChannel(BaseModel):
    type: Literal["create-channel"]
    name: str
    visibility: Visibility = Visibility.PUBLIC

    @validator('name')
    def name_must_be_valid(cls, v):
        v = v.strip()
        if len(v) < 1 or len(v) > 100:
            raise ValueError('Channel name must be between 1 and 100 characters')
        if ':' in v:
            raise ValueError("Channel name cannot contain ':'")
        return v


class DeleteRoom(BaseModel):
    type: Literal["delete-room"]
    roomId: str


class InviteUser(BaseModel):
    type: Literal["invite-user"]
    roomId: str
    userId: str


class DeleteMessage(BaseModel):
    type: Literal["delete-message"]
    roomId: str
    messageId: int


class CreatePoll(BaseModel):
    type: Literal["create-poll"]
    roomId: str
    question: str
    options: List[str]

    @validator('question')
    def question_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('Poll question cannot be empty')
        if len(v) > settings.MAX_MESSAGE_LENGTH:
            raise ValueError('Poll question is too long')
        return v.strip()

    @validator('options')
    def options_must_be_valid(cls, v):
        options = [option.strip() for option in v]
        if not 2 <= len(options) <= settings.MAX_POLL_OPTIONS:
            raise ValueError(f'A poll needs between 2 and {settings.MAX_POLL_OPTIONS} options')
        if not all(options):
            raise ValueError('Poll options cannot be empty')
        if len(set(options)) != len(options):
            raise ValueError('Poll options must be distinct')
        return options


class VotePoll(BaseModel):
    type: Literal["vote-poll"]
    roomId: str
    pollId: int
    option: int


InboundEvent = Annotated[
    Union[
        JoinRoom, LeaveRoom, SendMessage, SendDirectMessage, Typing, StopTyping,
        CreateChannel, DeleteRoom, InviteUser, DeleteMessage, CreatePoll, VotePoll,
    ],
    Field(discriminator="type"),
]

inbound_adapter = TypeAdapter(InboundEvent)
authenticate_adapter = TypeAdapter(Authenticate)



# ---------------------------------------------------------------------------
# outbound payloads
# ---------------------------------------------------------------------------

class AuthorOut(BaseModel):
    userId: str
    displayName: str
    role: Optional[Role] = None


class MessageOut(BaseModel):
    id: int
    roomId: str
    author: AuthorOut
    content: str
    replyTo: Optional[int] = None
    replyPreview: Optional[str] = None
    timestamp: datetime
    deleted: bool = False


class RoomSummary(BaseModel):
    roomId: str
    kind: RoomKind
    visibility: Visibility
    creatorId: Optional[str] = None
    memberCount: int


class PollOptionOut(BaseModel):
    text: str
    votes: int


class PollOut(BaseModel):
    pollId: int
    roomId: str
    creatorId: str
    question: str
    options: List[PollOptionOut]
    totalVotes: int
    createdAt: datetime


class RoomSnapshot(RoomSummary):
    members: List[str]
    messages: List[MessageOut]
    polls: List[PollOut] = []


DELETED_PREVIEW = "message deleted"
PREVIEW_LENGTH = 50


def author_out(directory: IdentityDirectory, user_id: str) -> AuthorOut:
    profile = directory.find(user_id)
    if profile is None:
        return AuthorOut(userId=user_id, displayName=user_id)
    return AuthorOut(userId=user_id, displayName=profile.display_name, role=profile.role)


def reply_preview(room: Room, reply_to: Optional[int]) -> Optional[str]:
    if reply_to is None:
        return None
    target = room.find_message(reply_to)
    if target is None:
        return None
    if target.deleted:
        return DELETED_PREVIEW
    if len(target.content) <= PREVIEW_LENGTH:
        return target.content
    return target.content[:PREVIEW_LENGTH - 3] + "..."


def message_out(directory: IdentityDirectory, room: Room, message: Message) -> MessageOut:
    return MessageOut(
        id=message.id,
        roomId=message.room_id,
        author=author_out(directory, message.author_id),
        content=DELETED_PREVIEW if message.deleted else message.content,
        replyTo=message.reply_to,
        replyPreview=reply_preview(room, message.reply_to),
        timestamp=message.timestamp,
        deleted=message.deleted,
    )


def poll_out(poll: Poll) -> PollOut:
    tallies = poll.tallies()
    return PollOut(
        pollId=poll.poll_id,
        roomId=poll.room_id,
        creatorId=poll.creator_id,
        question=poll.question,
        options=[PollOptionOut(text=text, votes=count) for text, count in zip(poll.options, tallies)],
        totalVotes=sum(tallies),
        createdAt=poll.created_at,
    )


def room_summary(room: Room) -> RoomSummary:
    return RoomSummary(
        roomId=room.room_id,
        kind=room.kind,
        visibility=room.visibility,
        creatorId=room.creator_id,
        memberCount=len(room.members),
    )


def room_snapshot(directory: IdentityDirectory, room: Room, limit: Optional[int] = None) -> RoomSnapshot:
    backlog = list(room.backlog)
    if limit:
        backlog = backlog[-limit:]
    return RoomSnapshot(
        **room_summary(room).model_dump(),
        members=sorted(room.members),
        messages=[message_out(directory, room, m) for m in backlog],
        polls=[poll_out(poll) for poll in list(room.polls.values())],
    )
