"""Room registry: channels, direct-message rooms, membership and backlog.

Locking:
    - ``RoomRegistry._lock`` guards the room table (creation and deletion).
    - ``Room.lock`` guards one room's members, invitations, backlog and id
      counter.
    Locks are always taken registry first, then room, and no code path holds
    two room locks at once.

Every mutation commits in memory first and is then handed to the
persistence outbox; a failing write never rolls back the in-memory state.
"""
import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Deque, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import BaseModel

from .directory import IdentityDirectory, UserProfile
from ..auth.roles import Role
from ..config import settings
from ..errors import (
    DuplicateRoom, Forbidden, InvalidEvent, InvalidReplyTarget, NotAMember,
    NotFound, UnauthorizedUser,
)
from ..logger import get_logger

logger = get_logger(__name__)

DM_PREFIX = "dm:"


class RoomKind(str, Enum):
    CHANNEL = "channel"
    DIRECT = "dm"


class Visibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class Message(BaseModel):
    id: int
    room_id: str
    author_id: str
    content: str
    reply_to: Optional[int] = None
    timestamp: datetime
    deleted: bool = False

    class Config:
        frozen = True

    def tombstone(self) -> "Message":
        return self.model_copy(update={"content": "", "deleted": True})


@dataclass
class Poll:
    """a question posted in a room; each member holds at most one vote"""
    poll_id: int
    room_id: str
    creator_id: str
    question: str
    options: List[str]
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    votes: Dict[str, int] = field(default_factory=dict)  # voter id -> option index

    def tallies(self) -> List[int]:
        counts = [0] * len(self.options)
        for choice in self.votes.values():
            counts[choice] += 1
        return counts


@dataclass(eq=False)
class Room:
    room_id: str
    kind: RoomKind
    visibility: Visibility
    creator_id: Optional[str]
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    members: Set[str] = field(default_factory=set)
    invited: Set[str] = field(default_factory=set)
    backlog: Deque[Message] = field(default_factory=deque)
    next_id: int = 1
    last_timestamp: Optional[datetime] = None
    polls: Dict[int, Poll] = field(default_factory=dict)
    next_poll_id: int = 1
    deleted: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def is_direct(self) -> bool:
        return self.kind == RoomKind.DIRECT

    def find_message(self, message_id: int) -> Optional[Message]:
        for message in self.backlog:
            if message.id == message_id:
                return message
        return None

    def was_assigned(self, message_id: int) -> bool:
        """ids are gap-free, so every id below next_id exists in this room"""
        return 1 <= message_id < self.next_id


def direct_room_id(user_a: str, user_b: str) -> str:
    first, second = sorted((user_a, user_b))
    return f"{DM_PREFIX}{first}:{second}"


def _new_backlog(limit: int, messages: Iterable[Message] = ()) -> Deque[Message]:
    return deque(messages, maxlen=limit or None)


class RoomRegistry:
    def __init__(
        self,
        directory: IdentityDirectory,
        store=None,
        outbox=None,
        backlog_limit: int = settings.BACKLOG_LIMIT,
        max_message_length: int = settings.MAX_MESSAGE_LENGTH,
    ):
        self._directory = directory
        self._store = store
        self._outbox = outbox
        self._backlog_limit = backlog_limit
        self._max_message_length = max_message_length
        self._rooms: Dict[str, Room] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------

    def get(self, room_id: str) -> Room:
        room = self._rooms.get(room_id)
        if room is None or room.deleted:
            raise NotFound(f"Room '{room_id}' not found")
        return room

    def find(self, room_id: str) -> Optional[Room]:
        room = self._rooms.get(room_id)
        return None if room is None or room.deleted else room

    def rooms_of(self, user_id: str) -> List[Room]:
        return [room for room in list(self._rooms.values()) if user_id in room.members]

    def visible_rooms(self, user_id: str) -> List[Room]:
        """public channels plus every room the user belongs to or is invited to"""
        return [
            room for room in list(self._rooms.values())
            if (room.kind == RoomKind.CHANNEL and room.visibility == Visibility.PUBLIC)
            or user_id in room.members
            or user_id in room.invited
        ]

    def members_of(self, room_id: str) -> List[str]:
        return sorted(self.get(room_id).members)

    def co_members(self, user_id: str) -> Set[str]:
        """everyone sharing at least one room with the user, the user excluded"""
        others = set()
        for room in self.rooms_of(user_id):
            others.update(room.members)
        others.discard(user_id)
        return others

    def recent_messages(self, room_id: str, limit: Optional[int] = None) -> List[Message]:
        backlog = list(self.get(room_id).backlog)
        return backlog[-limit:] if limit else backlog

    # ------------------------------------------------------------------
    # mutations
    # ------------------------------------------------------------------

    async def create_channel(self, name: str, creator_id: str, visibility: Visibility) -> Room:
        profile = self._require_approved(creator_id)
        name = name.strip()
        if not name or ":" in name:
            raise InvalidEvent("Channel names must be non-empty and cannot contain ':'")
        if visibility == Visibility.PRIVATE and not profile.role.at_least(Role.MODERATOR):
            raise Forbidden("Private channels can only be created by moderators and above")

        async with self._lock:
            if name in self._rooms:
                raise DuplicateRoom(f"A room named '{name}' already exists")
            room = Room(
                room_id=name,
                kind=RoomKind.CHANNEL,
                visibility=visibility,
                creator_id=creator_id,
                backlog=_new_backlog(self._backlog_limit),
            )
            room.members.add(creator_id)
            self._rooms[name] = room

        logger.info("%s created %s channel '%s'", creator_id, visibility.value, name)
        self._publish("save room", "save_room", room)
        self._publish("add member", "add_member", room.room_id, creator_id)
        return room

    async def get_or_create_direct_room(self, user_a: str, user_b: str) -> Room:
        if user_a == user_b:
            raise Forbidden("Cannot open a direct message room with yourself")
        self._require_approved(user_a)
        recipient = self._directory.find(user_b)
        if recipient is None or not recipient.is_approved:
            raise NotFound(f"User '{user_b}' not found")
        room_id = direct_room_id(user_a, user_b)

        async with self._lock:
            room = self._rooms.get(room_id)
            if room is not None:
                return room
            room = Room(
                room_id=room_id,
                kind=RoomKind.DIRECT,
                visibility=Visibility.PRIVATE,
                creator_id=user_a,
                members={user_a, user_b},
                backlog=_new_backlog(self._backlog_limit),
            )
            self._rooms[room_id] = room

        logger.info("Opened direct room %s", room_id)
        self._publish("save room", "save_room", room)
        for member in sorted(room.members):
            self._publish("add member", "add_member", room_id, member)
        return room

    async def join(self, room_id: str, user_id: str) -> Tuple[Room, bool]:
        """add the user to the room; the flag tells whether membership changed"""
        profile = self._require_approved(user_id)
        room = self.get(room_id)

        async with room.lock:
            self._ensure_live(room)
            if user_id in room.members:
                return room, False
            if room.is_direct:
                raise Forbidden("Direct message rooms cannot be joined")
            if (
                room.visibility == Visibility.PRIVATE
                and user_id not in room.invited
                and not profile.role.at_least(Role.MODERATOR)
            ):
                raise Forbidden(f"Room '{room_id}' is private")
            room.members.add(user_id)
            room.invited.discard(user_id)

        logger.info("%s joined %s", user_id, room_id)
        self._publish("add member", "add_member", room_id, user_id)
        return room, True

    async def leave(self, room_id: str, user_id: str) -> Tuple[Room, bool]:
        room = self.get(room_id)

        async with room.lock:
            self._ensure_live(room)
            if room.is_direct:
                raise Forbidden("Direct message rooms cannot be left")
            if user_id not in room.members:
                return room, False
            room.members.discard(user_id)

        logger.info("%s left %s", user_id, room_id)
        self._publish("remove member", "remove_member", room_id, user_id)
        return room, True

    async def invite(self, room_id: str, inviter_id: str, user_id: str) -> bool:
        self._require_approved(user_id)
        room = self.get(room_id)

        async with room.lock:
            self._ensure_live(room)
            if room.is_direct:
                raise Forbidden("Nobody can be invited to a direct message room")
            if inviter_id not in room.members:
                raise NotAMember(f"You are not a member of '{room_id}'")
            if user_id in room.members or user_id in room.invited:
                return False
            room.invited.add(user_id)

        logger.info("%s invited %s to %s", inviter_id, user_id, room_id)
        return True

    async def append_message(
        self,
        room_id: str,
        author_id: str,
        content: str,
        reply_to: Optional[int] = None,
    ) -> Message:
        content = self._check_content(content)
        room = self.get(room_id)

        async with room.lock:
            self._check_can_post(room, author_id, reply_to)
            message = self._commit_message(room, author_id, content, reply_to)

        self._publish("persist message", "persist_message", room_id, message)
        return message

    async def append_with_reply(
        self,
        room_id: str,
        author_id: str,
        content: str,
        responder_id: str,
        response: str,
        reply_to: Optional[int] = None,
    ) -> Tuple[Message, Message]:
        """append a message and an automated answer to it as two consecutive ids"""
        content = self._check_content(content)
        room = self.get(room_id)

        async with room.lock:
            self._check_can_post(room, author_id, reply_to)
            message = self._commit_message(room, author_id, content, reply_to)
            answer = self._commit_message(
                room, responder_id, response[:self._max_message_length], message.id
            )

        self._publish("persist message", "persist_message", room_id, message)
        self._publish("persist message", "persist_message", room_id, answer)
        return message, answer

    async def create_poll(self, room_id: str, creator_id: str, question: str, options: List[str]) -> Poll:
        question = question.strip()
        options = [option.strip() for option in options]
        if not question or len(options) < 2 or not all(options):
            raise InvalidEvent("A poll needs a question and at least two options")
        if len(set(options)) != len(options):
            raise InvalidEvent("Poll options must be distinct")
        room = self.get(room_id)

        async with room.lock:
            self._ensure_live(room)
            if creator_id not in room.members:
                raise NotAMember(f"You are not a member of '{room_id}'")
            poll = Poll(
                poll_id=room.next_poll_id,
                room_id=room_id,
                creator_id=creator_id,
                question=question,
                options=options,
            )
            room.next_poll_id += 1
            room.polls[poll.poll_id] = poll

        logger.info("%s opened poll %s in %s", creator_id, poll.poll_id, room_id)
        return poll

    async def vote_poll(self, room_id: str, poll_id: int, voter_id: str, option: int) -> Tuple[Poll, bool]:
        """record or move a vote; the flag tells whether the tallies changed"""
        room = self.get(room_id)

        async with room.lock:
            self._ensure_live(room)
            if voter_id not in room.members:
                raise NotAMember(f"You are not a member of '{room_id}'")
            poll = room.polls.get(poll_id)
            if poll is None:
                raise NotFound(f"Poll {poll_id} not found in '{room_id}'")
            if not 0 <= option < len(poll.options):
                raise InvalidEvent(f"Poll {poll_id} has no option {option}")
            if poll.votes.get(voter_id) == option:
                return poll, False
            poll.votes[voter_id] = option

        return poll, True

    async def delete_message(self, room_id: str, message_id: int, requester_id: str) -> Optional[Message]:
        """tombstone a message; returns the tombstone when it is still in the backlog"""
        profile = self._directory.resolve_user(requester_id)
        is_moderator = profile.role.at_least(Role.MODERATOR)
        room = self.get(room_id)

        async with room.lock:
            self._ensure_live(room)
            if not room.was_assigned(message_id):
                raise NotFound(f"Message {message_id} not found in '{room_id}'")
            original = room.find_message(message_id)
            if original is None:
                # evicted from the backlog: authorship is unknown in memory
                if not is_moderator:
                    raise Forbidden("Only moderators can delete archived messages")
                tombstone = None
            else:
                if original.author_id != requester_id and not is_moderator:
                    raise Forbidden("You can only delete your own messages")
                if original.deleted:
                    return original
                tombstone = original.tombstone()
                for index, message in enumerate(room.backlog):
                    if message.id == message_id:
                        room.backlog[index] = tombstone
                        break

        logger.info("%s deleted message %s in %s", requester_id, message_id, room_id)
        self._publish("tombstone message", "tombstone_message", room_id, message_id)
        return tombstone

    async def delete_room(self, room_id: str, requester_id: str) -> Room:
        profile = self._directory.resolve_user(requester_id)

        async with self._lock:
            room = self._rooms.get(room_id)
            if room is None:
                raise NotFound(f"Room '{room_id}' not found")
            if room.is_direct:
                raise Forbidden("Direct message rooms cannot be deleted")
            if not (profile.role.at_least(Role.CO_OWNER) or room.creator_id == requester_id):
                raise Forbidden("Only the creator or a co-owner can delete this room")
            async with room.lock:
                room.deleted = True
                del self._rooms[room_id]

        logger.info("%s deleted room %s", requester_id, room_id)
        self._publish("delete room", "delete_room", room_id)
        return room

    # ------------------------------------------------------------------
    # warm start
    # ------------------------------------------------------------------

    async def warm_start(self, store, default_channel: str, approved_users: Iterable[UserProfile]):
        """rebuild rooms from persistence and make sure the default channel exists"""
        records = await asyncio.to_thread(store.load_rooms) if store is not None else []
        limit = self._backlog_limit or None

        async with self._lock:
            for record in records:
                members = await asyncio.to_thread(store.load_members, record.room_id)
                messages = await asyncio.to_thread(
                    store.load_recent_messages, record.room_id, limit
                )
                room = Room(
                    room_id=record.room_id,
                    kind=record.kind,
                    visibility=record.visibility,
                    creator_id=record.creator_id,
                    created_at=record.created_at,
                    members=set(members),
                    backlog=_new_backlog(self._backlog_limit, messages),
                    next_id=record.last_message_id + 1,
                    last_timestamp=messages[-1].timestamp if messages else None,
                )
                self._rooms[room.room_id] = room

        logger.info("Loaded %d rooms from storage", len(records))

        if default_channel not in self._rooms:
            room = Room(
                room_id=default_channel,
                kind=RoomKind.CHANNEL,
                visibility=Visibility.PUBLIC,
                creator_id=None,
                backlog=_new_backlog(self._backlog_limit),
            )
            self._rooms[default_channel] = room
            self._publish("save room", "save_room", room)
            logger.info("Created default channel '%s'", default_channel)

        room = self._rooms[default_channel]
        async with room.lock:
            newcomers = [p.user_id for p in approved_users if p.user_id not in room.members]
            room.members.update(newcomers)
        for user_id in newcomers:
            self._publish("add member", "add_member", default_channel, user_id)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _require_approved(self, user_id: str) -> UserProfile:
        profile = self._directory.resolve_user(user_id)
        if not profile.is_approved:
            raise UnauthorizedUser(f"User '{user_id}' is not approved")
        return profile

    def _check_content(self, content: str) -> str:
        content = content.strip()
        if not content:
            raise InvalidEvent("Message cannot be empty")
        if len(content) > self._max_message_length:
            raise InvalidEvent(
                f"Message is too long (max {self._max_message_length} characters)"
            )
        return content

    def _check_can_post(self, room: Room, author_id: str, reply_to: Optional[int]):
        self._ensure_live(room)
        if author_id not in room.members:
            raise NotAMember(f"You are not a member of '{room.room_id}'")
        if reply_to is not None and not room.was_assigned(reply_to):
            raise InvalidReplyTarget(f"Message {reply_to} does not exist in '{room.room_id}'")

    @staticmethod
    def _commit_message(room: Room, author_id: str, content: str, reply_to: Optional[int]) -> Message:
        """assign the next id; the caller holds the room lock"""
        timestamp = datetime.now(timezone.utc)
        if room.last_timestamp is not None and timestamp < room.last_timestamp:
            timestamp = room.last_timestamp
        message = Message(
            id=room.next_id,
            room_id=room.room_id,
            author_id=author_id,
            content=content,
            reply_to=reply_to,
            timestamp=timestamp,
        )
        room.next_id += 1
        room.last_timestamp = timestamp
        room.backlog.append(message)
        return message

    @staticmethod
    def _ensure_live(room: Room):
        if room.deleted:
            raise NotFound(f"Room '{room.room_id}' not found")

    def _publish(self, description: str, operation: str, *args):
        if self._store is None or self._outbox is None:
            return
        self._outbox.submit(description, getattr(self._store, operation), *args)
