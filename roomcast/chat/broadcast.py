"""Broadcast router: turns one inbound event into a list of deliveries.

The router keeps no state of its own. Each handler mutates the registries,
then computes its target connections from a snapshot of the committed
state; delivery happens afterwards in the gateway, with no registry lock
held. Target lists are deduplicated by connection id, so every connection
receives at most one copy of each event.
"""
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from .bot import ChatBot
from .directory import IdentityDirectory, UserProfile
from .presence import Connection, PresenceRegistry
from .rooms import Room, RoomKind, RoomRegistry, Visibility
from .schemas import (
    CreateChannel, CreatePoll, DeleteMessage, DeleteRoom, InviteUser, JoinRoom, LeaveRoom,
    SendDirectMessage, SendMessage, StopTyping, Typing, VotePoll,
    author_out, message_out, poll_out, room_snapshot, room_summary,
)
from ..auth.roles import Role
from ..errors import ChatError, Forbidden, InvalidEvent, NotAMember
from ..logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Delivery:
    targets: Tuple[str, ...]
    event: str
    payload: dict


def _delivery(targets: Iterable[str], event: str, payload: dict) -> List[Delivery]:
    targets = tuple(dict.fromkeys(targets))
    return [Delivery(targets, event, payload)] if targets else []


def rejection(connection_id: str, error: ChatError) -> Delivery:
    return Delivery((connection_id,), "rejected", {"code": error.code, "message": error.message})


class BroadcastRouter:
    def __init__(self, directory: IdentityDirectory, presence: PresenceRegistry, rooms: RoomRegistry,
                 bot: Optional[ChatBot] = None):
        self.directory = directory
        self.presence = presence
        self.rooms = rooms
        self.bot = bot
        self._handlers = {
            JoinRoom: self._join_room,
            LeaveRoom: self._leave_room,
            SendMessage: self._send_message,
            SendDirectMessage: self._send_dm,
            Typing: self._typing,
            StopTyping: self._typing,
            CreateChannel: self._create_channel,
            DeleteRoom: self._delete_room,
            InviteUser: self._invite_user,
            DeleteMessage: self._delete_message,
            CreatePoll: self._create_poll,
            VotePoll: self._vote_poll,
        }

    async def dispatch(self, connection: Connection, event) -> List[Delivery]:
        """run one inbound event; constraint violations go back to the caller only"""
        handler = self._handlers.get(type(event))
        try:
            if handler is None:
                raise InvalidEvent(f"Unsupported event {type(event).__name__}")
            return await handler(connection, event)
        except ChatError as exc:
            logger.debug("Rejected %s from %s: %s", type(event).__name__, connection.user_id, exc.code)
            return [rejection(connection.connection_id, exc)]

    # ------------------------------------------------------------------
    # session lifecycle
    # ------------------------------------------------------------------

    async def connect(self, connection: Connection) -> List[Delivery]:
        """register a new connection; raises UnauthorizedUser for unapproved users"""
        change = await self.presence.register(connection)
        deliveries = _delivery([connection.connection_id], "session-ready", {
            "connectionId": connection.connection_id,
            "user": self._user(connection.user_id),
            "online": [u.model_dump(mode="json") for u in self.presence.snapshot()],
            "rooms": self._room_list(connection.user_id),
        })
        if change.became_online:
            deliveries += self._presence_changed(connection.user_id, online=True)
        return deliveries

    async def disconnect(self, connection_id: str) -> List[Delivery]:
        change = await self.presence.deregister(connection_id)
        if change is None or not change.became_offline:
            return []
        return self._presence_changed(change.user_id, online=False)

    def _presence_changed(self, user_id: str, online: bool) -> List[Delivery]:
        targets = self.presence.connections_for(sorted(self.rooms.co_members(user_id)))
        return _delivery(targets, "presence-changed", {"userId": user_id, "online": online})

    # ------------------------------------------------------------------
    # room events
    # ------------------------------------------------------------------

    async def _join_room(self, connection: Connection, event: JoinRoom) -> List[Delivery]:
        room, joined = await self.rooms.join(event.roomId, connection.user_id)
        deliveries = _delivery([connection.connection_id], "room-joined", {
            "room": room_snapshot(self.directory, room).model_dump(mode="json"),
        })
        if joined:
            deliveries += _delivery(
                self._member_connections(room, exclude=connection.user_id),
                "user-joined",
                {"roomId": room.room_id, "user": self._user(connection.user_id)},
            )
        return deliveries

    async def _leave_room(self, connection: Connection, event: LeaveRoom) -> List[Delivery]:
        room, left = await self.rooms.leave(event.roomId, connection.user_id)
        deliveries = _delivery(
            self.presence.connections_of(connection.user_id),
            "room-left",
            {"roomId": room.room_id},
        )
        if left:
            deliveries += _delivery(
                self._member_connections(room),
                "user-left",
                {"roomId": room.room_id, "userId": connection.user_id},
            )
        return deliveries

    async def _send_message(self, connection: Connection, event: SendMessage) -> List[Delivery]:
        answer = self.bot.respond(event.content) if self.bot is not None else None
        if answer is None:
            message = await self.rooms.append_message(
                event.roomId, connection.user_id, event.content, event.replyTo
            )
            return self._new_message(event.roomId, message, fallback=connection.connection_id)

        message, reply = await self.rooms.append_with_reply(
            event.roomId, connection.user_id, event.content, self.bot.name, answer, event.replyTo
        )
        return (
            self._new_message(event.roomId, message, fallback=connection.connection_id)
            + self._new_message(event.roomId, reply, fallback=connection.connection_id)
        )

    async def _send_dm(self, connection: Connection, event: SendDirectMessage) -> List[Delivery]:
        sender = connection.user_id
        self.directory.resolve_user(event.recipientId)
        if self.directory.is_blocked(sender, event.recipientId):
            raise Forbidden(f"You cannot message '{event.recipientId}'")
        room = await self.rooms.get_or_create_direct_room(sender, event.recipientId)
        message = await self.rooms.append_message(room.room_id, sender, event.content)
        return self._new_message(room.room_id, message, fallback=connection.connection_id)

    def _new_message(self, room_id: str, message, fallback: str) -> List[Delivery]:
        room = self.rooms.find(room_id)
        if room is None:
            # deleted right after the append committed
            return []
        return _delivery(
            self._member_connections(room) or [fallback],
            "new-message",
            {"roomId": room_id, "message": message_out(self.directory, room, message).model_dump(mode="json")},
        )

    async def _typing(self, connection: Connection, event) -> List[Delivery]:
        # relay only; the client debounces its own stop-typing after 2 seconds idle
        room = self.rooms.get(event.roomId)
        if connection.user_id not in room.members:
            raise NotAMember(f"You are not a member of '{event.roomId}'")
        return _delivery(
            self._member_connections(room, exclude=connection.user_id),
            event.type,
            {"roomId": room.room_id, "user": self._user(connection.user_id)},
        )

    async def _create_channel(self, connection: Connection, event: CreateChannel) -> List[Delivery]:
        room = await self.rooms.create_channel(event.name, connection.user_id, event.visibility)
        deliveries = _delivery([connection.connection_id], "room-joined", {
            "room": room_snapshot(self.directory, room).model_dump(mode="json"),
        })
        if room.visibility == Visibility.PUBLIC:
            audience = self.presence.online_user_ids()
        else:
            audience = [connection.user_id]
        return deliveries + self.room_list_changed(audience)

    async def _delete_room(self, connection: Connection, event: DeleteRoom) -> List[Delivery]:
        room = await self.rooms.delete_room(event.roomId, connection.user_id)
        return self.room_deleted(room)

    def room_deleted(self, room: Room) -> List[Delivery]:
        if room.visibility == Visibility.PUBLIC:
            audience = self.presence.online_user_ids()
        else:
            audience = sorted(room.members | room.invited)
        return self.room_list_changed(audience)

    async def _invite_user(self, connection: Connection, event: InviteUser) -> List[Delivery]:
        invited = await self.rooms.invite(event.roomId, connection.user_id, event.userId)
        deliveries = _delivery([connection.connection_id], "user-invited", {
            "roomId": event.roomId, "userId": event.userId,
        })
        if invited:
            deliveries += self.room_list_changed([event.userId])
        return deliveries

    async def _delete_message(self, connection: Connection, event: DeleteMessage) -> List[Delivery]:
        await self.rooms.delete_message(event.roomId, event.messageId, connection.user_id)
        return self.message_deleted(event.roomId, event.messageId)

    def message_deleted(self, room_id: str, message_id: int) -> List[Delivery]:
        room = self.rooms.find(room_id)
        if room is None:
            return []
        return _delivery(
            self._member_connections(room),
            "message-deleted",
            {"roomId": room_id, "messageId": message_id},
        )

    async def _create_poll(self, connection: Connection, event: CreatePoll) -> List[Delivery]:
        poll = await self.rooms.create_poll(event.roomId, connection.user_id, event.question, event.options)
        return self._poll_event("new-poll", poll)

    async def _vote_poll(self, connection: Connection, event: VotePoll) -> List[Delivery]:
        poll, changed = await self.rooms.vote_poll(event.roomId, event.pollId, connection.user_id, event.option)
        if not changed:
            return _delivery([connection.connection_id], "poll-update", {
                "roomId": poll.room_id, "poll": poll_out(poll).model_dump(mode="json"),
            })
        return self._poll_event("poll-update", poll)

    def _poll_event(self, event: str, poll) -> List[Delivery]:
        room = self.rooms.find(poll.room_id)
        if room is None:
            return []
        return _delivery(
            self._member_connections(room),
            event,
            {"roomId": poll.room_id, "poll": poll_out(poll).model_dump(mode="json")},
        )

    # ------------------------------------------------------------------
    # cross-user notices
    # ------------------------------------------------------------------

    def room_list_changed(self, user_ids: Iterable[str]) -> List[Delivery]:
        """one delivery per online user, each carrying that user's own room list"""
        deliveries = []
        for user_id in dict.fromkeys(user_ids):
            deliveries += _delivery(
                self.presence.connections_of(user_id),
                "room-list-changed",
                {"rooms": self._room_list(user_id)},
            )
        return deliveries

    def notify_pending_user(self, profile: UserProfile) -> List[Delivery]:
        """tell every online co-owner and owner that a signup awaits approval"""
        approvers = []
        for user_id in self.presence.online_user_ids():
            approver = self.directory.find(user_id)
            if approver is not None and approver.role.at_least(Role.CO_OWNER):
                approvers.append(user_id)
        return _delivery(
            self.presence.connections_for(approvers),
            "user-pending",
            {"user": {"userId": profile.user_id, "displayName": profile.display_name}},
        )

    def refresh_profile(self, profile: UserProfile):
        self.directory.upsert(profile)
        self.presence.refresh_profile(profile)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _member_connections(self, room: Room, exclude: str = None) -> List[str]:
        members = [m for m in sorted(room.members) if m != exclude]
        return self.presence.connections_for(members)

    def _user(self, user_id: str) -> dict:
        return author_out(self.directory, user_id).model_dump(mode="json")

    def _room_list(self, user_id: str) -> List[dict]:
        return [
            room_summary(room).model_dump(mode="json")
            for room in self.rooms.visible_rooms(user_id)
            if room.kind == RoomKind.CHANNEL or user_id in room.members
        ]
