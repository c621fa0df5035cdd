"""Shared fixtures for the engine tests."""
from roomcast.auth.roles import Role, UserStatus
from roomcast.chat.broadcast import BroadcastRouter
from roomcast.chat.directory import IdentityDirectory, UserProfile
from roomcast.chat.presence import Connection, PresenceRegistry
from roomcast.chat.rooms import RoomRegistry


def profile(user_id, role=Role.MEMBER, status=UserStatus.APPROVED):
    return UserProfile(
        user_id=user_id,
        display_name=user_id.capitalize(),
        role=role,
        status=status,
    )


def build_engine(*profiles, backlog_limit=200, store=None, outbox=None):
    directory = IdentityDirectory(profiles)
    presence = PresenceRegistry(directory)
    rooms = RoomRegistry(directory, store=store, outbox=outbox, backlog_limit=backlog_limit)
    router = BroadcastRouter(directory, presence, rooms)
    return directory, presence, rooms, router


def connection(user_id, connection_id=None):
    if connection_id is None:
        return Connection(user_id=user_id)
    return Connection(user_id=user_id, connection_id=connection_id)


def deliveries_to(deliveries, connection_id, event=None):
    """every (event, payload) addressed to one connection"""
    return [
        (d.event, d.payload) for d in deliveries
        if connection_id in d.targets and (event is None or d.event == event)
    ]
