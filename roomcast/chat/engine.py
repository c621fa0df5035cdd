"""Wiring of the chat engine: registries, router and transport, per app."""
import asyncio
from typing import Iterable, Optional

from fastapi import Request

from .bot import ChatBot
from .broadcast import BroadcastRouter, Delivery
from .directory import IdentityDirectory
from .manager import ConnectionManager
from .persistence import PersistenceOutbox, SqlChatStore
from .presence import PresenceRegistry
from .rooms import RoomRegistry
from ..config import settings
from ..logger import get_logger

logger = get_logger(__name__)


class ChatEngine:
    def __init__(
        self,
        store: Optional[SqlChatStore] = None,
        outbox: Optional[PersistenceOutbox] = None,
        backlog_limit: int = settings.BACKLOG_LIMIT,
    ):
        self.store = store
        self.outbox = outbox
        self.directory = IdentityDirectory()
        self.presence = PresenceRegistry(self.directory)
        self.rooms = RoomRegistry(self.directory, store=store, outbox=outbox, backlog_limit=backlog_limit)
        bot = ChatBot() if settings.BOT_ENABLED else None
        self.router = BroadcastRouter(self.directory, self.presence, self.rooms, bot=bot)
        self.manager = ConnectionManager()

    async def start(self, lookup, default_channel: str = settings.DEFAULT_CHANNEL):
        """warm start from the user lookup and the persistence store"""
        profiles = await asyncio.to_thread(lookup.list_users)
        self.directory.load(profiles)
        if self.outbox is not None:
            self.outbox.start()
        await self.rooms.warm_start(
            self.store, default_channel, self.directory.list_approved_users()
        )
        logger.info("Chat engine started")

    async def stop(self):
        for connection_id in list(self.manager.active_connections):
            await self.manager.detach(connection_id, drain=False)
        if self.outbox is not None:
            await self.outbox.stop()
        logger.info("Chat engine stopped")

    def publish(self, deliveries: Iterable[Delivery]):
        self.manager.publish(deliveries)


def get_engine(request: Request) -> ChatEngine:
    return request.app.state.engine
