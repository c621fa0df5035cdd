"""Message and room persistence.

``SqlChatStore`` is the synchronous persistence capability backed by
SQLAlchemy. The engine never calls it on the delivery path: writes go
through ``PersistenceOutbox``, which runs them on a worker task after the
in-memory state has already been committed and broadcast.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from sqlalchemy import desc, func
from sqlalchemy.orm import Session

from . import models
from .rooms import Message, Room, RoomKind, Visibility
from ..config import settings
from ..logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RoomRecord:
    room_id: str
    kind: RoomKind
    visibility: Visibility
    creator_id: Optional[str]
    created_at: datetime
    last_message_id: int


def _to_db_time(value: datetime) -> datetime:
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db_time(value: Optional[datetime]) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _message_from_row(room_key: str, row: models.Message) -> Message:
    return Message(
        id=row.seq,
        room_id=room_key,
        author_id=row.author_id,
        content="" if row.is_deleted else row.content,
        reply_to=row.reply_to,
        timestamp=_from_db_time(row.timestamp),
        deleted=bool(row.is_deleted),
    )


class SqlChatStore:
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def _room_row(self, db: Session, room_key: str) -> Optional[models.Room]:
        return db.query(models.Room).filter(models.Room.room_key == room_key).first()

    # writes ------------------------------------------------------------

    def save_room(self, room: Room):
        db = self._session_factory()
        try:
            if self._room_row(db, room.room_id) is None:
                db.add(models.Room(
                    room_key=room.room_id,
                    kind=room.kind.value,
                    visibility=room.visibility.value,
                    created_by=room.creator_id,
                    created_at=_to_db_time(room.created_at),
                ))
                db.commit()
        finally:
            db.close()

    def delete_room(self, room_key: str):
        db = self._session_factory()
        try:
            row = self._room_row(db, room_key)
            if row is not None:
                db.delete(row)
                db.commit()
        finally:
            db.close()

    def add_member(self, room_key: str, user_id: str):
        db = self._session_factory()
        try:
            row = self._room_row(db, room_key)
            if row is None:
                raise LookupError(f"room {room_key} is not persisted")
            exists = db.query(models.RoomMember).filter(
                models.RoomMember.room_id == row.id,
                models.RoomMember.user_id == user_id,
            ).first()
            if exists is None:
                db.add(models.RoomMember(room_id=row.id, user_id=user_id))
                db.commit()
        finally:
            db.close()

    def remove_member(self, room_key: str, user_id: str):
        db = self._session_factory()
        try:
            row = self._room_row(db, room_key)
            if row is not None:
                db.query(models.RoomMember).filter(
                    models.RoomMember.room_id == row.id,
                    models.RoomMember.user_id == user_id,
                ).delete()
                db.commit()
        finally:
            db.close()

    def persist_message(self, room_key: str, message: Message):
        db = self._session_factory()
        try:
            row = self._room_row(db, room_key)
            if row is None:
                raise LookupError(f"room {room_key} is not persisted")
            db.add(models.Message(
                seq=message.id,
                content=message.content,
                timestamp=_to_db_time(message.timestamp),
                reply_to=message.reply_to,
                is_deleted=message.deleted,
                author_id=message.author_id,
                room_id=row.id,
            ))
            db.commit()
        finally:
            db.close()

    def tombstone_message(self, room_key: str, message_id: int):
        db = self._session_factory()
        try:
            row = self._room_row(db, room_key)
            if row is None:
                return
            message = db.query(models.Message).filter(
                models.Message.room_id == row.id,
                models.Message.seq == message_id,
            ).first()
            if message is not None:
                message.is_deleted = True
                message.content = ""
                db.commit()
        finally:
            db.close()

    # reads -------------------------------------------------------------

    def load_rooms(self) -> List[RoomRecord]:
        db = self._session_factory()
        try:
            last_ids = dict(
                db.query(models.Message.room_id, func.max(models.Message.seq))
                .group_by(models.Message.room_id)
                .all()
            )
            return [
                RoomRecord(
                    room_id=row.room_key,
                    kind=RoomKind(row.kind),
                    visibility=Visibility(row.visibility),
                    creator_id=row.created_by,
                    created_at=_from_db_time(row.created_at),
                    last_message_id=last_ids.get(row.id) or 0,
                )
                for row in db.query(models.Room).order_by(models.Room.id).all()
            ]
        finally:
            db.close()

    def load_members(self, room_key: str) -> List[str]:
        db = self._session_factory()
        try:
            row = self._room_row(db, room_key)
            if row is None:
                return []
            return [member.user_id for member in row.members]
        finally:
            db.close()

    def load_recent_messages(self, room_key: str, limit: Optional[int] = None) -> List[Message]:
        return self.load_messages(room_key, before=None, limit=limit)

    def load_messages(self, room_key: str, before: Optional[int] = None, limit: Optional[int] = None) -> List[Message]:
        """messages in id order, optionally only those older than ``before``"""
        db = self._session_factory()
        try:
            row = self._room_row(db, room_key)
            if row is None:
                return []
            query = db.query(models.Message).filter(models.Message.room_id == row.id)
            if before is not None:
                query = query.filter(models.Message.seq < before)
            query = query.order_by(desc(models.Message.seq))
            if limit:
                query = query.limit(limit)
            return [_message_from_row(room_key, m) for m in reversed(query.all())]
        finally:
            db.close()


class PersistenceOutbox:
    """Queue of pending writes drained by a single worker task.

    Writes run in submission order, each in a worker thread, and are retried
    up to ``max_retries`` times. A write that still fails is logged and
    dropped: the live state stays authoritative and later history loads
    may miss it.
    """

    def __init__(self, max_retries: int = settings.PERSIST_MAX_RETRIES, retry_delay: float = 0.5):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._worker: Optional[asyncio.Task] = None
        self.failed = 0

    def submit(self, description: str, operation: Callable, *args):
        self._queue.put_nowait((description, operation, args))

    def start(self):
        if self._worker is None:
            self._worker = asyncio.create_task(self._run(), name="persistence-outbox")

    async def stop(self):
        """flush pending writes, then stop the worker"""
        if self._worker is None:
            return
        await self._queue.join()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

    async def flush(self):
        await self._queue.join()

    async def _run(self):
        while True:
            description, operation, args = await self._queue.get()
            try:
                await self._apply(description, operation, args)
            finally:
                self._queue.task_done()

    async def _apply(self, description: str, operation: Callable, args: tuple):
        for attempt in range(1, self._max_retries + 1):
            try:
                await asyncio.to_thread(operation, *args)
                return
            except Exception:
                if attempt == self._max_retries:
                    self.failed += 1
                    logger.exception(
                        "Giving up on '%s' after %d attempts; live state kept", description, attempt
                    )
                    return
                logger.warning("'%s' failed (attempt %d), retrying", description, attempt)
                await asyncio.sleep(self._retry_delay * attempt)
