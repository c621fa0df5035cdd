import asyncio
import unittest

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from roomcast.chat import models  # noqa: F401  registers the tables
from roomcast.chat.persistence import PersistenceOutbox, SqlChatStore
from roomcast.auth.roles import Role
from roomcast.chat.rooms import RoomKind, Visibility
from roomcast.database import Base
from tests.helpers import build_engine, profile


def memory_store():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    return SqlChatStore(sessionmaker(bind=engine))


class TestPersistenceRoundTrip(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.store = memory_store()
        self.outbox = PersistenceOutbox(retry_delay=0)
        self.outbox.start()
        self.users = [profile("alice"), profile("bob"), profile("mod", role=Role.MODERATOR)]
        self.directory, _, self.rooms, _ = build_engine(
            *self.users, store=self.store, outbox=self.outbox
        )
        await self.rooms.warm_start(self.store, "general", self.directory.list_approved_users())

    async def asyncTearDown(self):
        await self.outbox.stop()

    async def restart(self, backlog_limit=200):
        """fresh registries warmed from the same store"""
        await self.outbox.flush()
        directory, _, rooms, _ = build_engine(
            *self.users, store=self.store, outbox=self.outbox, backlog_limit=backlog_limit
        )
        await rooms.warm_start(self.store, "general", [])
        return rooms

    async def test_rooms_members_and_messages_survive_restart(self):
        await self.rooms.create_channel("staff", "mod", Visibility.PRIVATE)
        await self.rooms.leave("general", "bob")
        first = await self.rooms.append_message("general", "alice", "hello")
        await self.rooms.append_message("general", "alice", "world", reply_to=first.id)
        await self.rooms.append_message("staff", "mod", "shh")

        rooms = await self.restart()

        self.assertEqual(rooms.members_of("general"), ["alice", "mod"])
        staff = rooms.get("staff")
        self.assertEqual(staff.visibility, Visibility.PRIVATE)
        self.assertEqual(staff.members, {"mod"})
        history = rooms.recent_messages("general")
        self.assertEqual([(m.id, m.content, m.reply_to) for m in history],
                         [(1, "hello", None), (2, "world", 1)])

        following = await rooms.append_message("general", "alice", "again")
        self.assertEqual(following.id, 3)
        self.assertGreaterEqual(following.timestamp, history[-1].timestamp)

    async def test_direct_rooms_and_tombstones_survive_restart(self):
        room = await self.rooms.get_or_create_direct_room("bob", "alice")
        message = await self.rooms.append_message(room.room_id, "bob", "secret")
        await self.rooms.delete_message(room.room_id, message.id, "bob")

        rooms = await self.restart()

        restored = rooms.get("dm:alice:bob")
        self.assertEqual(restored.kind, RoomKind.DIRECT)
        self.assertEqual(restored.members, {"alice", "bob"})
        self.assertTrue(restored.find_message(message.id).deleted)
        self.assertEqual(restored.find_message(message.id).content, "")

    async def test_deleted_room_stays_deleted(self):
        await self.rooms.create_channel("tmp", "alice", Visibility.PUBLIC)
        await self.rooms.append_message("tmp", "alice", "x")
        await self.rooms.delete_room("tmp", "alice")

        rooms = await self.restart()

        self.assertIsNone(rooms.find("tmp"))

    async def test_warm_start_backlog_is_bounded_but_history_is_not(self):
        for n in range(6):
            await self.rooms.append_message("general", "alice", str(n))

        rooms = await self.restart(backlog_limit=2)

        self.assertEqual([m.id for m in rooms.recent_messages("general")], [5, 6])
        older = self.store.load_messages("general", before=5, limit=10)
        self.assertEqual([m.id for m in older], [1, 2, 3, 4])


class TestOutbox(unittest.IsolatedAsyncioTestCase):

    async def test_writes_run_in_order(self):
        outbox = PersistenceOutbox(retry_delay=0)
        outbox.start()
        seen = []
        for n in range(5):
            outbox.submit("record", seen.append, n)

        await outbox.stop()

        self.assertEqual(seen, [0, 1, 2, 3, 4])

    async def test_failing_write_is_retried_then_dropped(self):
        outbox = PersistenceOutbox(max_retries=3, retry_delay=0)
        outbox.start()
        attempts = []
        after = []

        def flaky():
            attempts.append(1)
            raise RuntimeError("database is down")

        with self.assertLogs("roomcast.chat.persistence", level="ERROR"):
            outbox.submit("flaky write", flaky)
            outbox.submit("next write", after.append, "ok")
            await outbox.flush()
        await outbox.stop()

        self.assertEqual(len(attempts), 3)
        self.assertEqual(outbox.failed, 1)
        self.assertEqual(after, ["ok"])

    async def test_transient_failure_recovers(self):
        outbox = PersistenceOutbox(max_retries=3, retry_delay=0)
        outbox.start()
        calls = []

        def sometimes():
            calls.append(1)
            if len(calls) < 2:
                raise RuntimeError("locked")

        outbox.submit("sometimes", sometimes)
        await outbox.stop()

        self.assertEqual(len(calls), 2)
        self.assertEqual(outbox.failed, 0)


class TestLiveStateIgnoresPersistenceFailures(unittest.IsolatedAsyncioTestCase):

    async def test_message_is_live_even_if_store_fails(self):
        class BrokenStore:
            def __getattr__(self, name):
                def fail(*args):
                    raise RuntimeError("disk full")
                return fail

        outbox = PersistenceOutbox(max_retries=1, retry_delay=0)
        outbox.start()
        directory, _, rooms, _ = build_engine(profile("alice"), store=BrokenStore(), outbox=outbox)
        await rooms.warm_start(None, "general", directory.list_approved_users())

        with self.assertLogs("roomcast.chat.persistence", level="ERROR"):
            message = await rooms.append_message("general", "alice", "still delivered")
            await outbox.flush()
        await outbox.stop()

        self.assertEqual(rooms.recent_messages("general"), [message])
        self.assertGreaterEqual(outbox.failed, 1)


if __name__ == "__main__":
    unittest.main()
