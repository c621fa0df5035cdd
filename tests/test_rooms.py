import asyncio
import random
import unittest

from roomcast.auth.roles import Role, UserStatus
from roomcast.chat.rooms import Visibility, direct_room_id
from roomcast.errors import (
    DuplicateRoom, Forbidden, InvalidEvent, InvalidReplyTarget, NotAMember,
    NotFound, UnauthorizedUser,
)
from tests.helpers import build_engine, profile


class RoomRegistryTestCase(unittest.IsolatedAsyncioTestCase):
    backlog_limit = 200

    async def asyncSetUp(self):
        self.directory, _, self.rooms, _ = build_engine(
            profile("alice"),
            profile("bob"),
            profile("carol"),
            profile("mod", role=Role.MODERATOR),
            profile("boss", role=Role.CO_OWNER),
            profile("pending", status=UserStatus.PENDING),
            backlog_limit=self.backlog_limit,
        )
        await self.rooms.warm_start(None, "general", self.directory.list_approved_users())


class TestMembership(RoomRegistryTestCase):

    async def test_default_channel_holds_approved_users(self):
        self.assertEqual(
            self.rooms.members_of("general"),
            ["alice", "bob", "boss", "carol", "mod"],
        )

    async def test_join_and_leave_replay_matches_last_operation(self):
        room = await self.rooms.create_channel("lounge", "alice", Visibility.PUBLIC)
        users = ["bob", "carol", "mod"]
        expected = {"alice"}
        rng = random.Random(7)

        for _ in range(60):
            user = rng.choice(users)
            if rng.random() < 0.5:
                await self.rooms.join("lounge", user)
                expected.add(user)
            else:
                await self.rooms.leave("lounge", user)
                expected.discard(user)

        self.assertEqual(room.members, expected)

    async def test_join_reports_whether_membership_changed(self):
        _, first = await self.rooms.join("general", "alice")
        await self.rooms.leave("general", "alice")
        _, second = await self.rooms.join("general", "alice")

        self.assertFalse(first)
        self.assertTrue(second)

    async def test_join_missing_room(self):
        with self.assertRaises(NotFound):
            await self.rooms.join("nowhere", "alice")

    async def test_pending_user_cannot_join(self):
        with self.assertRaises(UnauthorizedUser):
            await self.rooms.join("general", "pending")

    async def test_private_channel_requires_invite_or_moderator(self):
        await self.rooms.create_channel("staff", "mod", Visibility.PRIVATE)

        with self.assertRaises(Forbidden):
            await self.rooms.join("staff", "alice")

        await self.rooms.join("staff", "boss")
        self.assertTrue(await self.rooms.invite("staff", "mod", "alice"))
        room, joined = await self.rooms.join("staff", "alice")

        self.assertTrue(joined)
        self.assertIn("alice", room.members)
        self.assertNotIn("alice", room.invited)

    async def test_invite_requires_membership(self):
        await self.rooms.create_channel("staff", "mod", Visibility.PRIVATE)

        with self.assertRaises(NotAMember):
            await self.rooms.invite("staff", "alice", "bob")

    async def test_empty_channel_is_not_deleted(self):
        await self.rooms.create_channel("quiet", "alice", Visibility.PUBLIC)
        await self.rooms.leave("quiet", "alice")

        self.assertEqual(self.rooms.members_of("quiet"), [])


class TestChannels(RoomRegistryTestCase):

    async def test_creator_is_auto_joined(self):
        room = await self.rooms.create_channel("random", "alice", Visibility.PUBLIC)

        self.assertEqual(room.members, {"alice"})
        self.assertEqual(room.creator_id, "alice")

    async def test_duplicate_name_is_case_sensitive(self):
        await self.rooms.create_channel("Random", "alice", Visibility.PUBLIC)

        with self.assertRaises(DuplicateRoom):
            await self.rooms.create_channel("Random", "bob", Visibility.PUBLIC)
        with self.assertRaises(DuplicateRoom):
            await self.rooms.create_channel("general", "bob", Visibility.PUBLIC)

        await self.rooms.create_channel("random", "bob", Visibility.PUBLIC)

    async def test_private_channel_needs_moderator(self):
        with self.assertRaises(Forbidden):
            await self.rooms.create_channel("secret", "carol", Visibility.PRIVATE)
        self.assertIsNone(self.rooms.find("secret"))

        room = await self.rooms.create_channel("secret", "mod", Visibility.PRIVATE)
        self.assertIn("mod", room.members)

    async def test_channel_names_cannot_look_like_direct_rooms(self):
        with self.assertRaises(InvalidEvent):
            await self.rooms.create_channel("dm:alice:bob", "alice", Visibility.PUBLIC)

    async def test_delete_room_permissions(self):
        await self.rooms.create_channel("mine", "alice", Visibility.PUBLIC)
        await self.rooms.create_channel("theirs", "alice", Visibility.PUBLIC)

        with self.assertRaises(Forbidden):
            await self.rooms.delete_room("mine", "bob")
        with self.assertRaises(Forbidden):
            await self.rooms.delete_room("mine", "mod")

        await self.rooms.delete_room("mine", "alice")
        await self.rooms.delete_room("theirs", "boss")

        self.assertIsNone(self.rooms.find("mine"))
        self.assertIsNone(self.rooms.find("theirs"))

    async def test_deleted_room_rejects_joins_and_leaves_others_alone(self):
        await self.rooms.create_channel("doomed", "alice", Visibility.PUBLIC)
        await self.rooms.append_message("doomed", "alice", "bye")
        first = await self.rooms.append_message("general", "alice", "one")

        await self.rooms.delete_room("doomed", "alice")

        with self.assertRaises(NotFound):
            await self.rooms.join("doomed", "bob")
        with self.assertRaises(NotFound):
            await self.rooms.append_message("doomed", "alice", "still here?")
        second = await self.rooms.append_message("general", "alice", "two")
        self.assertEqual((first.id, second.id), (1, 2))

    async def test_delete_missing_room(self):
        with self.assertRaises(NotFound):
            await self.rooms.delete_room("nowhere", "boss")


class TestDirectRooms(RoomRegistryTestCase):

    async def test_pair_key_is_canonical(self):
        ab = await self.rooms.get_or_create_direct_room("alice", "bob")
        ba = await self.rooms.get_or_create_direct_room("bob", "alice")

        self.assertIs(ab, ba)
        self.assertEqual(ab.room_id, direct_room_id("bob", "alice"))
        self.assertEqual(ab.room_id, "dm:alice:bob")
        self.assertEqual(ab.members, {"alice", "bob"})

    async def test_direct_rooms_are_closed_and_permanent(self):
        room = await self.rooms.get_or_create_direct_room("alice", "bob")

        with self.assertRaises(Forbidden):
            await self.rooms.join(room.room_id, "carol")
        with self.assertRaises(Forbidden):
            await self.rooms.leave(room.room_id, "alice")
        with self.assertRaises(Forbidden):
            await self.rooms.delete_room(room.room_id, "boss")
        with self.assertRaises(Forbidden):
            await self.rooms.get_or_create_direct_room("alice", "alice")

    async def test_recipient_must_be_an_approved_user(self):
        with self.assertRaises(NotFound):
            await self.rooms.get_or_create_direct_room("alice", "pending")
        with self.assertRaises(NotFound):
            await self.rooms.get_or_create_direct_room("alice", "ghost")
        with self.assertRaises(UnauthorizedUser):
            await self.rooms.get_or_create_direct_room("pending", "alice")
        self.assertIsNone(self.rooms.find(direct_room_id("alice", "pending")))


class TestMessages(RoomRegistryTestCase):

    async def test_sequential_ids_are_gap_free(self):
        ids = []
        for n in range(25):
            message = await self.rooms.append_message("general", "alice", f"message {n}")
            ids.append(message.id)

        self.assertEqual(ids, list(range(1, 26)))

    async def test_concurrent_appends_get_unique_increasing_ids(self):
        authors = ["alice", "bob", "carol", "mod"]

        messages = await asyncio.gather(*[
            self.rooms.append_message("general", authors[n % 4], f"hello {n}")
            for n in range(100)
        ])

        ids = sorted(m.id for m in messages)
        self.assertEqual(ids, list(range(1, 101)))
        backlog_ids = [m.id for m in self.rooms.recent_messages("general")]
        self.assertEqual(backlog_ids, ids)

    async def test_ids_are_per_room(self):
        await self.rooms.create_channel("other", "alice", Visibility.PUBLIC)
        await self.rooms.append_message("general", "alice", "a")
        await self.rooms.append_message("general", "alice", "b")

        message = await self.rooms.append_message("other", "alice", "c")

        self.assertEqual(message.id, 1)

    async def test_timestamps_never_go_backwards(self):
        messages = [
            await self.rooms.append_message("general", "bob", str(n)) for n in range(20)
        ]

        stamps = [m.timestamp for m in messages]
        self.assertEqual(stamps, sorted(stamps))

    async def test_author_must_be_member(self):
        await self.rooms.leave("general", "carol")

        with self.assertRaises(NotAMember):
            await self.rooms.append_message("general", "carol", "hi")

    async def test_reply_targets(self):
        hi = await self.rooms.append_message("general", "alice", "hi")

        reply = await self.rooms.append_message("general", "bob", "hello", reply_to=hi.id)
        self.assertEqual(reply.reply_to, hi.id)

        with self.assertRaises(InvalidReplyTarget):
            await self.rooms.append_message("general", "bob", "huh", reply_to=9999)
        with self.assertRaises(InvalidReplyTarget):
            await self.rooms.append_message("general", "bob", "huh", reply_to=0)

    async def test_reply_target_must_be_in_same_room(self):
        await self.rooms.create_channel("other", "alice", Visibility.PUBLIC)
        for n in range(3):
            await self.rooms.append_message("general", "alice", str(n))

        with self.assertRaises(InvalidReplyTarget):
            await self.rooms.append_message("other", "alice", "x", reply_to=3)

    async def test_content_is_bounded(self):
        with self.assertRaises(InvalidEvent):
            await self.rooms.append_message("general", "alice", "   ")
        with self.assertRaises(InvalidEvent):
            await self.rooms.append_message("general", "alice", "x" * 5000)

    async def test_tombstone_keeps_reply_targets_valid(self):
        original = await self.rooms.append_message("general", "alice", "oops")

        tombstone = await self.rooms.delete_message("general", original.id, "alice")
        reply = await self.rooms.append_message("general", "bob", "what?", reply_to=original.id)

        self.assertTrue(tombstone.deleted)
        self.assertEqual(tombstone.content, "")
        self.assertTrue(self.rooms.get("general").find_message(original.id).deleted)
        self.assertEqual(reply.reply_to, original.id)

    async def test_only_author_or_moderator_deletes(self):
        message = await self.rooms.append_message("general", "alice", "mine")

        with self.assertRaises(Forbidden):
            await self.rooms.delete_message("general", message.id, "bob")
        await self.rooms.delete_message("general", message.id, "mod")
        with self.assertRaises(NotFound):
            await self.rooms.delete_message("general", 42, "mod")


class TestBoundedBacklog(RoomRegistryTestCase):
    backlog_limit = 3

    async def test_backlog_keeps_latest_messages(self):
        for n in range(5):
            await self.rooms.append_message("general", "alice", str(n))

        backlog = self.rooms.recent_messages("general")
        self.assertEqual([m.id for m in backlog], [3, 4, 5])

    async def test_evicted_messages_remain_reply_targets(self):
        for n in range(5):
            await self.rooms.append_message("general", "alice", str(n))

        reply = await self.rooms.append_message("general", "bob", "re", reply_to=1)
        self.assertEqual(reply.reply_to, 1)

    async def test_evicted_messages_need_a_moderator_to_delete(self):
        for n in range(5):
            await self.rooms.append_message("general", "alice", str(n))

        with self.assertRaises(Forbidden):
            await self.rooms.delete_message("general", 1, "alice")
        self.assertIsNone(await self.rooms.delete_message("general", 1, "mod"))


class TestAutomatedReplies(RoomRegistryTestCase):

    async def test_reply_takes_the_next_id(self):
        await self.rooms.append_message("general", "alice", "before")

        message, answer = await self.rooms.append_with_reply("general", "bob", " !ping ", "HeimBot", "Pong!")

        self.assertEqual((message.id, answer.id), (2, 3))
        self.assertEqual(message.content, "!ping")
        self.assertEqual(answer.author_id, "HeimBot")
        self.assertEqual(answer.reply_to, message.id)
        self.assertEqual([m.id for m in self.rooms.recent_messages("general")], [1, 2, 3])

    async def test_author_rules_still_apply(self):
        await self.rooms.create_channel("quiet", "alice", Visibility.PUBLIC)

        with self.assertRaises(NotAMember):
            await self.rooms.append_with_reply("quiet", "bob", "!ping", "HeimBot", "Pong!")
        with self.assertRaises(InvalidReplyTarget):
            await self.rooms.append_with_reply("quiet", "alice", "!ping", "HeimBot", "Pong!", reply_to=7)
        self.assertEqual(self.rooms.get("quiet").next_id, 1)


class TestPolls(RoomRegistryTestCase):

    async def test_poll_ids_are_per_room(self):
        first = await self.rooms.create_poll("general", "alice", "Lunch?", ["pizza", "sushi"])
        second = await self.rooms.create_poll("general", "bob", "Coffee?", ["yes", "no"])
        await self.rooms.create_channel("lounge", "alice", Visibility.PUBLIC)
        other = await self.rooms.create_poll("lounge", "alice", "Music?", ["jazz", "rock"])

        self.assertEqual((first.poll_id, second.poll_id, other.poll_id), (1, 2, 1))
        self.assertEqual(sorted(self.rooms.get("general").polls), [1, 2])

    async def test_one_vote_per_member(self):
        poll = await self.rooms.create_poll("general", "alice", "Lunch?", ["pizza", "sushi", "tacos"])

        _, changed = await self.rooms.vote_poll("general", poll.poll_id, "bob", 0)
        self.assertTrue(changed)
        _, changed = await self.rooms.vote_poll("general", poll.poll_id, "bob", 0)
        self.assertFalse(changed)
        await self.rooms.vote_poll("general", poll.poll_id, "carol", 0)
        await self.rooms.vote_poll("general", poll.poll_id, "bob", 2)

        self.assertEqual(poll.tallies(), [1, 0, 1])

    async def test_concurrent_votes_are_all_counted(self):
        poll = await self.rooms.create_poll("general", "alice", "Lunch?", ["pizza", "sushi"])
        voters = ["alice", "bob", "carol", "mod", "boss"]

        await asyncio.gather(*(
            self.rooms.vote_poll("general", poll.poll_id, voter, n % 2) for n, voter in enumerate(voters)
        ))

        self.assertEqual(poll.tallies(), [3, 2])

    async def test_poll_errors(self):
        await self.rooms.create_channel("quiet", "alice", Visibility.PUBLIC)
        poll = await self.rooms.create_poll("quiet", "alice", "Lunch?", ["pizza", "sushi"])

        with self.assertRaises(NotAMember):
            await self.rooms.create_poll("quiet", "bob", "Coffee?", ["yes", "no"])
        with self.assertRaises(NotAMember):
            await self.rooms.vote_poll("quiet", poll.poll_id, "bob", 0)
        with self.assertRaises(NotFound):
            await self.rooms.vote_poll("quiet", 99, "alice", 0)
        with self.assertRaises(InvalidEvent):
            await self.rooms.vote_poll("quiet", poll.poll_id, "alice", 2)
        with self.assertRaises(InvalidEvent):
            await self.rooms.create_poll("quiet", "alice", "Only one?", ["yes"])
        with self.assertRaises(InvalidEvent):
            await self.rooms.create_poll("quiet", "alice", "Twice?", ["yes", " yes"])


if __name__ == "__main__":
    unittest.main()
