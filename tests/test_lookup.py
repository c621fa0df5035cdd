import unittest
import uuid

from roomcast.auth.lookup import SqlUserLookup
from roomcast.auth.models import User
from roomcast.auth.roles import Role, UserStatus
from roomcast.database import SessionLocal, create_tables
from roomcast.errors import NotFound


class TestSqlUserLookup(unittest.TestCase):

    def setUp(self):
        create_tables()
        self.lookup = SqlUserLookup(SessionLocal)
        suffix = uuid.uuid4().hex[:8]
        self.approved = f"ok_{suffix}"
        self.pending = f"wait_{suffix}"

        db = SessionLocal()
        try:
            db.add(User(username=self.approved, email=f"{self.approved}@example.com",
                        hashed_password="x", display_name="Okay", role=Role.MODERATOR.value,
                        status=UserStatus.APPROVED.value))
            db.add(User(username=self.pending, email=f"{self.pending}@example.com",
                        hashed_password="x", status=UserStatus.PENDING.value))
            db.commit()
        finally:
            db.close()

    def test_resolve_user(self):
        profile = self.lookup.resolve_user(self.approved)

        self.assertEqual(profile.user_id, self.approved)
        self.assertEqual(profile.display_name, "Okay")
        self.assertEqual(profile.role, Role.MODERATOR)
        self.assertTrue(profile.is_approved)

    def test_pending_user_falls_back_to_username(self):
        profile = self.lookup.resolve_user(self.pending)

        self.assertEqual(profile.display_name, self.pending)
        self.assertEqual(profile.role, Role.MEMBER)
        self.assertFalse(profile.is_approved)

    def test_unknown_user(self):
        with self.assertRaises(NotFound):
            self.lookup.resolve_user("nobody_at_all")

    def test_list_approved_users_skips_pending(self):
        approved = {p.user_id for p in self.lookup.list_approved_users()}
        everyone = {p.user_id for p in self.lookup.list_users()}

        self.assertIn(self.approved, approved)
        self.assertNotIn(self.pending, approved)
        self.assertIn(self.pending, everyone)


if __name__ == "__main__":
    unittest.main()
