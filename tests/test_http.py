import unittest
import uuid
from unittest.mock import patch

from fastapi.testclient import TestClient

from roomcast.config import settings
from roomcast.main import app


def unique_name(prefix):
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


class TestAccountsAndAdmin(unittest.TestCase):

    def setUp(self):
        self.client = TestClient(app)
        self.client.__enter__()
        self.owner_headers = self.login(settings.ADMIN_USERNAME, settings.ADMIN_PASSWORD)

    def tearDown(self):
        self.client.__exit__(None, None, None)

    def signup(self, username):
        return self.client.post("/auth/signup", json={
            "username": username,
            "email": f"{username}@example.com",
            "password": "secret123",
        })

    def login(self, username, password="secret123"):
        response = self.client.post("/auth/login", json={"username": username, "password": password})
        self.assertEqual(response.status_code, 200, response.text)
        return {"Authorization": f"Bearer {response.json()['access_token']}"}

    def test_signup_rejects_duplicates_and_bad_names(self):
        name = unique_name("dup")
        self.assertEqual(self.signup(name).status_code, 200)
        self.assertEqual(self.signup(name).status_code, 400)
        self.assertEqual(self.signup("no").status_code, 422)
        self.assertEqual(self.signup("bad name!").status_code, 422)

    def test_me_requires_a_token(self):
        name = unique_name("me")
        self.signup(name)

        self.assertIn(self.client.get("/auth/me").status_code, (401, 403))
        response = self.client.get("/auth/me", headers=self.login(name))
        self.assertEqual(response.json()["username"], name)
        self.assertEqual(response.json()["role"], "member")

    def test_pending_account_needs_approval(self):
        name = unique_name("wait")
        with patch.object(settings, "REQUIRE_APPROVAL", True):
            response = self.signup(name)
        self.assertEqual(response.json()["status"], "pending")

        login = self.client.post("/auth/login", json={"username": name, "password": "secret123"})
        self.assertEqual(login.status_code, 403)

        response = self.client.put(f"/admin/users/{name}/approve", headers=self.owner_headers)
        self.assertEqual(response.status_code, 200)

        headers = self.login(name)
        rooms = self.client.get("/chat/rooms", headers=headers).json()
        self.assertIn(settings.DEFAULT_CHANNEL, [r["roomId"] for r in rooms])
        general = self.client.get(f"/chat/rooms/{settings.DEFAULT_CHANNEL}", headers=headers).json()
        self.assertIn(name, general["members"])

    def test_admin_routes_need_rank(self):
        name = unique_name("plain")
        self.signup(name)
        headers = self.login(name)

        self.assertEqual(self.client.get("/admin/users", headers=headers).status_code, 403)
        response = self.client.put(f"/admin/users/{name}/role?new_role=owner", headers=headers)
        self.assertEqual(response.status_code, 403)

        users = self.client.get("/admin/users", headers=self.owner_headers).json()
        self.assertIn(name, [u["username"] for u in users])

    def test_owner_changes_roles(self):
        name = unique_name("promo")
        self.signup(name)

        response = self.client.put(f"/admin/users/{name}/role?new_role=co-owner", headers=self.owner_headers)
        self.assertEqual(response.status_code, 200)
        users = self.client.get("/admin/users", headers=self.login(name)).json()
        self.assertIn(settings.ADMIN_USERNAME, [u["username"] for u in users])

        response = self.client.put(
            f"/admin/users/{settings.ADMIN_USERNAME}/role?new_role=member", headers=self.owner_headers
        )
        self.assertEqual(response.status_code, 400)
        response = self.client.put(f"/admin/users/{name}/role?new_role=emperor", headers=self.owner_headers)
        self.assertEqual(response.status_code, 422)

    def test_blocks(self):
        alice, bob = unique_name("blk"), unique_name("blk")
        self.signup(alice)
        self.signup(bob)
        headers = self.login(alice)

        self.assertEqual(self.client.post(f"/chat/blocks/{bob}", headers=headers).status_code, 200)
        self.assertEqual(self.client.post(f"/chat/blocks/{alice}", headers=headers).status_code, 400)
        self.assertEqual(self.client.post("/chat/blocks/nobody_here", headers=headers).status_code, 404)
        self.assertEqual(self.client.delete(f"/chat/blocks/{bob}", headers=headers).status_code, 200)

    def test_default_channel_cannot_be_deleted_by_members(self):
        name = unique_name("del")
        self.signup(name)

        response = self.client.delete(f"/admin/rooms/{settings.DEFAULT_CHANNEL}", headers=self.login(name))
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "Forbidden")


if __name__ == "__main__":
    unittest.main()
