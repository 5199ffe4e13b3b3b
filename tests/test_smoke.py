import unittest

from argon2 import PasswordHasher

from eduoffice import create_app
from eduoffice.extensions import db
from eduoffice.models import Branch, User, UserBranch


class SmokeConfig:
    SECRET_KEY = "test"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    TESTING = True
    WTF_CSRF_ENABLED = False
    RATELIMIT_ENABLED = False
    TOKEN_MAX_AGE = 3600


class SmokeTestCase(unittest.TestCase):
    def setUp(self):
        self.app = create_app(SmokeConfig)
        self.ctx = self.app.app_context()
        self.ctx.push()
        db.create_all()
        self.client = self.app.test_client()

        branch = Branch(code="HN", name="North campus")
        db.session.add(branch)
        db.session.flush()
        self.user = User(
            username="sales1",
            role="EC",
            primary_branch_id=branch.id,
            password_hash=PasswordHasher().hash("secret123"),
            is_active=True,
        )
        db.session.add(self.user)
        db.session.flush()
        db.session.add(UserBranch(user_id=self.user.id, branch_id=branch.id, is_primary=True))
        db.session.commit()

    def tearDown(self):
        db.session.remove()
        db.drop_all()
        self.ctx.pop()

    def _login(self, password="secret123"):
        return self.client.post("/auth/login", json={"username": "sales1", "password": password})

    def _auth(self):
        token = self._login().json["data"]["token"]
        return {"Authorization": f"Bearer {token}"}

    def test_health_endpoint(self):
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json.get("status"), "ok")

    def test_leads_requires_auth(self):
        resp = self.client.get("/leads/")
        self.assertEqual(resp.status_code, 401)
        self.assertFalse(resp.json["success"])

    def test_login_rejects_bad_password(self):
        resp = self._login("wrong-password")
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.json["error"], "invalid_credentials")

    def test_login_returns_token_and_me(self):
        resp = self._login()
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json["data"]["token"])

        me = self.client.get("/auth/me", headers=self._auth())
        self.assertEqual(me.status_code, 200)
        self.assertEqual(me.json["data"]["role"], "EC")
        self.assertIn("leads.manage", me.json["data"]["capabilities"])

    def test_tampered_token_is_rejected(self):
        resp = self.client.get("/auth/me", headers={"Authorization": "Bearer not-a-token"})
        self.assertEqual(resp.status_code, 401)

    def test_create_lead_then_duplicate_is_conflict(self):
        headers = self._auth()
        body = {"customer_name": "Tran Mai", "customer_phone": "0901234567", "students": [{"name": "Minh"}]}
        first = self.client.post("/leads/", json=body, headers=headers)
        self.assertEqual(first.status_code, 201)
        self.assertEqual(first.json["data"]["codes"], ["HN-00001"])

        second = self.client.post("/leads/", json=body, headers=headers)
        self.assertEqual(second.status_code, 409)
        self.assertEqual(second.json["error"], "conflict")
        self.assertEqual(second.json["data"]["code"], "HN-00001")

    def test_invalid_body_is_validation_error(self):
        resp = self.client.post("/leads/", json={"customer_phone": "0901234567"}, headers=self._auth())
        self.assertEqual(resp.status_code, 400)
        self.assertIn("customer_name", resp.json["data"]["fields"])

    def test_teacher_cannot_create_leads(self):
        teacher = User(username="teacher1", role="TEACHER", password_hash=PasswordHasher().hash("secret123"))
        db.session.add(teacher)
        db.session.commit()
        token = self.client.post("/auth/login", json={"username": "teacher1", "password": "secret123"}).json["data"]["token"]
        resp = self.client.post(
            "/leads/",
            json={"customer_name": "A", "customer_phone": "0900000000", "students": [{"name": "B"}]},
            headers={"Authorization": f"Bearer {token}"},
        )
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json["error"], "permission_denied")


if __name__ == "__main__":
    unittest.main()
