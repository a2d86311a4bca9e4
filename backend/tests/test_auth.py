"""
Authentication tests: registration, login, logout and token expiry.
"""

from datetime import timedelta

from zoovio.models import SessionToken, User
from zoovio.services import session_service
from zoovio.time_utils import utcnow

from conftest import auth_headers


def _register(client, **overrides):
    body = {"fullName": "Carol Cooper", "email": "carol@example.com", "password": "secret1"}
    body.update(overrides)
    return client.post("/api/auth/register", json=body)


class TestRegistration:

    def test_register_returns_token(self, client, db_session):
        resp = _register(client, city="Cairo")

        assert resp.status_code == 201
        assert resp.json["user"]["email"] == "carol@example.com"
        assert resp.json["user"]["city"] == "Cairo"
        assert "password_hash" not in resp.json["user"]

        me = client.get("/api/auth/me", headers=auth_headers(resp.json["token"]))
        assert me.status_code == 200
        assert me.json["user"]["full_name"] == "Carol Cooper"

    def test_password_is_hashed(self, client, db_session):
        _register(client)
        user = db_session.query(User).filter_by(email="carol@example.com").one()
        assert user.password_hash.startswith("$2")
        assert "secret1" not in user.password_hash

    def test_duplicate_email(self, client, db_session):
        _register(client)
        resp = _register(client, email="CAROL@example.com")
        assert resp.status_code == 409

    def test_invalid_registration(self, client, db_session):
        resp = _register(client, fullName="C", password="123")
        assert resp.status_code == 400
        assert {d["field"] for d in resp.json["details"]} == {"fullName", "password"}


class TestLogin:

    def test_login_and_logout(self, client, db_session, user_a):
        resp = client.post("/api/auth/login", json={"email": "alice@example.com", "password": "Password123!"})
        assert resp.status_code == 200
        headers = auth_headers(resp.json["token"])

        assert client.get("/api/auth/me", headers=headers).status_code == 200
        assert client.post("/api/auth/logout", headers=headers).status_code == 200
        assert client.get("/api/auth/me", headers=headers).status_code == 401

    def test_wrong_password(self, client, db_session, user_a):
        resp = client.post("/api/auth/login", json={"email": "alice@example.com", "password": "nope"})
        assert resp.status_code == 401

    def test_missing_fields(self, client, db_session):
        resp = client.post("/api/auth/login", json={"email": "alice@example.com"})
        assert resp.status_code == 400

    def test_inactive_user_cannot_login(self, client, db_session, user_a):
        user_a.is_active = False
        db_session.commit()
        resp = client.post("/api/auth/login", json={"email": "alice@example.com", "password": "Password123!"})
        assert resp.status_code == 401


class TestTokens:

    def test_expired_token_is_rejected(self, client, db_session, user_a):
        session, token = session_service.create_session(user_id=user_a.id)
        session.expires_at = utcnow() - timedelta(minutes=1)
        db_session.commit()

        resp = client.get("/api/auth/me", headers=auth_headers(token))
        assert resp.status_code == 401

    def test_token_is_stored_hashed(self, db_session, user_a):
        _, token = session_service.create_session(user_id=user_a.id)
        stored = db_session.query(SessionToken).one()
        assert stored.token_hash == session_service.hash_token(token)
        assert stored.token_hash != token
