"""
Bearer tokens are only trusted once Appwrite has accepted them.
"""
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from appwrite.exception import AppwriteException

from adem.features.users import auth
from adem.features.users.auth import AppwriteClient, AppwriteIdentityProvider


def make_token(user_id: str, key: str, expires_in: timedelta = timedelta(hours=1)) -> str:
    exp = datetime.now(timezone.utc) + expires_in
    return jwt.encode({"userId": user_id, "exp": exp}, key, algorithm="HS256")


@pytest.fixture
def appwrite(monkeypatch):
    """
    Stand-in for the Appwrite account endpoint.

    Only tokens listed in ``accounts`` are accepted, the way Appwrite only
    accepts tokens it signed itself.
    """
    accounts = {}
    calls = []

    class FakeAccount:
        def __init__(self, client):
            self.token = client

        def get(self):
            calls.append(self.token)
            if self.token not in accounts:
                raise AppwriteException("Invalid token passed in the request.", 401)
            return accounts[self.token]

    class FakeUsers:
        """Every user id exists, including the one a forged token names."""

        def __init__(self, client):
            pass

        def get(self, user_id):
            return {"$id": user_id, "emailVerification": True}

    monkeypatch.setattr(AppwriteClient, "get_session_client", staticmethod(lambda token: token))
    monkeypatch.setattr(auth, "Account", FakeAccount)
    monkeypatch.setattr(auth, "Users", FakeUsers)
    return accounts, calls


class TestAppwriteSessions:
    async def test_token_signed_with_another_key_is_rejected(self, appwrite):
        forged = make_token("victim-admin", "attacker-chosen-secret")

        session = await AppwriteIdentityProvider().get_session(forged)

        assert session is None

    async def test_accepted_token_resolves_to_the_account(self, appwrite):
        accounts, _ = appwrite
        token = make_token("member-1", "appwrite-secret")
        accounts[token] = {"$id": "member-1", "emailVerification": False}

        session = await AppwriteIdentityProvider().get_session(token)

        assert session.user_id == "member-1"
        assert session.email_verified is False

    async def test_user_id_comes_from_appwrite_not_the_payload(self, appwrite):
        accounts, _ = appwrite
        token = make_token("someone-else", "appwrite-secret")
        accounts[token] = {"$id": "member-2", "emailVerification": True}

        session = await AppwriteIdentityProvider().get_session(token)

        assert session.user_id == "member-2"

    async def test_expired_token_never_reaches_appwrite(self, appwrite):
        accounts, calls = appwrite
        token = make_token("member-1", "appwrite-secret", expires_in=timedelta(minutes=-5))
        accounts[token] = {"$id": "member-1"}

        session = await AppwriteIdentityProvider().get_session(token)

        assert session is None
        assert calls == []

    async def test_garbage_token(self, appwrite):
        _, calls = appwrite

        assert await AppwriteIdentityProvider().get_session("not-a-jwt") is None
        assert calls == []
