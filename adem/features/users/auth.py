"""
Identity provider integration (Appwrite).

The portal never stores credentials: sessions, sign-up and password recovery
are delegated to the provider. Services depend on the ``IdentityProvider``
interface so tests can swap in a fake.
"""
import abc
from typing import Optional

import jwt
from appwrite.client import Client
from appwrite.exception import AppwriteException
from appwrite.id import ID
from appwrite.services.account import Account
from appwrite.services.users import Users
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from adem.core import config
from adem.core.errors import PortalError, ValidationError
from adem.utils import get_logger


log = get_logger(__name__)


class IdentityProviderError(PortalError):
    """The identity provider could not complete the request"""
    code = "error"
    status_code = 502


class IdentitySession(BaseModel):
    user_id: str
    email_verified: bool = False


class IdentityProvider(abc.ABC):
    """What the portal needs from an identity provider."""

    @abc.abstractmethod
    async def get_session(self, token: str) -> Optional[IdentitySession]:
        """Resolve a bearer token, or None when it is invalid or expired."""

    @abc.abstractmethod
    async def sign_up(self, name: str, email: str, password: str) -> str:
        """Create an identity and return its user id."""

    @abc.abstractmethod
    async def request_password_reset(self, email: str) -> None:
        """Send a recovery email."""

    @abc.abstractmethod
    async def delete_identity(self, user_id: str) -> None:
        """Remove the identity of a deleted member."""


class AppwriteClient:
    """Singleton Appwrite client for server-side operations."""

    _instance: Optional[Client] = None

    @classmethod
    def get_client(cls) -> Client:
        """Get or create Appwrite client instance."""
        if cls._instance is None:
            cls._instance = Client()
            cls._instance.set_endpoint(config.APPWRITE_ENDPOINT)
            cls._instance.set_project(config.APPWRITE_PROJECT_ID)
            cls._instance.set_key(config.APPWRITE_API_KEY)
        return cls._instance

    @staticmethod
    def get_guest_client() -> Client:
        """Client without API key; account recovery is a guest endpoint."""
        client = Client()
        client.set_endpoint(config.APPWRITE_ENDPOINT)
        client.set_project(config.APPWRITE_PROJECT_ID)
        return client

    @classmethod
    def get_session_client(cls, token: str) -> Client:
        """Client acting as the holder of ``token``; Appwrite checks its signature."""
        client = cls.get_guest_client()
        client.set_jwt(token)
        return client


class AppwriteIdentityProvider(IdentityProvider):
    """
    Identity provider backed by Appwrite.

    The SDK is synchronous, so every call runs in the threadpool.
    """

    async def get_session(self, token: str) -> Optional[IdentitySession]:
        try:
            # Cheap pre-check only; the signature is verified by Appwrite below
            jwt.decode(token, options={"verify_signature": False, "verify_exp": True})
        except jwt.ExpiredSignatureError:
            log.info("Rejected expired token")
            return None
        except jwt.InvalidTokenError as e:
            log.info(f"Rejected malformed token: {e}")
            return None

        try:
            account = await run_in_threadpool(Account(AppwriteClient.get_session_client(token)).get)
        except AppwriteException as e:
            log.info(f"Appwrite rejected token: {e}")
            return None

        return IdentitySession(
            user_id=account["$id"],
            email_verified=bool(account.get("emailVerification", False)),
        )

    async def sign_up(self, name: str, email: str, password: str) -> str:
        try:
            user = await run_in_threadpool(
                Users(AppwriteClient.get_client()).create,
                ID.unique(), email=email, password=password, name=name,
            )
        except AppwriteException as e:
            if e.code == 409:
                raise ValidationError("An account already exists for this email")
            log.error(f"Appwrite sign-up failed for {email}: {e}")
            raise IdentityProviderError("Could not create the account")
        return user["$id"]

    async def request_password_reset(self, email: str) -> None:
        try:
            await run_in_threadpool(
                Account(AppwriteClient.get_guest_client()).create_recovery,
                email=email, url=config.PASSWORD_RESET_URL,
            )
        except AppwriteException as e:
            log.error(f"Appwrite recovery failed for {email}: {e}")
            raise IdentityProviderError("Could not send the password reset email")

    async def delete_identity(self, user_id: str) -> None:
        try:
            await run_in_threadpool(Users(AppwriteClient.get_client()).delete, user_id)
        except AppwriteException as e:
            log.error(f"Appwrite delete failed for {user_id}: {e}")
            raise IdentityProviderError("Could not delete the account at the identity provider")
