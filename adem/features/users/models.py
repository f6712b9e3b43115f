"""
User model with ULID primary keys.
"""
import enum
from datetime import datetime
from sqlalchemy import String, Boolean, DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column

from adem.core.database.base import Base, TimestampMixin, generate_ulid


class UserStatus(str, enum.Enum):
    """Membership status. Only ``active`` users hold standing."""
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    BANNED = "banned"


class User(Base, TimestampMixin):
    """
    Member of the association.

    ``id`` is the identity provider's user id so the session user id can be
    used directly against every table; locally created rows get a ULID.
    """
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_ulid)

    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    image: Mapped[str | None] = mapped_column(String(500), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), default=UserStatus.PENDING.value, nullable=False, index=True
    )

    # Ban metadata; ban_expires_at NULL means permanent
    banned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    ban_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    ban_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email!r}, status={self.status})>"
