"""Push token model.

Expo push tokens registered by the mobile app. A token value is unique
across the table; registering it again moves it to the new owner.
"""

import uuid

from sqlalchemy import ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from apn_telemetry.models.base import Base, TimestampMixin


class PushToken(Base, TimestampMixin):
    """A mobile push endpoint owned by a user."""

    __tablename__ = "push_tokens"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    expo_push_token: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        unique=True,
    )

    # Optional phone identifier, not a hardware device id
    device_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    platform: Mapped[str | None] = mapped_column(String(20), nullable=True)

    def __repr__(self) -> str:
        return f"<PushToken(user_id={self.user_id}, platform={self.platform})>"
