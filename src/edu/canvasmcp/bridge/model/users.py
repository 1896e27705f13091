"""Canvas-linked user accounts and their per-tool usage log.

A user exists in one of two states. A pre-activated user was created by a magic link
sign-in and has only an email address. A linked user has a Canvas account, an encrypted
Canvas token and, once issued, the Argon2id hash of an API key.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from edu.canvasmcp.bridge.model.base import Base, str512, ulidpk


class User(Base):
    """Identity anchor for a Canvas account."""

    __tablename__ = "users"

    id: Mapped[ulidpk]
    canvas_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    canvas_domain: Mapped[Optional[str512]] = mapped_column(nullable=True)
    email: Mapped[Optional[str512]] = mapped_column(nullable=True)
    canvas_access_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    canvas_refresh_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # No index: keys are found by scanning and verifying hashes.
    api_key_hash: Mapped[Optional[str512]] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    token_expires_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    __table_args__ = (
        # Canvas user ids are only unique within one Canvas instance.
        Index(
            "idx_users_canvas_identity", "canvas_domain", "canvas_user_id", unique=True
        ),
        Index("idx_users_email", "email"),
    )

    @property
    def is_linked(self) -> bool:
        return self.canvas_user_id is not None and self.canvas_access_token is not None

    @property
    def is_activated(self) -> bool:
        return self.api_key_hash is not None


class UsageLog(Base):
    """One row per tool invocation, used for dashboard statistics."""

    __tablename__ = "usage_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("users.id"), nullable=False
    )
    endpoint: Mapped[str512]
    timestamp: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (
        Index("idx_usage_logs_user_id", "user_id"),
        Index("idx_usage_logs_timestamp", "timestamp"),
    )
