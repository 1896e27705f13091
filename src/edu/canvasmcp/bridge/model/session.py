"""Server-side browser sessions keyed by the ``session`` cookie."""

from datetime import datetime
from typing import Optional

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from edu.canvasmcp.bridge.model.base import Base, str512


class BrowserSession(Base):
    """
    Browser session with an optional owning user.

    ``api_key`` holds a freshly issued API key, encrypted with the token cipher, until the
    dashboard reads it for the first time.
    """

    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(26), nullable=True)
    canvas_domain: Mapped[Optional[str512]] = mapped_column(nullable=True)
    api_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (
        Index("idx_sessions_user_id", "user_id"),
        Index("idx_sessions_expires", "expires_at"),
    )
