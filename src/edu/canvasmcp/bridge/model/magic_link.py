"""Passwordless sign-in links.

Links are marked used rather than deleted so a replayed token is rejected and the
issuance time of the latest link per address remains available for rate limiting.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column

from edu.canvasmcp.bridge.model.base import Base, str512, str2048


class MagicLink(Base):
    __tablename__ = "magic_links"

    token: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str512]
    return_to: Mapped[Optional[str2048]] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)
    used_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    __table_args__ = (
        Index("idx_magic_links_email_created", "email", "created_at"),
        Index("idx_magic_links_expires", "expires_at"),
    )
