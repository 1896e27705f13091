"""OAuth 2.1 data models for MCP client authorization.

Provides SQLAlchemy models for single-use authorization codes bound to a PKCE challenge,
and for the bearer access tokens issued when a code is exchanged.
"""

from datetime import datetime

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column

from edu.canvasmcp.bridge.model.base import Base, str512, str2048


class AuthorizationCode(Base):
    """Authorization code awaiting exchange.

    Binds the S256 code challenge, scope, client and redirect URI of the original
    authorize request to the approving user. Deleted on exchange or on a failed check.
    """

    __tablename__ = "oauth_authorization_codes"

    code: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(26), nullable=False)
    client_id: Mapped[str2048]
    redirect_uri: Mapped[str2048]
    code_challenge: Mapped[str] = mapped_column(String(128), nullable=False)
    scope: Mapped[str512]
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (Index("idx_oauth_codes_expires", "expires_at"),)


class AccessToken(Base):
    """Bearer access token issued to an MCP client. Looked up by direct equality."""

    __tablename__ = "oauth_access_tokens"

    token: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(26), nullable=False)
    client_id: Mapped[str2048]
    scope: Mapped[str512]
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (
        Index("idx_oauth_tokens_user_id", "user_id"),
        Index("idx_oauth_tokens_expires", "expires_at"),
    )
