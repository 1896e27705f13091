"""init

Revision ID: 5c1e2a9d7b40
Revises:
Create Date: 2026-10-18 16:02:11.418903

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5c1e2a9d7b40"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(26), primary_key=True),
        sa.Column("canvas_user_id", sa.String(64), nullable=True),
        sa.Column("canvas_domain", sa.String(512), nullable=True),
        sa.Column("email", sa.String(512), nullable=True),
        sa.Column("canvas_access_token", sa.Text, nullable=True),
        sa.Column("canvas_refresh_token", sa.Text, nullable=True),
        sa.Column("api_key_hash", sa.String(512), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_users_canvas_user_id", "users", ["canvas_user_id"], unique=True)
    op.create_index("idx_users_email", "users", ["email"])

    op.create_table(
        "usage_logs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(26), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("endpoint", sa.String(512), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_usage_logs_user_id", "usage_logs", ["user_id"])
    op.create_index("idx_usage_logs_timestamp", "usage_logs", ["timestamp"])

    op.create_table(
        "sessions",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(26), nullable=True),
        sa.Column("canvas_domain", sa.String(512), nullable=True),
        sa.Column("api_key", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_sessions_user_id", "sessions", ["user_id"])
    op.create_index("idx_sessions_expires", "sessions", ["expires_at"])

    op.create_table(
        "magic_links",
        sa.Column("token", sa.String(64), primary_key=True),
        sa.Column("email", sa.String(512), nullable=False),
        sa.Column("return_to", sa.String(2048), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "idx_magic_links_email_created", "magic_links", ["email", "created_at"]
    )
    op.create_index("idx_magic_links_expires", "magic_links", ["expires_at"])

    op.create_table(
        "oauth_authorization_codes",
        sa.Column("code", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(26), nullable=False),
        sa.Column("client_id", sa.String(2048), nullable=False),
        sa.Column("redirect_uri", sa.String(2048), nullable=False),
        sa.Column("code_challenge", sa.String(128), nullable=False),
        sa.Column("scope", sa.String(512), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_oauth_codes_expires", "oauth_authorization_codes", ["expires_at"]
    )

    op.create_table(
        "oauth_access_tokens",
        sa.Column("token", sa.String(128), primary_key=True),
        sa.Column("user_id", sa.String(26), nullable=False),
        sa.Column("client_id", sa.String(2048), nullable=False),
        sa.Column("scope", sa.String(512), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_oauth_tokens_user_id", "oauth_access_tokens", ["user_id"])
    op.create_index("idx_oauth_tokens_expires", "oauth_access_tokens", ["expires_at"])


def downgrade() -> None:
    op.drop_table("oauth_access_tokens")
    op.drop_table("oauth_authorization_codes")
    op.drop_table("magic_links")
    op.drop_table("sessions")
    op.drop_table("usage_logs")
    op.drop_table("users")
