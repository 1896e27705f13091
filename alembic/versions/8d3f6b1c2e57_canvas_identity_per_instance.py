"""canvas identity per instance

Canvas user ids are only unique within one Canvas instance, so a linked account is
identified by the domain and the user id together.

Revision ID: 8d3f6b1c2e57
Revises: 5c1e2a9d7b40
Create Date: 2026-10-19 09:41:27.560214

"""

from typing import Sequence, Union

from alembic import op


# revision identifiers, used by Alembic.
revision: str = "8d3f6b1c2e57"
down_revision: Union[str, None] = "5c1e2a9d7b40"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.drop_index("idx_users_canvas_user_id", table_name="users")
    op.create_index(
        "idx_users_canvas_identity",
        "users",
        ["canvas_domain", "canvas_user_id"],
        unique=True,
    )


def downgrade() -> None:
    op.drop_index("idx_users_canvas_identity", table_name="users")
    op.create_index("idx_users_canvas_user_id", "users", ["canvas_user_id"], unique=True)
