"""
Common testing utilities for the Canvas MCP bridge tests.

Provides the fake Canvas credentials, helpers to link accounts and to age database
records, so tests can reach expired or rate-limited states without sleeping.
"""

import base64
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Type

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from edu.canvasmcp.bridge.model.base import Base
from edu.canvasmcp.bridge.store.credentials import CredentialStore, LinkResult

TEST_ENCRYPTION_KEY = base64.b64encode(bytes(range(32))).decode("ascii")

CANVAS_TOKEN = "canvas-token-for-tests"
CANVAS_USER: Dict[str, Any] = {
    "id": 4242,
    "name": "Ada Student",
    "primary_email": "ada@example.edu",
    "login_id": "ada",
}


def generate_test_datetime(offset_minutes: int = 0) -> datetime:
    """Generate a timezone-aware datetime for testing."""
    return datetime.now(timezone.utc) + timedelta(minutes=offset_minutes)


def bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


async def link_canvas_user(
    store: CredentialStore, canvas_user_id: str = "4242", **kwargs: Any
) -> LinkResult:
    """Link a Canvas account with throwaway credentials unless others are given."""
    kwargs.setdefault("canvas_domain", "school.instructure.com")
    kwargs.setdefault("canvas_access_token", "7~token")
    return await store.create_or_link_user(canvas_user_id=canvas_user_id, **kwargs)


async def backdate(
    session_maker: async_sessionmaker[AsyncSession],
    model_class: Type[Base],
    where: Any,
    **values: datetime,
) -> int:
    """Overwrite timestamp columns of matching rows. Returns the number of rows changed."""
    async with session_maker() as session:
        async with session.begin():
            result = await session.execute(
                update(model_class).where(where).values(**values)
            )
            return result.rowcount
