import logging
from datetime import datetime
from typing import Optional

from aiohttp import web

from edu.canvasmcp.bridge.app.config import (
    AuthenticationGateAppKey,
    CredentialStoreAppKey,
    MetricsClientAppKey,
)
from edu.canvasmcp.bridge.app.handlers.helpers import (
    NO_STORE,
    current_user,
    internal_error,
    json_error,
)
from edu.canvasmcp.bridge.errors import InvalidCredential, NotFound

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


async def handle_user_me(request: web.Request):
    """
    Dashboard data for the signed-in user.

    ``api_key`` is only present on the first call after the key was issued; reading it
    removes it from the session.
    """
    store = request.app[CredentialStoreAppKey]

    browser_session, user = await current_user(request)
    if browser_session is None or browser_session.user_id is None:
        return json_error(401, "Not authenticated")
    if user is None:
        return json_error(404, "User not found")

    try:
        api_key = await store.take_session_api_key(browser_session.id)
        usage_stats = await store.usage_stats(user.id)
    except Exception as e:
        return await internal_error(request, e, "handle_user_me")

    return web.json_response(
        {
            "id": user.id,
            "email": user.email,
            "canvas_domain": user.canvas_domain,
            "linked": user.is_linked,
            "has_api_key": user.is_activated,
            "created_at": _iso(user.created_at),
            "last_used_at": _iso(user.last_used_at),
            "api_key": api_key,
            "usage_stats": usage_stats,
        },
        headers=NO_STORE,
    )


async def handle_regenerate_key(request: web.Request):
    gate = request.app[AuthenticationGateAppKey]
    metrics_client = request.app[MetricsClientAppKey]

    _, user = await current_user(request)
    if user is None:
        return json_error(401, "Not authenticated")
    if not user.is_linked:
        return json_error(400, "Connect your Canvas account before creating an API key")

    try:
        api_key = await gate.rotate_api_key(user.id)
    except NotFound:
        return json_error(404, "User not found")
    except InvalidCredential:
        return json_error(400, "Connect your Canvas account before creating an API key")
    except Exception as e:
        return await internal_error(request, e, "handle_regenerate_key")

    metrics_client.increment("canvasmcp.account.key_rotated", 1)
    logger.info("API key rotated for user %s", user.id)
    return web.json_response({"api_key": api_key}, headers=NO_STORE)
