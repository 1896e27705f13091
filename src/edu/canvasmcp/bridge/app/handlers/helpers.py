import logging
from typing import Any, Optional, Tuple

from aiohttp import web
import sentry_sdk

from edu.canvasmcp.bridge.app.config import (
    CredentialStoreAppKey,
    HealthGaugeAppKey,
    Settings,
    SettingsAppKey,
)
from edu.canvasmcp.bridge.model import BrowserSession, User

logger = logging.getLogger(__name__)

SESSION_COOKIE = "session"

NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def set_session_cookie(
    response: web.StreamResponse, settings: Settings, session_id: str
) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        session_id,
        max_age=settings.session_max_age,
        path="/",
        httponly=True,
        samesite="Lax",
        secure=True if settings.secure_cookies else None,
    )


def clear_session_cookie(response: web.StreamResponse, settings: Settings) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        "",
        max_age=0,
        path="/",
        httponly=True,
        samesite="Lax",
        secure=True if settings.secure_cookies else None,
    )


async def current_session(request: web.Request) -> Optional[BrowserSession]:
    session_id = request.cookies.get(SESSION_COOKIE)
    if not session_id:
        return None
    return await request.app[CredentialStoreAppKey].get_session(session_id)


async def current_user(
    request: web.Request,
) -> Tuple[Optional[BrowserSession], Optional[User]]:
    """The live browser session and its user, either of which may be None."""
    browser_session = await current_session(request)
    if browser_session is None or browser_session.user_id is None:
        return (browser_session, None)
    user = await request.app[CredentialStoreAppKey].get_user(browser_session.user_id)
    return (browser_session, user)


def json_error(status: int, message: str, **extra: Any) -> web.Response:
    return web.json_response({"error": message, **extra}, status=status)


def safe_return_to(value: Optional[str]) -> Optional[str]:
    """Accept only same-site relative paths, so sign-in cannot redirect off-site."""
    if not value or not value.startswith("/") or value.startswith("//"):
        return None
    if "\\" in value or any(ord(c) < 0x20 for c in value):
        return None
    return value


async def internal_error(request: web.Request, e: Exception, context: str) -> web.Response:
    """Log, report and count an unexpected failure, then answer with a generic 500."""
    logger.exception("Unexpected error in %s", context)
    sentry_sdk.capture_exception(e)
    await request.app[HealthGaugeAppKey].record_failure()

    settings = request.app[SettingsAppKey]
    body = {"error": "Internal Server Error"}
    if settings.debug:
        body["error_type"] = type(e).__name__
    return web.json_response(body, status=500)
