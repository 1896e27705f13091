"""
Browser sign-in: Canvas token login, magic links and logout.

Both sign-in paths end in a fresh session and the ``session`` cookie. Any session the
browser already had is deleted at that point, so a session id is never carried across a
sign-in.
"""

from datetime import timedelta
import json
import logging
import math
from typing import Any, Dict, Optional

from aiohttp import web
from pydantic import BaseModel, EmailStr, ValidationError

from edu.canvasmcp.bridge.app.config import (
    CredentialStoreAppKey,
    MailerAppKey,
    MetricsClientAppKey,
    SessionAppKey,
    SettingsAppKey,
)
from edu.canvasmcp.bridge.app.handlers.helpers import (
    SESSION_COOKIE,
    clear_session_cookie,
    current_user,
    internal_error,
    json_error,
    safe_return_to,
    set_session_cookie,
)
from edu.canvasmcp.bridge.app.handlers.oauth import render_alert
from edu.canvasmcp.bridge.canvas.client import CanvasClient, normalize_domain
from edu.canvasmcp.bridge.errors import UpstreamProviderError
from edu.canvasmcp.bridge.mail import MailDeliveryError
from edu.canvasmcp.bridge.store.credentials import utcnow

logger = logging.getLogger(__name__)

INVALID_CANVAS_CREDENTIALS = (
    "Invalid access token or Canvas domain. Please check your credentials and try again."
)


class MagicLinkRequest(BaseModel):
    email: EmailStr
    next: Optional[str] = None


async def read_body(request: web.Request) -> Optional[Dict[str, Any]]:
    """Decode a JSON or form body into a dict, or None when it is neither."""
    if request.content_type == "application/json":
        try:
            payload = json.loads(await request.read())
        except ValueError:
            return None
        return payload if isinstance(payload, dict) else None
    form = await request.post()
    return {k: v for k, v in form.items() if isinstance(v, str)}


def redirect(location: str) -> web.Response:
    return web.Response(status=302, headers={"Location": location})


def canvas_email(canvas_user: Dict[str, Any]) -> Optional[str]:
    for field in ("primary_email", "login_id"):
        value = canvas_user.get(field)
        if isinstance(value, str) and "@" in value:
            return value
    return None


async def handle_token_login(request: web.Request):
    """
    Sign in with a Canvas domain and personal access token.

    The token is checked against ``/api/v1/users/self`` before anything is stored. New
    accounts get an API key, held encrypted in the new session until the dashboard shows
    it once.
    """
    settings = request.app[SettingsAppKey]
    store = request.app[CredentialStoreAppKey]
    metrics_client = request.app[MetricsClientAppKey]
    mailer = request.app[MailerAppKey]

    body = await read_body(request)
    canvas_domain = body.get("canvas_domain") if body else None
    access_token = body.get("access_token") if body else None
    if (
        not isinstance(canvas_domain, str)
        or not isinstance(access_token, str)
        or not canvas_domain.strip()
        or not access_token.strip()
    ):
        return json_error(400, "Canvas domain and access token are required")

    domain = normalize_domain(canvas_domain)
    if domain is None:
        return json_error(400, "Canvas domain is not a valid hostname")
    access_token = access_token.strip()

    canvas_client = CanvasClient(
        request.app[SessionAppKey], domain, access_token, scheme=settings.canvas_scheme
    )
    try:
        canvas_user = await canvas_client.get_current_user()
    except UpstreamProviderError as e:
        logger.info("Canvas rejected token login for %s: %s", domain, e)
        metrics_client.increment(
            "canvasmcp.account.token_login", 1, tag_dict={"result": "rejected"}
        )
        return json_error(401, INVALID_CANVAS_CREDENTIALS)
    if not isinstance(canvas_user, dict) or canvas_user.get("id") is None:
        return json_error(401, INVALID_CANVAS_CREDENTIALS)

    try:
        previous_session, session_user = await current_user(request)
        prefer_user_id = None
        if session_user is not None and not session_user.is_linked:
            prefer_user_id = session_user.id

        email = canvas_email(canvas_user)
        link = await store.create_or_link_user(
            canvas_user_id=str(canvas_user["id"]),
            canvas_domain=domain,
            canvas_access_token=access_token,
            email=email,
            prefer_user_id=prefer_user_id,
        )
        if previous_session is not None:
            await store.delete_session(previous_session.id)
        browser_session = await store.create_session(
            user_id=link.user.id,
            canvas_domain=domain,
            api_key=link.api_key,
            max_age=settings.session_max_age,
        )
    except Exception as e:
        return await internal_error(request, e, "handle_token_login")

    metrics_client.increment(
        "canvasmcp.account.token_login",
        1,
        tag_dict={"result": "created" if link.is_new_user else "updated"},
    )

    notify = link.user.email
    if link.is_new_user and notify and mailer.enabled:
        try:
            await mailer.send_account_connected(notify, domain)
        except MailDeliveryError as e:
            logger.warning("Account connected email not sent: %s", e)

    response = web.json_response({"success": True, "is_new_user": link.is_new_user})
    set_session_cookie(response, settings, browser_session.id)
    return response


async def handle_logout(request: web.Request):
    settings = request.app[SettingsAppKey]
    store = request.app[CredentialStoreAppKey]

    session_id = request.cookies.get(SESSION_COOKIE)
    if session_id:
        await store.delete_session(session_id)

    response = web.json_response({"success": True})
    clear_session_cookie(response, settings)
    return response


async def handle_magic_link(request: web.Request):
    """
    Email a single-use sign-in link.

    The answer is the same whether or not an account exists for the address. Links for
    one address are rate limited; inside the cooldown the caller gets a 429 with the
    number of seconds to wait.
    """
    settings = request.app[SettingsAppKey]
    store = request.app[CredentialStoreAppKey]
    mailer = request.app[MailerAppKey]
    metrics_client = request.app[MetricsClientAppKey]

    if not mailer.enabled:
        return json_error(503, "Email sign-in is not available on this server")

    body = await read_body(request)
    try:
        magic_link_request = MagicLinkRequest.model_validate(body or {})
    except ValidationError:
        return json_error(400, "A valid email address is required")
    email = magic_link_request.email.lower()

    try:
        last_issued_at = await store.last_magic_link_issued_at(email)
    except Exception as e:
        return await internal_error(request, e, "handle_magic_link")
    if last_issued_at is not None:
        elapsed = (utcnow() - last_issued_at).total_seconds()
        if elapsed < settings.magic_link_cooldown:
            retry_after = max(1, math.ceil(settings.magic_link_cooldown - elapsed))
            metrics_client.increment(
                "canvasmcp.account.magic_link", 1, tag_dict={"result": "limited"}
            )
            return web.json_response(
                {
                    "error": "Please wait before requesting another sign-in link",
                    "retry_after": retry_after,
                },
                status=429,
                headers={"Retry-After": str(retry_after)},
            )

    try:
        magic_link = await store.create_magic_link(
            email,
            ttl=timedelta(seconds=settings.magic_link_ttl),
            return_to=safe_return_to(magic_link_request.next),
        )
    except Exception as e:
        return await internal_error(request, e, "handle_magic_link")

    try:
        await mailer.send_magic_link(email, magic_link.token)
    except MailDeliveryError as e:
        logger.warning("Magic link email not sent: %s", e)
        return json_error(502, "The sign-in email could not be sent. Please try again later.")

    metrics_client.increment("canvasmcp.account.magic_link", 1, tag_dict={"result": "sent"})
    return web.json_response(
        {"success": True, "message": "Check your email for a sign-in link."}
    )


async def handle_verify(request: web.Request):
    settings = request.app[SettingsAppKey]
    store = request.app[CredentialStoreAppKey]

    token = request.query.get("token")
    try:
        magic_link = await store.consume_magic_link(token) if token else None
    except Exception as e:
        return await internal_error(request, e, "handle_verify")
    if magic_link is None:
        return await render_alert(
            request,
            "Sign-in link expired",
            "This sign-in link is invalid, has expired or has already been used. "
            "Request a new one from the login page.",
        )

    try:
        user = await store.get_or_create_user_by_email(magic_link.email)
        previous_session_id = request.cookies.get(SESSION_COOKIE)
        if previous_session_id:
            await store.delete_session(previous_session_id)
        browser_session = await store.create_session(
            user_id=user.id,
            canvas_domain=user.canvas_domain,
            max_age=settings.session_max_age,
        )
    except Exception as e:
        return await internal_error(request, e, "handle_verify")

    response = redirect(safe_return_to(magic_link.return_to) or "/dashboard")
    set_session_cookie(response, settings, browser_session.id)
    return response
