"""
OAuth endpoints for MCP clients: discovery, consent and token exchange.

``/auth/authorize`` needs a browser session. Visitors without one are sent to the login
page and come back to the same authorize URL afterwards; signed-in users without a
Canvas link are asked to connect Canvas first, since a token for them would be useless.
"""

import json
import logging
from urllib.parse import urlencode, urlsplit

import aiohttp_jinja2
from aiohttp import web

from edu.canvasmcp.bridge.app.config import (
    MetricsClientAppKey,
    OAuthServerAppKey,
    Settings,
    SettingsAppKey,
)
from edu.canvasmcp.bridge.app.handlers.helpers import NO_STORE, current_user, internal_error
from edu.canvasmcp.bridge.auth.oauth import (
    AuthorizeRequest,
    TokenRequest,
    authorization_server_metadata,
    protected_resource_metadata,
)
from edu.canvasmcp.bridge.errors import InvalidRequest, OAuthError

logger = logging.getLogger(__name__)

SCOPE_DESCRIPTIONS = {
    "canvas:read": "Read all of your Canvas courses, assignments, grades and announcements",
    "canvas:courses:read": "Read your Canvas courses",
    "canvas:assignments:read": "Read your Canvas assignments and deadlines",
    "canvas:grades:read": "Read your Canvas grades and submissions",
    "canvas:announcements:read": "Read your Canvas course announcements",
}


def context_vars(settings: Settings) -> dict:
    return {"brand_name": settings.brand_name, "base_url": settings.public_url}


async def render_alert(
    request: web.Request, title: str, message: str, status: int = 400
) -> web.Response:
    settings = request.app[SettingsAppKey]
    response = await aiohttp_jinja2.render_template_async(
        "alert.html",
        request,
        context=dict(**context_vars(settings), title=title, message=message),
    )
    response.set_status(status)
    return response


async def handle_protected_resource_metadata(request: web.Request):
    settings = request.app[SettingsAppKey]
    return web.json_response(protected_resource_metadata(settings.public_url))


async def handle_authorization_server_metadata(request: web.Request):
    settings = request.app[SettingsAppKey]
    return web.json_response(authorization_server_metadata(settings.public_url))


async def _authorize_gate(request: web.Request, authorize_request: AuthorizeRequest):
    """Returns a response when the visitor cannot consent yet, otherwise the user."""
    _, user = await current_user(request)
    if user is None:
        next_url = f"/auth/authorize?{urlencode(authorize_request.as_params())}"
        raise web.HTTPFound(f"/login?{urlencode({'next': next_url})}")

    if not user.is_linked:
        settings = request.app[SettingsAppKey]
        return await aiohttp_jinja2.render_template_async(
            "connect.html",
            request,
            context=dict(
                **context_vars(settings),
                email=user.email,
                next_url=f"/auth/authorize?{urlencode(authorize_request.as_params())}",
            ),
        )
    return user


async def handle_authorize(request: web.Request):
    settings = request.app[SettingsAppKey]
    oauth_server = request.app[OAuthServerAppKey]

    try:
        authorize_request = oauth_server.parse_authorize_request(request.query)
    except OAuthError as e:
        return await render_alert(request, "Invalid authorization request", e.description)

    gate = await _authorize_gate(request, authorize_request)
    if isinstance(gate, web.StreamResponse):
        return gate
    user = gate

    return await aiohttp_jinja2.render_template_async(
        "consent.html",
        request,
        context=dict(
            **context_vars(settings),
            client_id=authorize_request.client_id,
            redirect_host=urlsplit(authorize_request.redirect_uri).netloc,
            scopes=[
                SCOPE_DESCRIPTIONS.get(scope, scope) for scope in authorize_request.scopes
            ],
            params=authorize_request.as_params(),
            email=user.email,
            canvas_domain=user.canvas_domain,
        ),
    )


async def handle_authorize_submit(request: web.Request):
    oauth_server = request.app[OAuthServerAppKey]
    metrics_client = request.app[MetricsClientAppKey]

    form = await request.post()
    try:
        authorize_request = oauth_server.parse_authorize_request(form)
    except OAuthError as e:
        return await render_alert(request, "Invalid authorization request", e.description)

    gate = await _authorize_gate(request, authorize_request)
    if isinstance(gate, web.StreamResponse):
        return gate
    user = gate

    decision = form.get("decision")
    if decision == "approve":
        location = await oauth_server.approve(authorize_request, user.id)
    elif decision == "deny":
        location = oauth_server.deny(authorize_request)
    else:
        return await render_alert(
            request, "Invalid authorization request", "Choose to approve or deny access."
        )

    metrics_client.increment(
        "canvasmcp.oauth.authorize", 1, tag_dict={"decision": decision}
    )
    raise web.HTTPFound(location)


async def handle_token(request: web.Request):
    oauth_server = request.app[OAuthServerAppKey]
    metrics_client = request.app[MetricsClientAppKey]

    try:
        if request.content_type == "application/json":
            try:
                payload = json.loads(await request.read())
            except ValueError as e:
                raise InvalidRequest("Request body is not valid JSON") from e
            token_request = TokenRequest.from_json(payload)
        else:
            token_request = TokenRequest.from_form(await request.post())
        token_response = await oauth_server.exchange(token_request)
    except OAuthError as e:
        metrics_client.increment("canvasmcp.oauth.token", 1, tag_dict={"error": e.error})
        return web.json_response(e.to_dict(), status=e.status, headers=NO_STORE)
    except Exception as e:
        return await internal_error(request, e, "handle_token")

    metrics_client.increment("canvasmcp.oauth.token", 1, tag_dict={"error": "none"})
    return web.json_response(token_response.model_dump(), headers=NO_STORE)


async def handle_register(request: web.Request):
    return web.json_response(
        {
            "error": "registration_not_supported",
            "error_description": "Dynamic client registration is not supported. Use a "
            "URL to a Client ID Metadata Document as the client_id.",
        },
        status=501,
    )
