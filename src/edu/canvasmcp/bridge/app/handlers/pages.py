from urllib.parse import urlencode

import aiohttp_jinja2
from aiohttp import web

from edu.canvasmcp.bridge.app.config import MailerAppKey, SettingsAppKey
from edu.canvasmcp.bridge.app.handlers.helpers import current_user, safe_return_to
from edu.canvasmcp.bridge.app.handlers.oauth import context_vars


async def handle_index(request: web.Request):
    settings = request.app[SettingsAppKey]
    _, user = await current_user(request)
    return await aiohttp_jinja2.render_template_async(
        "index.html",
        request,
        context=dict(**context_vars(settings), signed_in=user is not None),
    )


async def handle_login(request: web.Request):
    settings = request.app[SettingsAppKey]
    return await aiohttp_jinja2.render_template_async(
        "login.html",
        request,
        context=dict(
            **context_vars(settings),
            next_url=safe_return_to(request.query.get("next")) or "/dashboard",
            mail_enabled=request.app[MailerAppKey].enabled,
        ),
    )


async def handle_dashboard(request: web.Request):
    settings = request.app[SettingsAppKey]
    _, user = await current_user(request)
    if user is None:
        raise web.HTTPFound(f"/login?{urlencode({'next': '/dashboard'})}")
    return await aiohttp_jinja2.render_template_async(
        "dashboard.html",
        request,
        context=dict(
            **context_vars(settings),
            email=user.email,
            canvas_domain=user.canvas_domain,
            linked=user.is_linked,
            mcp_url=f"{settings.public_url}/mcp",
        ),
    )
