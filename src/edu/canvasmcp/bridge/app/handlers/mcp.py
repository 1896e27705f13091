import json
import logging
from typing import Any, Dict, Optional, Union

from aiohttp import web
from mcp import types
from pydantic import ValidationError
import sentry_sdk

from edu.canvasmcp.bridge.app.config import (
    AuthenticationGateAppKey,
    HealthGaugeAppKey,
    McpServerAppKey,
    MetricsClientAppKey,
    Settings,
    SettingsAppKey,
)
from edu.canvasmcp.bridge.errors import AuthenticationError, InvalidCredential

logger = logging.getLogger(__name__)

REALM = "Canvas MCP Server"

AUTHENTICATION_ERROR = -32001


def www_authenticate(settings: Settings, invalid_token: bool = False) -> str:
    challenge = (
        f'Bearer realm="{REALM}", '
        f'resource_metadata="{settings.public_url}/.well-known/oauth-protected-resource"'
    )
    if invalid_token:
        challenge += ', error="invalid_token"'
    return challenge


def request_id_of(payload: Any) -> Optional[Union[str, int]]:
    """The id of a rejected message, when it has a usable one."""
    if isinstance(payload, dict):
        request_id = payload.get("id")
        if isinstance(request_id, (str, int)) and not isinstance(request_id, bool):
            return request_id
    return None


def rpc_error(
    request_id: Optional[Union[str, int]],
    code: int,
    message: str,
    status: int = 200,
    headers: Optional[Dict[str, str]] = None,
) -> web.Response:
    error = types.ErrorData(code=code, message=message)
    return web.json_response(
        {"jsonrpc": "2.0", "id": request_id, "error": error.model_dump(exclude_none=True)},
        status=status,
        headers=headers,
    )


async def handle_mcp(request: web.Request):
    """
    Single JSON-RPC message endpoint.

    The bearer credential is resolved before the body is read; an unauthenticated caller
    gets a -32001 error with a 401 and a WWW-Authenticate challenge pointing at the
    protected resource metadata. Authenticated messages are handed to the MCP SDK.
    """
    settings = request.app[SettingsAppKey]
    metrics_client = request.app[MetricsClientAppKey]
    gate = request.app[AuthenticationGateAppKey]
    mcp_server = request.app[McpServerAppKey]

    try:
        identity = await gate.authenticate(request.headers.get("Authorization"))
    except AuthenticationError as e:
        metrics_client.increment(
            "canvasmcp.auth.failure", 1, tag_dict={"reason": type(e).__name__}
        )
        return rpc_error(
            None,
            AUTHENTICATION_ERROR,
            str(e),
            status=401,
            headers={
                "WWW-Authenticate": www_authenticate(
                    settings, invalid_token=isinstance(e, InvalidCredential)
                )
            },
        )
    metrics_client.increment(
        "canvasmcp.auth.success", 1, tag_dict={"method": identity.method}
    )

    try:
        payload = json.loads(await request.read())
    except ValueError:
        return rpc_error(None, types.PARSE_ERROR, "Parse error", status=400)

    if not isinstance(payload, dict):
        return rpc_error(
            None, types.INVALID_REQUEST, "Batch requests are not supported", status=400
        )

    try:
        message = types.JSONRPCMessage.model_validate(payload)
    except ValidationError:
        return rpc_error(
            request_id_of(payload), types.INVALID_REQUEST, "Invalid Request", status=400
        )

    try:
        response = await mcp_server.handle_message(identity, message)
    except Exception as e:
        logger.exception("Unhandled error handling %s", payload.get("method"))
        sentry_sdk.capture_exception(e)
        await request.app[HealthGaugeAppKey].record_failure()
        return rpc_error(
            request_id_of(payload), types.INTERNAL_ERROR, "Internal server error", status=500
        )

    if response is None:
        return web.Response(status=202)
    return web.json_response(
        response.model_dump(by_alias=True, mode="json", exclude_none=True)
    )


async def handle_mcp_get(request: web.Request):
    # No server-initiated stream is offered.
    return web.Response(status=405, headers={"Allow": "POST"})
