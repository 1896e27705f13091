from typing import Dict, Iterable, Optional
from urllib.parse import urlparse

from aiohttp import web

# MCP clients discover, register and exchange tokens from arbitrary origins.
PUBLIC_PATH_PREFIXES = ("/.well-known/", "/auth/token", "/auth/register", "/mcp")

ALLOWED_DEBUG_HOSTS = {"localhost", "127.0.0.1"}


def parse_allowed_origins(value: str) -> set:
    return {origin.strip().rstrip("/") for origin in value.split(",") if origin.strip()}


def get_cors_headers(
    origin_value: Optional[str], path: str, allowed_origins: Iterable[str], debug: bool
) -> Dict[str, str]:
    """Return appropriate CORS headers based on origin and path."""
    headers = {
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": (
            "Authorization, Content-Type, Accept, Mcp-Protocol-Version, Mcp-Session-Id"
        ),
        "Access-Control-Expose-Headers": "WWW-Authenticate, Retry-After",
        "Vary": "Origin",
    }

    if path.startswith(PUBLIC_PATH_PREFIXES):
        headers["Access-Control-Allow-Origin"] = "*"
    elif origin_value:
        parsed = urlparse(origin_value)
        base = (
            f"{parsed.scheme}://{parsed.netloc}"
            if parsed.scheme and parsed.netloc
            else origin_value
        )
        if base in set(allowed_origins) or (debug and parsed.hostname in ALLOWED_DEBUG_HOSTS):
            headers["Access-Control-Allow-Origin"] = origin_value
            headers["Access-Control-Allow-Credentials"] = "true"

    return headers


def cors_middleware(allowed_origins: Iterable[str], debug: bool = False):
    allowed = set(allowed_origins)

    @web.middleware
    async def middleware(request: web.Request, handler):
        headers = get_cors_headers(
            request.headers.get("Origin"), request.path, allowed, debug
        )
        if request.method == "OPTIONS" and "Access-Control-Request-Method" in request.headers:
            return web.Response(status=204, headers=headers)
        try:
            response = await handler(request)
        except web.HTTPException as e:
            e.headers.update(headers)
            raise
        response.headers.update(headers)
        return response

    return middleware
