import logging
from typing import List, Optional

from aiohttp import ClientSession
import anyio
from mcp import types
from mcp.server.lowlevel import Server
from mcp.shared.message import ServerMessageMetadata, SessionMessage
import sentry_sdk

from edu.canvasmcp.bridge.app.metrics import MetricsClient
from edu.canvasmcp.bridge.auth.gate import Identity
from edu.canvasmcp.bridge.canvas.cache import ResponseCache
from edu.canvasmcp.bridge.canvas.client import DEFAULT_CACHE_TTL, CanvasClient
from edu.canvasmcp.bridge.errors import NotFound
from edu.canvasmcp.bridge.mcp.tools import (
    TOOLS,
    TOOLS_BY_NAME,
    ToolCallError,
    call_tool,
    scope_allows,
)
from edu.canvasmcp.bridge.model.health import HealthGauge
from edu.canvasmcp.bridge.store.credentials import CredentialStore

logger = logging.getLogger(__name__)

SERVER_NAME = "canvas-mcp"
SERVER_VERSION = "1.0.0"
INSTRUCTIONS = (
    "Access your Canvas courses, assignments, grades, and announcements. "
    "All tools are read-only."
)


class McpServer:
    """
    Canvas tools served through the MCP SDK's low-level server.

    Every HTTP request runs one stateless SDK session over in-memory streams, with the
    authenticated identity attached to the message so tool handlers can read it from
    the request context. Each ``tools/call`` decrypts the caller's Canvas token, builds
    a Canvas client for that call and discards both afterwards.
    """

    def __init__(
        self,
        store: CredentialStore,
        http_session: ClientSession,
        metrics_client: MetricsClient,
        health_gauge: HealthGauge,
        response_cache: Optional[ResponseCache] = None,
        canvas_cache_ttl: float = DEFAULT_CACHE_TTL,
        canvas_scheme: str = "https",
    ) -> None:
        self.store = store
        self.http_session = http_session
        self.metrics_client = metrics_client
        self.health_gauge = health_gauge
        self.response_cache = response_cache
        self.canvas_cache_ttl = canvas_cache_ttl
        self.canvas_scheme = canvas_scheme

        self.server: Server = Server(
            SERVER_NAME, version=SERVER_VERSION, instructions=INSTRUCTIONS
        )
        self.server.list_tools()(self._list_tools)
        self.server.call_tool()(self._call_tool)
        self.initialization_options = self.server.create_initialization_options()

    async def handle_message(
        self, identity: Identity, message: types.JSONRPCMessage
    ) -> Optional[types.JSONRPCMessage]:
        """
        Run one message through the SDK and return its response.

        Returns None for notifications, and for responses since the server never sends
        requests of its own.
        """
        if isinstance(message.root, (types.JSONRPCResponse, types.JSONRPCError)):
            return None

        read_send, read_recv = anyio.create_memory_object_stream(1)
        write_send, write_recv = anyio.create_memory_object_stream(16)

        async with anyio.create_task_group() as tg:
            tg.start_soon(self._run_session, read_recv, write_send)

            async with read_send, write_recv:
                await read_send.send(
                    SessionMessage(
                        message, metadata=ServerMessageMetadata(request_context=identity)
                    )
                )
                if not isinstance(message.root, types.JSONRPCRequest):
                    return None

                async for session_message in write_recv:
                    reply = session_message.message.root
                    if (
                        isinstance(reply, (types.JSONRPCResponse, types.JSONRPCError))
                        and reply.id == message.root.id
                    ):
                        return session_message.message

        raise RuntimeError(f"Session closed without answering {message.root.method}")

    async def _run_session(self, read_stream, write_stream) -> None:
        await self.server.run(
            read_stream, write_stream, self.initialization_options, stateless=True
        )

    async def _list_tools(self) -> List[types.Tool]:
        return [
            types.Tool(
                name=tool.name,
                description=tool.description,
                inputSchema=tool.schema(),
                annotations=types.ToolAnnotations(readOnlyHint=True),
            )
            for tool in TOOLS
        ]

    async def _call_tool(self, name: str, arguments: dict) -> List[types.TextContent]:
        identity: Identity = self.server.request_context.request
        try:
            text = await self._run_tool(identity, name, arguments)
        except ToolCallError:
            self._count(identity, name, error=True)
            raise
        except Exception as e:
            logger.exception("Unhandled error running tool %s", name)
            sentry_sdk.capture_exception(e)
            await self.health_gauge.record_failure()
            self._count(identity, name, error=True)
            raise ToolCallError("Internal server error") from e

        self._count(identity, name, error=False)
        return [types.TextContent(type="text", text=text)]

    async def _run_tool(self, identity: Identity, name: str, arguments: dict) -> str:
        tool = TOOLS_BY_NAME.get(name)
        if tool is None:
            raise ToolCallError(f"Unknown tool: {name}")

        user = identity.user
        await self.store.record_usage(user.id, tool.name)

        if not scope_allows(tool, identity.scope):
            raise ToolCallError(f"Access token scope does not permit {tool.name}")

        try:
            canvas_token = self.store.canvas_token(user)
        except NotFound:
            raise ToolCallError("Connect your Canvas account before using Canvas tools")

        client = CanvasClient(
            self.http_session,
            user.canvas_domain,
            canvas_token,
            cache=self.response_cache,
            cache_ttl=self.canvas_cache_ttl,
            scheme=self.canvas_scheme,
        )
        return await call_tool(client, tool, arguments)

    def _count(self, identity: Identity, name: str, error: bool) -> None:
        if name not in TOOLS_BY_NAME:
            name = "unknown"
        self.metrics_client.increment(
            "canvasmcp.mcp.tool_call",
            1,
            tag_dict={"tool": name, "method": identity.method, "error": error},
        )
