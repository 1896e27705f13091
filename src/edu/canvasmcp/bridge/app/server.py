import asyncio
import contextlib
import logging
from datetime import timedelta
from time import time
from typing import Optional

import aiohttp
import aiohttp_jinja2
import jinja2
from aiohttp import web
import sentry_sdk
from sentry_sdk.integrations.aiohttp import AioHttpIntegration
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from edu.canvasmcp.bridge.app.config import (
    AuthenticationGateAppKey,
    CacheSweepTaskAppKey,
    CredentialStoreAppKey,
    DatabaseAppKey,
    DatabaseSessionMakerAppKey,
    HealthGaugeAppKey,
    MailerAppKey,
    McpServerAppKey,
    MetricsClientAppKey,
    OAuthServerAppKey,
    RecordSweepTaskAppKey,
    ResponseCacheAppKey,
    SessionAppKey,
    Settings,
    SettingsAppKey,
    TickHealthTaskAppKey,
    VerificationCacheAppKey,
)
from edu.canvasmcp.bridge.app.cors import cors_middleware, parse_allowed_origins
from edu.canvasmcp.bridge.app.handlers.account import (
    handle_logout,
    handle_magic_link,
    handle_token_login,
    handle_verify,
)
from edu.canvasmcp.bridge.app.handlers.internal import (
    handle_internal_alive,
    handle_internal_ready,
)
from edu.canvasmcp.bridge.app.handlers.mcp import handle_mcp, handle_mcp_get
from edu.canvasmcp.bridge.app.handlers.oauth import (
    handle_authorization_server_metadata,
    handle_authorize,
    handle_authorize_submit,
    handle_protected_resource_metadata,
    handle_register,
    handle_token,
)
from edu.canvasmcp.bridge.app.handlers.pages import (
    handle_dashboard,
    handle_index,
    handle_login,
)
from edu.canvasmcp.bridge.app.handlers.user import handle_regenerate_key, handle_user_me
from edu.canvasmcp.bridge.app.metrics import create_metrics_client
from edu.canvasmcp.bridge.app.tasks import (
    cache_sweep_task,
    record_sweep_task,
    tick_health_task,
)
from edu.canvasmcp.bridge.auth.cache import VerificationCache
from edu.canvasmcp.bridge.auth.gate import AuthenticationGate
from edu.canvasmcp.bridge.auth.oauth import OAuthAuthorizationServer
from edu.canvasmcp.bridge.canvas.cache import ResponseCache
from edu.canvasmcp.bridge.crypto.hashing import SecretHasher
from edu.canvasmcp.bridge.mail import Mailer, email_environment
from edu.canvasmcp.bridge.mcp.server import McpServer
from edu.canvasmcp.bridge.model import Base
from edu.canvasmcp.bridge.model.health import HealthGauge
from edu.canvasmcp.bridge.store.credentials import CredentialStore

logger = logging.getLogger(__name__)


async def background_tasks(app):
    logger.info("Starting up")
    settings: Settings = app[SettingsAppKey]

    engine = create_async_engine(settings.database_dsn)
    app[DatabaseAppKey] = engine
    database_session = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )
    app[DatabaseSessionMakerAppKey] = database_session

    # Postgres schemas are managed by alembic; a SQLite file initializes itself.
    if engine.dialect.name == "sqlite":
        async with engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)

    trace_config = aiohttp.TraceConfig()

    if settings.debug:

        async def on_request_start(
            session, trace_config_ctx, params: aiohttp.TraceRequestStartParams
        ):
            # Canvas tokens travel in the headers, so only the URL is logged.
            logging.info("Starting request: %s %s", params.method, params.url)

        async def on_request_end(
            session, trace_config_ctx, params: aiohttp.TraceRequestEndParams
        ):
            logging.info(
                "Ending request: %s %s %s", params.method, params.url, params.response.status
            )

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    app[SessionAppKey] = aiohttp.ClientSession(trace_configs=[trace_config])

    metrics_client = create_metrics_client(
        settings.metrics_backend,
        host=settings.statsd_host,
        port=settings.statsd_port,
        debug=settings.debug,
    )
    await metrics_client.connect()
    app[MetricsClientAppKey] = metrics_client

    hasher = SecretHasher(
        memory_cost=settings.argon2_memory_cost,
        time_cost=settings.argon2_time_cost,
        parallelism=settings.argon2_parallelism,
    )
    store = CredentialStore(database_session, settings.require_cipher(), hasher)
    app[CredentialStoreAppKey] = store

    verification_cache = VerificationCache(ttl_seconds=settings.verification_cache_ttl)
    app[VerificationCacheAppKey] = verification_cache
    app[AuthenticationGateAppKey] = AuthenticationGate(store, verification_cache)
    app[OAuthServerAppKey] = OAuthAuthorizationServer(
        store,
        code_ttl=timedelta(seconds=settings.oauth_code_ttl),
        token_ttl=timedelta(seconds=settings.oauth_token_ttl),
    )

    response_cache = ResponseCache()
    app[ResponseCacheAppKey] = response_cache
    app[McpServerAppKey] = McpServer(
        store,
        app[SessionAppKey],
        metrics_client,
        app[HealthGaugeAppKey],
        response_cache=response_cache,
        canvas_cache_ttl=settings.canvas_cache_ttl,
        canvas_scheme=settings.canvas_scheme,
    )

    logger.info("Startup complete")

    app[TickHealthTaskAppKey] = asyncio.create_task(tick_health_task(app))
    app[CacheSweepTaskAppKey] = asyncio.create_task(cache_sweep_task(app))
    app[RecordSweepTaskAppKey] = asyncio.create_task(record_sweep_task(app))

    yield

    logger.info("Shutting down background tasks")

    app[TickHealthTaskAppKey].cancel()
    app[CacheSweepTaskAppKey].cancel()
    app[RecordSweepTaskAppKey].cancel()

    with contextlib.suppress(asyncio.exceptions.CancelledError):
        await app[TickHealthTaskAppKey]

    with contextlib.suppress(asyncio.exceptions.CancelledError):
        await app[CacheSweepTaskAppKey]

    with contextlib.suppress(asyncio.exceptions.CancelledError):
        await app[RecordSweepTaskAppKey]

    verification_cache.clear()
    response_cache.clear()

    await app[DatabaseAppKey].dispose()
    await app[SessionAppKey].close()
    await app[MetricsClientAppKey].close()


@web.middleware
async def sentry_middleware(request: web.Request, handler):
    try:
        response = await handler(request)
        return response
    except web.HTTPException:
        raise
    except Exception as e:
        sentry_sdk.capture_exception(e)
        raise e


@web.middleware
async def statsd_middleware(request: web.Request, handler):
    metrics_client = request.app[MetricsClientAppKey]
    request_method: str = request.method
    request_path = request.path

    start_time: float = time()
    response_status_code = 0

    try:
        response = await handler(request)
        response_status_code = response.status
        return response
    except web.HTTPException as e:
        response_status_code = e.status
        raise e
    except Exception as e:
        metrics_client.increment(
            "canvasmcp.server.request.exception",
            1,
            tag_dict={
                "exception": type(e).__name__,
                "path": request_path,
                "method": request_method,
            },
        )
        raise e
    finally:
        metrics_client.timer(
            "canvasmcp.server.request.time",
            time() - start_time,
            tag_dict={"path": request_path, "method": request_method},
        )
        metrics_client.increment(
            "canvasmcp.server.request.count",
            1,
            tag_dict={
                "path": request_path,
                "method": request_method,
                "status": response_status_code,
            },
        )


async def start_web_server(
    settings: Optional[Settings] = None, mailer: Optional[Mailer] = None
):
    """
    Build the application. Resources that need the event loop (database engine, HTTP
    client, metrics connection) are created by ``background_tasks`` on startup.

    Raises:
        ConfigurationError: ENCRYPTION_KEY is missing
    """

    if settings is None:
        settings = Settings()  # type: ignore
    settings.require_cipher()

    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=False,
            integrations=[AioHttpIntegration()],
        )

    app = web.Application(
        middlewares=[
            cors_middleware(parse_allowed_origins(settings.allowed_origins), settings.debug),
            statsd_middleware,
            sentry_middleware,
        ]
    )

    app[SettingsAppKey] = settings
    app[HealthGaugeAppKey] = HealthGauge()
    if mailer is None:
        mailer = Mailer.from_settings(settings, email_environment(settings.templates_path))
    app[MailerAppKey] = mailer

    app.add_routes(
        [
            web.get("/.well-known/oauth-protected-resource", handle_protected_resource_metadata),
            web.get(
                "/.well-known/oauth-protected-resource/mcp",
                handle_protected_resource_metadata,
            ),
            web.get(
                "/.well-known/oauth-authorization-server",
                handle_authorization_server_metadata,
            ),
        ]
    )

    app.add_routes(
        [
            web.post("/mcp", handle_mcp),
            web.get("/mcp", handle_mcp_get),
        ]
    )

    app.add_routes(
        [
            web.get("/auth/authorize", handle_authorize),
            web.post("/auth/authorize", handle_authorize_submit),
            web.post("/auth/token", handle_token),
            web.post("/auth/register", handle_register),
            web.post("/auth/magic-link", handle_magic_link),
            web.get("/auth/verify", handle_verify),
        ]
    )

    app.add_routes(
        [
            web.post("/api/auth/token-login", handle_token_login),
            web.post("/api/auth/logout", handle_logout),
            web.get("/api/user/me", handle_user_me),
            web.post("/api/user/regenerate-key", handle_regenerate_key),
        ]
    )

    app.add_routes(
        [
            web.get("/", handle_index),
            web.get("/login", handle_login),
            web.get("/dashboard", handle_dashboard),
        ]
    )

    app.add_routes(
        [
            web.get("/internal/alive", handle_internal_alive),
            web.get("/internal/ready", handle_internal_ready),
        ]
    )

    _ = aiohttp_jinja2.setup(
        app,
        enable_async=True,
        loader=jinja2.FileSystemLoader(settings.templates_path),
    )

    app.cleanup_ctx.append(background_tasks)

    return app
