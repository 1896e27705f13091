"""
Configuration Module for the Canvas MCP Bridge

Settings are loaded from environment variables with pydantic-settings, using the variable
names of existing deployments (PORT, HOST, BASE_URL, DATABASE_PATH, ENCRYPTION_KEY,
SMTP_*). Shared resources are attached to the aiohttp application under typed AppKeys and
looked up by handlers and background tasks through ``request.app[...]``.

Key configuration areas include:
- Networking and the public base URL
- Database location
- Token encryption and API key hashing parameters
- Cache, session, magic link and OAuth lifetimes
- Mail delivery
- Monitoring and observability
"""

import asyncio
import logging
import os
from typing import Final, Optional

from aiohttp import ClientSession, web
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from edu.canvasmcp.bridge.app.metrics import MetricsClient
from edu.canvasmcp.bridge.auth.cache import VerificationCache
from edu.canvasmcp.bridge.auth.gate import AuthenticationGate
from edu.canvasmcp.bridge.auth.oauth import OAuthAuthorizationServer
from edu.canvasmcp.bridge.canvas.cache import ResponseCache
from edu.canvasmcp.bridge.crypto.tokens import TokenCipher
from edu.canvasmcp.bridge.errors import ConfigurationError
from edu.canvasmcp.bridge.mail import Mailer
from edu.canvasmcp.bridge.mcp.server import McpServer
from edu.canvasmcp.bridge.model.health import HealthGauge
from edu.canvasmcp.bridge.store.credentials import CredentialStore

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATES_PATH = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "templates"
)


class Settings(BaseSettings):
    """
    Application settings.

    Every field can be set by the environment variable of the same name, upper-cased.
    Fields with aliases also accept the names used by earlier deployments, e.g. the
    database location can be given as DATABASE_URL or as a SQLite DATABASE_PATH.
    """

    model_config = SettingsConfigDict(
        populate_by_name=True, extra="ignore", arbitrary_types_allowed=True
    )

    debug: bool = False
    """Verbose logging and client request tracing. Set with DEBUG=true."""

    http_port: int = Field(alias="port", default=3000)
    """Port to listen on. Set with PORT."""

    http_host: str = Field(alias="host", default="localhost")
    """Interface to bind. Set with HOST."""

    base_url: Optional[str] = None
    """
    Public URL of the service, used in discovery documents, emails and to decide whether
    cookies are Secure. Defaults to http://HOST:PORT. Set with BASE_URL.
    """

    allowed_origins: str = ""
    """Comma-separated origins allowed to call the JSON API cross-origin."""

    database_url: Optional[str] = Field(
        None, validation_alias=AliasChoices("database_url", "pg_dsn")
    )
    """SQLAlchemy async URL. Takes precedence over DATABASE_PATH. Set with DATABASE_URL."""

    database_path: str = "./canvas-mcp.db"
    """SQLite file used when DATABASE_URL is not set. Set with DATABASE_PATH."""

    encryption_key: Optional[TokenCipher] = None
    """
    Base64 encoded 32-byte AES key for Canvas tokens at rest. Required to start the
    server; generate one with ``canvas-mcp-util gen-crypto``. Set with ENCRYPTION_KEY.
    """

    argon2_memory_cost: int = 19456
    """Argon2id memory cost in KiB for API key hashes. Minimum 19456."""

    argon2_time_cost: int = 2
    """Argon2id iterations for API key hashes. Minimum 2."""

    argon2_parallelism: int = 1

    verification_cache_ttl: float = 900
    """Seconds a verified API key resolves from memory before it is verified again."""

    canvas_cache_ttl: float = 300
    """Seconds Canvas GET responses are cached per user and path."""

    canvas_scheme: str = "https"
    """URL scheme for Canvas API calls. Only changed for local test doubles."""

    session_max_age: int = 2592000  # 30 days
    """Browser session lifetime in seconds."""

    magic_link_ttl: int = 900  # 15 minutes
    magic_link_cooldown: int = 60
    """Minimum seconds between magic links sent to the same address."""

    oauth_code_ttl: int = 600  # 10 minutes
    oauth_token_ttl: int = 86400  # 24 hours

    cache_sweep_interval: int = 300
    """Seconds between sweeps of the in-memory caches."""

    sweep_interval: int = 3600
    """Seconds between deletions of expired sessions, codes, tokens and links."""

    usage_log_retention_days: int = 90

    smtp_host: Optional[str] = None
    smtp_port: Optional[int] = None
    smtp_user: Optional[str] = None
    smtp_pass: Optional[str] = Field(
        None, validation_alias=AliasChoices("smtp_pass", "smtp_password")
    )
    smtp_from: Optional[str] = None
    """
    Mail is enabled only when SMTP_HOST, SMTP_PORT, SMTP_USER, SMTP_PASS and SMTP_FROM
    are all set. Without mail, magic link sign-in answers 503.
    """

    sentry_dsn: Optional[str] = None
    """Sentry DSN for error reporting. No error reporting if not set."""

    metrics_backend: str = "none"
    """``telegraf`` or ``none``. Set with METRICS_BACKEND."""

    statsd_host: str = Field(alias="TELEGRAF_HOST", default="telegraf")
    statsd_port: int = Field(alias="TELEGRAF_PORT", default=8125)

    brand_name: str = "Canvas MCP"
    """Name shown on pages and in emails."""

    templates_path: str = DEFAULT_TEMPLATES_PATH
    """Directory holding the page and email templates."""

    @field_validator("encryption_key", mode="before")
    @classmethod
    def decode_encryption_key(cls, v) -> Optional[TokenCipher]:
        """
        Accept a TokenCipher or a base64 key string.

        Raises:
            ConfigurationError: The key does not decode to exactly 32 bytes
        """
        if v is None or isinstance(v, TokenCipher):
            return v
        if isinstance(v, str):
            if not v.strip():
                return None
            return TokenCipher.from_base64_key(v)
        raise ValueError("encryption_key must be a TokenCipher or a base64-encoded key")

    @property
    def public_url(self) -> str:
        if self.base_url:
            return self.base_url.rstrip("/")
        return f"http://{self.http_host}:{self.http_port}"

    @property
    def secure_cookies(self) -> bool:
        return self.public_url.startswith("https://")

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            url = self.database_url
            for prefix in ("postgres://", "postgresql://"):
                if url.startswith(prefix):
                    return "postgresql+asyncpg://" + url[len(prefix):]
            return url
        return f"sqlite+aiosqlite:///{self.database_path}"

    @property
    def mail_enabled(self) -> bool:
        return all(
            (self.smtp_host, self.smtp_port, self.smtp_user, self.smtp_pass, self.smtp_from)
        )

    def require_cipher(self) -> TokenCipher:
        if self.encryption_key is None:
            raise ConfigurationError.encryption_key_missing()
        return self.encryption_key


# Application context keys for dependency injection
SettingsAppKey: Final = web.AppKey("settings", Settings)
"""AppKey for accessing the application settings"""

DatabaseAppKey: Final = web.AppKey("database", AsyncEngine)
"""AppKey for accessing the SQLAlchemy async database engine"""

DatabaseSessionMakerAppKey: Final = web.AppKey(
    "database_session_maker", async_sessionmaker[AsyncSession]
)
"""AppKey for accessing the SQLAlchemy async session factory"""

SessionAppKey: Final = web.AppKey("http_session", ClientSession)
"""AppKey for accessing the shared aiohttp client session used for Canvas calls"""

HealthGaugeAppKey: Final = web.AppKey("health_gauge", HealthGauge)
"""AppKey for accessing the readiness gauge"""

MetricsClientAppKey: Final = web.AppKey("metrics_client", MetricsClient)
"""AppKey for the metrics client"""

CredentialStoreAppKey: Final = web.AppKey("credential_store", CredentialStore)
VerificationCacheAppKey: Final = web.AppKey("verification_cache", VerificationCache)
AuthenticationGateAppKey: Final = web.AppKey("authentication_gate", AuthenticationGate)
OAuthServerAppKey: Final = web.AppKey("oauth_server", OAuthAuthorizationServer)
ResponseCacheAppKey: Final = web.AppKey("response_cache", ResponseCache)
McpServerAppKey: Final = web.AppKey("mcp_server", McpServer)
MailerAppKey: Final = web.AppKey("mailer", Mailer)

TickHealthTaskAppKey: Final = web.AppKey("tick_health_task", asyncio.Task[None])
"""AppKey for the background task that drains the health gauge"""

CacheSweepTaskAppKey: Final = web.AppKey("cache_sweep_task", asyncio.Task[None])
"""AppKey for the background task that sweeps the verification and response caches"""

RecordSweepTaskAppKey: Final = web.AppKey("record_sweep_task", asyncio.Task[None])
"""AppKey for the background task that deletes expired records"""
