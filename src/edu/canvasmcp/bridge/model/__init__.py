"""
Database Models

This package defines the database models for the Canvas MCP bridge using SQLAlchemy ORM.

Key Models:
- base.py: Declarative base, shared column types and the UTC datetime type
- users.py: Users (pre-activated or Canvas-linked) and the tool usage log
- session.py: Server-side browser sessions
- magic_link.py: Single-use passwordless sign-in links
- oauth.py: OAuth authorization codes and access tokens
- health.py: Readiness gauge (in memory, not persisted)

Every table carries creation and expiry timestamps where records are time-boxed, and an
index on each lookup key. The API key hash column is the exception; it is scanned.
"""

from edu.canvasmcp.bridge.model.base import Base
from edu.canvasmcp.bridge.model.magic_link import MagicLink
from edu.canvasmcp.bridge.model.oauth import AccessToken, AuthorizationCode
from edu.canvasmcp.bridge.model.session import BrowserSession
from edu.canvasmcp.bridge.model.users import UsageLog, User

__all__ = [
    "AccessToken",
    "AuthorizationCode",
    "Base",
    "BrowserSession",
    "MagicLink",
    "UsageLog",
    "User",
]
