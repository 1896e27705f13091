"""
Authentication Gate

Resolves the bearer credential of an inbound MCP request to a user.

Two kinds of bearer token are accepted:
* API keys (``cmcp_`` prefix), verified against Argon2id hashes through the verification
  cache with a full scan on a miss
* OAuth access tokens, looked up by equality and rejected once expired

Failures never reveal whether a user exists; an unknown user and a wrong key produce the
same InvalidCredential.
"""

from dataclasses import dataclass
import logging
from typing import Optional

from edu.canvasmcp.bridge.auth.cache import VerificationCache
from edu.canvasmcp.bridge.crypto.hashing import is_api_key
from edu.canvasmcp.bridge.errors import InvalidCredential, Unauthenticated
from edu.canvasmcp.bridge.model import User
from edu.canvasmcp.bridge.store.credentials import CredentialStore

logger = logging.getLogger(__name__)

METHOD_API_KEY = "api_key"
METHOD_OAUTH = "oauth"


@dataclass(repr=False, eq=False)
class Identity:
    """
    The authenticated principal of a request.

    Attributes:
        user: The user row; its Canvas token is still encrypted
        method: Either ``api_key`` or ``oauth``
        scope: Granted scope for OAuth access tokens, None for API keys
    """

    user: User
    method: str
    scope: Optional[str] = None


def parse_bearer(authorization: Optional[str]) -> Optional[str]:
    if authorization is None:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class AuthenticationGate:
    def __init__(self, store: CredentialStore, cache: VerificationCache) -> None:
        self.store = store
        self.cache = cache

    async def authenticate(self, authorization: Optional[str]) -> Identity:
        """
        Resolve an ``Authorization`` header value to an Identity.

        Raises:
            Unauthenticated: No bearer token was presented
            InvalidCredential: The token matches no API key and no live access token
        """
        token = parse_bearer(authorization)
        if token is None:
            raise Unauthenticated()

        if is_api_key(token):
            user = await self._resolve_api_key(token)
            if user is not None:
                return Identity(user=user, method=METHOD_API_KEY)

        access_token = await self.store.get_access_token(token)
        if access_token is not None:
            user = await self.store.get_user(access_token.user_id)
            if user is not None:
                return Identity(
                    user=user, method=METHOD_OAUTH, scope=access_token.scope
                )

        raise InvalidCredential()

    async def _resolve_api_key(self, api_key: str) -> Optional[User]:
        cached_user_id = self.cache.get(api_key)
        if cached_user_id is not None:
            user = await self.store.get_user(cached_user_id)
            if user is not None and user.is_activated:
                return user
            self.cache.invalidate(cached_user_id)

        user = await self.store.find_user_by_api_key(api_key)
        if user is None:
            return None

        self.cache.put(api_key, user.id)
        return user

    async def rotate_api_key(self, user_id: str) -> str:
        """Issue a new API key and drop every cached verification of the old one."""
        api_key = await self.store.rotate_api_key(user_id)
        removed = self.cache.invalidate(user_id)
        logger.debug("Invalidated %d cached verifications for %s", removed, user_id)
        return api_key
