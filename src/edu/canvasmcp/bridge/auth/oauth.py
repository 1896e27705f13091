"""
OAuth 2.1 Authorization Server

Implements the authorization code grant with mandatory PKCE (S256) for MCP clients.
Clients are public and identified by their client_id only; dynamic client registration
is not offered.

Flow:
1. The client sends the user to ``/auth/authorize`` with a code challenge
2. The signed-in, Canvas-linked user approves or denies
3. On approval a single-use authorization code is issued to the redirect URI
4. The client exchanges the code and its verifier at ``/auth/token`` for an access token

An authorization code is spent by every exchange attempt. A wrong verifier, client or
redirect URI deletes it as surely as a successful exchange does.
"""

from dataclasses import dataclass
from datetime import timedelta
import logging
import re
from typing import Any, Dict, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from pydantic import BaseModel, ConfigDict, ValidationError

from edu.canvasmcp.bridge.auth.pkce import verify_pkce
from edu.canvasmcp.bridge.errors import (
    InvalidGrant,
    InvalidRequest,
    InvalidScope,
    UnsupportedGrantType,
)
from edu.canvasmcp.bridge.store.credentials import CredentialStore, utcnow

logger = logging.getLogger(__name__)

SUPPORTED_SCOPES = (
    "canvas:read",
    "canvas:courses:read",
    "canvas:assignments:read",
    "canvas:grades:read",
    "canvas:announcements:read",
)
DEFAULT_SCOPE = "canvas:read"

AUTHORIZATION_CODE_TTL = timedelta(minutes=10)
ACCESS_TOKEN_TTL = timedelta(hours=24)

CODE_CHALLENGE_PATTERN = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")


def normalize_scope(raw: Optional[str]) -> str:
    if raw is None or not raw.strip():
        return DEFAULT_SCOPE
    requested = raw.split()
    unknown = [scope for scope in requested if scope not in SUPPORTED_SCOPES]
    if unknown:
        raise InvalidScope(f"Unsupported scope: {' '.join(unknown)}")
    return " ".join(dict.fromkeys(requested))


def redirect_with(uri: str, **params: Optional[str]) -> str:
    """Append query parameters to a redirect URI, keeping any it already carries."""
    parts = urlsplit(uri)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urlunsplit(
        (parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment)
    )


@dataclass
class AuthorizeRequest:
    client_id: str
    redirect_uri: str
    code_challenge: str
    scope: str
    state: Optional[str] = None
    code_challenge_method: str = "S256"
    response_type: str = "code"

    def as_params(self) -> Dict[str, str]:
        """The request as query or form parameters, for the consent form round trip."""
        params = {
            "response_type": self.response_type,
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "code_challenge": self.code_challenge,
            "code_challenge_method": self.code_challenge_method,
            "scope": self.scope,
        }
        if self.state is not None:
            params["state"] = self.state
        return params

    @property
    def scopes(self):
        return self.scope.split()


class TokenRequest(BaseModel):
    """Body of a token endpoint request, decoded from a form or from JSON."""

    model_config = ConfigDict(extra="ignore")

    grant_type: str
    code: Optional[str] = None
    redirect_uri: Optional[str] = None
    client_id: Optional[str] = None
    code_verifier: Optional[str] = None

    @classmethod
    def from_form(cls, form: Mapping[str, Any]) -> "TokenRequest":
        data = {
            name: form.get(name)
            for name in cls.model_fields
            if form.get(name) not in (None, "")
        }
        return cls._decode(data)

    @classmethod
    def from_json(cls, payload: Any) -> "TokenRequest":
        if not isinstance(payload, dict):
            raise InvalidRequest("Token request body must be a JSON object")
        return cls._decode(payload)

    @classmethod
    def _decode(cls, data: Mapping[str, Any]) -> "TokenRequest":
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            error = e.errors()[0]
            field = ".".join(str(part) for part in error.get("loc", ()))
            if error.get("type") == "missing":
                raise InvalidRequest.missing(field) from e
            raise InvalidRequest(f"Invalid parameter: {field}") from e


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    scope: str


class OAuthAuthorizationServer:
    def __init__(
        self,
        store: CredentialStore,
        code_ttl: timedelta = AUTHORIZATION_CODE_TTL,
        token_ttl: timedelta = ACCESS_TOKEN_TTL,
    ) -> None:
        self.store = store
        self.code_ttl = code_ttl
        self.token_ttl = token_ttl

    def parse_authorize_request(self, params: Mapping[str, str]) -> AuthorizeRequest:
        """
        Validate the parameters of an authorization request.

        Raises:
            InvalidRequest: A parameter is missing or malformed, or PKCE is not S256
            InvalidScope: A requested scope is not supported
        """

        def required(name: str) -> str:
            value = params.get(name)
            if not value:
                raise InvalidRequest.missing(name)
            return value

        response_type = required("response_type")
        if response_type != "code":
            raise InvalidRequest(f"Unsupported response_type: {response_type}")

        client_id = required("client_id")
        redirect_uri = required("redirect_uri")
        parsed = urlsplit(redirect_uri)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise InvalidRequest("redirect_uri must be an absolute http(s) URL")
        if parsed.fragment:
            raise InvalidRequest("redirect_uri must not contain a fragment")

        code_challenge = required("code_challenge")
        if params.get("code_challenge_method") != "S256":
            raise InvalidRequest("code_challenge_method must be S256")
        if not CODE_CHALLENGE_PATTERN.match(code_challenge):
            raise InvalidRequest("code_challenge is malformed")

        return AuthorizeRequest(
            client_id=client_id,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge,
            scope=normalize_scope(params.get("scope")),
            state=params.get("state") or None,
        )

    async def approve(self, request: AuthorizeRequest, user_id: str) -> str:
        """Issue an authorization code and return the client redirect carrying it."""
        authorization_code = await self.store.create_authorization_code(
            user_id=user_id,
            client_id=request.client_id,
            redirect_uri=request.redirect_uri,
            code_challenge=request.code_challenge,
            scope=request.scope,
            ttl=self.code_ttl,
        )
        logger.info("Authorization granted to client %s for %s", request.client_id, user_id)
        return redirect_with(
            request.redirect_uri, code=authorization_code.code, state=request.state
        )

    def deny(self, request: AuthorizeRequest) -> str:
        return redirect_with(
            request.redirect_uri,
            error="access_denied",
            error_description="The user denied the authorization request",
            state=request.state,
        )

    async def exchange(self, token_request: TokenRequest) -> TokenResponse:
        """
        Exchange an authorization code for an access token.

        Checks run in order: code exists and is live, PKCE verifier, client binding.
        Every failed check deletes the code before raising.

        Raises:
            UnsupportedGrantType: grant_type is not authorization_code
            InvalidRequest: No code was supplied
            InvalidGrant: Any check failed, or the code was spent concurrently
        """
        if token_request.grant_type != "authorization_code":
            raise UnsupportedGrantType(
                f"Unsupported grant_type: {token_request.grant_type}"
            )
        if not token_request.code:
            raise InvalidRequest.missing("code")

        code = token_request.code
        authorization_code = await self.store.get_authorization_code(code)
        if authorization_code is None:
            raise InvalidGrant.code_not_found()

        if authorization_code.expires_at <= utcnow():
            await self.store.delete_authorization_code(code)
            raise InvalidGrant.code_not_found()

        if not verify_pkce(
            token_request.code_verifier or "", authorization_code.code_challenge
        ):
            await self.store.delete_authorization_code(code)
            logger.warning(
                "PKCE verification failed for client %s", authorization_code.client_id
            )
            raise InvalidGrant.pkce_mismatch()

        if (
            token_request.client_id != authorization_code.client_id
            or token_request.redirect_uri != authorization_code.redirect_uri
        ):
            await self.store.delete_authorization_code(code)
            raise InvalidGrant.client_mismatch()

        if not await self.store.delete_authorization_code(code):
            raise InvalidGrant.code_not_found()

        access_token = await self.store.create_access_token(
            user_id=authorization_code.user_id,
            client_id=authorization_code.client_id,
            scope=authorization_code.scope,
            ttl=self.token_ttl,
        )
        return TokenResponse(
            access_token=access_token.token,
            expires_in=int(self.token_ttl.total_seconds()),
            scope=access_token.scope,
        )


def protected_resource_metadata(base_url: str) -> Dict[str, Any]:
    return {
        "resource": f"{base_url}/mcp",
        "authorization_servers": [base_url],
        "bearer_methods_supported": ["header"],
        "scopes_supported": list(SUPPORTED_SCOPES),
        "resource_name": "Canvas MCP Server",
    }


def authorization_server_metadata(base_url: str) -> Dict[str, Any]:
    return {
        "issuer": base_url,
        "authorization_endpoint": f"{base_url}/auth/authorize",
        "token_endpoint": f"{base_url}/auth/token",
        "registration_endpoint": f"{base_url}/auth/register",
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code"],
        "code_challenge_methods_supported": ["S256"],
        "token_endpoint_auth_methods_supported": ["none"],
        "scopes_supported": list(SUPPORTED_SCOPES),
        "client_id_metadata_document_supported": True,
    }
