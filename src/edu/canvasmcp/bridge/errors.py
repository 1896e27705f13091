"""
Error taxonomy for the Canvas MCP bridge.

Configuration and integrity failures are fatal or always surfaced. Authentication and
OAuth failures are caller errors and are rendered into protocol envelopes by the web
layer. Upstream failures are recoverable and reported per tool call.
"""

from typing import Optional


class BridgeError(Exception):
    """Base class for all errors raised by the bridge."""


class ConfigurationError(BridgeError):
    """A required setting is missing or malformed."""

    @staticmethod
    def encryption_key_missing() -> "ConfigurationError":
        return ConfigurationError(
            "error-config-1000 ENCRYPTION_KEY is not set; refusing to store tokens"
        )

    @staticmethod
    def encryption_key_malformed(length: int) -> "ConfigurationError":
        return ConfigurationError(
            f"error-config-1001 ENCRYPTION_KEY must decode to 32 bytes, got {length}"
        )

    @staticmethod
    def hash_parameters_too_weak(name: str, value: int, minimum: int) -> "ConfigurationError":
        return ConfigurationError(
            f"error-config-1002 {name}={value} is below the minimum of {minimum}"
        )


class IntegrityError(BridgeError):
    """Ciphertext failed authentication: it was tampered with or the key is wrong."""

    @staticmethod
    def malformed() -> "IntegrityError":
        return IntegrityError("error-crypto-1000 Malformed ciphertext")

    @staticmethod
    def tag_mismatch() -> "IntegrityError":
        return IntegrityError("error-crypto-1001 Authentication tag mismatch")


class AuthenticationError(BridgeError):
    """Base class for bearer credential failures."""


class Unauthenticated(AuthenticationError):
    """No credential was presented."""

    def __init__(self, message: str = "Missing API token. Please authenticate first.") -> None:
        super().__init__(message)


class InvalidCredential(AuthenticationError):
    """A credential was presented but could not be resolved, or it has expired."""

    def __init__(self, message: str = "Invalid or expired API token") -> None:
        super().__init__(message)

    @staticmethod
    def account_not_linked() -> "InvalidCredential":
        return InvalidCredential("Connect your Canvas account before issuing an API key")


class OAuthError(BridgeError):
    """
    An OAuth 2.0 protocol error (RFC 6749 section 5.2).

    Attributes:
        error: The registered error code returned in the ``error`` field
        description: Human readable ``error_description``
        status: HTTP status used when the error is rendered
    """

    error: str = "invalid_request"
    status: int = 400

    def __init__(self, description: str) -> None:
        super().__init__(description)
        self.description = description

    def to_dict(self) -> dict:
        return {"error": self.error, "error_description": self.description}


class InvalidRequest(OAuthError):
    error = "invalid_request"

    @staticmethod
    def missing(parameter: str) -> "InvalidRequest":
        return InvalidRequest(f"Missing required parameter: {parameter}")


class InvalidGrant(OAuthError):
    error = "invalid_grant"

    @staticmethod
    def code_not_found() -> "InvalidGrant":
        return InvalidGrant("Invalid or expired authorization code")

    @staticmethod
    def pkce_mismatch() -> "InvalidGrant":
        return InvalidGrant("PKCE verification failed")

    @staticmethod
    def client_mismatch() -> "InvalidGrant":
        return InvalidGrant("client_id or redirect_uri does not match the authorization request")


class InvalidScope(OAuthError):
    error = "invalid_scope"


class UnsupportedGrantType(OAuthError):
    error = "unsupported_grant_type"


class UpstreamProviderError(BridgeError):
    """Canvas answered with a non-2xx status or could not be reached."""

    def __init__(self, status: int, reason: Optional[str] = None) -> None:
        self.status = status
        self.reason = reason or ""
        super().__init__(f"Canvas API error: {status} {self.reason}".rstrip())


class NotFound(BridgeError):
    """A referenced entity does not exist."""

    @staticmethod
    def user(user_id: str) -> "NotFound":
        return NotFound(f"User not found: {user_id}")

    @staticmethod
    def canvas_link(user_id: str) -> "NotFound":
        return NotFound(f"No Canvas account linked for user: {user_id}")
