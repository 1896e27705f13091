import base64
import hashlib
import hmac
import secrets
from typing import Tuple


def s256_challenge(code_verifier: str) -> str:
    """Derive the S256 code challenge for a verifier (RFC 7636 section 4.2)."""
    hashed = hashlib.sha256(code_verifier.encode("ascii")).digest()
    encoded = base64.urlsafe_b64encode(hashed)
    return encoded.decode("ascii").rstrip("=")


def generate_pkce_verifier() -> Tuple[str, str]:
    """
    Generate a PKCE verifier and its S256 challenge.

    Used by tests and tooling that act as an MCP client against this server.

    Returns:
        Tuple[str, str]: (code_verifier, code_challenge)
    """
    code_verifier = secrets.token_urlsafe(64)
    return (code_verifier, s256_challenge(code_verifier))


def verify_pkce(code_verifier: str, code_challenge: str) -> bool:
    try:
        computed = s256_challenge(code_verifier)
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(computed.encode("ascii"), code_challenge.encode("utf-8"))
