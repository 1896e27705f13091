"""
One-way hashing for issued API keys.

Keys are hashed with Argon2id. Hashing is deliberately slow and memory hard, which is why
the authentication gate fronts verification with a cache.
"""

import base64
import secrets

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from edu.canvasmcp.bridge.errors import ConfigurationError

API_KEY_PREFIX = "cmcp_"

MIN_MEMORY_COST = 19456  # KiB
MIN_TIME_COST = 2


def generate_api_key() -> str:
    """Generate a new API key: the ``cmcp_`` marker followed by 32 random bytes."""
    body = base64.urlsafe_b64encode(secrets.token_bytes(32)).decode("ascii").rstrip("=")
    return f"{API_KEY_PREFIX}{body}"


def is_api_key(value: str) -> bool:
    return value.startswith(API_KEY_PREFIX)


class SecretHasher:
    """
    Argon2id hasher for high-entropy bearer secrets.

    Args:
        memory_cost: Memory in KiB, at least 19456
        time_cost: Iterations, at least 2
        parallelism: Lanes
    """

    def __init__(
        self,
        memory_cost: int = MIN_MEMORY_COST,
        time_cost: int = MIN_TIME_COST,
        parallelism: int = 1,
    ) -> None:
        if memory_cost < MIN_MEMORY_COST:
            raise ConfigurationError.hash_parameters_too_weak(
                "memory_cost", memory_cost, MIN_MEMORY_COST
            )
        if time_cost < MIN_TIME_COST:
            raise ConfigurationError.hash_parameters_too_weak(
                "time_cost", time_cost, MIN_TIME_COST
            )
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    def hash(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def verify(self, secret: str, hashed: str) -> bool:
        # argon2 compares digests in constant time
        try:
            return self._hasher.verify(hashed, secret)
        except (VerificationError, InvalidHashError):
            return False
