import base64
import os
import secrets

import pytest

from edu.canvasmcp.bridge.crypto import hashing

from edu.canvasmcp.bridge.crypto.hashing import (
    API_KEY_PREFIX,
    SecretHasher,
    generate_api_key,
    is_api_key,
)
from edu.canvasmcp.bridge.crypto.tokens import TokenCipher
from edu.canvasmcp.bridge.errors import ConfigurationError, IntegrityError


class TestTokenCipher:
    def test_decrypts_what_it_encrypts(self, cipher):
        blob = cipher.encrypt("7~canvasTokenValue")

        assert cipher.decrypt(blob) == "7~canvasTokenValue"

    def test_storage_format(self, cipher):
        """hex(nonce):hex(tag):hex(ciphertext) with a 16-byte nonce and tag."""
        nonce, tag, ciphertext = cipher.encrypt("abc").split(":")

        assert len(bytes.fromhex(nonce)) == 16
        assert len(bytes.fromhex(tag)) == 16
        assert len(bytes.fromhex(ciphertext)) == 3

    def test_fresh_nonce_per_encryption(self, cipher):
        assert cipher.encrypt("same") != cipher.encrypt("same")

    def test_tampered_ciphertext_is_rejected(self, cipher):
        nonce, tag, ciphertext = cipher.encrypt("secret token").split(":")
        flipped = bytes([bytes.fromhex(ciphertext)[0] ^ 0x01]) + bytes.fromhex(ciphertext)[1:]

        with pytest.raises(IntegrityError):
            cipher.decrypt(":".join([nonce, tag, flipped.hex()]))

    @pytest.mark.parametrize(
        "plaintext",
        [b"", b"\xff\xfe\x80\x00 not utf-8", bytes(range(256)), os.urandom(1 << 20)],
        ids=["empty", "invalid-utf8", "every-byte", "one-mebibyte"],
    )
    def test_bytes_round_trip(self, cipher, plaintext):
        assert cipher.decrypt_bytes(cipher.encrypt_bytes(plaintext)) == plaintext

    @pytest.mark.parametrize("part", ["nonce", "tag", "ciphertext"])
    def test_every_flipped_bit_is_rejected(self, cipher, part):
        parts = ["nonce", "tag", "ciphertext"]
        blob = dict(zip(parts, cipher.encrypt("7~tok").split(":")))
        original = bytes.fromhex(blob[part])

        for bit in range(len(original) * 8):
            flipped = bytearray(original)
            flipped[bit // 8] ^= 1 << (bit % 8)
            tampered = {**blob, part: flipped.hex()}

            with pytest.raises(IntegrityError):
                cipher.decrypt(":".join(tampered[p] for p in parts))

    def test_wrong_key_is_rejected(self, cipher):
        other = TokenCipher.from_base64_key(TokenCipher.generate_key())

        with pytest.raises(IntegrityError):
            other.decrypt(cipher.encrypt("secret token"))

    @pytest.mark.parametrize("blob", ["", "abc", "00:11", "zz:zz:zz", "00:11:22:33"])
    def test_malformed_blob_is_rejected(self, cipher, blob):
        with pytest.raises(IntegrityError):
            cipher.decrypt(blob)

    def test_missing_key_refuses_to_start(self):
        with pytest.raises(ConfigurationError, match="error-config-1000"):
            TokenCipher.from_base64_key(None)
        with pytest.raises(ConfigurationError, match="error-config-1000"):
            TokenCipher.from_base64_key("   ")

    def test_short_key_is_rejected(self):
        short = base64.b64encode(b"x" * 16).decode("ascii")

        with pytest.raises(ConfigurationError, match="got 16"):
            TokenCipher.from_base64_key(short)

    def test_non_base64_key_is_rejected(self):
        with pytest.raises(ConfigurationError):
            TokenCipher.from_base64_key("not base64 at all!")

    def test_generated_key_is_usable(self):
        key = TokenCipher.generate_key()

        assert len(base64.b64decode(key)) == 32
        assert TokenCipher.from_base64_key(key).decrypt(
            TokenCipher.from_base64_key(key).encrypt("x")
        ) == "x"


class TestSecretHasher:
    def test_verify_accepts_the_original_secret(self, hasher):
        api_key = generate_api_key()
        hashed = hasher.hash(api_key)

        assert hashed.startswith("$argon2id$")
        assert hasher.verify(api_key, hashed)

    def test_verify_rejects_another_secret(self, hasher):
        hashed = hasher.hash(generate_api_key())

        assert not hasher.verify(generate_api_key(), hashed)

    def test_verify_rejects_garbage_hash(self, hasher):
        assert not hasher.verify("cmcp_anything", "not-a-hash")

    def test_many_wrong_guesses_are_all_rejected(self, monkeypatch):
        # Cheap parameters keep a thousand verifications fast; production floors are
        # covered by test_weak_parameters_are_refused.
        monkeypatch.setattr(hashing, "MIN_MEMORY_COST", 8)
        monkeypatch.setattr(hashing, "MIN_TIME_COST", 1)
        hasher = SecretHasher(memory_cost=8, time_cost=1)
        api_key = generate_api_key()
        hashed = hasher.hash(api_key)

        near_misses = [
            "",
            API_KEY_PREFIX,
            api_key[:-1],
            api_key + "A",
            api_key.upper(),
            api_key[:-1] + ("A" if api_key[-1] != "A" else "B"),
        ]
        guesses = near_misses + [generate_api_key() for _ in range(1000)]
        guesses += [secrets.token_urlsafe(32) for _ in range(50)]

        assert not any(hasher.verify(guess, hashed) for guess in guesses)
        assert hasher.verify(api_key, hashed)

    def test_weak_parameters_are_refused(self):
        with pytest.raises(ConfigurationError, match="memory_cost"):
            SecretHasher(memory_cost=1024)
        with pytest.raises(ConfigurationError, match="time_cost"):
            SecretHasher(time_cost=1)


class TestApiKeys:
    def test_generated_keys_carry_the_prefix(self):
        api_key = generate_api_key()

        assert api_key.startswith(API_KEY_PREFIX)
        assert is_api_key(api_key)
        # 32 random bytes, unpadded base64url
        assert len(api_key) == len(API_KEY_PREFIX) + 43

    def test_generated_keys_are_unique(self):
        assert len({generate_api_key() for _ in range(50)}) == 50

    def test_oauth_tokens_are_not_api_keys(self):
        assert not is_api_key("Zk9hY2Nlc3NfdG9rZW4")
