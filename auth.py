import asyncio
import hashlib
import hmac
import secrets

from constants import PASSWORD_HASH_ITERATIONS
from logging_config import get_logger

logger = get_logger(__name__)

_SCHEME = "pbkdf2_sha256"


class AuthGate:
    """Room password hashing and verification.

    Hashes are salted PBKDF2-HMAC-SHA256 strings of the form
    ``pbkdf2_sha256$<iterations>$<salt>$<digest>``. The async variants run the
    key derivation in a worker thread so a slow check never stalls the event
    loop for other rooms.
    """

    def __init__(self, iterations: int = PASSWORD_HASH_ITERATIONS, salt_bytes: int = 16):
        if iterations < 1:
            raise ValueError("iterations must be positive")
        self.iterations = iterations
        self.salt_bytes = salt_bytes
        self._decoy_hash = None

    def _derive(self, password: str, salt: bytes, iterations: int) -> bytes:
        return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)

    def hash_sync(self, password: str) -> str:
        if not isinstance(password, str) or not password:
            raise ValueError("password must be a non-empty string")
        salt = secrets.token_bytes(self.salt_bytes)
        digest = self._derive(password, salt, self.iterations)
        return f"{_SCHEME}${self.iterations}${salt.hex()}${digest.hex()}"

    def verify_sync(self, password, stored: str) -> bool:
        if not isinstance(password, str):
            return False
        try:
            scheme, iterations, salt_hex, digest_hex = stored.split("$")
            if scheme != _SCHEME:
                raise ValueError(f"unknown hash scheme {scheme!r}")
            salt = bytes.fromhex(salt_hex)
            expected = bytes.fromhex(digest_hex)
            rounds = int(iterations)
        except (AttributeError, ValueError) as e:
            # a malformed stored hash is a server bug, not a wrong password
            raise ValueError(f"malformed password hash: {e}") from e
        candidate = self._derive(password, salt, rounds)
        return hmac.compare_digest(candidate, expected)

    async def hash(self, password: str) -> str:
        return await asyncio.to_thread(self.hash_sync, password)

    async def verify(self, password, stored: str) -> bool:
        return await asyncio.to_thread(self.verify_sync, password, stored)

    async def reject(self, password) -> bool:
        """Spend a full verification on a hash nobody knows the password to.

        Used when there is no stored hash at all, so the caller answers no
        faster than it would for a wrong password.
        """
        if self._decoy_hash is None:
            self._decoy_hash = await self.hash(secrets.token_hex(16))
        await self.verify(password, self._decoy_hash)
        return False
