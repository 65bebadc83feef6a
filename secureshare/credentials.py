"""Password hashing and verification."""

import hashlib
import hmac
import re

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from secureshare.config import Config, config as default_config

# Unsalted SHA-256 hex digests written by earlier releases.
LEGACY_DIGEST = re.compile(r"^[0-9a-f]{64}$")


class CredentialManager:
    """Hashes and verifies passwords with Argon2id."""

    def __init__(self, cfg: Config = default_config):
        self.argon2_hasher = PasswordHasher(
            time_cost=cfg.argon2_time_cost,
            memory_cost=cfg.argon2_memory_cost,
            parallelism=cfg.argon2_parallelism
        )

    def hash(self, password: str) -> str:
        """Hash a password using Argon2id."""
        return self.argon2_hasher.hash(password)

    def verify(self, password: str, digest: str) -> bool:
        """Verify a password against its digest. Never raises."""
        if not isinstance(password, str) or not isinstance(digest, str) or not digest:
            return False

        if LEGACY_DIGEST.match(digest):
            candidate = hashlib.sha256(password.encode("utf-8")).hexdigest()
            return hmac.compare_digest(candidate.encode("ascii"), digest.encode("ascii"))

        try:
            return self.argon2_hasher.verify(digest, password)
        except (VerifyMismatchError, VerificationError, InvalidHashError):
            return False

    def needs_rehash(self, digest: str) -> bool:
        """True for legacy digests and for Argon2 parameters that are out of date."""
        if LEGACY_DIGEST.match(digest or ""):
            return True
        try:
            return self.argon2_hasher.check_needs_rehash(digest)
        except (InvalidHashError, ValueError):
            return True
