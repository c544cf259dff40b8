from typing import Optional

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError

from config import Settings, get_settings


class SimpleHasher:
    """Argon2id verifier for the account password, kept apart from the key wrapping salt."""

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self._ph = PasswordHasher(
            time_cost=settings.ARGON2_TIME_COST,
            memory_cost=settings.ARGON2_MEMORY_COST_KIB,
            parallelism=settings.ARGON2_PARALLELISM,
        )

    def hash(self, password: str) -> str:
        """Create a secure hash for a new password."""
        return self._ph.hash(password)

    def verify(self, stored_hash: str, password: str) -> bool:
        """Check a password attempt against the stored hash."""
        try:
            return self._ph.verify(stored_hash, password)
        except (VerificationError, InvalidHashError):
            return False
