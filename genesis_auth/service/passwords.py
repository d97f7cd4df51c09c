from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from genesis_auth.config import Settings
from genesis_auth.logging import get_logger
from genesis_auth.service.errors import InternalError, ValidationError

logger = get_logger(__name__)


class PasswordHasherService:
    """argon2id hashing with a configurable work factor.

    Default parameters cost at least as much as bcrypt at cost 12.
    """

    def __init__(
        self,
        *,
        min_length: int = 8,
        max_length: int = 128,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self.min_length = min_length
        self.max_length = max_length
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self._dummy_hash: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordHasherService":
        return cls(
            min_length=settings.password_min_length,
            max_length=settings.password_max_length,
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
        )

    def validate(self, plaintext: str) -> None:
        if not isinstance(plaintext, str) or len(plaintext) < self.min_length:
            raise ValidationError(
                f"password must be at least {self.min_length} characters",
                detail={"field": "password", "min_length": self.min_length},
            )
        if len(plaintext) > self.max_length:
            raise ValidationError(
                f"password must be at most {self.max_length} characters",
                detail={"field": "password", "max_length": self.max_length},
            )

    def hash(self, plaintext: str, *, validate: bool = True) -> str:
        if validate:
            self.validate(plaintext)
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, stored_hash: str) -> bool:
        """Return whether ``plaintext`` matches; a corrupt hash raises ``InternalError``."""
        try:
            return self._hasher.verify(stored_hash, plaintext)
        except VerifyMismatchError:
            return False
        except InvalidHash as exc:
            logger.error("password_hash_malformed")
            raise InternalError("stored password hash is malformed") from exc
        except VerificationError:
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return False

    def dummy_verify(self, plaintext: str) -> None:
        """Spend one verification on a throwaway hash to even out response timing."""
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash("genesis-auth-timing-equalizer")
        try:
            self._hasher.verify(self._dummy_hash, plaintext or "")
        except VerificationError:
            pass
