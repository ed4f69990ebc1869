from __future__ import annotations

import asyncio

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from berthcare.config import Settings
from berthcare.service.errors import InvalidInputError


class CredentialHasher:
    """Salted argon2id password hashing with constant-time verification.

    The work factor is configuration, not a constant: raise ``time_cost`` or
    ``memory_cost`` as hardware gets faster and use :meth:`needs_rehash` to
    upgrade stored digests on the next successful login.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialHasher":
        return cls(
            time_cost=settings.password_time_cost,
            memory_cost=settings.password_memory_cost_kib,
            parallelism=settings.password_parallelism,
        )

    def hash(self, plaintext: str) -> str:
        if not plaintext or not plaintext.strip():
            raise InvalidInputError("password must not be empty")
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, digest: str) -> bool:
        if not plaintext or not digest:
            return False
        try:
            return self._hasher.verify(digest, plaintext)
        except (InvalidHashError, VerificationError):
            return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHashError:
            return True

    async def hash_async(self, plaintext: str) -> str:
        # Deliberately slow; keep it off the event loop so other requests proceed
        return await asyncio.to_thread(self.hash, plaintext)

    async def verify_async(self, plaintext: str, digest: str) -> bool:
        return await asyncio.to_thread(self.verify, plaintext, digest)
