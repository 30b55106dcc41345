"""Credential store — password material for users.

Learn: The store owns the only table that holds password hashes.
Hashing is CPU- and memory-heavy, so it runs in a worker thread and
never blocks the event loop. Three outcomes of verify are distinct
internally (match, mismatch, no credential) so that the gate can decide
what to reveal; the gate collapses the last two.
"""

import asyncio
import functools
import uuid

import structlog
from argon2 import PasswordHasher, Type
from sqlalchemy.ext.asyncio import AsyncSession

from warden.auth.password import (
    build_hasher,
    check_strength,
    hash_password,
    needs_upgrade,
    verify_password,
)
from warden.config import Settings, settings as default_settings
from warden.db.engine import store_guard
from warden.db.models import Credential, User, utcnow
from warden.errors import InvalidCredentials, NotFound
from warden.events.store import EventStore
from warden.events.types import CREDENTIAL_SET

logger = structlog.get_logger()

# Verified against when a user has no credential, so that "no such user"
# costs the same wall-clock time as "wrong password".
_DUMMY_PASSWORD = "warden-timing-equaliser"


@functools.lru_cache(maxsize=4)
def _dummy_hash(time_cost: int, memory_cost: int, parallelism: int) -> str:
    """One dummy hash per process and cost setting, never per request."""
    return hash_password(
        _DUMMY_PASSWORD,
        PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        ),
    )


async def warm_dummy_hash(cfg: Settings | None = None) -> None:
    """Compute the dummy hash ahead of the first failed login."""
    cfg = cfg or default_settings
    await asyncio.to_thread(
        _dummy_hash, cfg.argon2_time_cost, cfg.argon2_memory_cost, cfg.argon2_parallelism
    )


class CredentialStore:
    """Stores and verifies password secrets."""

    def __init__(self, db: AsyncSession, cfg: Settings | None = None):
        self.db = db
        self.cfg = cfg or default_settings
        self.hasher = build_hasher(self.cfg)
        self.events = EventStore(db)

    # ─── Set ─────────────────────────────────────────────

    async def stage_credential(self, user_id: uuid.UUID, plaintext: str) -> Credential:
        """Hash and stage a new password in the current transaction.

        Flushes but does not commit, so a caller can make it part of a
        larger unit (registration). Raises WeakSecret before any hashing if
        the policy rejects the password, and NotFound if the user does not
        exist.
        """
        check_strength(plaintext, self.cfg)
        if await self.db.get(User, user_id) is None:
            raise NotFound("User not found")

        password_hash = await asyncio.to_thread(
            hash_password, plaintext, self.hasher
        )
        credential = await self.db.get(Credential, user_id)
        if credential is None:
            credential = Credential(user_id=user_id, password_hash=password_hash)
            self.db.add(credential)
        else:
            credential.password_hash = password_hash
            credential.updated_at = utcnow()

        await self.events.append(
            stream_id=f"user:{user_id}",
            event_type=CREDENTIAL_SET,
            data={"user_id": str(user_id)},
        )
        return credential

    @store_guard
    async def set_credential(self, user_id: uuid.UUID, plaintext: str) -> Credential:
        """Hash and store a new password, replacing any previous one."""
        credential = await self.stage_credential(user_id, plaintext)
        await self.db.commit()
        logger.info("credential.set", user_id=str(user_id))
        return credential

    # ─── Verify ──────────────────────────────────────────

    @store_guard
    async def verify_credential(self, user_id: uuid.UUID, plaintext: str) -> bool:
        """Check a password. False on mismatch; NotFound if none is stored.

        On success, a hash with stale parameters (or the legacy bcrypt
        scheme) is transparently replaced with a current argon2id hash.
        """
        credential = await self.db.get(Credential, user_id)
        if credential is None:
            await self.burn_verification(plaintext)
            raise NotFound("No credential for user")

        ok = await asyncio.to_thread(
            verify_password, plaintext, credential.password_hash, self.hasher
        )
        if ok and needs_upgrade(credential.password_hash, self.hasher):
            credential.password_hash = await asyncio.to_thread(
                hash_password, plaintext, self.hasher
            )
            credential.updated_at = utcnow()
            await self.db.commit()
            logger.info("credential.rehashed", user_id=str(user_id))
        return ok

    async def burn_verification(self, plaintext: str) -> None:
        """Spend exactly one hash verification and discard the result."""
        dummy = await asyncio.to_thread(
            _dummy_hash,
            self.cfg.argon2_time_cost,
            self.cfg.argon2_memory_cost,
            self.cfg.argon2_parallelism,
        )
        await asyncio.to_thread(verify_password, plaintext, dummy, self.hasher)

    # ─── Change ──────────────────────────────────────────

    async def change_password(
        self, user_id: uuid.UUID, current: str, new: str
    ) -> Credential:
        """Replace the password after proving knowledge of the current one."""
        try:
            ok = await self.verify_credential(user_id, current)
        except NotFound:
            raise InvalidCredentials()
        if not ok:
            raise InvalidCredentials()
        return await self.set_credential(user_id, new)
