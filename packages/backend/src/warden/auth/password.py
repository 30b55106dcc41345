"""Password hashing utilities.

Learn: New hashes use argon2id (memory-hard; resists GPU cracking).
Hashes from the previous scheme, bcrypt ("$2b$..."), are still verified
and flagged for upgrade, as are argon2 hashes whose cost parameters are
lower than the current configuration.

Nothing in this module logs or returns plaintext.
"""

import math
import string

import bcrypt
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from warden.config import Settings, settings as default_settings
from warden.errors import WeakSecret


def build_hasher(cfg: Settings | None = None) -> PasswordHasher:
    cfg = cfg or default_settings
    return PasswordHasher(
        time_cost=cfg.argon2_time_cost,
        memory_cost=cfg.argon2_memory_cost,
        parallelism=cfg.argon2_parallelism,
        type=Type.ID,
    )


def hash_password(password: str, hasher: PasswordHasher) -> str:
    """Hash a password with argon2id. A fresh random salt is drawn each call."""
    return hasher.hash(password)


def verify_password(password: str, password_hash: str, hasher: PasswordHasher) -> bool:
    """Verify a password against its hash. Never raises on mismatch.

    Supports both argon2 ($argon2id$...) and legacy bcrypt ($2b$...).
    Use needs_upgrade() to check if a hash should be re-hashed.
    """
    if _is_legacy_hash(password_hash):
        return _verify_legacy(password, password_hash)
    try:
        return hasher.verify(password_hash, password)
    except (VerifyMismatchError, VerificationError, InvalidHashError):
        return False


def needs_upgrade(password_hash: str, hasher: PasswordHasher) -> bool:
    """Check if a hash uses the legacy scheme or stale argon2 parameters."""
    if _is_legacy_hash(password_hash):
        return True
    try:
        return hasher.check_needs_rehash(password_hash)
    except InvalidHashError:
        return True


def _is_legacy_hash(password_hash: str) -> bool:
    """Detect legacy bcrypt hashes."""
    return password_hash.startswith("$2")


def _verify_legacy(password: str, password_hash: str) -> bool:
    """Verify a legacy bcrypt hash (bcrypt compares in constant time)."""
    try:
        pw_bytes = password.encode("utf-8")[:72]
        return bcrypt.checkpw(pw_bytes, password_hash.encode("utf-8"))
    except (ValueError, TypeError):
        return False


# ─── Strength policy ────────────────────────────────────


_POOLS = (
    (string.ascii_lowercase, 26),
    (string.ascii_uppercase, 26),
    (string.digits, 10),
    (string.punctuation + " ", 33),
)


def estimate_entropy_bits(password: str) -> float:
    """Rough brute-force entropy estimate.

    Character-class pool size times an effective length. Repetition is
    penalised: the effective length is capped at twice the number of
    distinct characters, so "aaaaaaaaaaaa" scores like "aa".
    """
    if not password:
        return 0.0
    pool = 0
    for alphabet, size in _POOLS:
        if any(ch in alphabet for ch in password):
            pool += size
    if any(ord(ch) > 127 for ch in password):
        pool += 100
    effective_length = min(len(password), 2 * len(set(password)))
    return effective_length * math.log2(pool)


def check_strength(password: str, cfg: Settings | None = None) -> None:
    """Raise WeakSecret if the password fails the minimum-entropy policy."""
    cfg = cfg or default_settings
    if len(password) < cfg.password_min_length:
        raise WeakSecret(
            f"Password must be at least {cfg.password_min_length} characters"
        )
    if estimate_entropy_bits(password) < cfg.password_min_entropy_bits:
        raise WeakSecret("Password is too easy to guess")
