"""Credential store and password policy tests."""

import uuid

import bcrypt
import pytest
import pytest_asyncio
from argon2 import PasswordHasher

from warden.auth.password import (
    build_hasher,
    check_strength,
    estimate_entropy_bits,
    hash_password,
    needs_upgrade,
    verify_password,
)
from warden.db.models import Credential
from warden.errors import InvalidCredentials, NotFound, WeakSecret
from warden.services import credential_store
from warden.services.credential_store import CredentialStore, warm_dummy_hash
from warden.services.identity_graph import IdentityGraph

STRONG = "correct-Horse-battery-9"


@pytest.fixture()
def store(db_session, cfg):
    return CredentialStore(db_session, cfg)


@pytest_asyncio.fixture()
async def user_id(db_session, cfg):
    uid, _ = await IdentityGraph(db_session, cfg).create_user_with_email("cred@example.com")
    return uid


# ═══════════════════════════════════════════════════════════
# Strength policy
# ═══════════════════════════════════════════════════════════


@pytest.mark.parametrize(
    "password",
    ["", "short1!", "password", "aaaaaaaaaaaaaaaa", "abababababababab", "12345678"],
)
def test_weak_passwords_rejected(password, cfg):
    with pytest.raises(WeakSecret):
        check_strength(password, cfg)


@pytest.mark.parametrize("password", [STRONG, "Tr0ub4dor&3x", "zebra quilt mango river"])
def test_strong_passwords_accepted(password, cfg):
    check_strength(password, cfg)


def test_repetition_is_penalised():
    assert estimate_entropy_bits("aaaaaaaaaaaa") == estimate_entropy_bits("aa")
    assert estimate_entropy_bits("abcdefghijkl") > estimate_entropy_bits("abababababab")


def test_character_classes_raise_entropy():
    assert estimate_entropy_bits("abcdefgh") < estimate_entropy_bits("abcdEFGH")
    assert estimate_entropy_bits("abcdEFGH") < estimate_entropy_bits("abcdEF1!")


def test_policy_thresholds_are_configurable(cfg):
    cfg.password_min_length = 4
    cfg.password_min_entropy_bits = 10
    check_strength("qwer", cfg)


# ═══════════════════════════════════════════════════════════
# Hashing
# ═══════════════════════════════════════════════════════════


def test_hashes_are_salted(cfg):
    hasher = build_hasher(cfg)
    first, second = hash_password(STRONG, hasher), hash_password(STRONG, hasher)
    assert first != second
    assert first.startswith("$argon2id$")
    assert verify_password(STRONG, first, hasher)
    assert verify_password(STRONG, second, hasher)


def test_verify_never_raises_on_garbage(cfg):
    hasher = build_hasher(cfg)
    assert verify_password(STRONG, "not-a-hash", hasher) is False
    assert verify_password(STRONG, "$2b$broken", hasher) is False


def test_stale_parameters_need_upgrade(cfg):
    hasher = build_hasher(cfg)
    weaker = PasswordHasher(time_cost=1, memory_cost=512, parallelism=1)
    assert needs_upgrade(weaker.hash(STRONG), hasher)
    assert not needs_upgrade(hash_password(STRONG, hasher), hasher)


# ═══════════════════════════════════════════════════════════
# Store
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_set_and_verify(store, user_id):
    await store.set_credential(user_id, STRONG)

    assert await store.verify_credential(user_id, STRONG) is True
    assert await store.verify_credential(user_id, STRONG + "x") is False


@pytest.mark.asyncio
async def test_plaintext_is_never_stored(store, user_id, db_session):
    await store.set_credential(user_id, STRONG)
    credential = await db_session.get(Credential, user_id)
    assert STRONG not in credential.password_hash


@pytest.mark.asyncio
async def test_set_replaces_previous(store, user_id):
    await store.set_credential(user_id, STRONG)
    await store.set_credential(user_id, "another-Secret-42")

    assert await store.verify_credential(user_id, "another-Secret-42")
    assert not await store.verify_credential(user_id, STRONG)


@pytest.mark.asyncio
async def test_weak_secret_stores_nothing(store, user_id, db_session):
    with pytest.raises(WeakSecret):
        await store.set_credential(user_id, "password")
    assert await db_session.get(Credential, user_id) is None


@pytest.mark.asyncio
async def test_set_for_unknown_user(store):
    with pytest.raises(NotFound):
        await store.set_credential(uuid.uuid4(), STRONG)


@pytest.mark.asyncio
async def test_verify_without_credential(store, user_id):
    with pytest.raises(NotFound):
        await store.verify_credential(user_id, STRONG)


@pytest.mark.asyncio
async def test_legacy_bcrypt_hash_is_upgraded(store, user_id, db_session):
    legacy = bcrypt.hashpw(STRONG.encode(), bcrypt.gensalt(rounds=4)).decode()
    db_session.add(Credential(user_id=user_id, password_hash=legacy))
    await db_session.commit()

    assert await store.verify_credential(user_id, STRONG) is True

    credential = await db_session.get(Credential, user_id)
    assert credential.password_hash.startswith("$argon2id$")
    assert await store.verify_credential(user_id, STRONG) is True


@pytest.mark.asyncio
async def test_failed_verify_does_not_upgrade(store, user_id, db_session):
    legacy = bcrypt.hashpw(STRONG.encode(), bcrypt.gensalt(rounds=4)).decode()
    db_session.add(Credential(user_id=user_id, password_hash=legacy))
    await db_session.commit()

    assert await store.verify_credential(user_id, "wrong-Password-1") is False
    assert (await db_session.get(Credential, user_id)).password_hash == legacy


@pytest.mark.asyncio
async def test_change_password(store, user_id):
    await store.set_credential(user_id, STRONG)

    with pytest.raises(InvalidCredentials):
        await store.change_password(user_id, "wrong-Password-1", "new-Password-77")

    await store.change_password(user_id, STRONG, "new-Password-77")
    assert await store.verify_credential(user_id, "new-Password-77")


@pytest.mark.asyncio
async def test_change_password_without_credential(store, user_id):
    with pytest.raises(InvalidCredentials):
        await store.change_password(user_id, STRONG, "new-Password-77")


@pytest.mark.asyncio
async def test_dummy_hash_is_shared_across_stores(db_session, cfg):
    """Burned verifications reuse one dummy hash, whichever store runs them."""
    credential_store._dummy_hash.cache_clear()
    await warm_dummy_hash(cfg)

    for _ in range(3):
        await CredentialStore(db_session, cfg).burn_verification(STRONG)

    info = credential_store._dummy_hash.cache_info()
    assert (info.misses, info.hits) == (1, 3)
