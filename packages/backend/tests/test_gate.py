"""Access control gate tests, end to end.

Learn: These drive the gate the way the HTTP layer does: register,
sign in by password or provider, authorize with the access token, then
watch grants, roles and revocation change the outcome.
"""

import pytest
from sqlalchemy import delete
from sqlalchemy.exc import OperationalError

from warden.auth.gate import AccessControlGate
from warden.auth.permissions import Permission, Role
from warden.auth.providers import ProviderIdentity
from warden.db.models import SocialProvider, UserRole
from warden.errors import (
    DuplicateEmail,
    Expired,
    Forbidden,
    IdentityConflict,
    InvalidCredentials,
    Malformed,
    NotOwned,
    ProviderVerificationFailed,
    Revoked,
    StoreUnavailable,
    WeakSecret,
)
from warden.services import credential_store
from warden.services.credential_store import warm_dummy_hash

PASSWORD = "correct-Horse-battery-9"


# ═══════════════════════════════════════════════════════════
# Password sign-in
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_register_then_login(gate):
    registered = await gate.register("alice@example.com", PASSWORD)
    principal = await gate.authenticate_password("ALICE@example.com", PASSWORD)

    assert principal.user_id == registered.user_id
    assert principal.permissions == frozenset()
    assert principal.access_token and principal.refresh_token


@pytest.mark.asyncio
async def test_register_duplicate_email(gate):
    await gate.register("alice@example.com", PASSWORD)
    with pytest.raises(DuplicateEmail):
        await gate.register("Alice@Example.com", PASSWORD)


@pytest.mark.asyncio
async def test_weak_password_creates_no_user(gate):
    with pytest.raises(WeakSecret):
        await gate.register("weak@example.com", "password")
    assert await gate.identity.find_user_by_email("weak@example.com") is None


@pytest.mark.asyncio
async def test_register_is_all_or_nothing_on_store_outage(gate, monkeypatch):
    """A failed credential write leaves no user behind to block a retry."""
    real_stage = gate.credentials.stage_credential
    failures = []

    async def flaky_stage(user_id, plaintext):
        if len(failures) < 2:
            failures.append(user_id)
            raise OperationalError("INSERT INTO credentials", {}, Exception("connection reset"))
        return await real_stage(user_id, plaintext)

    monkeypatch.setattr(gate.credentials, "stage_credential", flaky_stage)

    with pytest.raises(StoreUnavailable):
        await gate.register("outage@example.com", PASSWORD)
    assert len(failures) == 2
    assert await gate.identity.find_user_by_email("outage@example.com") is None

    principal = await gate.register("outage@example.com", PASSWORD)
    assert (await gate.authenticate_password("outage@example.com", PASSWORD)).user_id == principal.user_id



@pytest.mark.asyncio
async def test_login_failures_are_indistinguishable(gate):
    """Unknown email, wrong password and no password all look the same."""
    await gate.register("bob@example.com", PASSWORD)
    await gate.identity.create_user_with_email("nopass@example.com")

    messages = set()
    for address, password in [
        ("nobody@example.com", PASSWORD),
        ("bob@example.com", "wrong-Password-1"),
        ("nopass@example.com", PASSWORD),
    ]:
        with pytest.raises(InvalidCredentials) as exc_info:
            await gate.authenticate_password(address, password)
        messages.add((type(exc_info.value), str(exc_info.value)))
    assert len(messages) == 1


@pytest.mark.asyncio
async def test_failed_logins_spend_one_verification_each(
    db_session, cfg, clock, verifier, gate, monkeypatch
):
    """Unknown email, wrong password and no password each cost one verify, no hash."""
    await gate.register("dan@example.com", PASSWORD)
    await gate.identity.create_user_with_email("nopass-dan@example.com")
    await warm_dummy_hash(cfg)

    calls = []

    def counting(name, fn):
        def wrapper(*args):
            calls.append(name)
            return fn(*args)

        return wrapper

    monkeypatch.setattr(
        credential_store, "hash_password", counting("hash", credential_store.hash_password)
    )
    monkeypatch.setattr(
        credential_store, "verify_password", counting("verify", credential_store.verify_password)
    )

    for address, password in [
        ("nobody@example.com", PASSWORD),
        ("dan@example.com", "wrong-Password-1"),
        ("nopass-dan@example.com", PASSWORD),
    ]:
        # A fresh gate per attempt, as each request builds its own.
        request_gate = AccessControlGate(db_session, cfg=cfg, clock=clock, verifier=verifier)
        calls.clear()
        with pytest.raises(InvalidCredentials):
            await request_gate.authenticate_password(address, password)
        assert calls == ["verify"], address



# ═══════════════════════════════════════════════════════════
# Authorization
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_authorize_follows_grants_and_roles(gate):
    """Register, grant directly, add a role, revoke the direct grant."""
    principal = await gate.register("carol@example.com", PASSWORD)
    token = principal.access_token
    user_id = principal.user_id

    with pytest.raises(Forbidden):
        await gate.authorize(token, Permission.BUSINESS_DELETE)

    await gate.permissions.grant_direct(user_id, Permission.BUSINESS_DELETE)
    await gate.authorize(token, Permission.BUSINESS_DELETE)

    await gate.identity.assign_role(user_id, Role.MODERATOR)
    await gate.permissions.revoke_direct(user_id, Permission.BUSINESS_DELETE)
    # Still allowed through the role; the token itself was never reissued.
    allowed = await gate.authorize(token, Permission.BUSINESS_DELETE)
    assert Permission.USER_VIEW in allowed.permissions

    with pytest.raises(Forbidden):
        await gate.authorize(token, Permission.ROLE_ASSIGN)


@pytest.mark.asyncio
async def test_authorization_ignores_role_snapshot(gate, db_session):
    """Roles in a token never grant anything on their own."""
    principal = await gate.register("dave@example.com", PASSWORD)
    await gate.identity.assign_role(principal.user_id, Role.ROOT)
    fresh = await gate.authenticate_password("dave@example.com", PASSWORD)

    # The snapshot says root, but the store is the only authority.
    await db_session.execute(delete(UserRole))
    await db_session.commit()

    snapshot = await gate.tokens.verify(fresh.access_token)
    assert Role.ROOT in snapshot.roles
    with pytest.raises(Forbidden):
        await gate.authorize(fresh.access_token, Permission.USER_VIEW)


@pytest.mark.asyncio
async def test_expired_token(gate, clock, cfg):
    principal = await gate.register("erin@example.com", PASSWORD)
    clock.advance(minutes=cfg.access_token_expire_minutes + 1)
    with pytest.raises(Expired):
        await gate.authenticate_token(principal.access_token)


@pytest.mark.asyncio
async def test_malformed_token(gate):
    with pytest.raises(Malformed):
        await gate.authenticate_token("garbage")


@pytest.mark.asyncio
async def test_deleted_user_token_rejected(gate):
    principal = await gate.register("frank@example.com", PASSWORD)
    await gate.identity.delete_user(principal.user_id)
    with pytest.raises(InvalidCredentials):
        await gate.authenticate_token(principal.access_token)


# ═══════════════════════════════════════════════════════════
# Refresh and revocation
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_refresh_issues_new_pair(gate, clock, cfg):
    principal = await gate.register("gina@example.com", PASSWORD)
    clock.advance(minutes=cfg.access_token_expire_minutes + 1)

    renewed = await gate.refresh(principal.refresh_token)

    assert renewed.user_id == principal.user_id
    await gate.authenticate_token(renewed.access_token)


@pytest.mark.asyncio
async def test_access_token_is_not_a_refresh_token(gate):
    principal = await gate.register("hank@example.com", PASSWORD)
    with pytest.raises(Malformed):
        await gate.refresh(principal.access_token)


@pytest.mark.asyncio
async def test_revoke_tokens_signs_out_everywhere(gate):
    first = await gate.register("iris@example.com", PASSWORD)
    second = await gate.authenticate_password("iris@example.com", PASSWORD)

    await gate.revoke_tokens(first.user_id)

    for token in (first.access_token, second.access_token):
        with pytest.raises(Revoked):
            await gate.authenticate_token(token)
    with pytest.raises(Revoked):
        await gate.refresh(second.refresh_token)

    again = await gate.authenticate_password("iris@example.com", PASSWORD)
    await gate.authenticate_token(again.access_token)


# ═══════════════════════════════════════════════════════════
# Passwords
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_change_password_revokes_old_tokens(gate):
    old = await gate.register("jack@example.com", PASSWORD)

    new = await gate.change_password(old.user_id, PASSWORD, "fresh-Secret-2026")

    with pytest.raises(Revoked):
        await gate.authenticate_token(old.access_token)
    await gate.authenticate_token(new.access_token)
    await gate.authenticate_password("jack@example.com", "fresh-Secret-2026")


@pytest.mark.asyncio
async def test_password_reset_flow(gate):
    old = await gate.register("kate@example.com", PASSWORD)
    token = await gate.request_password_reset("KATE@example.com")

    await gate.reset_password(token, "reset-Secret-2026")

    with pytest.raises(InvalidCredentials):
        await gate.authenticate_password("kate@example.com", PASSWORD)
    await gate.authenticate_password("kate@example.com", "reset-Secret-2026")
    with pytest.raises(Revoked):
        await gate.authenticate_token(old.access_token)
    # The reset token is single use.
    with pytest.raises(Revoked):
        await gate.reset_password(token, "another-Secret-2026")


@pytest.mark.asyncio
async def test_password_reset_unknown_address(gate):
    assert await gate.request_password_reset("nobody@example.com") is None


@pytest.mark.asyncio
async def test_password_reset_token_expires(gate, clock, cfg):
    await gate.register("liam@example.com", PASSWORD)
    token = await gate.request_password_reset("liam@example.com")
    clock.advance(minutes=cfg.password_reset_expire_minutes + 1)
    with pytest.raises(Expired):
        await gate.reset_password(token, "reset-Secret-2026")


# ═══════════════════════════════════════════════════════════
# Email verification
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_email_verification_flow(gate):
    principal = await gate.register("mia@example.com", PASSWORD)
    email = await gate.identity.primary_email(principal.user_id)
    assert email.verified is False

    token = await gate.request_email_verification(principal.user_id, email.id)
    verified = await gate.confirm_email_verification(token)

    assert verified.id == email.id
    assert verified.verified is True


@pytest.mark.asyncio
async def test_email_verification_not_owned(gate):
    alice = await gate.register("nia@example.com", PASSWORD)
    bob = await gate.register("oto@example.com", PASSWORD)
    bobs_email = await gate.identity.primary_email(bob.user_id)

    with pytest.raises(NotOwned):
        await gate.request_email_verification(alice.user_id, bobs_email.id)


# ═══════════════════════════════════════════════════════════
# Provider sign-in
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_provider_provisions_new_user(gate):
    principal = await gate.authenticate_provider(
        SocialProvider.GITHUB, "gh-100", "pat@users.example"
    )

    emails = await gate.identity.list_emails(principal.user_id)
    assert [(e.address, e.verified, e.is_primary) for e in emails] == [
        ("pat@users.example", True, True)
    ]
    again = await gate.authenticate_provider(
        SocialProvider.GITHUB, "gh-100", "pat@users.example"
    )
    assert again.user_id == principal.user_id


@pytest.mark.asyncio
async def test_provider_without_provisioning(gate, cfg):
    cfg.auto_provision_provider_users = False
    with pytest.raises(InvalidCredentials):
        await gate.authenticate_provider(SocialProvider.GOOGLE, "g-1", "new@example.com")


@pytest.mark.asyncio
async def test_provider_links_to_verified_email_owner(gate):
    principal = await gate.register("quin@example.com", PASSWORD)
    email = await gate.identity.primary_email(principal.user_id)
    await gate.identity.verify_email(email.id)

    via_provider = await gate.authenticate_provider(
        SocialProvider.GOOGLE, "g-quin", "quin@example.com"
    )

    assert via_provider.user_id == principal.user_id
    assert await gate.identity.find_user_by_social_login(
        SocialProvider.GOOGLE, "g-quin"
    ) == principal.user_id


@pytest.mark.asyncio
async def test_provider_refuses_unverified_email_owner(gate):
    await gate.register("ruth@example.com", PASSWORD)
    with pytest.raises(IdentityConflict):
        await gate.authenticate_provider(SocialProvider.GOOGLE, "g-ruth", "ruth@example.com")


@pytest.mark.asyncio
async def test_provider_provisioning_is_all_or_nothing(gate, monkeypatch):
    """A failed link write leaves no provisioned user behind."""

    async def unavailable(*args, **kwargs):
        raise OperationalError("INSERT INTO social_logins", {}, Exception("connection reset"))

    monkeypatch.setattr(gate.identity, "stage_social_login", unavailable)

    with pytest.raises(StoreUnavailable):
        await gate.authenticate_provider(SocialProvider.GITHUB, "gh-down", "down@users.example")
    assert await gate.identity.find_user_by_email("down@users.example") is None

    monkeypatch.undo()
    principal = await gate.authenticate_provider(
        SocialProvider.GITHUB, "gh-down", "down@users.example"
    )
    assert await gate.identity.find_user_by_email("down@users.example") == principal.user_id



@pytest.mark.asyncio
async def test_provider_requires_subject_and_email(gate):
    with pytest.raises(ProviderVerificationFailed):
        await gate.authenticate_provider(SocialProvider.GOOGLE, "", "x@example.com")


@pytest.mark.asyncio
async def test_provider_token_goes_through_verifier(gate, verifier):
    verifier.identities["good-artifact"] = ProviderIdentity(
        SocialProvider.DISCORD, "d-7", "sol@example.com"
    )

    principal = await gate.authenticate_provider_token(SocialProvider.DISCORD, "good-artifact")

    assert await gate.identity.find_user_by_email("sol@example.com") == principal.user_id
    with pytest.raises(ProviderVerificationFailed):
        await gate.authenticate_provider_token(SocialProvider.DISCORD, "bad-artifact")
    with pytest.raises(ProviderVerificationFailed):
        await gate.authenticate_provider_token(SocialProvider.GOOGLE, "good-artifact")
