import pytest
from bech32 import bech32_encode, convertbits
from sqlalchemy import select
from sqlalchemy.orm import Session

from nostr_stage.core.errors import AuthenticationFailed, Conflict, RateLimited
from nostr_stage.core.settings import AuthProvider, settings
from nostr_stage.models import AuditLog, Custody, User
from nostr_stage.services.http_auth import HttpAuthVerifier
from nostr_stage.services.identity import (
    AnonymousCredential,
    IdentityService,
    NostrCredential,
    ReconnectCredential,
    RecoveryCredential,
)
from nostr_stage.services.keys import encode_npub, generate_keypair

LOGIN_URL = "http://test/api/v1/auth/nostr"
LINK_URL = "http://test/api/v1/account/link-nostr"
# BIP-340 vector 5: x coordinate with no point on secp256k1.
OFF_CURVE_PUBKEY = "eefdea4cdb677750a420fee807eacf21eb9898ae79b9768766e4faa04a2d4a34"


def to_nsec(secret: str) -> str:
    return bech32_encode("nsec", convertbits(bytes.fromhex(secret), 8, 5))


@pytest.fixture()
def service(db_session: Session, custody_store, rate_limiter) -> IdentityService:
    return IdentityService(db_session, custody_store, rate_limiter, HttpAuthVerifier())


def test_nostr_login_creates_then_finds_account(service, db_session: Session, sign_http_auth) -> None:
    secret, pubkey = generate_keypair()
    event = sign_http_auth(secret, pubkey, LOGIN_URL)

    first = service.prove_identity(AuthProvider.NOSTR, NostrCredential(pubkey, event, LOGIN_URL))
    assert first.created
    assert first.identity.pubkey == pubkey
    assert first.identity.custody == Custody.SELF_HELD.value
    assert first.reconnect_token is None

    second = service.prove_identity(AuthProvider.NOSTR, NostrCredential(encode_npub(pubkey), event, LOGIN_URL))
    assert not second.created
    assert second.identity.id == first.identity.id
    assert db_session.get(User, first.identity.id).privkey is None


def test_nostr_login_rejects_event_for_other_url(service, sign_http_auth) -> None:
    secret, pubkey = generate_keypair()
    event = sign_http_auth(secret, pubkey, "http://test/elsewhere")
    with pytest.raises(AuthenticationFailed) as excinfo:
        service.prove_identity(AuthProvider.NOSTR, NostrCredential(pubkey, event, LOGIN_URL))
    assert str(excinfo.value) == "Authentication failed"


def test_nostr_login_with_malformed_pubkey(service, sign_http_auth) -> None:
    secret, pubkey = generate_keypair()
    event = sign_http_auth(secret, pubkey, LOGIN_URL)
    with pytest.raises(AuthenticationFailed):
        service.prove_identity(AuthProvider.NOSTR, NostrCredential("xyz", event, LOGIN_URL))


def test_credential_must_match_provider(service) -> None:
    with pytest.raises(AuthenticationFailed) as excinfo:
        service.prove_identity(AuthProvider.RECONNECT, AnonymousCredential("1.2.3.4"))
    assert excinfo.value.reason == "credential does not match provider"


def test_disabled_provider_is_rejected(service, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "auth_providers", [AuthProvider.NOSTR])
    with pytest.raises(AuthenticationFailed) as excinfo:
        service.prove_identity(AuthProvider.ANONYMOUS, AnonymousCredential("1.2.3.4"))
    assert excinfo.value.reason == "provider disabled"


def test_anonymous_account_is_platform_held_and_sealed(service, db_session: Session, custody_store) -> None:
    proof = service.prove_identity(AuthProvider.ANONYMOUS, AnonymousCredential("1.2.3.4"))

    assert proof.created
    assert proof.reconnect_token
    identity = proof.identity
    assert identity.custody == Custody.PLATFORM_HELD.value
    assert identity.username == settings.anonymous_username_prefix + identity.pubkey[:8]
    assert identity.avatar.endswith(identity.pubkey)

    user = db_session.get(User, identity.id)
    assert user.privkey is not None
    assert len(user.privkey) != 64
    capability = custody_store.signing_capability(user)
    assert capability is not None
    assert capability.pubkey == identity.pubkey
    assert "reconnect_token='<redacted>'" in repr(proof)


def test_anonymous_creation_is_rate_limited_per_ip(service) -> None:
    for _ in range(5):
        service.prove_identity(AuthProvider.ANONYMOUS, AnonymousCredential("9.9.9.9"))
    with pytest.raises(RateLimited):
        service.prove_identity(AuthProvider.ANONYMOUS, AnonymousCredential("9.9.9.9"))
    service.prove_identity(AuthProvider.ANONYMOUS, AnonymousCredential("8.8.8.8"))


def test_reconnect_rotates_token(service) -> None:
    created = service.prove_identity(AuthProvider.ANONYMOUS, AnonymousCredential())
    resumed = service.prove_identity(AuthProvider.RECONNECT, ReconnectCredential(created.reconnect_token))

    assert resumed.identity.id == created.identity.id
    assert resumed.reconnect_token != created.reconnect_token
    with pytest.raises(AuthenticationFailed):
        service.prove_identity(AuthProvider.RECONNECT, ReconnectCredential(created.reconnect_token))
    with pytest.raises(AuthenticationFailed):
        service.prove_identity(AuthProvider.RECONNECT, ReconnectCredential(""))
    assert "<redacted>" in repr(ReconnectCredential("secret-token"))


def test_recovery_with_hex_or_nsec(service, make_user) -> None:
    user, secret = make_user()

    proof = service.prove_identity(AuthProvider.RECOVERY, RecoveryCredential(secret.upper()))
    assert proof.identity.id == user.id
    assert proof.reconnect_token

    proof = service.prove_identity(AuthProvider.RECOVERY, RecoveryCredential(to_nsec(secret)))
    assert proof.identity.id == user.id
    assert secret not in repr(RecoveryCredential(secret))


@pytest.mark.parametrize("private_key", ["not-a-key", "00" * 32, ""])
def test_recovery_rejects_malformed_keys(service, private_key: str) -> None:
    with pytest.raises(AuthenticationFailed):
        service.prove_identity(AuthProvider.RECOVERY, RecoveryCredential(private_key))


def test_recovery_rejects_unknown_and_self_held(service, make_user) -> None:
    unknown_secret, _ = generate_keypair()
    with pytest.raises(AuthenticationFailed) as excinfo:
        service.prove_identity(AuthProvider.RECOVERY, RecoveryCredential(unknown_secret))
    assert excinfo.value.reason == "no account for key"

    _, self_held_secret = make_user(platform_held=False)
    with pytest.raises(AuthenticationFailed) as excinfo:
        service.prove_identity(AuthProvider.RECOVERY, RecoveryCredential(self_held_secret))
    assert excinfo.value.reason == "account is self-held"


def test_link_self_held_key_clears_custody(service, db_session: Session, make_user, sign_http_auth) -> None:
    user, _ = make_user()
    user.reconnect_token_hash = "ab" * 32
    db_session.commit()
    secret, pubkey = generate_keypair()

    identity = service.link_self_held_key(user, pubkey, sign_http_auth(secret, pubkey, LINK_URL), LINK_URL)

    assert identity.pubkey == pubkey
    assert identity.custody == Custody.SELF_HELD.value
    assert identity.primary_provider == AuthProvider.NOSTR.value
    refreshed = db_session.get(User, user.id)
    assert refreshed.privkey is None
    assert refreshed.reconnect_token_hash is None


def test_link_rejects_key_owned_by_another_account(service, make_user, sign_http_auth) -> None:
    user, _ = make_user()
    other, other_secret = make_user(platform_held=False)
    event = sign_http_auth(other_secret, other.pubkey, LINK_URL)
    with pytest.raises(Conflict):
        service.link_self_held_key(user, other.pubkey, event, LINK_URL)


def test_link_requires_valid_proof(service, db_session: Session, make_user, sign_http_auth) -> None:
    user, _ = make_user()
    secret, pubkey = generate_keypair()
    event = sign_http_auth(secret, pubkey, LINK_URL, method="GET")
    with pytest.raises(AuthenticationFailed):
        service.link_self_held_key(user, pubkey, event, LINK_URL)
    assert db_session.scalars(select(User).where(User.pubkey == pubkey)).first() is None


def test_link_writes_audit_record(service, db_session: Session, make_user, sign_http_auth) -> None:
    user, _ = make_user()
    old_pubkey = user.pubkey
    secret, pubkey = generate_keypair()

    service.link_self_held_key(
        user, pubkey, sign_http_auth(secret, pubkey, LINK_URL), LINK_URL, client_ip="203.0.113.7"
    )

    entries = db_session.scalars(select(AuditLog).where(AuditLog.user_id == user.id)).all()
    assert len(entries) == 1
    entry = entries[0]
    assert entry.action == "account.link"
    assert entry.ip == "203.0.113.7"
    assert entry.details["old_pubkey"] == old_pubkey
    assert entry.details["new_pubkey"] == pubkey
    assert entry.details["previous_custody"] == Custody.PLATFORM_HELD.value
    assert entry.created_at is not None


def test_self_held_account_cannot_switch_key(service, db_session: Session, make_user, sign_http_auth) -> None:
    user, _ = make_user(platform_held=False)
    original = user.pubkey
    secret, pubkey = generate_keypair()

    with pytest.raises(Conflict) as excinfo:
        service.link_self_held_key(user, pubkey, sign_http_auth(secret, pubkey, LINK_URL), LINK_URL)

    assert excinfo.value.code == "PROVIDER_ALREADY_LINKED"
    assert db_session.get(User, user.id).pubkey == original
    assert db_session.scalars(select(AuditLog)).first() is None


def test_self_held_account_may_relink_same_key(service, make_user, sign_http_auth) -> None:
    user, secret = make_user(platform_held=False)
    identity = service.link_self_held_key(
        user, user.pubkey, sign_http_auth(secret, user.pubkey, LINK_URL), LINK_URL
    )
    assert identity.pubkey == user.pubkey


def test_off_curve_pubkey_is_rejected(service, make_user, sign_http_auth) -> None:
    user, _ = make_user()
    secret, pubkey = generate_keypair()
    event = sign_http_auth(secret, pubkey, LINK_URL)
    with pytest.raises(AuthenticationFailed) as excinfo:
        service.link_self_held_key(user, OFF_CURVE_PUBKEY, event, LINK_URL)
    assert excinfo.value.reason == "pubkey is not a curve point"
    with pytest.raises(AuthenticationFailed):
        service.prove_identity(AuthProvider.NOSTR, NostrCredential(OFF_CURVE_PUBKEY, event, LOGIN_URL))


def test_identity_exposes_npub(service) -> None:
    proof = service.prove_identity(AuthProvider.ANONYMOUS, AnonymousCredential("1.2.3.4"))
    assert proof.identity.npub == encode_npub(proof.identity.pubkey)
