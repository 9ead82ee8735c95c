"""
Tests for the token issuer: authorization request policy, code exchange with PKCE,
replay revocation, refresh rotation under sliding and absolute policies.
"""
from datetime import timedelta

import jwt
import pytest
from sqlalchemy import select, update

from identity_server.audit import EVENT_CODE_REPLAY
from identity_server.clients import CLIENTS, REFRESH_ABSOLUTE, Client, ClientRegistry, RefreshTokenPolicy
from identity_server.config import API_AUDIENCE, ISSUER
from identity_server.database import SessionLocal
from identity_server.errors import ClientPolicyError, GrantError
from identity_server.keys import get_signing_keys
from identity_server.models import AccessTokenRecord, AuditLog, AuthorizationCode, RefreshToken, User, as_utc
from identity_server.tokens import AuthorizationRequest, TokenIssuer, parse_scope, pkce_challenge, pkce_verify
from identity_server.users import UserStore

WEB = "pipster-web"
WEB_CALLBACK = "http://localhost:3000/api/auth/callback/identityserver"
FULL_SCOPE = "openid profile email tenant pipster.api"

ABSOLUTE_CLIENT = Client(
    client_id="reports-app",
    client_name="Reports",
    require_client_secret=False,
    redirect_uris=("https://reports.example/callback",),
    allowed_scopes=frozenset({"openid", "pipster.api"}),
    allow_offline_access=True,
    refresh_token_policy=RefreshTokenPolicy(REFRESH_ABSOLUTE, 3600),
)


@pytest.fixture
def registry():
    return ClientRegistry([*CLIENTS, ABSOLUTE_CLIENT])


@pytest.fixture
def issuer(db, registry, scopes, clock):
    return TokenIssuer(db, registry, scopes, get_signing_keys(), now=clock)


def _request(challenge, client_id=WEB, redirect_uri=WEB_CALLBACK, scope=FULL_SCOPE, **kwargs):
    params = dict(
        client_id=client_id,
        redirect_uri=redirect_uri,
        response_type="code",
        scope=scope,
        state="xyz",
        code_challenge=challenge,
        code_challenge_method="S256",
    )
    params.update(kwargs)
    return AuthorizationRequest(**params)


def _decode(token, audience):
    public_key = get_signing_keys().public_key(jwt.get_unverified_header(token)["kid"])
    return jwt.decode(token, public_key, algorithms=["RS256"], audience=audience, issuer=ISSUER)


def _refresh_row(db, value):
    db.expire_all()
    return db.scalar(select(RefreshToken).where(RefreshToken.token == value))


# --- PKCE / helpers ---


def test_pkce_challenge_known_vector():
    assert pkce_challenge("dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk") == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_pkce_verify(pkce_pair):
    verifier, challenge = pkce_pair
    assert pkce_verify(verifier, challenge, "S256")
    assert not pkce_verify("other-verifier", challenge, "S256")
    assert not pkce_verify(verifier, challenge, "plain")
    assert not pkce_verify(None, challenge, "S256")


def test_parse_scope_dedupes_in_order():
    assert parse_scope("openid email openid  profile") == ["openid", "email", "profile"]
    assert parse_scope(None) == []


# --- authorization request policy ---


@pytest.mark.parametrize(
    "overrides, error",
    [
        ({"client_id": "unknown"}, "invalid_client"),
        ({"client_id": "pipster-mobile", "redirect_uri": "pipster://callback"}, "invalid_client"),
        ({"redirect_uri": "https://evil.example/callback"}, "invalid_redirect"),
        ({"response_type": "token"}, "unsupported_response_type"),
        ({"scope": ""}, "invalid_scope"),
        ({"scope": "openid admin"}, "invalid_scope"),
        ({"code_challenge": None}, "invalid_request"),
        ({"code_challenge_method": "plain"}, "invalid_request"),
    ],
)
def test_authorization_request_rejected(issuer, pkce_pair, overrides, error):
    with pytest.raises(ClientPolicyError) as exc:
        issuer.validate_authorization_request(_request(pkce_pair[1], **overrides))
    assert exc.value.error == error


def test_scope_not_allowed_for_client(issuer, pkce_pair):
    req = _request(
        pkce_pair[1],
        client_id="reports-app",
        redirect_uri="https://reports.example/callback",
        scope="openid email",
    )
    with pytest.raises(ClientPolicyError) as exc:
        issuer.validate_authorization_request(req)
    assert exc.value.error == "invalid_scope"


def test_issue_code(issuer, user, pkce_pair, clock):
    code = issuer.authorize(_request(pkce_pair[1], nonce="n-1"), user)
    assert code.client_id == WEB
    assert code.scope == FULL_SCOPE
    assert code.code_challenge_method == "S256"
    assert not code.used
    assert as_utc(code.expires_at) == clock() + timedelta(seconds=300)


# --- code exchange ---


def test_exchange_code_issues_tokens(issuer, user, pkce_pair):
    verifier, challenge = pkce_pair
    code = issuer.authorize(_request(challenge, nonce="n-1"), user)

    response = issuer.exchange_code(code.code, verifier, WEB, WEB_CALLBACK)
    assert response.token_type == "Bearer"
    assert response.expires_in == 3600
    assert response.refresh_token
    assert "subject" not in response.to_dict()

    access = _decode(response.access_token, API_AUDIENCE)
    assert access["sub"] == user.id
    assert access["client_id"] == WEB
    assert access["scope"] == FULL_SCOPE
    assert access["tenant_id"] == "tenant-a"
    assert access["exp"] - access["iat"] == 3600

    id_token = _decode(response.id_token, WEB)
    assert id_token["sub"] == user.id
    assert id_token["nonce"] == "n-1"
    assert id_token["email"] == "ada@example.com"
    assert id_token["name"] == "Ada Lovelace"
    assert id_token["tenant_id"] == "tenant-a"
    assert "auth_time" in id_token


def test_no_id_token_without_openid(issuer, user, pkce_pair):
    verifier, challenge = pkce_pair
    code = issuer.authorize(_request(challenge, scope="pipster.api"), user)
    response = issuer.exchange_code(code.code, verifier, WEB, WEB_CALLBACK)
    assert response.id_token is None
    assert _decode(response.access_token, API_AUDIENCE)["tenant_id"] == "tenant-a"


def test_tenant_claim_follows_scope(issuer, user, pkce_pair):
    verifier, challenge = pkce_pair
    code = issuer.authorize(_request(challenge, scope="openid profile"), user)
    response = issuer.exchange_code(code.code, verifier, WEB, WEB_CALLBACK)
    assert "tenant_id" not in _decode(response.access_token, API_AUDIENCE)
    assert "tenant_id" not in _decode(response.id_token, WEB)

    code = issuer.authorize(_request(challenge, scope="openid tenant"), user)
    response = issuer.exchange_code(code.code, verifier, WEB, WEB_CALLBACK)
    assert _decode(response.access_token, API_AUDIENCE)["tenant_id"] == "tenant-a"
    assert _decode(response.id_token, WEB)["tenant_id"] == "tenant-a"


def test_wrong_verifier_does_not_consume_code(issuer, user, pkce_pair, db):
    verifier, challenge = pkce_pair
    code = issuer.authorize(_request(challenge), user)

    with pytest.raises(GrantError):
        issuer.exchange_code(code.code, "not-the-verifier-" + "x" * 30, WEB, WEB_CALLBACK)
    with pytest.raises(GrantError):
        issuer.exchange_code(code.code, None, WEB, WEB_CALLBACK)

    assert issuer.exchange_code(code.code, verifier, WEB, WEB_CALLBACK).access_token


def test_redirect_uri_must_match(issuer, user, pkce_pair):
    verifier, challenge = pkce_pair
    code = issuer.authorize(_request(challenge), user)
    with pytest.raises(GrantError):
        issuer.exchange_code(code.code, verifier, WEB, "https://pipster.app/api/auth/callback/identityserver")


def test_code_bound_to_client(issuer, user, pkce_pair):
    verifier, challenge = pkce_pair
    code = issuer.authorize(_request(challenge), user)
    with pytest.raises(GrantError):
        issuer.exchange_code(code.code, verifier, "reports-app", WEB_CALLBACK)


def test_expired_code(issuer, user, pkce_pair, clock):
    verifier, challenge = pkce_pair
    code = issuer.authorize(_request(challenge), user)
    clock.advance(seconds=301)
    with pytest.raises(GrantError) as exc:
        issuer.exchange_code(code.code, verifier, WEB, WEB_CALLBACK)
    assert "expired" in exc.value.description


def test_unknown_code_and_client(issuer, pkce_pair):
    with pytest.raises(GrantError):
        issuer.exchange_code("no-such-code", pkce_pair[0], WEB, WEB_CALLBACK)
    with pytest.raises(ClientPolicyError) as exc:
        issuer.exchange_code("no-such-code", pkce_pair[0], "pipster-mobile", WEB_CALLBACK)
    assert exc.value.error == "invalid_client"
    assert exc.value.status_code == 401


def test_code_replay_revokes_grant(issuer, user, pkce_pair, db):
    verifier, challenge = pkce_pair
    code = issuer.authorize(_request(challenge), user)
    first = issuer.exchange_code(code.code, verifier, WEB, WEB_CALLBACK)
    jti = _decode(first.access_token, API_AUDIENCE)["jti"]
    assert not issuer.is_access_token_revoked(jti)

    with pytest.raises(GrantError):
        issuer.exchange_code(code.code, verifier, WEB, WEB_CALLBACK)

    assert _refresh_row(db, first.refresh_token).revoked
    assert issuer.is_access_token_revoked(jti)
    with pytest.raises(GrantError):
        issuer.refresh(first.refresh_token, WEB)


def test_replay_revokes_rotated_descendants(issuer, user, pkce_pair, db):
    verifier, challenge = pkce_pair
    code = issuer.authorize(_request(challenge), user)
    first = issuer.exchange_code(code.code, verifier, WEB, WEB_CALLBACK)
    second = issuer.refresh(first.refresh_token, WEB)

    with pytest.raises(GrantError):
        issuer.exchange_code(code.code, verifier, WEB, WEB_CALLBACK)

    assert _refresh_row(db, second.refresh_token).revoked
    records = db.scalars(select(AccessTokenRecord)).all()
    assert len(records) == 2
    assert all(r.revoked for r in records)


def _commit_elsewhere(statement):
    """Apply a write from a second session, as a concurrent request would."""
    other = SessionLocal()
    try:
        other.execute(statement)
        other.commit()
    finally:
        other.close()


def _before_user_load(monkeypatch, issuer, statement):
    original = issuer.db.get

    def get(entity, ident, **kwargs):
        if entity is User:
            _commit_elsewhere(statement)
        return original(entity, ident, **kwargs)

    monkeypatch.setattr(issuer.db, "get", get)


def test_concurrent_exchange_of_same_code_issues_nothing(issuer, user, pkce_pair, db, monkeypatch):
    verifier, challenge = pkce_pair
    code = issuer.authorize(_request(challenge), user)
    _before_user_load(
        monkeypatch, issuer, update(AuthorizationCode).where(AuthorizationCode.id == code.id).values(used=True)
    )

    with pytest.raises(GrantError) as exc:
        issuer.exchange_code(code.code, verifier, WEB, WEB_CALLBACK)
    assert "already used" in exc.value.description

    db.expire_all()
    assert db.scalars(select(AccessTokenRecord)).all() == []
    assert db.scalars(select(RefreshToken)).all() == []
    events = db.scalars(select(AuditLog).where(AuditLog.event_type == EVENT_CODE_REPLAY)).all()
    assert len(events) == 1
    assert events[0].client_id == WEB


def test_inactive_user_cannot_exchange(issuer, user, pkce_pair, db):
    verifier, challenge = pkce_pair
    code = issuer.authorize(_request(challenge), user)
    UserStore(db).set_active(user, False)
    with pytest.raises(GrantError):
        issuer.exchange_code(code.code, verifier, WEB, WEB_CALLBACK)
    db.expire_all()
    assert not db.get(AuthorizationCode, code.id).used


# --- refresh ---


def test_refresh_rotates_with_sliding_expiry(issuer, user, pkce_pair, db, clock):
    verifier, challenge = pkce_pair
    code = issuer.authorize(_request(challenge), user)
    first = issuer.exchange_code(code.code, verifier, WEB, WEB_CALLBACK)

    clock.advance(days=1)
    second = issuer.refresh(first.refresh_token, WEB)
    assert second.refresh_token != first.refresh_token
    assert second.scope == FULL_SCOPE
    assert second.access_token and second.id_token

    assert _refresh_row(db, first.refresh_token).revoked
    new_row = _refresh_row(db, second.refresh_token)
    assert new_row.sliding
    assert as_utc(new_row.expires_at) == clock() + timedelta(seconds=2592000)

    with pytest.raises(GrantError):
        issuer.refresh(first.refresh_token, WEB)


def test_refresh_absolute_keeps_original_expiry(issuer, user, pkce_pair, db, clock):
    verifier, challenge = pkce_pair
    start = clock()
    req = _request(challenge, client_id="reports-app", redirect_uri="https://reports.example/callback", scope="openid")
    code = issuer.authorize(req, user)
    first = issuer.exchange_code(code.code, verifier, "reports-app", "https://reports.example/callback")

    clock.advance(seconds=1000)
    second = issuer.refresh(first.refresh_token, "reports-app")
    new_row = _refresh_row(db, second.refresh_token)
    assert not new_row.sliding
    assert as_utc(new_row.expires_at) == start + timedelta(seconds=3600)

    clock.advance(seconds=2601)
    with pytest.raises(GrantError) as exc:
        issuer.refresh(second.refresh_token, "reports-app")
    assert "expired" in exc.value.description


def test_refresh_bound_to_client(issuer, user, pkce_pair):
    verifier, challenge = pkce_pair
    code = issuer.authorize(_request(challenge), user)
    first = issuer.exchange_code(code.code, verifier, WEB, WEB_CALLBACK)
    with pytest.raises(GrantError):
        issuer.refresh(first.refresh_token, "reports-app")
    # Still usable by its own client
    assert issuer.refresh(first.refresh_token, WEB).refresh_token


def test_refresh_for_inactive_user(issuer, user, pkce_pair, db):
    verifier, challenge = pkce_pair
    code = issuer.authorize(_request(challenge), user)
    first = issuer.exchange_code(code.code, verifier, WEB, WEB_CALLBACK)
    UserStore(db).set_active(user, False)
    with pytest.raises(GrantError):
        issuer.refresh(first.refresh_token, WEB)



def test_concurrent_refresh_rotates_once(issuer, user, pkce_pair, db, monkeypatch):
    verifier, challenge = pkce_pair
    code = issuer.authorize(_request(challenge), user)
    first = issuer.exchange_code(code.code, verifier, WEB, WEB_CALLBACK)
    _before_user_load(
        monkeypatch, issuer, update(RefreshToken).where(RefreshToken.token == first.refresh_token).values(revoked=True)
    )

    with pytest.raises(GrantError) as exc:
        issuer.refresh(first.refresh_token, WEB)
    assert "revoked" in exc.value.description

    # Only the tokens from the original exchange exist
    assert len(db.scalars(select(RefreshToken)).all()) == 1
    assert len(db.scalars(select(AccessTokenRecord)).all()) == 1
    assert _refresh_row(db, first.refresh_token).revoked

# --- revocation ---


def test_revoke_refresh_token(issuer, user, pkce_pair):
    verifier, challenge = pkce_pair
    code = issuer.authorize(_request(challenge), user)
    first = issuer.exchange_code(code.code, verifier, WEB, WEB_CALLBACK)

    assert not issuer.revoke(first.refresh_token, "reports-app")
    assert issuer.revoke(first.refresh_token, WEB)
    assert not issuer.revoke("unknown-token", WEB)
    with pytest.raises(GrantError):
        issuer.refresh(first.refresh_token, WEB)


def test_discovery_document(issuer):
    doc = issuer.discovery_document()
    assert doc["issuer"] == ISSUER
    assert doc["token_endpoint"] == f"{ISSUER}/token"
    assert doc["grant_types_supported"] == ["authorization_code", "refresh_token"]
    assert doc["code_challenge_methods_supported"] == ["S256"]
    assert "tenant" in doc["scopes_supported"]
    assert "tenant_id" in doc["claims_supported"]
