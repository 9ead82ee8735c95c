"""
Token issuer: authorization code + PKCE and refresh_token grants.

Authorization:  validate client / redirect / scopes / PKCE  -> authorization code
Code exchange:  single-use code + PKCE verifier             -> access, ID, refresh tokens
Refresh:        single-use refresh token (rotation)         -> new access (+ ID, refresh) tokens

Code consumption and refresh rotation are conditional UPDATEs committed in the same
transaction as the tokens they produce; on any failure nothing is consumed.
"""
import hashlib
import logging
import secrets
from base64 import urlsafe_b64encode
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

import jwt
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from identity_server.audit import EVENT_CODE_REPLAY, OUTCOME_FAIL, log_audit
from identity_server.clients import GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN, Client, ClientRegistry
from identity_server.config import API_AUDIENCE, ISSUER
from identity_server.discovery import build_discovery_document
from identity_server.errors import ClientPolicyError, GrantError, invalid_client, invalid_request
from identity_server.keys import SigningKeys
from identity_server.models import AccessTokenRecord, AuthorizationCode, RefreshToken, User, as_utc
from identity_server.scopes import ScopeCatalog

logger = logging.getLogger(__name__)

PKCE_METHOD_S256 = "S256"

# Errors that mean redirect_uri cannot be trusted; never redirect back with these
NON_REDIRECTABLE_ERRORS = frozenset({"invalid_client", "invalid_redirect"})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_scope(scope: str | None) -> list[str]:
    """Space-separated scope string -> unique scope names, request order kept."""
    seen: list[str] = []
    for s in (scope or "").split():
        if s not in seen:
            seen.append(s)
    return seen


def pkce_challenge(code_verifier: str) -> str:
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def pkce_verify(code_verifier: str | None, code_challenge: str | None, method: str | None) -> bool:
    """S256 only: BASE64URL(SHA256(verifier)) == challenge."""
    if not code_verifier or not code_challenge or method != PKCE_METHOD_S256:
        return False
    try:
        computed = pkce_challenge(code_verifier)
    except UnicodeEncodeError:
        return False
    return secrets.compare_digest(computed, code_challenge)


def user_claims(user: User, claim_names) -> dict:
    """Values for the requested claim names that this store knows about."""
    values = {
        "sub": user.id,
        "name": user.display_name or None,
        "preferred_username": user.email,
        "email": user.email,
        "email_verified": False,
        "tenant_id": user.tenant_id,
    }
    return {name: values[name] for name in sorted(claim_names) if values.get(name) is not None}


@dataclass
class AuthorizationRequest:
    client_id: str | None
    redirect_uri: str | None
    response_type: str | None
    scope: str | None
    state: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    nonce: str | None = None


@dataclass
class ValidatedAuthorization:
    client: Client
    request: AuthorizationRequest
    scopes: list[str]


@dataclass
class TokenResponse:
    access_token: str
    expires_in: int
    scope: str
    id_token: str | None = None
    refresh_token: str | None = None
    token_type: str = "Bearer"
    # Not part of the response body; used for audit
    subject: str | None = None

    def to_dict(self) -> dict:
        body = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "scope": self.scope,
        }
        if self.id_token:
            body["id_token"] = self.id_token
        if self.refresh_token:
            body["refresh_token"] = self.refresh_token
        return body


class TokenIssuer:
    def __init__(
        self,
        db: Session,
        clients: ClientRegistry,
        scopes: ScopeCatalog,
        keys: SigningKeys,
        *,
        issuer: str = ISSUER,
        audience: str = API_AUDIENCE,
        now: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.clients = clients
        self.scopes = scopes
        self.keys = keys
        self.issuer = issuer
        self.audience = audience
        self.now = now

    # --- authorization ---

    def validate_authorization_request(self, req: AuthorizationRequest) -> ValidatedAuthorization:
        """Check the request against client and scope policy. Raises ClientPolicyError."""
        client = self.clients.lookup(req.client_id)
        if client is None:
            raise invalid_client()
        if not self.clients.is_redirect_allowed(client, req.redirect_uri):
            raise ClientPolicyError("invalid_redirect", "redirect_uri not allowed for this client")
        if req.response_type != "code":
            raise ClientPolicyError("unsupported_response_type", "response_type must be 'code'")
        if not client.allows_grant(GRANT_AUTHORIZATION_CODE):
            raise ClientPolicyError("unauthorized_client", "Client may not use the authorization code grant")

        requested = parse_scope(req.scope)
        if not requested:
            raise ClientPolicyError("invalid_scope", "No scope requested")
        unknown = [s for s in requested if self.scopes.lookup(s) is None]
        if unknown:
            raise ClientPolicyError("invalid_scope", f"Invalid scope(s): {', '.join(unknown)}")
        disallowed = [s for s in requested if not self.clients.is_scope_allowed(client, s)]
        if disallowed:
            raise ClientPolicyError("invalid_scope", f"Scope(s) not allowed for client: {', '.join(disallowed)}")

        if req.code_challenge:
            if (req.code_challenge_method or PKCE_METHOD_S256) != PKCE_METHOD_S256:
                raise invalid_request("code_challenge_method must be S256")
        elif client.require_pkce:
            raise invalid_request("code_challenge is required")
        return ValidatedAuthorization(client=client, request=req, scopes=requested)

    def issue_code(
        self,
        validated: ValidatedAuthorization,
        user: User,
        auth_time: datetime | None = None,
    ) -> AuthorizationCode:
        req = validated.request
        now = self.now()
        auth_code = AuthorizationCode(
            code=secrets.token_urlsafe(32),
            client_id=validated.client.client_id,
            redirect_uri=req.redirect_uri,
            user_id=user.id,
            scope=" ".join(validated.scopes),
            code_challenge=req.code_challenge or None,
            code_challenge_method=(req.code_challenge_method or PKCE_METHOD_S256) if req.code_challenge else None,
            nonce=req.nonce or None,
            auth_time=auth_time or now,
            expires_at=now + timedelta(seconds=validated.client.authorization_code_lifetime),
        )
        self.db.add(auth_code)
        self.db.commit()
        return auth_code

    def authorize(self, req: AuthorizationRequest, user: User, auth_time: datetime | None = None) -> AuthorizationCode:
        return self.issue_code(self.validate_authorization_request(req), user, auth_time)

    # --- token endpoint ---

    def _require_client(self, client_id: str | None, grant_type: str) -> Client:
        if not client_id:
            raise invalid_client("client_id is required")
        client = self.clients.lookup(client_id)
        if client is None:
            raise invalid_client()
        if not client.allows_grant(grant_type):
            raise ClientPolicyError("unauthorized_client", f"Client may not use the {grant_type} grant")
        return client

    def exchange_code(
        self,
        code: str | None,
        code_verifier: str | None,
        client_id: str | None,
        redirect_uri: str | None,
    ) -> TokenResponse:
        client = self._require_client(client_id, GRANT_AUTHORIZATION_CODE)
        if not code or not redirect_uri:
            raise invalid_request("code and redirect_uri are required for authorization_code grant")

        auth_code = self.db.scalar(select(AuthorizationCode).where(AuthorizationCode.code == code))
        if auth_code is None:
            raise GrantError("Invalid authorization code")
        if auth_code.used:
            self._revoke_grant(auth_code)
            raise GrantError("Authorization code already used")
        now = self.now()
        if as_utc(auth_code.expires_at) <= now:
            raise GrantError("Authorization code expired")
        if auth_code.client_id != client.client_id:
            raise GrantError("Client mismatch")
        if auth_code.redirect_uri != redirect_uri:
            raise GrantError("redirect_uri mismatch")
        if (auth_code.code_challenge or client.require_pkce) and not pkce_verify(
            code_verifier, auth_code.code_challenge, auth_code.code_challenge_method
        ):
            raise GrantError("PKCE verification failed")

        user = self.db.get(User, auth_code.user_id)
        if user is None or not user.is_active:
            raise GrantError("User is not active")

        try:
            consumed = self.db.execute(
                update(AuthorizationCode)
                .where(AuthorizationCode.id == auth_code.id, AuthorizationCode.used.is_(False))
                .values(used=True)
                .execution_options(synchronize_session=False)
            )
            if consumed.rowcount != 1:
                # Lost a race with a concurrent exchange of the same code
                self.db.rollback()
                self._revoke_grant(auth_code)
                raise GrantError("Authorization code already used")
            response = self._mint(
                client,
                user,
                parse_scope(auth_code.scope),
                grant_id=auth_code.id,
                nonce=auth_code.nonce,
                auth_time=as_utc(auth_code.auth_time),
                refresh_expires_at=None,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info("authorization_code exchanged: client_id=%s sub=%s", client.client_id, user.id)
        return response

    def refresh(self, refresh_token: str | None, client_id: str | None) -> TokenResponse:
        client = self._require_client(client_id, GRANT_REFRESH_TOKEN)
        if not refresh_token:
            raise invalid_request("refresh_token is required")

        rt = self.db.scalar(select(RefreshToken).where(RefreshToken.token == refresh_token))
        if rt is None:
            raise GrantError("Invalid refresh token")
        if rt.revoked:
            raise GrantError("Refresh token has been revoked")
        now = self.now()
        if as_utc(rt.expires_at) <= now:
            raise GrantError("Refresh token expired")
        if rt.client_id != client.client_id:
            raise GrantError("Client mismatch")
        user = self.db.get(User, rt.user_id)
        if user is None or not user.is_active:
            raise GrantError("User is not active")

        policy = client.refresh_token_policy
        # Sliding: full lifetime from now. Absolute: the original expiry never moves.
        refresh_expires_at = now + timedelta(seconds=policy.lifetime) if policy.sliding else as_utc(rt.expires_at)
        try:
            rotated = self.db.execute(
                update(RefreshToken)
                .where(RefreshToken.id == rt.id, RefreshToken.revoked.is_(False))
                .values(revoked=True)
                .execution_options(synchronize_session=False)
            )
            if rotated.rowcount != 1:
                raise GrantError("Refresh token has been revoked")
            response = self._mint(
                client,
                user,
                parse_scope(rt.scope),
                grant_id=rt.authorization_code_id,
                nonce=None,
                auth_time=None,
                refresh_expires_at=refresh_expires_at,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(
            "refresh_token grant: new tokens issued for client_id=%s sub=%s (refresh token rotated)",
            client.client_id,
            user.id,
        )
        return response

    def revoke(self, token: str, client_id: str | None) -> bool:
        """RFC 7009 for refresh tokens. Returns True if a token of this client was revoked."""
        rt = self.db.scalar(select(RefreshToken).where(RefreshToken.token == token))
        if rt is None:
            return False
        if rt.client_id != client_id:
            logger.warning("Client %s tried to revoke a refresh token of client %s", client_id, rt.client_id)
            return False
        rt.revoked = True
        self.db.commit()
        logger.debug("Revoked refresh token id=%s", rt.id)
        return True

    def is_access_token_revoked(self, jti: str | None) -> bool:
        if not jti:
            return True
        record = self.db.scalar(select(AccessTokenRecord).where(AccessTokenRecord.jti == jti))
        return record is None or record.revoked

    def discovery_document(self) -> dict:
        return build_discovery_document(self.issuer, self.clients, self.scopes)

    # --- internals ---

    def _revoke_grant(self, auth_code: AuthorizationCode) -> None:
        """A replayed code may be stolen: revoke every token derived from it."""
        self.db.execute(
            update(RefreshToken)
            .where(RefreshToken.authorization_code_id == auth_code.id)
            .values(revoked=True)
            .execution_options(synchronize_session=False)
        )
        self.db.execute(
            update(AccessTokenRecord)
            .where(AccessTokenRecord.authorization_code_id == auth_code.id)
            .values(revoked=True)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        logger.warning(
            "Authorization code replay: client_id=%s sub=%s; derived tokens revoked",
            auth_code.client_id,
            auth_code.user_id,
        )
        log_audit(
            self.db,
            EVENT_CODE_REPLAY,
            client_id=auth_code.client_id,
            user_id=auth_code.user_id,
            outcome=OUTCOME_FAIL,
        )

    def _sign(self, payload: dict) -> str:
        private_key, kid = self.keys.signing_key
        return jwt.encode(payload, private_key, algorithm="RS256", headers={"kid": kid, "typ": "JWT"})

    def _mint(
        self,
        client: Client,
        user: User,
        scopes: list[str],
        *,
        grant_id: int | None,
        nonce: str | None,
        auth_time: datetime | None,
        refresh_expires_at: datetime | None,
    ) -> TokenResponse:
        """Build tokens and stage their records in the current transaction (caller commits)."""
        now = self.now()
        iat = int(now.timestamp())
        scope_str = " ".join(scopes)

        jti = secrets.token_urlsafe(16)
        access_exp = now + timedelta(seconds=client.access_token_lifetime)
        access_payload = {
            "iss": self.issuer,
            "sub": user.id,
            "aud": self.audience,
            "client_id": client.client_id,
            "scope": scope_str,
            "jti": jti,
            "iat": iat,
            "exp": int(access_exp.timestamp()),
        }
        resource_claims = self.scopes.api_claims(scopes)
        if "tenant" in scopes:
            resource_claims |= self.scopes.claims_for("tenant")
        access_payload.update(user_claims(user, resource_claims - {"sub"}))
        if auth_time is not None:
            access_payload["auth_time"] = int(auth_time.timestamp())
        self.db.add(
            AccessTokenRecord(
                jti=jti,
                user_id=user.id,
                client_id=client.client_id,
                authorization_code_id=grant_id,
                expires_at=access_exp,
            )
        )

        id_token = None
        if "openid" in scopes:
            id_payload = {
                "iss": self.issuer,
                "sub": user.id,
                "aud": client.client_id,
                "iat": iat,
                "exp": int((now + timedelta(seconds=client.identity_token_lifetime)).timestamp()),
            }
            if auth_time is not None:
                id_payload["auth_time"] = int(auth_time.timestamp())
            if nonce:
                id_payload["nonce"] = nonce
            id_payload.update(user_claims(user, self.scopes.identity_claims(scopes) - {"sub"}))
            id_token = self._sign(id_payload)

        refresh_value = None
        if client.allow_offline_access:
            policy = client.refresh_token_policy
            refresh_value = secrets.token_urlsafe(48)
            self.db.add(
                RefreshToken(
                    token=refresh_value,
                    user_id=user.id,
                    client_id=client.client_id,
                    scope=scope_str,
                    authorization_code_id=grant_id,
                    sliding=policy.sliding,
                    expires_at=refresh_expires_at or now + timedelta(seconds=policy.lifetime),
                    created_at=now,
                )
            )

        return TokenResponse(
            access_token=self._sign(access_payload),
            expires_in=client.access_token_lifetime,
            scope=scope_str,
            id_token=id_token,
            refresh_token=refresh_value,
            subject=user.id,
        )
