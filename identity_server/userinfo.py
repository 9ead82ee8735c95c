"""
OIDC UserInfo endpoint (GET /userinfo). Bearer access token required; returns claims by granted scope.
"""
import logging

import jwt
from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from identity_server.dependencies import get_keys, get_scope_catalog, get_token_issuer, get_user_store
from identity_server.keys import SigningKeys
from identity_server.scopes import ScopeCatalog
from identity_server.tokens import TokenIssuer, user_claims
from identity_server.users import UserStore

logger = logging.getLogger(__name__)
router = APIRouter()
security = HTTPBearer(auto_error=True)

_INVALID_TOKEN = {"WWW-Authenticate": 'Bearer error="invalid_token"'}


def _decode_access_token(token: str, keys: SigningKeys, issuer: TokenIssuer) -> dict:
    """Verify signature (key by kid), issuer, audience and expiry. Raises 401 otherwise."""
    try:
        kid = jwt.get_unverified_header(token).get("kid")
        public_key = keys.public_key(kid) if kid else None
        if public_key is None:
            raise jwt.InvalidTokenError("Unknown signing key")
        return jwt.decode(
            token,
            public_key,
            algorithms=["RS256"],
            issuer=issuer.issuer,
            audience=issuer.audience,
        )
    except jwt.InvalidTokenError as e:
        logger.debug("UserInfo token invalid: %s", e)
        raise HTTPException(status_code=401, detail="Invalid or expired token", headers=_INVALID_TOKEN)


@router.get("/userinfo")
def userinfo(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    keys: SigningKeys = Depends(get_keys),
    issuer: TokenIssuer = Depends(get_token_issuer),
    scopes: ScopeCatalog = Depends(get_scope_catalog),
    users: UserStore = Depends(get_user_store),
):
    """
    Claims for the token's subject, limited to the identity scopes the token was granted.
    Requires the openid scope; revoked tokens are rejected.
    """
    payload = _decode_access_token(credentials.credentials, keys, issuer)
    if issuer.is_access_token_revoked(payload.get("jti")):
        raise HTTPException(status_code=401, detail="Token has been revoked", headers=_INVALID_TOKEN)

    granted = (payload.get("scope") or "").split()
    if "openid" not in granted:
        raise HTTPException(
            status_code=403,
            detail="openid scope required",
            headers={"WWW-Authenticate": 'Bearer error="insufficient_scope"'},
        )

    user = users.find_by_id(payload.get("sub"))
    if user is None or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found", headers=_INVALID_TOKEN)

    claims = {"sub": user.id}
    claims.update(user_claims(user, scopes.identity_claims(granted) - {"sub"}))
    return claims
