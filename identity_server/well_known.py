"""
Well-known endpoints: JWKS and OpenID Connect discovery.
"""
from fastapi import APIRouter, Depends

from identity_server.dependencies import get_keys, get_token_issuer
from identity_server.keys import SigningKeys
from identity_server.tokens import TokenIssuer

router = APIRouter()


@router.get("/.well-known/jwks.json")
def jwks_json(keys: SigningKeys = Depends(get_keys)):
    """JSON Web Key Set for token signature verification."""
    return keys.jwks()


@router.get("/.well-known/openid-configuration")
def openid_configuration(issuer: TokenIssuer = Depends(get_token_issuer)):
    """OpenID Connect discovery document."""
    return issuer.discovery_document()
