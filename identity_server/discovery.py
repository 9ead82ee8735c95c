"""
OpenID Connect discovery metadata (OpenID Connect Discovery 1.0 §3).
"""
from identity_server.clients import GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN, ClientRegistry
from identity_server.scopes import ScopeCatalog


def build_discovery_document(issuer: str, clients: ClientRegistry, scopes: ScopeCatalog) -> dict:
    """Describe endpoints and capabilities. Grant types are those some enabled client may use."""
    grant_types = sorted(
        {g for g in (GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN) for c in clients if c.enabled and c.allows_grant(g)}
    )
    return {
        "issuer": issuer,
        "authorization_endpoint": f"{issuer}/authorize",
        "token_endpoint": f"{issuer}/token",
        "userinfo_endpoint": f"{issuer}/userinfo",
        "revocation_endpoint": f"{issuer}/revoke",
        "end_session_endpoint": f"{issuer}/logout",
        "jwks_uri": f"{issuer}/.well-known/jwks.json",
        "grant_types_supported": grant_types,
        "response_types_supported": ["code"],
        "response_modes_supported": ["query"],
        "scopes_supported": scopes.scope_names(),
        "claims_supported": scopes.claim_names(),
        "subject_types_supported": ["public"],
        "id_token_signing_alg_values_supported": ["RS256"],
        "token_endpoint_auth_methods_supported": ["none"],
        "code_challenge_methods_supported": ["S256"],
    }
