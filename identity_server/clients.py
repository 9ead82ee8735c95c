"""
Client registry: registered applications and their grant/redirect/scope/lifetime policy.
Static configuration; exact-match redirect validation only.
"""
from dataclasses import dataclass, field

GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_REFRESH_TOKEN = "refresh_token"

REFRESH_SLIDING = "sliding"
REFRESH_ABSOLUTE = "absolute"


@dataclass(frozen=True)
class RefreshTokenPolicy:
    # sliding: each use resets the full lifetime; absolute: original expiry is kept
    expiration: str = REFRESH_SLIDING
    lifetime: int = 2592000  # 30 days

    def __post_init__(self):
        if self.expiration not in (REFRESH_SLIDING, REFRESH_ABSOLUTE):
            raise ValueError(f"Unknown refresh token expiration: {self.expiration}")
        if self.lifetime <= 0:
            raise ValueError("Refresh token lifetime must be positive")

    @property
    def sliding(self) -> bool:
        return self.expiration == REFRESH_SLIDING


@dataclass(frozen=True)
class Client:
    client_id: str
    client_name: str
    enabled: bool = True
    allowed_grant_types: frozenset[str] = frozenset({GRANT_AUTHORIZATION_CODE})
    require_pkce: bool = True
    require_client_secret: bool = True
    redirect_uris: tuple[str, ...] = ()
    post_logout_redirect_uris: tuple[str, ...] = ()
    allowed_cors_origins: tuple[str, ...] = ()
    allowed_scopes: frozenset[str] = frozenset()
    allow_offline_access: bool = False
    access_token_lifetime: int = 3600
    identity_token_lifetime: int = 300
    authorization_code_lifetime: int = 300
    refresh_token_policy: RefreshTokenPolicy = field(default_factory=RefreshTokenPolicy)
    require_consent: bool = False
    always_send_client_claims: bool = False
    always_include_user_claims_in_id_token: bool = False

    def __post_init__(self):
        if not self.require_client_secret and not self.require_pkce:
            raise ValueError(f"Public client {self.client_id} must require PKCE")

    @property
    def is_public(self) -> bool:
        return not self.require_client_secret

    def allows_grant(self, grant_type: str) -> bool:
        if grant_type == GRANT_REFRESH_TOKEN:
            return self.allow_offline_access
        return grant_type in self.allowed_grant_types


_STANDARD_SCOPES = frozenset({"openid", "profile", "email", "tenant", "pipster.api"})

CLIENTS: tuple[Client, ...] = (
    # Next.js frontend (SPA)
    Client(
        client_id="pipster-web",
        client_name="Pipster Web Application",
        allowed_grant_types=frozenset({GRANT_AUTHORIZATION_CODE}),
        require_pkce=True,
        require_client_secret=False,
        redirect_uris=(
            "http://localhost:3000/api/auth/callback/identityserver",
            "https://pipster.app/api/auth/callback/identityserver",
            "https://www.pipster.app/api/auth/callback/identityserver",
        ),
        post_logout_redirect_uris=(
            "http://localhost:3000",
            "https://pipster.app",
            "https://www.pipster.app",
        ),
        allowed_cors_origins=(
            "http://localhost:3000",
            "https://pipster.app",
            "https://www.pipster.app",
        ),
        allowed_scopes=_STANDARD_SCOPES,
        allow_offline_access=True,
        access_token_lifetime=3600,
        refresh_token_policy=RefreshTokenPolicy(REFRESH_SLIDING, 2592000),
        require_consent=False,
        always_send_client_claims=True,
        always_include_user_claims_in_id_token=True,
    ),
    # Mobile app, not implemented yet
    Client(
        client_id="pipster-mobile",
        client_name="Pipster Mobile App",
        enabled=False,
        allowed_grant_types=frozenset({GRANT_AUTHORIZATION_CODE}),
        require_pkce=True,
        require_client_secret=False,
        redirect_uris=("pipster://callback",),
        post_logout_redirect_uris=("pipster://logout",),
        allowed_scopes=_STANDARD_SCOPES,
        allow_offline_access=True,
        access_token_lifetime=3600,
        refresh_token_policy=RefreshTokenPolicy(REFRESH_SLIDING, 2592000),
    ),
)


class ClientRegistry:
    """Read-only view over the configured clients."""

    def __init__(self, clients):
        self._clients: dict[str, Client] = {}
        for client in clients:
            if client.client_id in self._clients:
                raise ValueError(f"Duplicate client_id: {client.client_id}")
            self._clients[client.client_id] = client

    def lookup(self, client_id: str | None) -> Client | None:
        """Enabled client by id. Disabled clients are reported as unknown."""
        client = self._clients.get(client_id or "")
        if client is None or not client.enabled:
            return None
        return client

    def find(self, client_id: str, include_disabled: bool = True) -> Client | None:
        """Administrative introspection; sees disabled clients too."""
        if not include_disabled:
            return self.lookup(client_id)
        return self._clients.get(client_id)

    def is_redirect_allowed(self, client: Client, uri: str | None) -> bool:
        return bool(uri) and uri in client.redirect_uris

    def is_post_logout_redirect_allowed(self, client: Client, uri: str | None) -> bool:
        return bool(uri) and uri in client.post_logout_redirect_uris

    def is_scope_allowed(self, client: Client, scope: str) -> bool:
        return scope in client.allowed_scopes

    def allowed_cors_origins(self) -> set[str]:
        return {o for c in self._clients.values() if c.enabled for o in c.allowed_cors_origins}

    def __iter__(self):
        return iter(self._clients.values())
