"""
Scope catalogue: identity resources (user claims) and API scopes.
Static configuration; the catalogue is built once at startup and never mutated.
"""
from dataclasses import dataclass

KIND_IDENTITY = "identity"
KIND_API = "api"

# Standard OIDC profile claims (OpenID Connect Core §5.4)
PROFILE_CLAIMS = frozenset(
    {
        "name",
        "family_name",
        "given_name",
        "middle_name",
        "nickname",
        "preferred_username",
        "profile",
        "picture",
        "website",
        "gender",
        "birthdate",
        "zoneinfo",
        "locale",
        "updated_at",
    }
)


@dataclass(frozen=True)
class Scope:
    name: str
    display_name: str
    user_claims: frozenset[str] = frozenset()
    kind: str = KIND_IDENTITY

    @property
    def is_identity(self) -> bool:
        return self.kind == KIND_IDENTITY


IDENTITY_RESOURCES: tuple[Scope, ...] = (
    Scope("openid", "Your user identifier", frozenset({"sub"})),
    Scope("profile", "User profile", PROFILE_CLAIMS),
    Scope("email", "Your email address", frozenset({"email", "email_verified"})),
    Scope("tenant", "Tenant Information", frozenset({"tenant_id"})),
)

API_SCOPES: tuple[Scope, ...] = (
    Scope("pipster.api", "Pipster API", frozenset({"tenant_id"}), kind=KIND_API),
)


class ScopeCatalog:
    """Lookup of scopes by name and of the claims each scope exposes."""

    def __init__(self, identity_resources, api_scopes):
        self._scopes: dict[str, Scope] = {}
        for scope in (*identity_resources, *api_scopes):
            if scope.name in self._scopes:
                raise ValueError(f"Duplicate scope: {scope.name}")
            self._scopes[scope.name] = scope

    def lookup(self, name: str) -> Scope | None:
        return self._scopes.get(name)

    def claims_for(self, name: str) -> frozenset[str]:
        """Claim names the scope grants visibility into; empty for unknown scopes."""
        scope = self._scopes.get(name)
        return scope.user_claims if scope else frozenset()

    def identity_claims(self, scope_names) -> set[str]:
        """Claims to embed in an ID token (or return from userinfo) for the granted scopes."""
        claims: set[str] = set()
        for name in scope_names:
            scope = self._scopes.get(name)
            if scope and scope.is_identity:
                claims |= scope.user_claims
        return claims

    def api_claims(self, scope_names) -> set[str]:
        """Claims a resource may read from an access token carrying the granted API scopes."""
        claims: set[str] = set()
        for name in scope_names:
            scope = self._scopes.get(name)
            if scope and not scope.is_identity:
                claims |= scope.user_claims
        return claims

    def scope_names(self) -> list[str]:
        return list(self._scopes)

    def claim_names(self) -> list[str]:
        return sorted({c for s in self._scopes.values() for c in s.user_claims})
