"""
Identity Server configuration.
Deployment values come from env; the client/scope catalogue is static and immutable.
No secrets in this file.
"""
import os
from dataclasses import dataclass

from identity_server.clients import CLIENTS, Client
from identity_server.scopes import API_SCOPES, IDENTITY_RESOURCES, Scope

# Issuer URL (public identifier)
ISSUER = os.environ.get("OAUTH_ISSUER", "http://127.0.0.1:5001").rstrip("/")

# Development enables schema auto-creation at startup; anything else is treated as production
ENVIRONMENT = os.environ.get("IDENTITY_ENVIRONMENT", "Production")
IS_DEVELOPMENT = ENVIRONMENT.lower() == "development"

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

# SQLite for development; PostgreSQL (or any SQLAlchemy URL) in deployment
DATABASE_URL = os.environ.get("AUTH_DATABASE_URL", "sqlite:///./identity_server.db")

# Audience of access tokens: the protected API
API_AUDIENCE = os.environ.get("OAUTH_API_AUDIENCE", "pipster.api")

# Path to RSA private key PEM file for signing tokens. If unset or missing, a key is generated and saved.
SIGNING_KEY_PATH = os.environ.get("OAUTH_SIGNING_KEY_PATH", ".identity_signing_key.pem")
# Optional previous key for rotation: published in JWKS, never used for new tokens.
SIGNING_KEY_PREVIOUS_PATH = os.environ.get("OAUTH_SIGNING_KEY_PREVIOUS_PATH", "").strip() or None

# Session cookie (interactive login). Secret must be set in deployment.
SESSION_SECRET = os.environ.get("IDENTITY_SESSION_SECRET", "")
SESSION_COOKIE_NAME = "identity.session"
SESSION_LIFETIME_SECONDS = int(os.environ.get("IDENTITY_SESSION_LIFETIME_SECONDS", "7200"))  # 2 hours

# Login page (external UI). /authorize redirects here with returnUrl when there is no session.
LOGIN_URL = os.environ.get("IDENTITY_LOGIN_URL", "/account/login")

# Lockout policy
LOCKOUT_MAX_FAILED_ATTEMPTS = int(os.environ.get("IDENTITY_LOCKOUT_MAX_FAILED_ATTEMPTS", "5"))
LOCKOUT_DURATION_SECONDS = int(os.environ.get("IDENTITY_LOCKOUT_DURATION_SECONDS", "300"))  # 5 minutes
PASSWORD_MIN_LENGTH = int(os.environ.get("IDENTITY_PASSWORD_MIN_LENGTH", "8"))

# Health checks never hang: each check is abandoned after this many seconds
HEALTH_CHECK_TIMEOUT_SECONDS = float(os.environ.get("IDENTITY_HEALTH_CHECK_TIMEOUT_SECONDS", "5"))

# Rate limiting: per-IP, per minute. 0 disables.
RATE_LIMIT_LOGIN_PER_MINUTE = int(os.environ.get("OAUTH_RATE_LIMIT_LOGIN_PER_MINUTE", "20"))
RATE_LIMIT_TOKEN_PER_MINUTE = int(os.environ.get("OAUTH_RATE_LIMIT_TOKEN_PER_MINUTE", "60"))


@dataclass(frozen=True)
class IdentityConfiguration:
    """Clients and scopes known to the server. Loaded once at startup; changes require redeploy."""

    identity_resources: tuple[Scope, ...]
    api_scopes: tuple[Scope, ...]
    clients: tuple[Client, ...]


def load_identity_configuration() -> IdentityConfiguration:
    return IdentityConfiguration(
        identity_resources=IDENTITY_RESOURCES,
        api_scopes=API_SCOPES,
        clients=CLIENTS,
    )
