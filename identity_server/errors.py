"""
OAuth protocol errors (RFC 6749 §5.2). Raised by the token issuer, rendered by the HTTP layer
as {"error", "error_description"}.
"""


class OAuthError(Exception):
    status_code = 400

    def __init__(self, error: str, description: str = "", status_code: int | None = None):
        self.error = error
        self.description = description
        if status_code is not None:
            self.status_code = status_code
        super().__init__(f"{error}: {description}" if description else error)

    def to_dict(self) -> dict:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


class ClientPolicyError(OAuthError):
    """Misconfigured or malicious client request: invalid_client, unauthorized_client, invalid_scope, ..."""


class GrantError(OAuthError):
    """Expired, revoked or reused code/refresh token, or failed PKCE verification."""

    def __init__(self, description: str):
        super().__init__("invalid_grant", description)


class UnsupportedGrantTypeError(OAuthError):
    def __init__(self, grant_type: str | None):
        super().__init__(
            "unsupported_grant_type",
            "Only authorization_code and refresh_token are supported",
        )
        self.grant_type = grant_type


def invalid_client(description: str = "Unknown client") -> ClientPolicyError:
    return ClientPolicyError("invalid_client", description, status_code=401)


def invalid_request(description: str) -> ClientPolicyError:
    return ClientPolicyError("invalid_request", description)


class DuplicateEmailError(ValueError):
    """A user with this email already exists."""
