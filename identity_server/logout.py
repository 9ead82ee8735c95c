"""
OIDC RP-Initiated Logout (GET /logout).
Ends the browser session and redirects to the client's post-logout URI when it is registered.
"""
import logging
from urllib.parse import urlencode

import jwt
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.orm import Session

from identity_server.audit import EVENT_LOGOUT, OUTCOME_SUCCESS, get_client_ip, log_audit
from identity_server.clients import ClientRegistry
from identity_server.database import get_db
from identity_server.dependencies import get_client_registry, get_keys, get_session_manager
from identity_server.keys import SigningKeys
from identity_server.sessions import SessionManager

logger = logging.getLogger(__name__)
router = APIRouter()


def _client_from_id_token_hint(id_token: str, keys: SigningKeys, issuer: str) -> str | None:
    """aud of a (possibly expired) ID token signed by us, or None."""
    try:
        kid = jwt.get_unverified_header(id_token).get("kid")
        public_key = keys.public_key(kid) if kid else None
        if public_key is None:
            return None
        payload = jwt.decode(
            id_token,
            public_key,
            algorithms=["RS256"],
            issuer=issuer,
            # aud is the client_id we are looking for; hints are commonly expired
            options={"verify_aud": False, "verify_exp": False},
        )
    except jwt.InvalidTokenError:
        return None
    aud = payload.get("aud")
    if isinstance(aud, list):
        aud = aud[0] if aud else None
    return aud


@router.get("/logout")
def logout(
    request: Request,
    id_token_hint: str | None = None,
    client_id: str | None = None,
    post_logout_redirect_uri: str | None = None,
    state: str | None = None,
    clients: ClientRegistry = Depends(get_client_registry),
    sessions: SessionManager = Depends(get_session_manager),
    keys: SigningKeys = Depends(get_keys),
    db: Session = Depends(get_db),
):
    """
    Clear the session cookie. Redirect only to a post_logout_redirect_uri registered for the
    client identified by id_token_hint (or client_id); otherwise answer with a plain JSON body.
    """
    session = sessions.validate_session(request.cookies.get(sessions.cookie_name))
    if session.is_valid:
        log_audit(db, EVENT_LOGOUT, user_id=session.user.id, ip=get_client_ip(request), outcome=OUTCOME_SUCCESS)

    if id_token_hint:
        client_id = _client_from_id_token_hint(id_token_hint.strip(), keys, request.app.state.issuer) or client_id
    client = clients.lookup(client_id) if client_id else None

    response = None
    if post_logout_redirect_uri:
        if client is None or not clients.is_post_logout_redirect_allowed(client, post_logout_redirect_uri):
            response = JSONResponse(
                {"error": "invalid_request", "error_description": "post_logout_redirect_uri not allowed"},
                status_code=400,
            )
        else:
            url = post_logout_redirect_uri
            if state:
                url = f"{url}{'&' if '?' in url else '?'}{urlencode({'state': state})}"
            response = RedirectResponse(url=url, status_code=302)
    if response is None:
        response = JSONResponse({"status": "logged_out"})
    sessions.clear_cookie(response)
    return response
