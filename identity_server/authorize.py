"""
Authorization endpoint (GET /authorize).
Validates the request against client/scope policy, then either sends the browser to the
login page (no valid session) or issues a code and redirects back to the client.
"""
import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.orm import Session

from identity_server.audit import EVENT_CODE_ISSUED, OUTCOME_SUCCESS, get_client_ip, log_audit
from identity_server.config import LOGIN_URL
from identity_server.database import get_db
from identity_server.dependencies import get_session_manager, get_token_issuer
from identity_server.errors import ClientPolicyError
from identity_server.sessions import SessionManager
from identity_server.tokens import NON_REDIRECTABLE_ERRORS, AuthorizationRequest, TokenIssuer

logger = logging.getLogger(__name__)
router = APIRouter()


def _redirect_error(redirect_uri: str, error: str, error_description: str, state: str | None) -> RedirectResponse:
    params = {"error": error, "error_description": error_description}
    if state:
        params["state"] = state
    return RedirectResponse(url=f"{redirect_uri}?{urlencode(params)}", status_code=302)


def _login_redirect(request: Request) -> RedirectResponse:
    return_url = request.url.path
    if request.url.query:
        return_url = f"{return_url}?{request.url.query}"
    return RedirectResponse(url=f"{LOGIN_URL}?{urlencode({'returnUrl': return_url})}", status_code=302)


@router.get("/authorize")
def authorize(
    request: Request,
    response_type: str | None = None,
    client_id: str | None = None,
    redirect_uri: str | None = None,
    scope: str | None = None,
    state: str | None = None,
    code_challenge: str | None = None,
    code_challenge_method: str | None = None,
    nonce: str | None = None,
    issuer: TokenIssuer = Depends(get_token_issuer),
    sessions: SessionManager = Depends(get_session_manager),
    db: Session = Depends(get_db),
):
    """
    OAuth2 authorization endpoint. Unknown/disabled client or unregistered redirect_uri
    get a 400 here (never a redirect); other policy errors are redirected to the client.
    """
    auth_request = AuthorizationRequest(
        client_id=client_id,
        redirect_uri=redirect_uri,
        response_type=response_type,
        scope=scope,
        state=state,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
        nonce=nonce,
    )
    try:
        validated = issuer.validate_authorization_request(auth_request)
    except ClientPolicyError as e:
        logger.warning("Authorization request rejected: client_id=%s error=%s (%s)", client_id, e.error, e.description)
        if e.error in NON_REDIRECTABLE_ERRORS:
            return JSONResponse(e.to_dict(), status_code=400)
        return _redirect_error(redirect_uri, e.error, e.description, state)

    session = sessions.validate_session(request.cookies.get(sessions.cookie_name))
    if not session.is_valid:
        logger.debug("No valid session (%s); redirecting to login", session.status.value)
        return _login_redirect(request)

    auth_code = issuer.issue_code(validated, session.user, session.auth_time)
    log_audit(
        db,
        EVENT_CODE_ISSUED,
        client_id=validated.client.client_id,
        user_id=session.user.id,
        ip=get_client_ip(request),
        outcome=OUTCOME_SUCCESS,
    )
    params = {"code": auth_code.code}
    if state:
        params["state"] = state
    response = RedirectResponse(url=f"{redirect_uri}?{urlencode(params)}", status_code=302)
    if session.renewed is not None:
        sessions.set_cookie(response, session.renewed)
    return response
