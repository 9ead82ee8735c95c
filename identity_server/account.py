"""
Login and logout endpoints backing the external login page (POST /account/login, /account/logout).
Verifies credentials against the user store and issues or clears the session cookie.
"""
import logging

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.orm import Session

from identity_server.audit import (
    EVENT_LOGIN_FAIL,
    EVENT_LOGIN_INACTIVE,
    EVENT_LOGIN_LOCKED_OUT,
    EVENT_LOGIN_OK,
    EVENT_LOGOUT,
    OUTCOME_FAIL,
    OUTCOME_SUCCESS,
    get_client_ip,
    log_audit,
)
from identity_server.config import RATE_LIMIT_LOGIN_PER_MINUTE
from identity_server.database import get_db
from identity_server.dependencies import get_session_manager, get_user_store
from identity_server.rate_limit import enforce_rate_limit, login_limiter
from identity_server.sessions import SessionManager
from identity_server.users import CredentialResult, UserStore

logger = logging.getLogger(__name__)
router = APIRouter()

# result -> (status, error, description, audit event)
_FAILURES = {
    CredentialResult.INVALID_CREDENTIAL: (401, "invalid_credentials", "Invalid email or password", EVENT_LOGIN_FAIL),
    CredentialResult.LOCKED_OUT: (423, "locked_out", "Account is temporarily locked", EVENT_LOGIN_LOCKED_OUT),
    CredentialResult.INACTIVE: (403, "inactive", "Account is not active", EVENT_LOGIN_INACTIVE),
}


def safe_return_url(return_url: str | None) -> str:
    """Only local paths; anything else (absolute, scheme-relative) falls back to '/'."""
    if not return_url or not return_url.startswith("/") or return_url.startswith("//") or "\\" in return_url:
        return "/"
    return return_url


@router.post("/account/login")
def login(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    return_url: str = Form("/", alias="returnUrl"),
    users: UserStore = Depends(get_user_store),
    sessions: SessionManager = Depends(get_session_manager),
    db: Session = Depends(get_db),
):
    """Credential check. On success: session cookie + 303 back to returnUrl (usually /authorize)."""
    enforce_rate_limit(request, login_limiter, RATE_LIMIT_LOGIN_PER_MINUTE)
    ip = get_client_ip(request)

    user = users.find_by_email(email)
    result = users.verify_credential(user, password) if user else CredentialResult.INVALID_CREDENTIAL
    if result is not CredentialResult.SUCCESS:
        status_code, error, description, event = _FAILURES[result]
        log_audit(db, event, user_id=user.id if user else None, ip=ip, outcome=OUTCOME_FAIL)
        return JSONResponse({"error": error, "error_description": description}, status_code=status_code)

    log_audit(db, EVENT_LOGIN_OK, user_id=user.id, ip=ip, outcome=OUTCOME_SUCCESS)
    response = RedirectResponse(url=safe_return_url(return_url), status_code=303)
    sessions.set_cookie(response, sessions.create_session(user))
    return response


@router.post("/account/logout")
def account_logout(
    request: Request,
    return_url: str = Form("/", alias="returnUrl"),
    sessions: SessionManager = Depends(get_session_manager),
    db: Session = Depends(get_db),
):
    """End the browser session from the login UI; 303 back to a local returnUrl."""
    session = sessions.validate_session(request.cookies.get(sessions.cookie_name))
    if session.is_valid:
        log_audit(db, EVENT_LOGOUT, user_id=session.user.id, ip=get_client_ip(request), outcome=OUTCOME_SUCCESS)
    response = RedirectResponse(url=safe_return_url(return_url), status_code=303)
    sessions.clear_cookie(response)
    return response
