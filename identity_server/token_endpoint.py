"""
Token endpoint (POST /token): authorization_code and refresh_token grants.
"""
import logging

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from identity_server.audit import (
    EVENT_TOKEN_ISSUED,
    EVENT_TOKEN_REFRESHED,
    OUTCOME_FAIL,
    OUTCOME_SUCCESS,
    get_client_ip,
    log_audit,
)
from identity_server.clients import GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN
from identity_server.config import RATE_LIMIT_TOKEN_PER_MINUTE
from identity_server.database import get_db
from identity_server.dependencies import get_token_issuer
from identity_server.errors import OAuthError, UnsupportedGrantTypeError
from identity_server.rate_limit import enforce_rate_limit, token_limiter
from identity_server.tokens import TokenIssuer

logger = logging.getLogger(__name__)
router = APIRouter()

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


@router.post("/token")
def token(
    request: Request,
    grant_type: str = Form(...),
    code: str | None = Form(None),
    redirect_uri: str | None = Form(None),
    client_id: str | None = Form(None),
    code_verifier: str | None = Form(None),
    refresh_token: str | None = Form(None),
    issuer: TokenIssuer = Depends(get_token_issuer),
    db: Session = Depends(get_db),
):
    """
    authorization_code: exchange code (+ PKCE verifier) for access_token, id_token, refresh_token.
    refresh_token: exchange a refresh token for new tokens; the presented token is rotated.
    """
    enforce_rate_limit(request, token_limiter, RATE_LIMIT_TOKEN_PER_MINUTE)
    ip = get_client_ip(request)
    try:
        if grant_type == GRANT_AUTHORIZATION_CODE:
            response = issuer.exchange_code(code, code_verifier, client_id, redirect_uri)
            event = EVENT_TOKEN_ISSUED
        elif grant_type == GRANT_REFRESH_TOKEN:
            response = issuer.refresh(refresh_token, client_id)
            event = EVENT_TOKEN_REFRESHED
        else:
            raise UnsupportedGrantTypeError(grant_type)
    except OAuthError as e:
        logger.info("Token request failed: grant_type=%s client_id=%s error=%s", grant_type, client_id, e.error)
        failed_event = EVENT_TOKEN_REFRESHED if grant_type == GRANT_REFRESH_TOKEN else EVENT_TOKEN_ISSUED
        log_audit(db, failed_event, client_id=client_id, ip=ip, outcome=OUTCOME_FAIL)
        raise

    log_audit(db, event, client_id=client_id, user_id=response.subject, ip=ip, outcome=OUTCOME_SUCCESS)
    return JSONResponse(response.to_dict(), headers=NO_STORE_HEADERS)
