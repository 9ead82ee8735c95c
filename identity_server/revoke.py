"""
Token revocation endpoint (POST /revoke). RFC 7009.
Invalidates refresh tokens; access tokens are short-lived JWTs and are not revocable here.
"""
import logging

from fastapi import APIRouter, Depends, Form, Request
from sqlalchemy.orm import Session

from identity_server.audit import EVENT_TOKEN_REVOKED, OUTCOME_SUCCESS, get_client_ip, log_audit
from identity_server.clients import ClientRegistry
from identity_server.database import get_db
from identity_server.dependencies import get_client_registry, get_token_issuer
from identity_server.errors import invalid_client, invalid_request
from identity_server.tokens import TokenIssuer

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/revoke")
def revoke(
    request: Request,
    token: str = Form(...),
    token_type_hint: str | None = Form(None),
    client_id: str | None = Form(None),
    issuer: TokenIssuer = Depends(get_token_issuer),
    clients: ClientRegistry = Depends(get_client_registry),
    db: Session = Depends(get_db),
):
    """
    Revoke a refresh token. Always 200 for a valid request, even if the token is unknown,
    so the response does not reveal whether a token exists.
    """
    if not token.strip():
        raise invalid_request("token is required")
    if clients.lookup(client_id) is None:
        raise invalid_client()

    hint = (token_type_hint or "").strip().lower()
    if hint in ("", "refresh_token") and issuer.revoke(token.strip(), client_id):
        log_audit(db, EVENT_TOKEN_REVOKED, client_id=client_id, ip=get_client_ip(request), outcome=OUTCOME_SUCCESS)
    # access_token hint: nothing stored to revoke; still 200
    return {}
