"""
Audit logging. Security-relevant events only; no tokens, passwords, or full request bodies.
"""
import logging

from fastapi import Request
from sqlalchemy.orm import Session

from identity_server.models import AuditLog

logger = logging.getLogger(__name__)

EVENT_LOGIN_OK = "login_ok"
EVENT_LOGIN_FAIL = "login_fail"
EVENT_LOGIN_LOCKED_OUT = "login_locked_out"
EVENT_LOGIN_INACTIVE = "login_inactive"
EVENT_LOGOUT = "logout"
EVENT_CODE_ISSUED = "code_issued"
EVENT_CODE_REPLAY = "code_replay"
EVENT_TOKEN_ISSUED = "token_issued"
EVENT_TOKEN_REFRESHED = "token_refreshed"
EVENT_TOKEN_REVOKED = "token_revoked"

OUTCOME_SUCCESS = "success"
OUTCOME_FAIL = "fail"


def get_client_ip(request: Request | None) -> str | None:
    """Client IP if available (request.client.host). Forwarding headers are not trusted."""
    if request is None or request.client is None:
        return None
    return getattr(request.client, "host", None)


def log_audit(
    db: Session,
    event_type: str,
    *,
    client_id: str | None = None,
    user_id: str | None = None,
    ip: str | None = None,
    outcome: str = OUTCOME_SUCCESS,
) -> None:
    """Append one audit record. Never log tokens or passwords."""
    db.add(
        AuditLog(
            event_type=event_type,
            client_id=client_id,
            user_id=user_id,
            ip=ip,
            outcome=outcome,
        )
    )
    db.commit()
    logger.log(
        logging.WARNING if outcome == OUTCOME_FAIL else logging.INFO,
        "audit event=%s outcome=%s client_id=%s user_id=%s ip=%s",
        event_type,
        outcome,
        client_id,
        user_id,
        ip,
    )
