"""
Development seeding: provision one user from environment. No hardcoded credentials.
In deployment users are provisioned by tenant creation in the API.
Set OAUTH_SEED_USER_EMAIL + OAUTH_SEED_PASSWORD + OAUTH_SEED_TENANT_ID (optional OAUTH_SEED_DISPLAY_NAME).
"""
import logging
import os

from sqlalchemy.orm import Session

from identity_server.users import UserStore

logger = logging.getLogger(__name__)


def seed_from_env(db: Session) -> None:
    """Create the seed user if configured and not present yet."""
    email = os.environ.get("OAUTH_SEED_USER_EMAIL")
    password = os.environ.get("OAUTH_SEED_PASSWORD")
    tenant_id = os.environ.get("OAUTH_SEED_TENANT_ID")
    if not (email and password and tenant_id):
        return
    users = UserStore(db)
    if users.find_by_email(email) is not None:
        logger.debug("User already exists: %s", email)
        return
    try:
        user = users.create_user(
            email,
            password,
            tenant_id,
            display_name=os.environ.get("OAUTH_SEED_DISPLAY_NAME", ""),
        )
    except ValueError as e:
        logger.error("Seed user %s not created: %s", email, e)
        return
    logger.info("Seeded user: %s (tenant %s)", user.email, user.tenant_id)
