"""
Tenant-scoped user store: lookup, credential verification with lockout, provisioning.

Lockout bookkeeping is done with single conditional UPDATE statements so concurrent
login attempts cannot both observe a pre-lockout state and exceed the attempt budget.
"""
import enum
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import case, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from identity_server.config import LOCKOUT_DURATION_SECONDS, LOCKOUT_MAX_FAILED_ATTEMPTS
from identity_server.errors import DuplicateEmailError
from identity_server.models import User, as_utc
from identity_server.passwords import hash_password, validate_password_strength, verify_password

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CredentialResult(enum.Enum):
    SUCCESS = "success"
    INVALID_CREDENTIAL = "invalid_credential"
    LOCKED_OUT = "locked_out"
    INACTIVE = "inactive"


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _not_locked(now: datetime):
    return or_(User.lockout_until.is_(None), User.lockout_until <= now)


class UserStore:
    def __init__(
        self,
        db: Session,
        *,
        now: Callable[[], datetime] = utc_now,
        max_failed_attempts: int = LOCKOUT_MAX_FAILED_ATTEMPTS,
        lockout_duration: timedelta = timedelta(seconds=LOCKOUT_DURATION_SECONDS),
    ):
        self.db = db
        self.now = now
        self.max_failed_attempts = max_failed_attempts
        self.lockout_duration = lockout_duration

    def find_by_email(self, email: str) -> User | None:
        normalized = normalize_email(email)
        if not normalized:
            return None
        return self.db.scalar(select(User).where(User.email == normalized))

    def find_by_id(self, user_id: str | None) -> User | None:
        if not user_id:
            return None
        return self.db.get(User, user_id)

    def is_locked_out(self, user: User) -> bool:
        lockout_until = as_utc(user.lockout_until)
        return lockout_until is not None and lockout_until > self.now()

    def verify_credential(self, user: User, password: str) -> CredentialResult:
        """
        Check a password for a user. Inactive users are rejected before any comparison;
        a locked-out user gets LOCKED_OUT without the password being checked.
        """
        self.db.refresh(user)
        if not user.is_active:
            return CredentialResult.INACTIVE
        if self.is_locked_out(user):
            return CredentialResult.LOCKED_OUT

        now = self.now()
        if verify_password(password or "", user.password_hash):
            # A lockout set while the hash was being compared wins
            result = self.db.execute(
                update(User)
                .where(User.id == user.id)
                .where(_not_locked(now))
                .values(failed_login_count=0, lockout_until=None, last_login_at=now)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
            self.db.refresh(user)
            if result.rowcount == 0:
                return CredentialResult.LOCKED_OUT
            return CredentialResult.SUCCESS

        return self._record_failure(user, now)

    def _record_failure(self, user: User, now: datetime) -> CredentialResult:
        lockout_end = now + self.lockout_duration
        reaches_threshold = User.failed_login_count + 1 >= self.max_failed_attempts
        # Applies only while not locked; when the threshold is reached the counter restarts
        # and lockout_until is set, all in one statement.
        result = self.db.execute(
            update(User)
            .where(User.id == user.id)
            .where(_not_locked(now))
            .values(
                failed_login_count=case((reaches_threshold, 0), else_=User.failed_login_count + 1),
                lockout_until=case((reaches_threshold, lockout_end), else_=None),
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(user)
        if result.rowcount == 0 or self.is_locked_out(user):
            if result.rowcount:
                logger.warning("User %s locked out until %s", user.id, user.lockout_until)
            return CredentialResult.LOCKED_OUT
        return CredentialResult.INVALID_CREDENTIAL

    def create_user(
        self,
        email: str,
        password: str,
        tenant_id: str,
        display_name: str = "",
        *,
        is_active: bool = True,
    ) -> User:
        """
        Provision a user for a tenant. Email must be unique across the store and the password
        must satisfy the policy in validate_password_strength; both raise ValueError.
        """
        validate_password_strength(password)
        normalized = normalize_email(email)
        if not normalized:
            raise ValueError("email is required")
        if self.find_by_email(normalized) is not None:
            raise DuplicateEmailError(f"User already exists: {normalized}")
        user = User(
            email=normalized,
            tenant_id=(tenant_id or "").strip(),
            display_name=display_name or "",
            password_hash=hash_password(password),
            is_active=is_active,
            created_at=self.now(),
        )
        self.db.add(user)
        try:
            self.db.commit()
        except IntegrityError as e:
            # Concurrent provisioning of the same email
            self.db.rollback()
            raise DuplicateEmailError(f"User already exists: {normalized}") from e
        self.db.refresh(user)
        logger.info("Provisioned user %s for tenant %s", user.id, user.tenant_id)
        return user

    def set_active(self, user: User, active: bool) -> None:
        """Follow tenant status: a suspended tenant deactivates its users."""
        user.is_active = active
        self.db.commit()
