"""
Password hashing and the provisioning password policy. bcrypt; the algorithm is an
implementation detail behind hash/verify.
"""
import bcrypt

from identity_server.config import PASSWORD_MIN_LENGTH


def validate_password_strength(password: str, min_length: int = PASSWORD_MIN_LENGTH) -> None:
    """Raise ValueError naming the first rule the password breaks. Symbols are optional."""
    password = password or ""
    if len(password) < min_length:
        raise ValueError(f"Password must be at least {min_length} characters")
    if not any(c.isdigit() for c in password):
        raise ValueError("Password must contain a digit")
    if not any(c.islower() for c in password):
        raise ValueError("Password must contain a lowercase letter")
    if not any(c.isupper() for c in password):
        raise ValueError("Password must contain an uppercase letter")


def hash_password(password: str) -> str:
    # Bcrypt has a 72-byte limit
    raw = password.encode("utf-8")
    if len(raw) > 72:
        raw = raw[:72]
    return bcrypt.hashpw(raw, bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    raw = plain.encode("utf-8")[:72]
    try:
        return bcrypt.checkpw(raw, hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False
