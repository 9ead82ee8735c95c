"""
RSA signing keys for JWTs: a current key for new tokens plus an optional previous key,
published in JWKS so tokens signed before a rotation still verify.
Keys are loaded from PEM files or generated and persisted; no key material in code.
"""
import base64
import logging
from functools import lru_cache
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey, generate_private_key

from identity_server.config import SIGNING_KEY_PATH, SIGNING_KEY_PREVIOUS_PATH

logger = logging.getLogger(__name__)

_KEY_BITS = 2048
KID_CURRENT = "identity-server-key"
KID_PREVIOUS = "identity-server-key-prev"


def _b64url_uint(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8, "big")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def public_key_to_jwk(public_key: RSAPublicKey, kid: str) -> dict:
    numbers = public_key.public_numbers()
    return {
        "kty": "RSA",
        "kid": kid,
        "alg": "RS256",
        "use": "sig",
        "n": _b64url_uint(numbers.n),
        "e": _b64url_uint(numbers.e),
    }


def load_or_create_private_key(path: str) -> RSAPrivateKey:
    """Load the PEM at path, or generate a key and try to save it there."""
    p = Path(path)
    if p.exists():
        try:
            return serialization.load_pem_private_key(p.read_bytes(), password=None)
        except (ValueError, TypeError) as e:
            logger.warning("Failed to load signing key from %s: %s; generating new key", path, e)
    key = generate_private_key(public_exponent=65537, key_size=_KEY_BITS)
    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    try:
        p.write_bytes(pem)
        logger.info("Generated and saved signing key to %s", path)
    except OSError as e:
        logger.warning("Could not save signing key to %s: %s", path, e)
    return key


class SigningKeys:
    def __init__(self, current: RSAPrivateKey, previous: RSAPrivateKey | None = None):
        self._keys: dict[str, RSAPrivateKey] = {KID_CURRENT: current}
        if previous is not None:
            self._keys[KID_PREVIOUS] = previous

    @classmethod
    def from_files(cls, current_path: str, previous_path: str | None = None) -> "SigningKeys":
        current = load_or_create_private_key(current_path)
        previous = None
        if previous_path:
            p = Path(previous_path)
            if p.exists():
                try:
                    previous = serialization.load_pem_private_key(p.read_bytes(), password=None)
                    logger.info("Loaded previous signing key (kid=%s) for rotation", KID_PREVIOUS)
                except (ValueError, TypeError) as e:
                    logger.warning("Failed to load previous signing key from %s: %s", previous_path, e)
        return cls(current, previous)

    @property
    def signing_key(self) -> tuple[RSAPrivateKey, str]:
        """Private key and kid for new tokens."""
        return self._keys[KID_CURRENT], KID_CURRENT

    def public_key(self, kid: str) -> RSAPublicKey | None:
        key = self._keys.get(kid)
        return key.public_key() if key is not None else None

    def jwks(self) -> dict:
        return {"keys": [public_key_to_jwk(k.public_key(), kid) for kid, k in self._keys.items()]}


@lru_cache(maxsize=1)
def get_signing_keys() -> SigningKeys:
    """Process-wide key set, loaded on first use."""
    return SigningKeys.from_files(SIGNING_KEY_PATH, SIGNING_KEY_PREVIOUS_PATH)
