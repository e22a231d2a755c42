"""
RSA signing keys for access and ID tokens: the current key signs, an optional previous key still verifies.
Keys are loaded from PEM files or generated and persisted; no key material in code.
"""
import base64
import hashlib
import logging
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from oidc_provider.config import SIGNING_KEY_PATH, SIGNING_KEY_PREVIOUS_PATH

logger = logging.getLogger(__name__)

_KEY_BITS = 2048

_current_key: rsa.RSAPrivateKey | None = None
_current_kid: str | None = None
_public_keys: dict[str, rsa.RSAPublicKey] = {}


def key_id(public_key: rsa.RSAPublicKey) -> str:
    """Stable kid: truncated base64url SHA-256 of the DER-encoded public key."""
    der = public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return base64.urlsafe_b64encode(hashlib.sha256(der).digest()).rstrip(b"=").decode("ascii")[:16]


def _read_private_key(path: Path) -> rsa.RSAPrivateKey:
    key = serialization.load_pem_private_key(path.read_bytes(), password=None)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ValueError(f"{path} does not hold an RSA private key")
    return key


def load_or_create_signing_key(path: str) -> rsa.RSAPrivateKey:
    """Load the RSA private key at path, or generate one and try to save it there."""
    p = Path(path)
    if p.exists():
        try:
            return _read_private_key(p)
        except (ValueError, TypeError) as e:
            logger.warning("Failed to load signing key from %s: %s; generating new key", path, e)
    key = rsa.generate_private_key(public_exponent=65537, key_size=_KEY_BITS)
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


def _ensure_keys_loaded() -> None:
    global _current_key, _current_kid
    if _current_key is not None:
        return
    key = load_or_create_signing_key(SIGNING_KEY_PATH)
    _current_kid = key_id(key.public_key())
    _public_keys[_current_kid] = key.public_key()
    _current_key = key

    if SIGNING_KEY_PREVIOUS_PATH:
        p = Path(SIGNING_KEY_PREVIOUS_PATH)
        if not p.exists():
            logger.warning("Previous signing key %s not found; skipping", SIGNING_KEY_PREVIOUS_PATH)
            return
        try:
            previous = _read_private_key(p).public_key()
        except (ValueError, TypeError) as e:
            logger.warning("Failed to load previous signing key from %s: %s", SIGNING_KEY_PREVIOUS_PATH, e)
            return
        kid = key_id(previous)
        _public_keys.setdefault(kid, previous)
        logger.info("Loaded previous signing key (kid=%s) for rotation", kid)


def get_signing_key() -> tuple[rsa.RSAPrivateKey, str]:
    """Return the current private key and its kid for signing new tokens."""
    _ensure_keys_loaded()
    return _current_key, _current_kid


def get_public_key_for_kid(kid: str | None) -> rsa.RSAPublicKey | None:
    """Public key for a kid taken from a token header, or None if unknown."""
    _ensure_keys_loaded()
    if not kid:
        return None
    return _public_keys.get(kid)


def get_jwks() -> dict:
    """JWKS with current and previous keys so tokens signed with either still verify."""
    _ensure_keys_loaded()
    keys = []
    for kid, public_key in _public_keys.items():
        jwk = RSAAlgorithm.to_jwk(public_key, as_dict=True)
        jwk.update({"kid": kid, "alg": "RS256", "use": "sig"})
        keys.append(jwk)
    return {"keys": keys}
