# dpop_guard/tokens.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# Bearer token layer. This stands in for the token issuance collaborator:
# the engine only ever reads claims that TokenIssuer.verify() has already
# checked (signature, typ, iss, aud, exp).
#
# Security model:
#   - Server holds ONE Ed25519 keypair (infrastructure key)
#   - Access tokens are self-contained, short-lived and bound to a device
#     key via cnf.jkt (the key thumbprint) and device_key_id
#   - The device key itself is never known to this module
#
# Token wire format (JWT-like but simpler):
#
#     v1.<payload_b64url>.<signature_b64url>
#
# Where:
#   - payload is canonical JSON (sorted keys, no whitespace)
#   - signature = Ed25519.sign(payload_bytes)
#
# No header means no alg confusion; the version prefix is the only
# negotiable part and unknown prefixes are rejected.
# -----------------------------------------------------------------------------

import base64
import json
import time
from typing import Callable, Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from .errors import AuthError, ErrorKind
from .logger import get_logger

log = get_logger(__name__)

TOKEN_VERSION = "v1"
ACCESS_TYP = "access"


# -----------------------------------------------------------------------------
# Base64 / JSON helpers
# -----------------------------------------------------------------------------
def b64url_encode(b: bytes) -> str:
    """URL-safe Base64 WITHOUT padding."""
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def b64url_decode(s: str) -> bytes:
    """
    Decode URL-safe Base64 with optional missing padding.

    Rejects characters outside the urlsafe alphabet instead of silently
    discarding them.
    """
    s = str(s).strip()
    s += "=" * (-len(s) % 4)
    return base64.b64decode(s.encode("ascii"), altchars=b"-_", validate=True)


def canonical_json_bytes(obj: dict) -> bytes:
    """Deterministic JSON: sorted keys, no whitespace, UTF-8."""
    return json.dumps(
        obj,
        separators=(",", ":"),
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")


# -----------------------------------------------------------------------------
# Key loading
# -----------------------------------------------------------------------------
def load_ed25519_private_key_from_b64(sk_b64: str) -> Ed25519PrivateKey:
    """
    Load a raw Ed25519 private key from Base64.

    The key MUST be exactly 32 bytes (raw Ed25519 seed): no PEM, no
    headers, env var friendly.
    """
    raw = base64.b64decode(sk_b64.strip(), validate=True)
    if len(raw) != 32:
        raise ValueError("Ed25519 raw private key must be 32 bytes (base64 of 32 bytes)")
    return Ed25519PrivateKey.from_private_bytes(raw)


# -----------------------------------------------------------------------------
# Wire format
# -----------------------------------------------------------------------------
def encode_token(payload_bytes: bytes, sig: bytes) -> str:
    return TOKEN_VERSION + "." + b64url_encode(payload_bytes) + "." + b64url_encode(sig)


def decode_token(token: str) -> Tuple[bytes, bytes]:
    """Format validation only; cryptographic verification happens separately."""
    parts = str(token).split(".")
    if len(parts) != 3 or parts[0] != TOKEN_VERSION:
        raise ValueError("bad token format")

    payload_bytes = b64url_decode(parts[1])
    sig = b64url_decode(parts[2])
    return payload_bytes, sig


def sign_token(sk: Ed25519PrivateKey, payload_obj: dict) -> str:
    payload_bytes = canonical_json_bytes(payload_obj)
    return encode_token(payload_bytes, sk.sign(payload_bytes))


def verify_token(pk: Ed25519PublicKey, token: str) -> dict:
    """
    Verify signature and return the decoded payload.

    Raises ValueError / InvalidSignature. Does NOT enforce claims.
    """
    payload_bytes, sig = decode_token(token)
    pk.verify(sig, payload_bytes)
    obj = json.loads(payload_bytes.decode("utf-8"))
    if not isinstance(obj, dict):
        raise ValueError("token payload must be an object")
    return obj


# -----------------------------------------------------------------------------
# Issuer
# -----------------------------------------------------------------------------
class TokenIssuer:
    """
    Issues and verifies device-bound access tokens.

    issue()  -> signed token carrying sub, cnf.jkt and device_key_id
    verify() -> claims dict, or AuthError(InvalidToken)
    """

    def __init__(
        self,
        private_key: Ed25519PrivateKey,
        issuer: str,
        audience: str,
        ttl_seconds: int = 900,
        clock: Callable[[], float] = time.time,
    ):
        self._sk = private_key
        self._pk = private_key.public_key()
        self.issuer = issuer
        self.audience = audience
        self.ttl_seconds = int(ttl_seconds)
        self._clock = clock

    @classmethod
    def from_settings(cls, settings, clock: Callable[[], float] = time.time) -> "TokenIssuer":
        if settings.SERVER_ED25519_SK_B64:
            sk = load_ed25519_private_key_from_b64(settings.SERVER_ED25519_SK_B64)
        else:
            log.warning("SERVER_ED25519_SK_B64 not set; using an ephemeral signing key")
            sk = Ed25519PrivateKey.generate()
        return cls(
            sk,
            issuer=settings.TOKEN_ISSUER,
            audience=settings.TOKEN_AUDIENCE,
            ttl_seconds=settings.ACCESS_TOKEN_TTL_SECONDS,
            clock=clock,
        )

    def issue(self, subject: str, thumbprint: str, device_key_id: str, ttl_seconds: Optional[int] = None) -> str:
        now = int(self._clock())
        payload = {
            "v": 1,
            "typ": ACCESS_TYP,
            "iss": self.issuer,
            "aud": self.audience,
            "sub": str(subject),
            "cnf": {"jkt": thumbprint},
            "device_key_id": str(device_key_id),
            "iat": now,
            "exp": now + int(ttl_seconds if ttl_seconds is not None else self.ttl_seconds),
        }
        return sign_token(self._sk, payload)

    def verify(self, token: str) -> dict:
        try:
            claims = verify_token(self._pk, token)
        except (ValueError, InvalidSignature, UnicodeDecodeError) as e:
            raise AuthError(ErrorKind.INVALID_TOKEN, f"invalid access token: {e!s}"[:120]) from e

        if claims.get("v") != 1 or claims.get("typ") != ACCESS_TYP:
            raise AuthError(ErrorKind.INVALID_TOKEN, "invalid token claims")
        if claims.get("iss") != self.issuer:
            raise AuthError(ErrorKind.INVALID_TOKEN, "issuer mismatch")
        if claims.get("aud") != self.audience:
            raise AuthError(ErrorKind.INVALID_TOKEN, "audience mismatch")

        try:
            exp = int(claims["exp"])
        except (KeyError, TypeError, ValueError):
            raise AuthError(ErrorKind.INVALID_TOKEN, "invalid token expiry")

        if self._clock() >= exp:
            raise AuthError(ErrorKind.INVALID_TOKEN, "token expired")

        if not claims.get("sub"):
            raise AuthError(ErrorKind.INVALID_TOKEN, "missing subject")

        return claims
