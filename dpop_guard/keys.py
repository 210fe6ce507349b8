"""
dpop_guard/keys.py

Device key material: EC P-256 public keys in JWK form.

Key points:
- A device registers its public key as a JWK {kty, crv, x, y}.
- The access token binds to that key through its thumbprint (cnf.jkt):

      thumbprint = base64url( SHA-256( canonical_json({crv, kty, x, y}) ) )

  canonical_json uses the fixed member order crv, kty, x, y and no
  whitespace, so any JWK carrying the same key material yields the same
  thumbprint regardless of how the caller ordered (or padded) its fields.
- Signature verification needs a cryptography EllipticCurvePublicKey;
  public_key_from_jwk() builds one or raises InvalidKeyFormat.
"""

import hashlib
import json
from typing import Any, Dict, Mapping, Tuple

from cryptography.hazmat.primitives.asymmetric import ec

from .errors import AuthError, ErrorKind
from .tokens import b64url_decode, b64url_encode

THUMBPRINT_MEMBERS = ("crv", "kty", "x", "y")

# P-256 coordinates are 32 bytes -> 43 base64url chars without padding
P256_COORD_BYTES = 32
P256_COORD_B64_LEN = 43


# -----------------------------------------------------------------------------
# Thumbprint
# -----------------------------------------------------------------------------
def canonical_jwk_bytes(jwk: Mapping[str, Any]) -> bytes:
    """
    Canonical bytes of the key-defining JWK members.

    Raises AuthError(InvalidKeyFormat) if any member is absent or empty.
    """
    if not isinstance(jwk, Mapping):
        raise AuthError(ErrorKind.INVALID_KEY_FORMAT, "jwk must be an object")

    canonical = {}
    for member in THUMBPRINT_MEMBERS:
        value = jwk.get(member)
        if not isinstance(value, str) or not value:
            raise AuthError(ErrorKind.INVALID_KEY_FORMAT, f"jwk missing '{member}'")
        canonical[member] = value

    # dict preserves insertion order; THUMBPRINT_MEMBERS is already sorted
    return json.dumps(canonical, separators=(",", ":")).encode("utf-8")


def jwk_thumbprint(jwk: Mapping[str, Any]) -> str:
    """Stable identifier of a public key (SHA-256, base64url, no padding)."""
    return b64url_encode(hashlib.sha256(canonical_jwk_bytes(jwk)).digest())


# -----------------------------------------------------------------------------
# Validation / conversion
# -----------------------------------------------------------------------------
def validate_jwk(jwk: Any) -> bool:
    """
    Shape check for an EC P-256 public JWK.

    Does not check that the point is on the curve; public_key_from_jwk()
    does that.
    """
    if not isinstance(jwk, Mapping):
        return False

    for member in ("kty", "crv", "x", "y"):
        if not jwk.get(member):
            return False

    if jwk["kty"] != "EC" or jwk["crv"] != "P-256":
        return False

    if not isinstance(jwk["x"], str) or not isinstance(jwk["y"], str):
        return False

    return len(jwk["x"]) == P256_COORD_B64_LEN and len(jwk["y"]) == P256_COORD_B64_LEN


def public_key_from_jwk(jwk: Mapping[str, Any]) -> ec.EllipticCurvePublicKey:
    if not validate_jwk(jwk):
        raise AuthError(ErrorKind.INVALID_KEY_FORMAT, "expected an EC P-256 public jwk")

    try:
        x = b64url_decode(jwk["x"])
        y = b64url_decode(jwk["y"])
    except ValueError as e:
        raise AuthError(ErrorKind.INVALID_KEY_FORMAT, "jwk coordinates are not base64url") from e

    if len(x) != P256_COORD_BYTES or len(y) != P256_COORD_BYTES:
        raise AuthError(ErrorKind.INVALID_KEY_FORMAT, "jwk coordinates must be 32 bytes")

    numbers = ec.EllipticCurvePublicNumbers(
        int.from_bytes(x, "big"),
        int.from_bytes(y, "big"),
        ec.SECP256R1(),
    )
    try:
        return numbers.public_key()
    except ValueError as e:
        # point not on curve
        raise AuthError(ErrorKind.INVALID_KEY_FORMAT, "jwk is not a valid P-256 point") from e


def public_jwk_from_key(public_key: ec.EllipticCurvePublicKey) -> Dict[str, str]:
    numbers = public_key.public_numbers()
    return {
        "kty": "EC",
        "crv": "P-256",
        "x": b64url_encode(numbers.x.to_bytes(P256_COORD_BYTES, "big")),
        "y": b64url_encode(numbers.y.to_bytes(P256_COORD_BYTES, "big")),
    }


def generate_device_key() -> Tuple[ec.EllipticCurvePrivateKey, Dict[str, str]]:
    """
    Fresh P-256 keypair plus its public JWK.

    Client-side helper for enrollment tooling and tests; real devices keep
    the private half in non-exportable storage.
    """
    sk = ec.generate_private_key(ec.SECP256R1())
    return sk, public_jwk_from_key(sk.public_key())
