# dpop_guard/proof.py
#
# -----------------------------------------------------------------------------
# Proof-of-possession (DPoP-style) verification
# -----------------------------------------------------------------------------
# A proof is a compact JWS signed by the device key:
#
#     <header_b64url>.<claims_b64url>.<signature_b64url>
#
#   header = {"alg": "ES256", "typ": "dpop+jwt", ...}
#   claims = {"htm": METHOD, "htu": FULL_URL, "iat": epoch, "jti": unique}
#   signature = raw r||s (64 bytes) over ascii(header_b64 + "." + claims_b64)
#
# The verifier is pure: it never touches the replay cache. The orchestrator
# composes verify() with ReplayCache.check_and_set().
#
# Checks run in a fixed order so each failure maps to exactly one kind:
#   structure -> header -> htm -> htu -> iat -> jti -> signature
# -----------------------------------------------------------------------------

import json
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)

from .errors import AuthError, ErrorKind
from .keys import public_key_from_jwk
from .tokens import b64url_decode, b64url_encode

PROOF_ALG = "ES256"
PROOF_TYP = "dpop+jwt"
P256_SIG_BYTES = 64

PublicKeyLike = Union[ec.EllipticCurvePublicKey, Mapping[str, Any]]


@dataclass(frozen=True)
class ProofClaims:
    jti: str
    issued_at: int


def _decode_json_segment(segment: str, what: str) -> Dict[str, Any]:
    try:
        obj = json.loads(b64url_decode(segment).decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as e:
        raise AuthError(ErrorKind.MALFORMED_PROOF, f"proof {what} is not base64url JSON") from e
    if not isinstance(obj, dict):
        raise AuthError(ErrorKind.MALFORMED_PROOF, f"proof {what} must be an object")
    return obj


def _as_public_key(public_key: PublicKeyLike) -> ec.EllipticCurvePublicKey:
    if isinstance(public_key, ec.EllipticCurvePublicKey):
        return public_key
    return public_key_from_jwk(public_key)


class ProofVerifier:
    def __init__(self, skew_seconds: int = 300, clock: Callable[[], float] = time.time):
        self.skew_seconds = int(skew_seconds)
        self._clock = clock

    def verify(
        self,
        proof: str,
        http_method: str,
        full_url: str,
        public_key: PublicKeyLike,
    ) -> ProofClaims:
        """
        Validate a proof for one (method, url) against the caller's key.

        Returns ProofClaims(jti, issued_at) or raises AuthError.
        """
        if not isinstance(proof, str):
            raise AuthError(ErrorKind.MALFORMED_PROOF, "proof must be a string")

        parts = proof.strip().split(".")
        if len(parts) != 3 or not all(parts):
            raise AuthError(ErrorKind.MALFORMED_PROOF, "proof must have three segments")

        header_b64, claims_b64, sig_b64 = parts
        header = _decode_json_segment(header_b64, "header")
        claims = _decode_json_segment(claims_b64, "claims")

        try:
            signature = b64url_decode(sig_b64)
        except ValueError as e:
            raise AuthError(ErrorKind.MALFORMED_PROOF, "proof signature is not base64url") from e

        if header.get("alg") != PROOF_ALG or header.get("typ") != PROOF_TYP:
            raise AuthError(
                ErrorKind.UNSUPPORTED_PROOF,
                f"expected alg={PROOF_ALG} typ={PROOF_TYP}",
            )

        htm = claims.get("htm")
        if not isinstance(htm, str) or htm.upper() != str(http_method).upper():
            raise AuthError(ErrorKind.HTTP_METHOD_MISMATCH, "htm does not match request method")

        if claims.get("htu") != full_url:
            raise AuthError(ErrorKind.URL_MISMATCH, "htu does not match request url")

        iat = claims.get("iat")
        # bool is an int subclass; reject it explicitly
        if isinstance(iat, bool) or not isinstance(iat, (int, float)):
            raise AuthError(ErrorKind.MALFORMED_PROOF, "iat must be a number")
        try:
            iat = int(iat)
        except (ValueError, OverflowError) as e:
            # NaN / Infinity survive json.loads
            raise AuthError(ErrorKind.MALFORMED_PROOF, "iat must be finite") from e

        now = int(self._clock())
        if now - iat > self.skew_seconds:
            raise AuthError(ErrorKind.STALE_PROOF, "proof issued too long ago")
        if iat - now > self.skew_seconds:
            raise AuthError(ErrorKind.FUTURE_PROOF, "proof issued in the future")

        jti = claims.get("jti")
        if not isinstance(jti, str) or not jti.strip():
            raise AuthError(ErrorKind.MISSING_IDENTIFIER, "proof has no jti")

        key = _as_public_key(public_key)
        if len(signature) != P256_SIG_BYTES:
            raise AuthError(ErrorKind.INVALID_SIGNATURE, "ES256 signature must be 64 bytes")

        r = int.from_bytes(signature[:32], "big")
        s = int.from_bytes(signature[32:], "big")
        signing_input = f"{header_b64}.{claims_b64}".encode("ascii")

        try:
            key.verify(encode_dss_signature(r, s), signing_input, ec.ECDSA(hashes.SHA256()))
        except InvalidSignature as e:
            raise AuthError(ErrorKind.INVALID_SIGNATURE, "proof signature does not verify") from e

        return ProofClaims(jti=jti, issued_at=iat)


def create_proof(
    private_key: ec.EllipticCurvePrivateKey,
    public_jwk: Mapping[str, Any],
    http_method: str,
    full_url: str,
    jti: Optional[str] = None,
    issued_at: Optional[int] = None,
) -> str:
    """
    Mint a proof the way a browser client does.

    The public JWK goes into the header for interoperability; the verifier
    ignores it and uses the server-side stored key.
    """
    header = {"alg": PROOF_ALG, "typ": PROOF_TYP, "jwk": dict(public_jwk)}
    claims = {
        "htm": http_method.upper(),
        "htu": full_url,
        "iat": int(issued_at if issued_at is not None else time.time()),
        "jti": jti or secrets.token_urlsafe(16),
    }

    header_b64 = b64url_encode(json.dumps(header, separators=(",", ":")).encode("utf-8"))
    claims_b64 = b64url_encode(json.dumps(claims, separators=(",", ":")).encode("utf-8"))
    signing_input = f"{header_b64}.{claims_b64}".encode("ascii")

    der = private_key.sign(signing_input, ec.ECDSA(hashes.SHA256()))
    r, s = decode_dss_signature(der)
    raw = r.to_bytes(32, "big") + s.to_bytes(32, "big")

    return f"{header_b64}.{claims_b64}.{b64url_encode(raw)}"
