# tests/test_proof.py
"""DPoP proof verification: binding, freshness, structure."""

import json

import pytest

from dpop_guard.errors import AuthError, ErrorKind
from dpop_guard.keys import public_key_from_jwk
from dpop_guard.proof import ProofVerifier, create_proof
from dpop_guard.tokens import b64url_encode

from tests.conftest import BASE_URL, FakeClock

URL = BASE_URL + "/api/v1/posts?page=2&sort=desc"


def _kind(exc_info) -> ErrorKind:
    return exc_info.value.kind


def _forge(header: dict, claims: dict, sig: bytes = b"\x00" * 64) -> str:
    def enc(obj):
        return b64url_encode(json.dumps(obj).encode())

    return f"{enc(header)}.{enc(claims)}.{b64url_encode(sig)}"


@pytest.fixture
def verifier(clock):
    return ProofVerifier(skew_seconds=300, clock=clock)


class TestBinding:
    def test_valid_proof(self, verifier, device_key, clock):
        sk, jwk = device_key
        proof = create_proof(sk, jwk, "GET", URL, jti="abc-1", issued_at=int(clock()))

        claims = verifier.verify(proof, "GET", URL, jwk)

        assert claims.jti == "abc-1"
        assert claims.issued_at == int(clock())

    def test_accepts_cryptography_key_object(self, verifier, device_key, clock):
        sk, jwk = device_key
        proof = create_proof(sk, jwk, "POST", URL, issued_at=int(clock()))
        assert verifier.verify(proof, "POST", URL, public_key_from_jwk(jwk)).jti

    def test_method_case_insensitive(self, verifier, device_key, clock):
        sk, jwk = device_key
        proof = create_proof(sk, jwk, "post", URL, issued_at=int(clock()))
        assert verifier.verify(proof, "Post", URL, jwk)

    def test_method_mismatch(self, verifier, device_key, clock):
        sk, jwk = device_key
        proof = create_proof(sk, jwk, "GET", URL, issued_at=int(clock()))
        with pytest.raises(AuthError) as exc:
            verifier.verify(proof, "DELETE", URL, jwk)
        assert _kind(exc) == ErrorKind.HTTP_METHOD_MISMATCH

    @pytest.mark.parametrize("other_url", [
        BASE_URL + "/api/v1/posts?page=3&sort=desc",
        BASE_URL + "/api/v1/posts",
        BASE_URL.replace("https", "http") + "/api/v1/posts?page=2&sort=desc",
    ])
    def test_url_must_match_exactly(self, verifier, device_key, clock, other_url):
        sk, jwk = device_key
        proof = create_proof(sk, jwk, "GET", URL, issued_at=int(clock()))
        with pytest.raises(AuthError) as exc:
            verifier.verify(proof, "GET", other_url, jwk)
        assert _kind(exc) == ErrorKind.URL_MISMATCH

    def test_different_key_fails_signature(self, verifier, device_key, other_device_key, clock):
        sk, jwk = device_key
        _, other_jwk = other_device_key
        proof = create_proof(sk, jwk, "GET", URL, issued_at=int(clock()))
        with pytest.raises(AuthError) as exc:
            verifier.verify(proof, "GET", URL, other_jwk)
        assert _kind(exc) == ErrorKind.INVALID_SIGNATURE

    def test_tampered_claims_fail_signature(self, verifier, device_key, clock):
        sk, jwk = device_key
        proof = create_proof(sk, jwk, "GET", URL, jti="one", issued_at=int(clock()))
        header_b64, _, sig_b64 = proof.split(".")
        claims = {"htm": "GET", "htu": URL, "iat": int(clock()), "jti": "two"}
        forged = f"{header_b64}.{b64url_encode(json.dumps(claims).encode())}.{sig_b64}"

        with pytest.raises(AuthError) as exc:
            verifier.verify(forged, "GET", URL, jwk)
        assert _kind(exc) == ErrorKind.INVALID_SIGNATURE

    def test_verification_has_no_replay_memory(self, verifier, device_key, clock):
        sk, jwk = device_key
        proof = create_proof(sk, jwk, "GET", URL, issued_at=int(clock()))
        assert verifier.verify(proof, "GET", URL, jwk) == verifier.verify(proof, "GET", URL, jwk)


class TestFreshness:
    @pytest.mark.parametrize("offset", [-300, -1, 0, 1, 300])
    def test_inside_window_inclusive(self, verifier, device_key, clock, offset):
        sk, jwk = device_key
        proof = create_proof(sk, jwk, "GET", URL, issued_at=int(clock()) + offset)
        assert verifier.verify(proof, "GET", URL, jwk)

    def test_stale(self, verifier, device_key, clock):
        sk, jwk = device_key
        proof = create_proof(sk, jwk, "GET", URL, issued_at=int(clock()) - 301)
        with pytest.raises(AuthError) as exc:
            verifier.verify(proof, "GET", URL, jwk)
        assert _kind(exc) == ErrorKind.STALE_PROOF

    def test_future(self, verifier, device_key, clock):
        sk, jwk = device_key
        proof = create_proof(sk, jwk, "GET", URL, issued_at=int(clock()) + 301)
        with pytest.raises(AuthError) as exc:
            verifier.verify(proof, "GET", URL, jwk)
        assert _kind(exc) == ErrorKind.FUTURE_PROOF

    def test_proof_goes_stale_as_clock_moves(self, device_key):
        clock = FakeClock()
        verifier = ProofVerifier(300, clock=clock)
        sk, jwk = device_key
        proof = create_proof(sk, jwk, "GET", URL, issued_at=int(clock()))

        clock.advance(300)
        assert verifier.verify(proof, "GET", URL, jwk)

        clock.advance(1)
        with pytest.raises(AuthError) as exc:
            verifier.verify(proof, "GET", URL, jwk)
        assert _kind(exc) == ErrorKind.STALE_PROOF


class TestStructure:
    @pytest.mark.parametrize("proof", [
        "",
        "only-one-part",
        "a.b",
        "a.b.c.d",
        "!!!.???.***",
        None,
    ])
    def test_malformed(self, verifier, device_key, proof):
        _, jwk = device_key
        with pytest.raises(AuthError) as exc:
            verifier.verify(proof, "GET", URL, jwk)
        assert _kind(exc) == ErrorKind.MALFORMED_PROOF

    def test_claims_must_be_object(self, verifier, device_key):
        _, jwk = device_key
        enc = b64url_encode(json.dumps([1, 2]).encode())
        header = b64url_encode(json.dumps({"alg": "ES256", "typ": "dpop+jwt"}).encode())
        with pytest.raises(AuthError) as exc:
            verifier.verify(f"{header}.{enc}.{b64url_encode(b'x' * 64)}", "GET", URL, jwk)
        assert _kind(exc) == ErrorKind.MALFORMED_PROOF

    @pytest.mark.parametrize("header", [
        {"alg": "HS256", "typ": "dpop+jwt"},
        {"alg": "none", "typ": "dpop+jwt"},
        {"alg": "ES256", "typ": "JWT"},
        {"alg": "ES256"},
    ])
    def test_unsupported_header(self, verifier, device_key, clock, header):
        _, jwk = device_key
        claims = {"htm": "GET", "htu": URL, "iat": int(clock()), "jti": "x"}
        with pytest.raises(AuthError) as exc:
            verifier.verify(_forge(header, claims), "GET", URL, jwk)
        assert _kind(exc) == ErrorKind.UNSUPPORTED_PROOF

    @pytest.mark.parametrize("jti", [None, "", "   ", 12])
    def test_missing_identifier(self, verifier, device_key, clock, jti):
        _, jwk = device_key
        claims = {"htm": "GET", "htu": URL, "iat": int(clock())}
        if jti is not None:
            claims["jti"] = jti
        with pytest.raises(AuthError) as exc:
            verifier.verify(_forge({"alg": "ES256", "typ": "dpop+jwt"}, claims), "GET", URL, jwk)
        assert _kind(exc) == ErrorKind.MISSING_IDENTIFIER

    @pytest.mark.parametrize("iat", [None, "1700000000", True])
    def test_bad_iat_is_malformed(self, verifier, device_key, iat):
        _, jwk = device_key
        claims = {"htm": "GET", "htu": URL, "jti": "x"}
        if iat is not None:
            claims["iat"] = iat
        with pytest.raises(AuthError) as exc:
            verifier.verify(_forge({"alg": "ES256", "typ": "dpop+jwt"}, claims), "GET", URL, jwk)
        assert _kind(exc) == ErrorKind.MALFORMED_PROOF

    def test_short_signature(self, verifier, device_key, clock):
        _, jwk = device_key
        claims = {"htm": "GET", "htu": URL, "iat": int(clock()), "jti": "x"}
        proof = _forge({"alg": "ES256", "typ": "dpop+jwt"}, claims, sig=b"\x01" * 10)
        with pytest.raises(AuthError) as exc:
            verifier.verify(proof, "GET", URL, jwk)
        assert _kind(exc) == ErrorKind.INVALID_SIGNATURE
