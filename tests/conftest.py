# tests/conftest.py
"""
Shared fixtures for the dpop_guard tests.

Everything time-dependent runs on FakeClock so windows, skew and token
expiry can be stepped deterministically.
"""

import pytest

from dpop_guard.classifier import BotPolicy
from dpop_guard.config import Settings
from dpop_guard.keys import generate_device_key
from dpop_guard.orchestrator import AuthRequest, AuthenticationOrchestrator
from dpop_guard.proof import create_proof

BASE_URL = "https://api.example.test"
START_TIME = 1_700_000_000.0

BROWSER_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

BROWSER_HEADERS = {
    "user-agent": BROWSER_UA,
    "accept": "application/json, text/plain, */*",
    "accept-language": "en-US,en;q=0.9",
    "accept-encoding": "gzip, deflate, br",
}

FINGERPRINT = {
    "ua": BROWSER_UA,
    "lang": "en-US,en",
    "tz": "Europe/Berlin",
    "scr": "1920x1080",
    "hwc": 8,
    "mem": 8,
    "platform": "Win32",
    "webgl": "ANGLE (NVIDIA GeForce RTX 3060)",
}


class FakeClock:
    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        ENVIRONMENT="test",
        AUDIT_DIR=tmp_path / "audit",
        AUDIT_ENABLED=True,
        SERVER_ED25519_SK_B64="",
    )


@pytest.fixture
def orchestrator(settings, clock):
    return AuthenticationOrchestrator.from_settings(settings, policy=BotPolicy(), clock=clock)


@pytest.fixture
def device_key():
    return generate_device_key()


@pytest.fixture
def other_device_key():
    return generate_device_key()


@pytest.fixture
def enrolled(orchestrator, device_key):
    """(record, access_token, private_key) for user "42" with a stored fingerprint."""
    sk, jwk = device_key
    record = orchestrator.store.add("42", jwk, fingerprint=FINGERPRINT)
    token = orchestrator.tokens.issue(record.user_id, record.thumbprint, record.key_id)
    return record, token, sk


def signed_request(
    token,
    private_key,
    jwk,
    clock,
    method="GET",
    path="/api/v1/me",
    query="",
    proof=None,
    headers=None,
    client_ip="203.0.113.7",
    fingerprint=None,
):
    url = BASE_URL + path + (f"?{query}" if query else "")
    if proof is None:
        proof = create_proof(private_key, jwk, method, url, issued_at=int(clock()))

    h = dict(BROWSER_HEADERS)
    h["authorization"] = f"Bearer {token}"
    h["dpop"] = proof
    if fingerprint is not None:
        h["x-fingerprint"] = fingerprint
    if headers:
        h.update(headers)

    return AuthRequest(method=method, url=url, path=path, headers=h, client_ip=client_ip)
