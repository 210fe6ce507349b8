# dpop_guard/orchestrator.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# One call per request, one Verdict out. The pipeline is strictly ordered:
#
#   credentials -> bearer claims -> device key lookup (awaited)
#     -> thumbprint binding -> proof verification -> replay check-and-set
#     -> fingerprint similarity -> behavior classification -> verdict
#
# Every verification step raises AuthError; the first one ends the
# pipeline. Fingerprint mismatch and bot classification are advisory: they
# are attached to the verdict and only reject when the deployment policy
# says so (FINGERPRINT_ENFORCE / BOT_BLOCK / RATE_LIMIT_BLOCK).
#
# An X-Fingerprint payload that fails validation scores 0 against the
# stored snapshot. Headless tells in a valid payload are only reported
# (Verdict.suspicious.fingerprint_patterns).
#
# The classifier observes every request, accepted or not, so clients
# hammering with bad credentials still build up a history.
#
# Shared state (replay cache, client windows, key store) is owned by this
# object. Build one per process; tests build one per test.
# -----------------------------------------------------------------------------

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from .audit import AuditLog, build_request_event
from .classifier import BotPolicy, Classification, RequestClassifier, derive_client_id
from .config import Settings
from .errors import AuthError, ErrorKind
from .fingerprint import (
    detect_suspicious_fingerprint,
    fingerprint_hash,
    fingerprint_payload,
    parse_fingerprint,
    similarity,
    validate_fingerprint_data,
)
from .keys import jwk_thumbprint
from .logger import get_logger
from .models import Suspicion, Verdict
from .proof import ProofVerifier
from .replay import ReplayCache
from .storage import DeviceKey, InMemoryDeviceKeyStore
from .tokens import TokenIssuer

log = get_logger(__name__)

AUTH_SCHEMES = ("bearer", "dpop")

INVALID_FINGERPRINT = "invalid_fingerprint"


@dataclass
class AuthRequest:
    method: str
    url: str
    path: str
    headers: Dict[str, str] = field(default_factory=dict)
    client_ip: Optional[str] = None

    def __post_init__(self):
        self.method = self.method.upper()
        self.headers = {str(k).lower(): v for k, v in (self.headers or {}).items()}

    @classmethod
    def build(cls, method: str, url: str, path: str, headers: Mapping[str, str], client_ip: Optional[str]):
        return cls(method=method, url=url, path=path, headers=dict(headers.items()), client_ip=client_ip)


@dataclass
class _Context:
    user_id: Optional[str] = None
    device_key_id: Optional[str] = None
    jti: Optional[str] = None
    fingerprint_mismatch: bool = False
    similarity: Optional[float] = None
    fingerprint_hash: Optional[str] = None
    fingerprint_patterns: List[str] = field(default_factory=list)


def _bearer_token(authorization: str) -> Optional[str]:
    scheme, _, token = (authorization or "").strip().partition(" ")
    if scheme.lower() not in AUTH_SCHEMES:
        return None
    return token.strip() or None


class AuthenticationOrchestrator:
    def __init__(
        self,
        *,
        tokens: TokenIssuer,
        store: InMemoryDeviceKeyStore,
        proof_verifier: ProofVerifier,
        replay_cache: ReplayCache,
        classifier: RequestClassifier,
        settings: Settings,
        audit: Optional[AuditLog] = None,
    ):
        self.tokens = tokens
        self.store = store
        self.proof_verifier = proof_verifier
        self.replay_cache = replay_cache
        self.classifier = classifier
        self.settings = settings
        self.audit = audit

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        store: Optional[InMemoryDeviceKeyStore] = None,
        policy: Optional[BotPolicy] = None,
        clock: Callable[[], float] = time.time,
    ) -> "AuthenticationOrchestrator":
        return cls(
            tokens=TokenIssuer.from_settings(settings, clock=clock),
            store=store or InMemoryDeviceKeyStore(),
            proof_verifier=ProofVerifier(settings.CLOCK_SKEW_SECONDS, clock=clock),
            replay_cache=ReplayCache(
                capacity=settings.REPLAY_CACHE_SIZE,
                ttl_seconds=settings.replay_ttl_seconds,
                overflow=settings.REPLAY_OVERFLOW,
                clock=clock,
            ),
            classifier=RequestClassifier(policy, clock=clock),
            settings=settings,
            audit=AuditLog(settings.AUDIT_DIR) if settings.AUDIT_ENABLED else None,
        )

    # -------------------------------------------------------------------------
    # Public surface
    # -------------------------------------------------------------------------
    async def authenticate(self, request: AuthRequest) -> Verdict:
        """Full device-bound authentication plus classification."""
        ctx = _Context()
        error: Optional[AuthError] = None

        try:
            await self._verify(request, ctx)
        except AuthError as e:
            error = e

        classification = self._classify(request)
        if error is None:
            error = self._policy_gate(classification)

        if error is None:
            await self.store.touch_last_used(ctx.device_key_id)

        verdict = self._verdict(ctx, classification, error)
        await self._record(request, verdict, ctx)
        return verdict

    async def screen(self, request: AuthRequest) -> Verdict:
        """Classification only, for unauthenticated traffic."""
        ctx = _Context()
        classification = self._classify(request)
        error = self._policy_gate(classification)
        verdict = self._verdict(ctx, classification, error)
        if error is not None:
            await self._record(request, verdict, ctx)
        return verdict

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------
    async def _verify(self, request: AuthRequest, ctx: _Context) -> None:
        headers = request.headers
        token = _bearer_token(headers.get("authorization", ""))
        proof = headers.get("dpop")
        if not token or not proof:
            raise AuthError(ErrorKind.MISSING_CREDENTIALS, "missing access token or DPoP proof")

        claims = self.tokens.verify(token)
        ctx.user_id = str(claims["sub"])

        cnf = claims.get("cnf")
        jkt = cnf.get("jkt") if isinstance(cnf, dict) else None
        device_key_id = claims.get("device_key_id")
        if not jkt or not device_key_id:
            raise AuthError(ErrorKind.TOKEN_NOT_BOUND, "token not bound to a device key")
        ctx.device_key_id = str(device_key_id)

        # the only awaited call before proof verification
        record = await self.store.get(ctx.device_key_id)
        if record is None or record.user_id != ctx.user_id:
            raise AuthError(ErrorKind.DEVICE_KEY_NOT_FOUND, "device key not found")
        if not record.active:
            raise AuthError(ErrorKind.DEVICE_KEY_INACTIVE, "device key revoked")

        if jwk_thumbprint(record.public_jwk) != jkt:
            raise AuthError(ErrorKind.KEY_BINDING_MISMATCH, "key thumbprint mismatch")

        proof_claims = self.proof_verifier.verify(proof, request.method, request.url, record.public_jwk)
        ctx.jti = proof_claims.jti

        if not self.replay_cache.check_and_set(proof_claims.jti, proof_claims.issued_at):
            raise AuthError(ErrorKind.REPLAY_DETECTED, "DPoP proof replay detected")

        self._check_fingerprint(record, headers.get("x-fingerprint"), ctx)

    def _check_fingerprint(self, record: DeviceKey, raw: Any, ctx: _Context) -> None:
        if raw is None:
            return

        # an invalid payload is kept as a signal and scores as no match
        current = None
        data = fingerprint_payload(raw)
        if data is None or not validate_fingerprint_data(data):
            ctx.fingerprint_patterns = [INVALID_FINGERPRINT]
            log.warning("Invalid fingerprint payload user=%s device_key=%s", ctx.user_id, ctx.device_key_id)
        else:
            found = detect_suspicious_fingerprint(data)
            if found.suspicious:
                ctx.fingerprint_patterns = found.patterns
                log.warning(
                    "Suspicious fingerprint user=%s device_key=%s patterns=%s score=%.1f",
                    ctx.user_id, ctx.device_key_id, found.patterns, found.score,
                )
            current = parse_fingerprint(data)
            if current is not None:
                ctx.fingerprint_hash = fingerprint_hash(current)

        if record.fingerprint is not None:
            score = similarity(record.fingerprint, current)
        elif record.fingerprint_hash is not None:
            # only the hash was kept: exact match or nothing
            score = 1.0 if ctx.fingerprint_hash == record.fingerprint_hash else 0.0
        else:
            return

        ctx.similarity = score
        if score >= self.settings.FINGERPRINT_TOLERANCE:
            return

        ctx.fingerprint_mismatch = True
        log.warning(
            "Fingerprint mismatch user=%s device_key=%s similarity=%.3f",
            ctx.user_id, ctx.device_key_id, score,
        )
        if self.settings.fingerprint_enforced:
            raise AuthError(ErrorKind.FINGERPRINT_MISMATCH, "device verification failed")

    def _classify(self, request: AuthRequest) -> Classification:
        client_id = derive_client_id(request.client_ip, request.headers)
        return self.classifier.observe(client_id, request.method, request.path, request.headers)

    def _policy_gate(self, classification: Classification) -> Optional[AuthError]:
        if classification.rate_exceeded and self.settings.RATE_LIMIT_BLOCK:
            return AuthError(ErrorKind.RATE_EXCEEDED, "too many requests")
        if classification.bot and self.settings.BOT_BLOCK:
            return AuthError(ErrorKind.BOT_CLASSIFIED, "automated access detected")
        return None

    def _verdict(self, ctx: _Context, classification: Classification, error: Optional[AuthError]) -> Verdict:
        return Verdict(
            accepted=error is None,
            reason=error.kind if error else None,
            user_id=ctx.user_id,
            jti=ctx.jti,
            fingerprint_mismatch=ctx.fingerprint_mismatch,
            suspicious=Suspicion(
                flag=classification.bot,
                score=classification.score,
                state=classification.state.value,
                reasons=classification.bot_reasons,
                rate_exceeded=classification.rate_exceeded,
                fingerprint_patterns=ctx.fingerprint_patterns,
            ),
            device_key_id=ctx.device_key_id,
            client_id=classification.client_id,
            similarity=ctx.similarity,
            detail=error.message if error else None,
        )

    async def _record(self, request: AuthRequest, verdict: Verdict, ctx: _Context) -> None:
        if not verdict.accepted:
            log.warning(
                "Rejected %s %s reason=%s user=%s client=%s detail=%s",
                request.method, request.path, verdict.reason.value,
                verdict.user_id, verdict.client_id, verdict.detail,
            )
        elif verdict.suspicious.flag:
            log.warning(
                "Suspicious client %s score=%d reasons=%s",
                verdict.client_id, verdict.suspicious.score, verdict.suspicious.reasons,
            )

        if self.audit is None:
            return

        event = build_request_event(
            method=request.method,
            path=request.path,
            result="accepted" if verdict.accepted else "denied",
            reason=verdict.reason.value if verdict.reason else None,
            user_id=verdict.user_id,
            device_key_id=verdict.device_key_id,
            jti=verdict.jti,
            client_id=verdict.client_id,
            request_ip=request.client_ip,
            user_agent=request.headers.get("user-agent"),
            fingerprint_hash=ctx.fingerprint_hash,
            fingerprint_mismatch=verdict.fingerprint_mismatch,
            fingerprint_patterns=ctx.fingerprint_patterns,
            score=verdict.suspicious.score,
            bot=verdict.suspicious.flag,
        )
        # fsync off the event loop
        await asyncio.to_thread(self.audit.append, event)


class Housekeeper:
    """
    Periodic trimming of client windows and expired replay entries.

    Runs beside request handling; each pass takes locks per client window
    or per replay purge, never for the whole pass.
    """

    def __init__(self, orchestrator: AuthenticationOrchestrator, interval_seconds: float = 60.0):
        self.orchestrator = orchestrator
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    def run_once(self) -> Dict[str, int]:
        return {
            "client_windows_evicted": self.orchestrator.classifier.sweep(),
            "replay_entries_purged": self.orchestrator.replay_cache.purge_expired(),
        }

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            stats = self.run_once()
            log.debug("Housekeeping pass: %s", stats)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
