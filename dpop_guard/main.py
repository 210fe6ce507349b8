# dpop_guard/main.py
#
# -----------------------------------------------------------------------------
# Architectural notes (high level)
# -----------------------------------------------------------------------------
# This file is intentionally "thin" orchestration glue:
#   - It wires HTTP endpoints to the engine in orchestrator.py.
#   - It MUST NOT implement crypto or scoring itself.
#   - All shared state hangs off app.state.orchestrator, built once per app.
#
# Key modules / responsibilities:
#   - config.py       : environment-driven settings and policy switches
#   - keys.py         : JWK validation + key thumbprint (cnf.jkt)
#   - proof.py        : DPoP proof verification (pure)
#   - replay.py       : jti replay cache
#   - fingerprint.py  : soft device binding
#   - classifier.py   : behavioral bot scoring
#   - tokens.py       : Ed25519 access tokens (issuer collaborator)
#   - storage.py      : device-key store collaborator
#   - audit.py        : append-only, hash-chained request audit log
#
# Status codes: 401 authentication failure, 403 bot/blocked device,
# 429 throttled. Response bodies carry the reason kind and a generic
# message, never verifier internals.
#
# WARNING (DEPLOYMENT):
# - The replay cache and client windows are per-process. With several
#   workers a proof can be replayed once per worker; put a shared store
#   behind ReplayCache before scaling out.
# -----------------------------------------------------------------------------

from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .config import Settings, settings as default_settings
from .errors import AuthError
from .keys import validate_jwk
from .logger import get_logger, setup_logging
from .models import EnrollRequest, EnrollResponse, Verdict
from .orchestrator import AuthRequest, AuthenticationOrchestrator, Housekeeper

log = get_logger(__name__)

# paths never screened by the anti-scraping middleware
UNSCREENED_PATHS = ("/healthz",)

_GENERIC_ERRORS = {
    401: ("not_authenticated", "Authentication failed."),
    403: ("forbidden", "Access denied."),
    429: ("too_many_requests", "Please slow down your requests."),
}


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _full_url(request: Request, trust_forwarded: bool) -> str:
    url = request.url
    proto = request.headers.get("x-forwarded-proto")
    if trust_forwarded and proto in ("http", "https"):
        url = url.replace(scheme=proto)
    return str(url)


def _auth_request(request: Request) -> AuthRequest:
    cfg: Settings = request.app.state.settings
    return AuthRequest.build(
        method=request.method,
        url=_full_url(request, cfg.TRUST_FORWARDED_PROTO),
        path=request.url.path,
        headers=request.headers,
        client_ip=(request.client.host if request.client else None),
    )


def _error_body(verdict: Verdict) -> dict:
    error, message = _GENERIC_ERRORS.get(verdict.status_code, _GENERIC_ERRORS[401])
    return {"error": error, "reason": verdict.reason.value, "message": message}


def _error_headers(verdict: Verdict) -> Optional[dict]:
    if verdict.status_code == 429:
        return {"Retry-After": "60"}
    return None


# -----------------------------------------------------------------------------
# Dependencies
# -----------------------------------------------------------------------------
async def require_device_auth(request: Request) -> Verdict:
    orchestrator: AuthenticationOrchestrator = request.app.state.orchestrator
    verdict = await orchestrator.authenticate(_auth_request(request))

    if not verdict.accepted:
        raise HTTPException(
            status_code=verdict.status_code,
            detail=_error_body(verdict),
            headers=_error_headers(verdict),
        )

    request.state.verdict = verdict
    return verdict


# -----------------------------------------------------------------------------
# Application factory
# -----------------------------------------------------------------------------
def create_app(
    settings: Optional[Settings] = None,
    orchestrator: Optional[AuthenticationOrchestrator] = None,
) -> FastAPI:
    cfg = settings or default_settings
    orch = orchestrator or AuthenticationOrchestrator.from_settings(cfg)
    housekeeper = Housekeeper(orch, cfg.HOUSEKEEPING_INTERVAL_SECONDS)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        housekeeper.start()
        try:
            yield
        finally:
            await housekeeper.stop()

    app = FastAPI(title="dpop-guard", version="0.1.0", lifespan=lifespan)
    app.state.settings = cfg
    app.state.orchestrator = orch
    app.state.housekeeper = housekeeper

    def _require_enrollment():
        # 404 (not 403): a disabled surface should look absent to scanners
        if not cfg.ENABLE_ENROLLMENT:
            raise HTTPException(404, "enrollment disabled")

    # -------------------------------------------------------------------------
    # Anti-scraping screen for unauthenticated traffic
    # -------------------------------------------------------------------------
    @app.middleware("http")
    async def screen_unauthenticated(request: Request, call_next):
        path = request.url.path
        if path in UNSCREENED_PATHS:
            return await call_next(request)
        # authenticated API calls are classified by require_device_auth instead
        if path.startswith(orch.classifier.policy.api_prefix) and request.headers.get("authorization"):
            return await call_next(request)

        verdict = await orch.screen(_auth_request(request))
        if not verdict.accepted:
            return JSONResponse(
                status_code=verdict.status_code,
                content=_error_body(verdict),
                headers=_error_headers(verdict),
            )
        return await call_next(request)

    # -------------------------------------------------------------------------
    # Routes
    # -------------------------------------------------------------------------
    @app.get("/healthz")
    def healthz():
        return {
            "ok": True,
            "replay_cache_entries": len(orch.replay_cache),
            "tracked_clients": len(orch.classifier),
        }

    @app.post("/api/v1/device-keys", response_model=EnrollResponse, status_code=201)
    def enroll_device_key(body: EnrollRequest):
        """
        Dev-only enrollment: bind a device key to a user and issue a token.

        Account registration and login live outside this service; in
        production the login flow calls store.add() + tokens.issue().
        """
        _require_enrollment()

        if not validate_jwk(body.public_jwk):
            raise HTTPException(400, {"error": "bad_request", "message": "invalid public key format"})

        try:
            record = orch.store.add(body.user_id, body.public_jwk, fingerprint=body.fingerprint)
        except AuthError as e:
            raise HTTPException(400, {"error": "bad_request", "reason": e.kind.value, "message": "invalid public key"})

        token = orch.tokens.issue(record.user_id, record.thumbprint, record.key_id)
        log.info("Enrolled device key %s for user %s", record.key_id, record.user_id)

        return EnrollResponse(
            access_token=token,
            expires_in=orch.tokens.ttl_seconds,
            device_key_id=record.key_id,
            thumbprint=record.thumbprint,
        )

    @app.get("/api/v1/me")
    def me(verdict: Verdict = Depends(require_device_auth)):
        return {
            "user_id": verdict.user_id,
            "device_key_id": verdict.device_key_id,
            "fingerprint_mismatch": verdict.fingerprint_mismatch,
            "suspicious": verdict.suspicious.model_dump(include={"flag", "score"}),
        }

    @app.get("/api/v1/device-keys")
    def list_device_keys(verdict: Verdict = Depends(require_device_auth)):
        keys = orch.store.list_for_user(verdict.user_id)
        return {"keys": [k.public_view() for k in keys]}

    @app.delete("/api/v1/device-keys/{key_id}")
    async def revoke_device_key(key_id: str, verdict: Verdict = Depends(require_device_auth)):
        record = await orch.store.get(key_id)
        if record is None or record.user_id != verdict.user_id:
            raise HTTPException(404, "device key not found")

        orch.store.deactivate(key_id)
        log.info("Revoked device key %s for user %s", key_id, verdict.user_id)
        return {"ok": True, "key_id": key_id, "active": False}

    return app


setup_logging(default_settings.LOG_LEVEL)
app = create_app()


def run() -> None:
    """Console entry point: serve the module-level app with uvicorn."""
    uvicorn.run(app, host=default_settings.HOST, port=default_settings.PORT, log_config=None)


if __name__ == "__main__":
    run()
