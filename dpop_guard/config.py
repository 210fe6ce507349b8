from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings


def _as_bool(v, default: bool) -> bool:
    # accept 0/1, "true"/"false" from env consistently
    if isinstance(v, bool):
        return v
    if isinstance(v, int):
        return bool(v)
    if isinstance(v, str):
        return v.strip().lower() not in ("0", "false", "no", "off", "")
    return default


class Settings(BaseSettings):
    # "development" | "production" | "test"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # bearer token collaborator
    TOKEN_ISSUER: str = "dpop-guard-api"
    TOKEN_AUDIENCE: str = "dpop-guard-client"
    ACCESS_TOKEN_TTL_SECONDS: int = 900

    # raw 32-byte Ed25519 seed, base64. Empty -> ephemeral key per process.
    SERVER_ED25519_SK_B64: str = ""

    # proof-of-possession
    CLOCK_SKEW_SECONDS: int = 300

    # replay cache
    REPLAY_CACHE_SIZE: int = 10000
    # "evict" (drop oldest) | "clear" (drop everything)
    REPLAY_OVERFLOW: str = "evict"

    # fingerprint binding
    FINGERPRINT_TOLERANCE: float = 0.7
    # None -> enforced only when ENVIRONMENT=production
    FINGERPRINT_ENFORCE: Optional[bool] = None

    # classifier policy gates (advisory unless enabled)
    BOT_BLOCK: bool = False
    RATE_LIMIT_BLOCK: bool = False

    HOUSEKEEPING_INTERVAL_SECONDS: int = 60

    # dev-only device enrollment endpoint
    ENABLE_ENROLLMENT: bool = False

    AUDIT_ENABLED: bool = True
    AUDIT_DIR: Path = Path(__file__).resolve().parent.parent / "audit"

    # honour X-Forwarded-Proto when rebuilding the request URL
    TRUST_FORWARDED_PROTO: bool = False

    # dpop-guard console script (uvicorn)
    HOST: str = "127.0.0.1"
    PORT: int = 8081

    class Config:
        env_file = ".env"

    @field_validator("ENVIRONMENT")
    @classmethod
    def normalize_environment(cls, v: str) -> str:
        v = (v or "").strip().lower()
        return v or "development"

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return (v or "").strip().upper() or "INFO"

    @field_validator("REPLAY_OVERFLOW")
    @classmethod
    def normalize_overflow(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if v not in ("evict", "clear"):
            raise ValueError("REPLAY_OVERFLOW must be 'evict' or 'clear'")
        return v

    @field_validator("FINGERPRINT_TOLERANCE")
    @classmethod
    def clamp_tolerance(cls, v: float) -> float:
        return min(1.0, max(0.0, float(v)))

    @field_validator("CLOCK_SKEW_SECONDS", "REPLAY_CACHE_SIZE", "ACCESS_TOKEN_TTL_SECONDS")
    @classmethod
    def require_positive(cls, v: int) -> int:
        if int(v) <= 0:
            raise ValueError("must be a positive integer")
        return int(v)

    @field_validator("BOT_BLOCK", "RATE_LIMIT_BLOCK", "ENABLE_ENROLLMENT",
                     "AUDIT_ENABLED", "TRUST_FORWARDED_PROTO", mode="before")
    @classmethod
    def normalize_flags(cls, v):
        return _as_bool(v, False)

    @field_validator("FINGERPRINT_ENFORCE", mode="before")
    @classmethod
    def normalize_enforce(cls, v):
        if v is None or (isinstance(v, str) and v.strip().lower() in ("", "auto")):
            return None
        return _as_bool(v, False)

    @property
    def fingerprint_enforced(self) -> bool:
        if self.FINGERPRINT_ENFORCE is None:
            return self.ENVIRONMENT == "production"
        return self.FINGERPRINT_ENFORCE

    @property
    def replay_ttl_seconds(self) -> int:
        # a proof older than the skew window can no longer verify
        return 2 * self.CLOCK_SKEW_SECONDS


settings = Settings()
