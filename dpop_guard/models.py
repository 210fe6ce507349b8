from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .errors import ErrorKind, status_code_for


class Suspicion(BaseModel):
    flag: bool = False
    score: int = 0
    state: str = "unknown"
    reasons: List[str] = Field(default_factory=list)
    rate_exceeded: bool = False
    # headless/automation tells in the X-Fingerprint payload; advisory only
    fingerprint_patterns: List[str] = Field(default_factory=list)


class Verdict(BaseModel):
    """One per request; handed to route handlers and the audit log."""

    accepted: bool
    reason: Optional[ErrorKind] = None
    user_id: Optional[str] = None
    jti: Optional[str] = None
    fingerprint_mismatch: bool = False
    suspicious: Suspicion = Field(default_factory=Suspicion)

    device_key_id: Optional[str] = None
    client_id: Optional[str] = None
    similarity: Optional[float] = None
    # internal detail for logs; never sent to clients
    detail: Optional[str] = Field(default=None, exclude=True)

    @property
    def status_code(self) -> int:
        if self.accepted:
            return 200
        return status_code_for(self.reason)


class EnrollRequest(BaseModel):
    user_id: str
    public_jwk: Dict[str, str]
    fingerprint: Optional[Dict[str, Any]] = None


class EnrollResponse(BaseModel):
    access_token: str
    token_type: str = "DPoP"
    expires_in: int
    device_key_id: str
    thumbprint: str
