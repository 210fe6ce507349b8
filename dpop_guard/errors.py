# dpop_guard/errors.py
#
# Every rejection produced by the engine carries one ErrorKind. Components
# raise AuthError; only the orchestrator catches it and turns it into a
# rejected verdict. Nothing here is retried.

from enum import Enum


class ErrorKind(str, Enum):
    # proof-of-possession
    MALFORMED_PROOF = "MalformedProof"
    UNSUPPORTED_PROOF = "UnsupportedProof"
    HTTP_METHOD_MISMATCH = "HttpMethodMismatch"
    URL_MISMATCH = "UrlMismatch"
    STALE_PROOF = "StaleProof"
    FUTURE_PROOF = "FutureProof"
    MISSING_IDENTIFIER = "MissingIdentifier"
    INVALID_SIGNATURE = "InvalidSignature"

    # key binding
    INVALID_KEY_FORMAT = "InvalidKeyFormat"
    KEY_BINDING_MISMATCH = "KeyBindingMismatch"
    REPLAY_DETECTED = "ReplayDetected"
    DEVICE_KEY_INACTIVE = "DeviceKeyInactive"
    DEVICE_KEY_NOT_FOUND = "DeviceKeyNotFound"

    # bearer token
    MISSING_CREDENTIALS = "MissingCredentials"
    INVALID_TOKEN = "InvalidToken"
    TOKEN_NOT_BOUND = "TokenNotBound"

    # advisory (policy-gated)
    FINGERPRINT_MISMATCH = "FingerprintMismatch"
    BOT_CLASSIFIED = "BotClassified"
    RATE_EXCEEDED = "RateExceeded"


_FORBIDDEN = {ErrorKind.BOT_CLASSIFIED, ErrorKind.FINGERPRINT_MISMATCH}
_THROTTLED = {ErrorKind.RATE_EXCEEDED}


def status_code_for(kind: ErrorKind) -> int:
    """
    HTTP status expected of callers for a rejection kind.

      429 -> volume-based throttling
      403 -> confirmed bot / blocked device
      401 -> everything else (authentication failure)
    """
    if kind in _THROTTLED:
        return 429
    if kind in _FORBIDDEN:
        return 403
    return 401


class AuthError(Exception):
    """A terminal verification failure with an identifiable kind."""

    def __init__(self, kind: ErrorKind, message: str = ""):
        self.kind = ErrorKind(kind)
        self.message = message or self.kind.value
        super().__init__(f"{self.kind.value}: {self.message}")

    @property
    def status_code(self) -> int:
        return status_code_for(self.kind)
