# dpop_guard/storage.py
import threading
import time
import uuid
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional

from .fingerprint import Fingerprint, fingerprint_hash, parse_fingerprint
from .keys import jwk_thumbprint, validate_jwk
from .errors import AuthError, ErrorKind


def new_key_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class DeviceKey:
    key_id: str
    user_id: str
    public_jwk: Dict[str, str]
    thumbprint: str
    created_at: int

    # soft binding captured at enrollment
    fingerprint_hash: Optional[str] = None
    fingerprint: Optional[Fingerprint] = None

    last_used: Optional[int] = None
    active: bool = True

    def public_view(self) -> Dict[str, Any]:
        return {
            "key_id": self.key_id,
            "thumbprint": self.thumbprint,
            "created_at": self.created_at,
            "last_used": self.last_used,
            "active": self.active,
            "has_fingerprint": self.fingerprint_hash is not None,
        }


class InMemoryDeviceKeyStore:
    """
    Device-key store collaborator.

    The async surface (get / touch_last_used) is what the orchestrator
    awaits; a database-backed store implements the same coroutines. Records
    are immutable snapshots replaced under a lock, so readers never see a
    half-updated key.

    Keys are deactivated on revocation, never deleted.
    """

    def __init__(self):
        self._keys: Dict[str, DeviceKey] = {}
        self._lock = threading.Lock()

    def add(
        self,
        user_id: str,
        public_jwk: Dict[str, str],
        fingerprint: Any = None,
        key_id: Optional[str] = None,
    ) -> DeviceKey:
        if not validate_jwk(public_jwk):
            raise AuthError(ErrorKind.INVALID_KEY_FORMAT, "expected an EC P-256 public jwk")

        fp = parse_fingerprint(fingerprint)
        record = DeviceKey(
            key_id=key_id or new_key_id(),
            user_id=str(user_id),
            public_jwk={k: public_jwk[k] for k in ("kty", "crv", "x", "y")},
            thumbprint=jwk_thumbprint(public_jwk),
            created_at=int(time.time()),
            fingerprint_hash=fingerprint_hash(fp) if fp is not None else None,
            fingerprint=fp,
        )
        with self._lock:
            if record.key_id in self._keys:
                raise ValueError(f"duplicate key id: {record.key_id}")
            self._keys[record.key_id] = record
        return record

    async def get(self, key_id: str) -> Optional[DeviceKey]:
        with self._lock:
            return self._keys.get(str(key_id))

    async def touch_last_used(self, key_id: str) -> None:
        now = int(time.time())
        with self._lock:
            record = self._keys.get(str(key_id))
            if record:
                self._keys[record.key_id] = replace(record, last_used=now)

    def deactivate(self, key_id: str) -> bool:
        with self._lock:
            record = self._keys.get(str(key_id))
            if not record or not record.active:
                return False
            self._keys[record.key_id] = replace(record, active=False)
            return True

    def list_for_user(self, user_id: str) -> List[DeviceKey]:
        with self._lock:
            return [k for k in self._keys.values() if k.user_id == str(user_id)]
