# dpop_guard/replay.py
#
# Replay protection for proof identifiers (jti).
#
# Invariant: a jti is never accepted twice while it is present.
#
# Entries expire ttl seconds after the proof's issuance time (iat), and an
# entry is still live at exactly iat + ttl. A proof only verifies while
# |now - iat| <= skew, and ttl is twice the skew, so a forgotten jti can no
# longer verify. The capacity bound is a hard limit on memory:
#
#   overflow="evict" -> drop the oldest recorded jti (default)
#   overflow="clear" -> drop everything (simplest, reopens a replay window
#                       for every still-fresh proof; kept for parity)
#
# All operations hold one lock and do no I/O, so contention is bounded by
# dict operations.

import threading
import time
from collections import OrderedDict
from typing import Callable, Optional

from .logger import get_logger

log = get_logger(__name__)

OVERFLOW_MODES = ("evict", "clear")


class ReplayCache:
    def __init__(
        self,
        capacity: int = 10000,
        ttl_seconds: int = 600,
        overflow: str = "evict",
        clock: Callable[[], float] = time.time,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if overflow not in OVERFLOW_MODES:
            raise ValueError(f"overflow must be one of {OVERFLOW_MODES}")

        self.capacity = int(capacity)
        self.ttl_seconds = int(ttl_seconds)
        self.overflow = overflow
        self._clock = clock
        # jti -> expires_at, in insertion order
        self._entries: "OrderedDict[str, float]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _live_unlocked(self, jti: str, now: float) -> bool:
        exp = self._entries.get(jti)
        if exp is None:
            return False
        if now > exp:
            del self._entries[jti]
            return False
        return True

    def _insert_unlocked(self, jti: str, issued_at: Optional[float], now: float) -> None:
        base = now if issued_at is None else float(issued_at)
        self._entries[jti] = base + self.ttl_seconds
        self._entries.move_to_end(jti)

        if len(self._entries) <= self.capacity:
            return

        if self.overflow == "clear":
            log.warning("Replay cache over capacity (%d); clearing", self.capacity)
            self._entries.clear()
            # the jti that triggered the overflow must stay recorded
            self._entries[jti] = base + self.ttl_seconds
            return

        while len(self._entries) > self.capacity:
            self._entries.popitem(last=False)

    def seen(self, jti: str) -> bool:
        with self._lock:
            return self._live_unlocked(jti, self._clock())

    def record(self, jti: str, issued_at: Optional[float] = None) -> None:
        with self._lock:
            self._insert_unlocked(jti, issued_at, self._clock())

    def check_and_set(self, jti: str, issued_at: Optional[float] = None) -> bool:
        """
        Atomically record jti.

        Returns True if this call recorded it, False if it was already
        present (replay).
        """
        with self._lock:
            now = self._clock()
            if self._live_unlocked(jti, now):
                return False
            self._insert_unlocked(jti, issued_at, now)
            return True

    def purge_expired(self, now: Optional[float] = None) -> int:
        with self._lock:
            now = self._clock() if now is None else now
            dead = [k for k, exp in self._entries.items() if now > exp]
            for k in dead:
                del self._entries[k]
        if dead:
            log.debug("Replay cache purged %d expired jti", len(dead))
        return len(dead)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
