# dpop_guard/classifier.py
#
# -----------------------------------------------------------------------------
# Behavioral anti-automation scoring
# -----------------------------------------------------------------------------
# Two independent judgements per request:
#
#   1. Stateless: does THIS request look scripted? (UA substrings, missing
#      content-negotiation headers, wildcard or blank accept, deep link
#      without a referer, optionally a strict browser header shape)
#   2. Stateful: does this CLIENT's recent history look scripted? A sliding
#      window per client identity produces a suspicion score 0..100.
#
# A client is a bot if (1) fires or its window is in the flagged state.
#
# Window state machine:
#
#   unknown --first request--> tracked --score >= threshold--> flagged
#
# flagged is sticky: the only way back is to go idle past the retention
# horizon so the window empties and is evicted (or reset on next request).
#
# All tunables live in BotPolicy so tests and deployments can swap them
# without touching the decision logic.
# -----------------------------------------------------------------------------

import hashlib
import re
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Callable, Deque, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field

from .logger import get_logger

log = get_logger(__name__)

DEFAULT_BOT_USER_AGENTS = [
    r"bot|crawler|spider|scraper",
    r"curl|wget|python|java|go-http",
    r"headless|phantom|selenium|webdriver",
    r"postman|insomnia|httpie",
]

_TRAILING_INT = re.compile(r"^(.*?)(\d+)$")


class BotPolicy(BaseModel):
    """Heuristic weights and thresholds for RequestClassifier."""

    retention_seconds: float = 600.0
    flag_threshold: int = 70

    # volume
    volume_high: int = 50
    volume_high_score: int = 30
    volume_medium: int = 20
    volume_medium_score: int = 15

    # timing uniformity (seconds)
    timing_min_requests: int = 6
    timing_sample_size: int = 20
    timing_variance_max: float = 0.001
    timing_mean_max: float = 5.0
    timing_score: int = 25

    # path diversity
    diversity_min_requests: int = 10
    diversity_high: float = 0.8
    diversity_high_score: int = 20
    diversity_low: float = 0.1
    diversity_low_score: int = 15

    sequential_score: int = 20

    ua_churn_limit: int = 3
    ua_churn_score: int = 15

    # throttling
    rate_window_seconds: float = 60.0
    rate_limit: int = 30

    # stateless predicate
    bot_user_agents: List[str] = Field(default_factory=lambda: list(DEFAULT_BOT_USER_AGENTS))
    essential_headers: List[str] = Field(default_factory=lambda: ["accept", "accept-language", "accept-encoding"])
    max_missing_headers: int = 1
    api_prefix: str = "/api/"
    # absent or blank accept header counts like a wildcard
    blank_accept_is_bot: bool = True
    # strict browser header shape: text/html accept on pages, gzip, a
    # language on pages, a Mozilla UA of some length
    require_browser_headers: bool = False
    min_user_agent_length: int = 20


DEFAULT_POLICY = BotPolicy()


class ClientState(str, Enum):
    UNKNOWN = "unknown"
    TRACKED = "tracked"
    FLAGGED = "flagged"


@dataclass
class RequestEntry:
    timestamp: float
    path: str
    method: str
    user_agent: str


@dataclass
class Classification:
    client_id: str
    state: ClientState
    score: int
    request_count: int
    signals: Dict[str, int] = field(default_factory=dict)
    stateless_bot: bool = False
    bot_reasons: List[str] = field(default_factory=list)
    rate_exceeded: bool = False

    @property
    def bot(self) -> bool:
        return self.stateless_bot or self.state == ClientState.FLAGGED


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _lower_headers(headers: Optional[Mapping[str, str]]) -> Dict[str, str]:
    if not headers:
        return {}
    return {str(k).lower(): v for k, v in headers.items()}


@lru_cache(maxsize=32)
def _compile(patterns: Tuple[str, ...]) -> Tuple["re.Pattern[str]", ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


def derive_client_id(remote_addr: Optional[str], headers: Optional[Mapping[str, str]]) -> str:
    """Stable per-client identity from network address and header fingerprint."""
    h = _lower_headers(headers)
    factors = "|".join([
        h.get("user-agent", ""),
        h.get("accept-language", ""),
        h.get("accept-encoding", ""),
        remote_addr or "",
    ])
    return hashlib.sha256(factors.encode("utf-8")).hexdigest()[:16]


def is_bot_request(
    method: str,
    path: str,
    headers: Optional[Mapping[str, str]],
    policy: BotPolicy = DEFAULT_POLICY,
) -> List[str]:
    """
    Stateless predicate over a single request.

    Returns the reasons it fired; empty list means "looks like a browser".
    """
    h = _lower_headers(headers)
    reasons: List[str] = []

    ua = h.get("user-agent", "")
    if any(p.search(ua) for p in _compile(tuple(policy.bot_user_agents))):
        reasons.append("automation_user_agent")

    missing = [name for name in policy.essential_headers if not h.get(name)]
    if len(missing) > policy.max_missing_headers:
        reasons.append("missing_headers")

    accept = (h.get("accept") or "").strip()
    if accept == "*/*":
        reasons.append("wildcard_accept")
    elif not accept and policy.blank_accept_is_bot:
        reasons.append("blank_accept")

    if not h.get("referer") and path != "/" and not path.startswith(policy.api_prefix):
        reasons.append("no_referer_deep_link")

    if policy.require_browser_headers and not has_browser_headers(path, h, policy):
        reasons.append("invalid_headers")

    return reasons


def has_browser_headers(path: str, headers: Mapping[str, str], policy: BotPolicy = DEFAULT_POLICY) -> bool:
    """Header shape every mainstream browser sends; headers are lower-cased."""
    page = not path.startswith(policy.api_prefix)
    ua = headers.get("user-agent", "")

    if page and "text/html" not in headers.get("accept", ""):
        return False
    if "gzip" not in headers.get("accept-encoding", ""):
        return False
    if page and not headers.get("accept-language"):
        return False
    return len(ua) >= policy.min_user_agent_length and "Mozilla" in ua


def has_sequential_paths(paths) -> bool:
    """True if some ".../n" path has a ".../n±1" sibling among paths."""
    seen = set(paths)
    for path in seen:
        m = _TRAILING_INT.match(path)
        if not m:
            continue
        prefix, digits = m.group(1), m.group(2)
        num, width = int(digits), len(digits)
        # zero padding is kept: /items/007 -> /items/008
        if f"{prefix}{num + 1:0{width}d}" in seen:
            return True
        if num > 0 and f"{prefix}{num - 1:0{width}d}" in seen:
            return True
    return False


# -----------------------------------------------------------------------------
# Window
# -----------------------------------------------------------------------------
class ClientWindow:
    def __init__(self, client_id: str):
        self.client_id = client_id
        self.entries: Deque[RequestEntry] = deque()
        self.path_counts: Counter = Counter()
        self.ua_counts: Counter = Counter()
        self.score = 0
        self.signals: Dict[str, int] = {}
        self.state = ClientState.UNKNOWN
        self.evicted = False
        self.lock = threading.Lock()

    def __len__(self) -> int:
        return len(self.entries)

    def append(self, entry: RequestEntry) -> None:
        self.entries.append(entry)
        self.path_counts[entry.path] += 1
        self.ua_counts[entry.user_agent] += 1

    def trim(self, now: float, horizon: float) -> int:
        removed = 0
        while self.entries and now - self.entries[0].timestamp >= horizon:
            old = self.entries.popleft()
            for counts, key in ((self.path_counts, old.path), (self.ua_counts, old.user_agent)):
                counts[key] -= 1
                if counts[key] <= 0:
                    del counts[key]
            removed += 1
        return removed

    def reset(self) -> None:
        self.entries.clear()
        self.path_counts.clear()
        self.ua_counts.clear()
        self.score = 0
        self.signals = {}
        self.state = ClientState.UNKNOWN


def score_window(window: ClientWindow, policy: BotPolicy) -> Tuple[int, Dict[str, int]]:
    """Sum of independently capped signals, clamped to [0, 100]."""
    signals: Dict[str, int] = {}
    entries = window.entries
    total = len(entries)
    if total == 0:
        return 0, signals

    if total > policy.volume_high:
        signals["volume"] = policy.volume_high_score
    elif total > policy.volume_medium:
        signals["volume"] = policy.volume_medium_score

    if total >= policy.timing_min_requests:
        sample = list(entries)[-max(policy.timing_sample_size, policy.timing_min_requests):]
        intervals = [b.timestamp - a.timestamp for a, b in zip(sample, sample[1:])]
        mean = sum(intervals) / len(intervals)
        variance = sum((i - mean) ** 2 for i in intervals) / len(intervals)
        if variance < policy.timing_variance_max and mean < policy.timing_mean_max:
            signals["timing_uniformity"] = policy.timing_score

    if total > policy.diversity_min_requests:
        diversity = len(window.path_counts) / total
        if diversity > policy.diversity_high:
            signals["path_breadth"] = policy.diversity_high_score
        elif diversity < policy.diversity_low:
            signals["path_hammering"] = policy.diversity_low_score

    if has_sequential_paths(window.path_counts):
        signals["sequential_paths"] = policy.sequential_score

    if len(window.ua_counts) > policy.ua_churn_limit:
        signals["user_agent_churn"] = policy.ua_churn_score

    return min(100, max(0, sum(signals.values()))), signals


# -----------------------------------------------------------------------------
# Classifier
# -----------------------------------------------------------------------------
class RequestClassifier:
    """
    Shared, synchronized store of per-client windows.

    The store lock only guards the client map; each window has its own lock
    so a busy client never stalls the others.
    """

    def __init__(self, policy: Optional[BotPolicy] = None, clock: Callable[[], float] = time.time):
        self.policy = policy or BotPolicy()
        self._clock = clock
        self._windows: Dict[str, ClientWindow] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def _window(self, client_id: str) -> ClientWindow:
        with self._lock:
            window = self._windows.get(client_id)
            if window is None:
                window = ClientWindow(client_id)
                self._windows[client_id] = window
            return window

    def observe(
        self,
        client_id: str,
        method: str,
        path: str,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Classification:
        policy = self.policy
        h = _lower_headers(headers)
        reasons = is_bot_request(method, path, h, policy)
        entry = RequestEntry(
            timestamp=self._clock(),
            path=path,
            method=method.upper(),
            user_agent=h.get("user-agent", ""),
        )

        while True:
            window = self._window(client_id)
            with window.lock:
                if window.evicted:
                    # lost a race with sweep(); pick up the replacement
                    continue

                now = entry.timestamp
                window.trim(now, policy.retention_seconds)
                if not window.entries and window.state != ClientState.UNKNOWN:
                    # idle past the horizon: start over
                    window.reset()

                window.append(entry)
                if window.state == ClientState.UNKNOWN:
                    window.state = ClientState.TRACKED

                window.score, window.signals = score_window(window, policy)
                if window.state == ClientState.TRACKED and window.score >= policy.flag_threshold:
                    window.state = ClientState.FLAGGED
                    log.warning(
                        "Client %s flagged (score=%d signals=%s)",
                        client_id, window.score, sorted(window.signals),
                    )

                recent = sum(1 for e in window.entries if now - e.timestamp < policy.rate_window_seconds)

                return Classification(
                    client_id=client_id,
                    state=window.state,
                    score=window.score,
                    request_count=len(window.entries),
                    signals=dict(window.signals),
                    stateless_bot=bool(reasons),
                    bot_reasons=reasons,
                    rate_exceeded=recent > policy.rate_limit,
                )

    def state_of(self, client_id: str) -> ClientState:
        with self._lock:
            window = self._windows.get(client_id)
        if window is None:
            return ClientState.UNKNOWN
        with window.lock:
            return window.state

    def snapshot(self, client_id: str) -> Optional[dict]:
        with self._lock:
            window = self._windows.get(client_id)
        if window is None:
            return None
        with window.lock:
            return {
                "client_id": client_id,
                "state": window.state,
                "score": window.score,
                "signals": dict(window.signals),
                "request_count": len(window.entries),
                "distinct_paths": len(window.path_counts),
                "distinct_user_agents": len(window.ua_counts),
            }

    def sweep(self, now: Optional[float] = None) -> int:
        """
        Trim every window and evict the empty ones.

        Locks are taken per client, never across the whole map.
        """
        now = self._clock() if now is None else now
        with self._lock:
            windows = list(self._windows.items())

        evicted = 0
        for client_id, window in windows:
            with window.lock:
                window.trim(now, self.policy.retention_seconds)
                if window.entries:
                    continue
                with self._lock:
                    if self._windows.get(client_id) is window:
                        del self._windows[client_id]
                        window.evicted = True
                        evicted += 1

        if evicted:
            log.debug("Classifier swept %d idle client windows", evicted)
        return evicted
