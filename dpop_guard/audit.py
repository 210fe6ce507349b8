"""
dpop_guard/audit.py

Request audit trail. Every verdict the orchestrator produces (accepted or
denied, plus screened rejections) becomes one JSONL record.

Records are chained so that the file is tamper-evident:

  head_0 = 64 zero hex digits
  head_n = SHA3-256( bytes.fromhex(head_{n-1}) || canonical_json(record) )

where record excludes its own "prev_hash"/"hash" fields. Each stored line
carries both, and the latest head is mirrored in request_audit.state so
that a truncated tail is detectable too.

Writers on the same host serialize on request_audit.lock (flock), which
keeps the chain linear across uvicorn workers.
"""

from __future__ import annotations

import hashlib
import json
import os
import time
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

# flock is POSIX only
import fcntl

from .logger import get_logger

log = get_logger(__name__)

GENESIS_HASH = "0" * 64

LOG_NAME = "request_audit.jsonl"
STATE_NAME = "request_audit.state"
LOCK_NAME = "request_audit.lock"

CHAIN_FIELDS = ("prev_hash", "hash")


def _canonical(obj: Dict[str, Any]) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _strip_chain(record: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in record.items() if k not in CHAIN_FIELDS}


def chain_hash(prev_hash: str, event: Dict[str, Any]) -> str:
    return hashlib.sha3_256(bytes.fromhex(prev_hash) + _canonical(_strip_chain(event))).hexdigest()


def is_chain_hash(value: Any) -> bool:
    if not isinstance(value, str) or len(value) != 64:
        return False
    try:
        bytes.fromhex(value)
    except ValueError:
        return False
    return True


# -----------------------------------------------------------------------------
# Records
# -----------------------------------------------------------------------------
def build_request_event(
    *,
    method: str,
    path: str,
    result: str,
    reason: Optional[str] = None,
    user_id: Optional[str] = None,
    device_key_id: Optional[str] = None,
    jti: Optional[str] = None,
    client_id: Optional[str] = None,
    request_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    fingerprint_hash: Optional[str] = None,
    fingerprint_mismatch: bool = False,
    fingerprint_patterns: Optional[List[str]] = None,
    score: Optional[int] = None,
    bot: bool = False,
) -> Dict[str, Any]:
    """
    One audit record per verdict.

    Unset optional fields are left out instead of written as null, so the
    shape of a record says which pipeline stages it reached.
    """
    record: Dict[str, Any] = {
        "ts": int(time.time()),
        "method": method,
        "path": path,
        "result": result,
    }

    optional = {
        "reason": reason,
        "user_id": user_id,
        "device_key_id": device_key_id,
        "jti": jti,
        "client_id": client_id,
        "request_ip": request_ip,
        "user_agent": user_agent[:200] if user_agent else None,
        "fingerprint_hash": fingerprint_hash,
        "fingerprint_patterns": list(fingerprint_patterns) if fingerprint_patterns else None,
    }
    record.update({k: v for k, v in optional.items() if v})

    if fingerprint_mismatch:
        record["fingerprint_mismatch"] = True
    if score is not None:
        record["score"] = score
    if bot:
        record["bot"] = True

    return record


# -----------------------------------------------------------------------------
# Reading
# -----------------------------------------------------------------------------
def iter_records(path: Path) -> Iterator[Tuple[int, Dict[str, Any]]]:
    """
    Yield (line_number, record) for every non-blank line.

    Raises ValueError naming the line when a line is not a JSON object.
    """
    path = Path(path)
    with path.open("rb") as f:
        for lineno, raw in enumerate(f, start=1):
            raw = raw.strip()
            if not raw:
                continue
            try:
                record = json.loads(raw.decode("utf-8"))
            except (ValueError, UnicodeDecodeError) as e:
                raise ValueError(f"{path}:{lineno}: invalid JSON: {e}") from e
            if not isinstance(record, dict):
                raise ValueError(f"{path}:{lineno}: record is not a JSON object")
            yield lineno, record


def find_chain_break(path: Path) -> Tuple[int, Optional[str], Optional[str]]:
    """
    Walk the chain once.

    Returns (records_checked, head, problem). problem is None for an intact
    chain; otherwise it describes the first broken line and head is the
    last good hash.
    """
    prev = GENESIS_HASH
    head: Optional[str] = None
    checked = 0

    for lineno, record in iter_records(path):
        checked += 1
        claimed_prev, claimed = record.get("prev_hash"), record.get("hash")

        if not (is_chain_hash(claimed_prev) and is_chain_hash(claimed)):
            return checked, head, f"{path}:{lineno}: missing or malformed chain fields"
        if claimed_prev != prev:
            return checked, head, f"{path}:{lineno}: prev_hash mismatch: expected {prev} got {claimed_prev}"

        expected = chain_hash(prev, record)
        if claimed != expected:
            return checked, head, f"{path}:{lineno}: hash mismatch: expected {expected} got {claimed}"

        prev = head = claimed

    return checked, head, None


def verify_log_chain(path: Path) -> bool:
    """True if the chain at path is intact (an absent log counts as intact)."""
    path = Path(path)
    if not path.exists():
        return True

    try:
        _, _, problem = find_chain_break(path)
    except ValueError as e:
        problem = str(e)

    if problem:
        log.warning("Audit chain broken: %s", problem)
        return False
    return True


# -----------------------------------------------------------------------------
# Writer
# -----------------------------------------------------------------------------
class AuditLog:
    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.log_path = self.directory / LOG_NAME
        self.state_path = self.directory / STATE_NAME
        self.lock_path = self.directory / LOCK_NAME

    def _head_unlocked(self) -> str:
        if not self.state_path.exists():
            return GENESIS_HASH
        head = self.state_path.read_text(encoding="utf-8").strip().lower()
        return head if is_chain_hash(head) else GENESIS_HASH

    def append(self, event: Dict[str, Any]) -> str:
        """Seal event onto the chain and return the new head hash."""
        self.directory.mkdir(parents=True, exist_ok=True)

        with open(self.lock_path, "a+", encoding="utf-8") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                prev = self._head_unlocked()
                # chain fields supplied by the caller are discarded
                record = _strip_chain(event)
                head = chain_hash(prev, record)
                record.update(prev_hash=prev, hash=head)

                with open(self.log_path, "ab") as out:
                    out.write(_canonical(record) + b"\n")
                    out.flush()
                    os.fsync(out.fileno())

                self.state_path.write_text(head + "\n", encoding="utf-8")
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

        return head

    def verify(self) -> bool:
        return verify_log_chain(self.log_path)
