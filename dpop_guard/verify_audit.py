#!/usr/bin/env python3
"""
verify_audit.py: offline check of the request audit trail.

    python -m dpop_guard.verify_audit audit/request_audit.jsonl \
        --state audit/request_audit.state [--summary]

Exit status 0 when the chain (and state file, if given) check out, 1
otherwise. --summary also prints accepted/denied totals and the denial
reasons seen, which is the quickest way to spot a replay or bot wave.
"""

from __future__ import annotations

import argparse
import sys
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .audit import find_chain_break, iter_records


@dataclass
class VerifyResult:
    ok: bool
    lines: int
    last_hash: Optional[str]
    message: str


@dataclass
class VerdictSummary:
    results: Counter = field(default_factory=Counter)
    reasons: Counter = field(default_factory=Counter)
    bots: int = 0


def verify_audit(jsonl_path: Path, state_path: Optional[Path] = None) -> VerifyResult:
    """Chain integrity, plus agreement with the state file when one is given."""
    jsonl_path = Path(jsonl_path)
    if not jsonl_path.exists():
        return VerifyResult(False, 0, None, f"Log not found: {jsonl_path}")

    lines, head, problem = find_chain_break(jsonl_path)
    if problem:
        return VerifyResult(False, lines, head, problem)

    if state_path is not None:
        state_path = Path(state_path)
        if not state_path.exists():
            return VerifyResult(False, lines, head, f"State file not found: {state_path}")
        recorded = state_path.read_text(encoding="utf-8").strip()
        # a truncated tail leaves the chain valid but the state ahead of it
        if recorded != (head or ""):
            return VerifyResult(False, lines, head, f"State mismatch: state={recorded} log_last={head}")

    return VerifyResult(True, lines, head, "OK")


def summarize(jsonl_path: Path) -> VerdictSummary:
    summary = VerdictSummary()
    for _, record in iter_records(jsonl_path):
        summary.results[record.get("result", "?")] += 1
        if record.get("reason"):
            summary.reasons[record["reason"]] += 1
        if record.get("bot"):
            summary.bots += 1
    return summary


def main(argv=None) -> int:
    p = argparse.ArgumentParser(description="Verify the dpop-guard request audit log.")
    p.add_argument("log", type=Path, help="audit JSONL file, e.g. audit/request_audit.jsonl")
    p.add_argument("--state", type=Path, default=None, help="state file holding the expected chain head")
    p.add_argument("--summary", action="store_true", help="print verdict totals after verifying")
    args = p.parse_args(argv)

    try:
        res = verify_audit(args.log, state_path=args.state)
    except (OSError, ValueError) as e:
        print(f"FAIL: {e}", file=sys.stderr)
        return 1

    if not res.ok:
        print(f"FAIL after {res.lines} record(s): {res.message}", file=sys.stderr)
        return 1

    print(f"OK records={res.lines} head={res.last_hash or '-'}")

    if args.summary:
        s = summarize(args.log)
        print("results: " + ", ".join(f"{k}={v}" for k, v in sorted(s.results.items())))
        for reason, count in s.reasons.most_common():
            print(f"  {reason}: {count}")
        print(f"bot-flagged: {s.bots}")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
