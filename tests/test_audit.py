# tests/test_audit.py
"""Hash-chained request audit log and the offline verifier."""

import json

import pytest

from dpop_guard.audit import GENESIS_HASH, AuditLog, build_request_event, chain_hash, verify_log_chain
from dpop_guard.verify_audit import main, verify_audit


@pytest.fixture
def audit_log(tmp_path):
    log = AuditLog(tmp_path / "audit")
    for i in range(3):
        log.append(build_request_event(method="GET", path=f"/api/v1/posts/{i}", result="accepted", user_id="42"))
    log.append(build_request_event(method="GET", path="/api/v1/me", result="denied", reason="ReplayDetected"))
    return log


def _rewrite(path, mutate):
    lines = path.read_text(encoding="utf-8").splitlines()
    events = [json.loads(line) for line in lines]
    mutate(events)
    path.write_text("".join(json.dumps(e) + "\n" for e in events), encoding="utf-8")


class TestEvents:
    def test_optional_fields_omitted(self):
        event = build_request_event(method="GET", path="/", result="accepted")
        assert set(event) == {"ts", "method", "path", "result"}

    def test_user_agent_truncated(self):
        event = build_request_event(method="GET", path="/", result="denied", user_agent="x" * 500, bot=True)
        assert len(event["user_agent"]) == 200
        assert event["bot"] is True


class TestChain:
    def test_links(self, audit_log):
        events = [json.loads(line) for line in audit_log.log_path.read_text(encoding="utf-8").splitlines()]

        assert events[0]["prev_hash"] == GENESIS_HASH
        for prev, cur in zip(events, events[1:]):
            assert cur["prev_hash"] == prev["hash"]
        assert audit_log.state_path.read_text(encoding="utf-8").strip() == events[-1]["hash"]
        assert audit_log.verify()

    def test_caller_cannot_inject_chain_fields(self, tmp_path):
        log = AuditLog(tmp_path)
        head = log.append({"method": "GET", "path": "/", "result": "accepted", "hash": "f" * 64, "prev_hash": "0" * 64})
        assert head == chain_hash(GENESIS_HASH, {"method": "GET", "path": "/", "result": "accepted"})

    def test_missing_log_is_valid(self, tmp_path):
        assert verify_log_chain(tmp_path / "nothing.jsonl")

    def test_edited_event_detected(self, audit_log):
        def mutate(events):
            events[1]["user_id"] = "43"
        _rewrite(audit_log.log_path, mutate)
        assert not audit_log.verify()

    def test_deleted_event_detected(self, audit_log):
        _rewrite(audit_log.log_path, lambda events: events.pop(1))
        assert not audit_log.verify()


class TestVerifier:
    def test_ok(self, audit_log):
        result = verify_audit(audit_log.log_path, audit_log.state_path)
        assert result.ok
        assert result.lines == 4

    def test_truncated_tail_caught_by_state(self, audit_log):
        _rewrite(audit_log.log_path, lambda events: events.pop())
        assert verify_log_chain(audit_log.log_path)

        result = verify_audit(audit_log.log_path, audit_log.state_path)
        assert not result.ok
        assert "State mismatch" in result.message

    def test_missing_log(self, tmp_path):
        assert not verify_audit(tmp_path / "nope.jsonl").ok

    def test_cli(self, audit_log, capsys):
        assert main([str(audit_log.log_path), "--state", str(audit_log.state_path)]) == 0
        assert "OK records=4" in capsys.readouterr().out

        def mutate(events):
            events[0]["path"] = "/admin"
        _rewrite(audit_log.log_path, mutate)
        assert main([str(audit_log.log_path)]) == 1
        assert "hash mismatch" in capsys.readouterr().err

    def test_cli_invalid_json(self, tmp_path, capsys):
        path = tmp_path / "broken.jsonl"
        path.write_text("{not json\n", encoding="utf-8")
        assert main([str(path)]) == 1
        assert "invalid JSON" in capsys.readouterr().err

    def test_cli_summary(self, audit_log, capsys):
        assert main([str(audit_log.log_path), "--summary"]) == 0
        out = capsys.readouterr().out
        assert "results: accepted=3, denied=1" in out
        assert "ReplayDetected: 1" in out
