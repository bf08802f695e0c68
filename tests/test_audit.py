"""Tests for the hash-chained audit log."""

import json

import pytest

from policymesh.config import PolicyMeshConfig
from policymesh.exceptions import StorageError
from policymesh.governance import AuditLog, Decision, EvaluationResult, JsonlAuditSink


class TestAuditLog:
    def test_append_chains_records(self):
        log = AuditLog()
        first = log.append("rollout", "rollout_1", "Pending")
        second = log.append("rollout", "rollout_1", "Canary", {"phase": 0})

        assert first.previous_hash == ""
        assert second.previous_hash == first.record_hash
        assert first.verify_hash() and second.verify_hash()
        assert log.verify_integrity() == (True, None)
        assert len(log) == 2

    def test_tampering_detected(self):
        log = AuditLog()
        log.append("rollout", "rollout_1", "Pending")
        log.append("rollout", "rollout_1", "Canary")
        forged = log._records[0].model_copy(update={"decision": "Completed"})
        log._records[0] = forged

        valid, error = log.verify_integrity()

        assert not valid
        assert "Record 0" in error

    def test_record_evaluation(self, make_context):
        log = AuditLog()
        context = make_context(trace_id="trace-1")
        result = EvaluationResult(decision=Decision.ALLOW, fingerprint="abc",
                                  evaluated_policies=("p",))

        record = log.record_evaluation(context, result, cache_hit=False, rule_evaluations=1,
                                       duration_ms=1.23456)

        assert record.type == "evaluation"
        assert record.subject == context.request_id
        assert record.trace_id == "trace-1"
        assert record.decision == "allow"
        assert record.details["cluster_id"] == "prod-eu-1"
        assert record.details["fingerprint"] == "abc"
        assert record.details["policies"] == ["p"]
        assert record.details["rule_evaluations"] == 1
        assert record.details["duration_ms"] == 1.235

    def test_query_filters(self):
        log = AuditLog()
        log.record_rollout("rollout_1", "Pending", trace_id="t1")
        log.record_rollout("rollout_2", "Pending", trace_id="t2")
        log.record_rollout("rollout_1", "Canary", trace_id="t1")

        assert [r.decision for r in log.query(subject="rollout_1")] == ["Pending", "Canary"]
        assert len(log.query(trace_id="t2")) == 1
        assert len(log.query(decision="Pending")) == 2
        assert len(log.query(type="evaluation")) == 0
        assert len(log.query(limit=1)) == 1

    def test_cloudevent_envelope(self):
        log = AuditLog()
        record = log.record_rollout("rollout_1", "RolledBack", {"reason": "canary"}, trace_id="t")
        event = record.to_cloudevent()
        assert event["specversion"] == "1.0"
        assert event["type"] == "io.policymesh.rollout"
        assert event["subject"] == "rollout_1"
        assert event["data"] == {"decision": "RolledBack", "reason": "canary"}
        assert event["traceid"] == "t"

    def test_export(self):
        log = AuditLog()
        record = log.append("rollout", "rollout_1", "Pending")
        exported = log.export()
        assert exported["record_count"] == 1
        assert exported["head_hash"] == record.record_hash
        json.dumps(exported)


class TestJsonlAuditSink:
    def test_write_through_and_reload(self, tmp_path):
        sink = JsonlAuditSink(tmp_path / "audit" / "log.jsonl")
        log = AuditLog(sink=sink)
        log.append("rollout", "rollout_1", "Pending")
        log.append("rollout", "rollout_1", "Canary")

        reloaded = AuditLog.from_records(sink.read(), sink=sink)

        assert [r.record_hash for r in reloaded.records] == [r.record_hash for r in log.records]
        assert reloaded.append("rollout", "rollout_1", "Full").previous_hash == log.records[-1].record_hash

    def test_reload_detects_tampering(self, tmp_path):
        path = tmp_path / "log.jsonl"
        log = AuditLog(sink=JsonlAuditSink(path))
        log.append("rollout", "rollout_1", "Pending")
        log.append("rollout", "rollout_1", "Canary")

        lines = path.read_text().splitlines()
        doc = json.loads(lines[0])
        doc["decision"] = "Completed"
        lines[0] = json.dumps(doc)
        path.write_text("\n".join(lines) + "\n")

        with pytest.raises(StorageError):
            AuditLog.from_records(JsonlAuditSink(path).read())

    def test_corrupt_line(self, tmp_path):
        path = tmp_path / "log.jsonl"
        path.write_text("{not json}\n")
        with pytest.raises(StorageError):
            JsonlAuditSink(path).read()

    def test_missing_file_reads_empty(self, tmp_path):
        assert JsonlAuditSink(tmp_path / "none.jsonl").read() == []


class TestAuditLogFromConfig:
    def test_memory_only_without_path(self):
        log = AuditLog.from_config(PolicyMeshConfig(audit_path=None))
        log.append("rollout", "rollout_1", "Pending")
        assert len(log.records) == 1

    def test_path_opens_write_through_sink(self, tmp_path):
        path = tmp_path / "audit" / "policymesh.jsonl"
        log = AuditLog.from_config(PolicyMeshConfig(audit_path=str(path)))
        record = log.append("rollout", "rollout_1", "Pending")

        assert [r.record_id for r in JsonlAuditSink(path).read()] == [record.record_id]

    def test_reopening_extends_the_chain(self, tmp_path):
        config = PolicyMeshConfig(audit_path=str(tmp_path / "audit.jsonl"))
        first = AuditLog.from_config(config)
        head = first.append("rollout", "rollout_1", "Pending")

        second = AuditLog.from_config(config)
        assert len(second.records) == 1
        assert second.append("rollout", "rollout_1", "Canary").previous_hash == head.record_hash
        assert second.verify_integrity()[0]
        assert len(JsonlAuditSink(config.audit_path).read()) == 2
