"""
Audit Log

Append-only, hash-chained record of every admission evaluation and every
rollout decision. Records are frozen once written; any modification of a
stored record breaks the chain and is detected by ``verify_integrity``.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from policymesh.config import PolicyMeshConfig
from policymesh.constants import AUDIT_EVENT_EVALUATION, AUDIT_EVENT_ROLLOUT
from policymesh.exceptions import StorageError

from .models import EvaluationContext, EvaluationResult

logger = logging.getLogger(__name__)

AuditType = Literal["evaluation", "rollout"]


class AuditRecord(BaseModel):
    """
    Single audit record.

    Every record is:
    - Timestamped
    - Tied to a trace id and a subject (request id or rollout plan id)
    - Chained to the previous record via hash
    """

    model_config = ConfigDict(frozen=True)

    record_id: str = Field(default_factory=lambda: f"audit_{uuid.uuid4().hex[:16]}")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    trace_id: Optional[str] = None
    type: AuditType
    subject: str
    decision: str
    details: dict[str, Any] = Field(default_factory=dict)

    previous_hash: str = ""
    record_hash: str = ""

    def compute_hash(self) -> str:
        """SHA-256 of the record's canonical fields (everything but ``record_hash``)."""
        data = self.model_dump(mode="json", exclude={"record_hash"})
        canonical = json.dumps(data, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()

    def verify_hash(self) -> bool:
        return self.record_hash == self.compute_hash()

    def to_cloudevent(self) -> dict[str, Any]:
        """Serialize as a CloudEvents v1.0 JSON envelope."""
        return {
            "specversion": "1.0",
            "id": self.record_id,
            "type": f"io.policymesh.{self.type}",
            "source": f"policymesh/{self.type}",
            "subject": self.subject,
            "time": self.timestamp.isoformat(),
            "datacontenttype": "application/json",
            "data": {"decision": self.decision, **self.details},
            "policymeshrecordhash": self.record_hash,
            "policymeshprevioushash": self.previous_hash,
            **({"traceid": self.trace_id} if self.trace_id else {}),
        }


class AuditSink(ABC):
    """Durable destination for audit records."""

    @abstractmethod
    def write(self, record: AuditRecord) -> None:
        """Persist one record. Must not reorder or rewrite earlier records."""


class JsonlAuditSink(AuditSink):
    """Appends one JSON document per record to a file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def write(self, record: AuditRecord) -> None:
        line = record.model_dump_json()
        try:
            with self._lock, open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
                f.flush()
        except OSError as e:
            raise StorageError(f"Cannot append audit record to {self.path}: {e}") from e

    def read(self) -> list[AuditRecord]:
        """Load every record written so far."""
        if not self.path.exists():
            return []
        records = []
        with open(self.path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    records.append(AuditRecord.model_validate_json(line))
                except PydanticValidationError as e:
                    raise StorageError(f"{self.path}:{lineno}: corrupt audit record") from e
        return records


class AuditLog:
    """
    Append-only audit log.

    Features:
    - Tamper-evident hash chain
    - Optional write-through durable sink
    - Filtering by type, subject, trace id, decision and time window
    """

    def __init__(self, sink: Optional[AuditSink] = None):
        self._sink = sink
        self._lock = threading.Lock()
        self._records: list[AuditRecord] = []
        self._by_subject: dict[str, list[int]] = {}

    @classmethod
    def from_records(
        cls,
        records: Iterable[AuditRecord],
        sink: Optional[AuditSink] = None,
        verify: bool = True,
    ) -> "AuditLog":
        """Rebuild a log from persisted records, verifying the chain."""
        log = cls(sink=sink)
        for record in records:
            log._records.append(record)
            log._by_subject.setdefault(record.subject, []).append(len(log._records) - 1)
        if verify:
            valid, error = log.verify_integrity()
            if not valid:
                raise StorageError(f"Audit chain integrity check failed: {error}")
        return log

    @classmethod
    def from_config(cls, config: PolicyMeshConfig) -> "AuditLog":
        """
        Open the log described by ``config.audit_path``.

        An existing file is reloaded and verified so new records extend
        its chain; without a path the log is memory-only.
        """
        if not config.audit_path:
            return cls()
        sink = JsonlAuditSink(config.audit_path)
        records = sink.read()
        logger.info("Audit log %s opened with %d records", sink.path, len(records))
        return cls.from_records(records, sink=sink)

    def append(
        self,
        type: AuditType,
        subject: str,
        decision: str,
        details: Optional[dict[str, Any]] = None,
        trace_id: Optional[str] = None,
    ) -> AuditRecord:
        """Append a record to the chain and write it to the sink, if any."""
        with self._lock:
            previous_hash = self._records[-1].record_hash if self._records else ""
            draft = AuditRecord(
                type=type,
                subject=subject,
                decision=decision,
                details=details or {},
                trace_id=trace_id,
                previous_hash=previous_hash,
            )
            record = draft.model_copy(update={"record_hash": draft.compute_hash()})
            if self._sink is not None:
                self._sink.write(record)
            self._records.append(record)
            self._by_subject.setdefault(subject, []).append(len(self._records) - 1)
        return record

    def record_evaluation(
        self,
        context: EvaluationContext,
        result: EvaluationResult,
        *,
        cache_hit: bool,
        rule_evaluations: int,
        duration_ms: Optional[float] = None,
    ) -> AuditRecord:
        """Audit one admission decision."""
        details: dict[str, Any] = {
            "cluster_id": context.cluster_id,
            "kind": context.resource.kind,
            "namespace": context.resource.namespace,
            "name": context.resource.name,
            "operation": context.operation,
            "fingerprint": result.fingerprint,
            "cache_hit": cache_hit,
            "rule_evaluations": rule_evaluations,
            "policies": list(result.evaluated_policies),
            "violations": [v.model_dump(mode="json") for v in result.violations],
            "warnings": len(result.warnings),
            "mutations": [m.model_dump(mode="json") for m in result.mutations],
            "superseded": [s.model_dump(mode="json") for s in result.superseded],
            "errors": list(result.errors),
        }
        if duration_ms is not None:
            details["duration_ms"] = round(duration_ms, 3)
        return self.append(
            type=AUDIT_EVENT_EVALUATION,
            subject=context.request_id,
            decision=result.decision.value,
            details=details,
            trace_id=context.trace_id,
        )

    def record_rollout(
        self,
        plan_id: str,
        state: str,
        details: Optional[dict[str, Any]] = None,
        trace_id: Optional[str] = None,
    ) -> AuditRecord:
        """Audit a rollout state change or rollback."""
        return self.append(
            type=AUDIT_EVENT_ROLLOUT,
            subject=plan_id,
            decision=state,
            details=details,
            trace_id=trace_id,
        )

    def get(self, record_id: str) -> Optional[AuditRecord]:
        for record in self._records:
            if record.record_id == record_id:
                return record
        return None

    def for_subject(self, subject: str) -> list[AuditRecord]:
        """All records about one request or rollout plan, oldest first."""
        records = self._records
        return [records[i] for i in self._by_subject.get(subject, [])]

    def query(
        self,
        type: Optional[AuditType] = None,
        subject: Optional[str] = None,
        trace_id: Optional[str] = None,
        decision: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[AuditRecord]:
        """Query records; all filters are combined with AND. Most recent last."""
        results = self.for_subject(subject) if subject else list(self._records)
        if type:
            results = [r for r in results if r.type == type]
        if trace_id:
            results = [r for r in results if r.trace_id == trace_id]
        if decision:
            results = [r for r in results if r.decision == decision]
        if start_time:
            results = [r for r in results if r.timestamp >= start_time]
        if end_time:
            results = [r for r in results if r.timestamp <= end_time]
        return results[-limit:]

    def verify_integrity(self) -> tuple[bool, Optional[str]]:
        """
        Verify every record's hash and its link to the previous record.

        Returns:
            ``(is_valid, error_message)``.
        """
        previous_hash = ""
        for i, record in enumerate(self._records):
            if not record.verify_hash():
                return False, f"Record {i} hash mismatch"
            if record.previous_hash != previous_hash:
                return False, f"Record {i} chain broken"
            previous_hash = record.record_hash
        return True, None

    def export(self) -> dict[str, Any]:
        """Export the whole log for external verification."""
        records = list(self._records)
        return {
            "exported_at": datetime.now(timezone.utc).isoformat(),
            "head_hash": records[-1].record_hash if records else None,
            "record_count": len(records),
            "records": [r.model_dump(mode="json") for r in records],
        }

    @property
    def records(self) -> tuple[AuditRecord, ...]:
        return tuple(self._records)

    def __len__(self) -> int:
        return len(self._records)
