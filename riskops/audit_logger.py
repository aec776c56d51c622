"""
Audit Logger - Replayable Risk Decision Trail
=============================================

Immutable, append-only log of every risk decision.

Features:
- Append-only JSONL files (cannot delete/modify)
- Hash chaining for tamper detection
- Every event carries the full input/output of its calculation and the
  config version it used, so any decision can be replayed
- Query by entity, type and time; JSON/CSV export

Usage:
    from riskops.audit_logger import AuditLogger, EventType

    audit = AuditLogger(storage_dir=Path("data/audit"))
    audit.log(
        event_type=EventType.SLASHING_EXECUTED,
        entity_id="fm-1",
        data={"fault_index": 50, "slash_amount": "700"},
        config_version=1,
    )
"""

import csv
import hashlib
import io
import json
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Audit event types"""
    OPERATION_EVALUATED = "operation.evaluated"
    SLASHING_EXECUTED = "slashing.executed"
    STATE_TRANSITIONED = "state.transitioned"
    CIRCUIT_HALTED = "circuit.halted"
    CIRCUIT_RESET = "circuit.reset"
    CONFIG_PUBLISHED = "config.published"
    REVIEW_APPROVED = "review.approved"


class Severity(Enum):
    """Event severity levels"""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass
class AuditEvent:
    """Immutable audit event"""
    event_id: str
    timestamp: str
    event_type: str
    severity: str
    entity_id: Optional[str] = None
    actor_id: Optional[str] = None
    config_version: Optional[int] = None
    data: Dict[str, Any] = field(default_factory=dict)
    chain_hash: Optional[str] = None  # Previous hash in chain
    event_hash: Optional[str] = None  # Hash of this event

    def __post_init__(self):
        """Calculate event hash after creation"""
        if self.event_hash is None:
            self.event_hash = self.calculate_hash()

    def calculate_hash(self) -> str:
        """SHA-256 over the event content and the previous hash"""
        content = (
            f"{self.event_id}:{self.timestamp}:{self.event_type}:{self.entity_id}:"
            f"{self.actor_id}:{self.config_version}:{json.dumps(self.data, sort_keys=True, default=str)}"
        )
        if self.chain_hash:
            content += f":{self.chain_hash}"
        return hashlib.sha256(content.encode()).hexdigest()

    def verify_chain(self, previous_hash: Optional[str]) -> bool:
        """Verify event chain integrity"""
        return self.chain_hash == previous_hash

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "timestamp": self.timestamp,
            "event_type": self.event_type,
            "severity": self.severity,
            "entity_id": self.entity_id,
            "actor_id": self.actor_id,
            "config_version": self.config_version,
            "data": self.data,
            "chain_hash": self.chain_hash,
            "event_hash": self.event_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEvent":
        return cls(**data)


@dataclass
class AuditQuery:
    """Query parameters for audit log"""
    event_types: Optional[List[EventType]] = None
    entity_id: Optional[str] = None
    severity: Optional[Severity] = None
    config_version: Optional[int] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    limit: int = 100
    offset: int = 0


class AuditLogger:
    """
    Append-only, hash-chained audit logger.

    With storage_dir=None events are kept in memory only.
    """

    def __init__(self, storage_dir: Optional[Path] = None, max_memory_events: int = 10000):
        self.storage_dir = storage_dir
        self.current_log_file: Optional[Path] = None
        self.index_file: Optional[Path] = None
        if storage_dir is not None:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
            self.current_log_file = self.storage_dir / f"audit_{datetime.now().strftime('%Y%m')}.jsonl"
            self.index_file = self.storage_dir / "audit_index.json"

        # In-memory state
        self._lock = threading.Lock()
        self._events: deque = deque(maxlen=max_memory_events)
        self._last_hash: Optional[str] = None
        self._event_counter: int = 0

        self._load_index()

        logger.info(f"[AuditLogger] Initialized ({'memory only' if storage_dir is None else storage_dir})")

    # ========================================================================
    # Logging
    # ========================================================================

    def log(
        self,
        event_type: EventType,
        data: Dict[str, Any],
        entity_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        config_version: Optional[int] = None,
        severity: Severity = Severity.INFO,
    ) -> AuditEvent:
        """
        Log an audit event

        Args:
            event_type: Type of event
            data: Full input/output of the calculation
            entity_id: Fund, manager or investor the event is about
            actor_id: Caller or operator that caused it
            config_version: Risk config snapshot used
            severity: Event severity

        Returns:
            AuditEvent that was created
        """
        with self._lock:
            self._event_counter += 1
            event_id = f"evt_{datetime.now().strftime('%Y%m%d%H%M%S')}_{self._event_counter:06d}"

            event = AuditEvent(
                event_id=event_id,
                timestamp=datetime.now().isoformat(),
                event_type=event_type.value,
                severity=severity.value,
                entity_id=entity_id,
                actor_id=actor_id,
                config_version=config_version,
                data=data,
                chain_hash=self._last_hash,
            )

            # Persist first; a failed write leaves the chain untouched
            self._append_to_file(event)

            self._last_hash = event.event_hash
            self._events.append(event)
            self._update_index(event)

        return event

    # ========================================================================
    # Querying
    # ========================================================================

    def query(self, query: Optional[AuditQuery] = None, **kwargs) -> List[AuditEvent]:
        """
        Query audit log

        Args:
            query: AuditQuery parameters
            **kwargs: Direct query parameters (used when query is None)

        Returns:
            Matching events, newest first
        """
        if query is None:
            query = AuditQuery(**kwargs)

        with self._lock:
            events = list(self._events)

        if query.event_types:
            wanted = {t.value for t in query.event_types}
            events = [e for e in events if e.event_type in wanted]

        if query.entity_id:
            events = [e for e in events if e.entity_id == query.entity_id]

        if query.severity:
            events = [e for e in events if e.severity == query.severity.value]

        if query.config_version is not None:
            events = [e for e in events if e.config_version == query.config_version]

        if query.start_time:
            events = [e for e in events if e.timestamp >= query.start_time]

        if query.end_time:
            events = [e for e in events if e.timestamp <= query.end_time]

        events = list(reversed(events))

        return events[query.offset:query.offset + query.limit]

    def get_by_entity(self, entity_id: str, limit: int = 100) -> List[AuditEvent]:
        """Get all events for a fund, manager or investor"""
        return self.query(entity_id=entity_id, limit=limit)

    def get_recent(self, limit: int = 50, severity: Optional[Severity] = None) -> List[AuditEvent]:
        """Get recent events"""
        return self.query(limit=limit, severity=severity)

    # ========================================================================
    # Chain Verification
    # ========================================================================

    def verify_chain(self, events: Optional[List[AuditEvent]] = None) -> Dict[str, Any]:
        """
        Verify audit log chain integrity

        Checks both the link to the previous event and each event's own hash,
        so edited content is detected as well as removed or reordered events.
        """
        if events is None:
            with self._lock:
                events = list(self._events)

        breaks = []
        for i, event in enumerate(events):
            if event.calculate_hash() != event.event_hash:
                breaks.append({"event_id": event.event_id, "problem": "content hash mismatch"})
            if i > 0:
                prev_hash = events[i - 1].event_hash
                if not event.verify_chain(prev_hash):
                    breaks.append({
                        "event_id": event.event_id,
                        "problem": "chain link broken",
                        "expected_chain": prev_hash,
                        "actual_chain": event.chain_hash,
                    })

        if breaks:
            logger.critical(f"[AuditLogger] Chain verification FAILED: {len(breaks)} break(s)")

        return {
            "valid": not breaks,
            "total_events": len(events),
            "breaks": breaks,
            "last_hash": self._last_hash,
        }

    def verify_file(self, path: Optional[Path] = None) -> Dict[str, Any]:
        """Verify a persisted JSONL log file"""
        path = path or self.current_log_file
        if path is None or not path.exists():
            return {"valid": True, "total_events": 0, "breaks": [], "last_hash": self._last_hash}

        with open(path, "r", encoding="utf-8") as f:
            events = [AuditEvent.from_dict(json.loads(line)) for line in f if line.strip()]
        return self.verify_chain(events)

    # ========================================================================
    # Export
    # ========================================================================

    def export(self, query: Optional[AuditQuery] = None, format: str = "json") -> str:
        """
        Export audit log

        Args:
            query: Query parameters for filtering
            format: Export format (json, csv)
        """
        events = self.query(query or AuditQuery())

        if format == "json":
            return json.dumps([e.to_dict() for e in events], indent=2, default=str)
        elif format == "csv":
            output = io.StringIO()
            if events:
                writer = csv.DictWriter(output, fieldnames=events[0].to_dict().keys())
                writer.writeheader()
                for event in events:
                    row = event.to_dict()
                    row["data"] = json.dumps(row["data"], sort_keys=True, default=str)
                    writer.writerow(row)
            return output.getvalue()
        else:
            raise ValueError(f"Unsupported format: {format}")

    # ========================================================================
    # Persistence
    # ========================================================================

    def _append_to_file(self, event: AuditEvent):
        if self.storage_dir is None:
            return

        # Rotate monthly
        expected_file = self.storage_dir / f"audit_{datetime.now().strftime('%Y%m')}.jsonl"
        if expected_file != self.current_log_file:
            self.current_log_file = expected_file

        with open(self.current_log_file, 'a', encoding='utf-8') as f:
            f.write(json.dumps(event.to_dict(), ensure_ascii=False, default=str) + '\n')

    def _load_index(self):
        if self.index_file is None or not self.index_file.exists():
            return

        try:
            with open(self.index_file, 'r', encoding='utf-8') as f:
                data = json.load(f)

            self._event_counter = data.get("event_counter", 0)
            self._last_hash = data.get("last_hash")

            logger.info(f"[AuditLogger] Loaded index: {self._event_counter} events")

        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"[AuditLogger] Failed to load index: {e}")

    def _update_index(self, event: AuditEvent):
        if self.index_file is None:
            return

        data = {
            "event_counter": self._event_counter,
            "last_hash": self._last_hash,
            "last_event": {
                "event_id": event.event_id,
                "timestamp": event.timestamp,
                "event_type": event.event_type,
            },
            "updated_at": datetime.now().isoformat()
        }

        with open(self.index_file, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)

    def get_status(self) -> Dict[str, Any]:
        chain_status = self.verify_chain()

        return {
            "total_events": self._event_counter,
            "memory_events": len(self._events),
            "current_log_file": str(self.current_log_file) if self.current_log_file else None,
            "chain_valid": chain_status["valid"],
            "chain_breaks": len(chain_status["breaks"]),
        }


__all__ = [
    "AuditLogger",
    "AuditEvent",
    "AuditQuery",
    "EventType",
    "Severity",
]
