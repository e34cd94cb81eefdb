"""Audit logging helpers.

The audit log is the keeper's observability output: every cycle and every
dispatched or skipped operation becomes one structured record. A single
`AuditManager` is built at process start and handed to every component; where
records go is decided by its sinks (console, MongoDB `audit_log`, in-memory for
tests).

Records produced in simulation mode carry `simulated=True` and are otherwise
shaped exactly like live records.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence, TextIO

from keeper.data.mongo import MongoManager, jsonify, utc_now

LEVELS: Dict[str, int] = {"debug": 10, "info": 20, "warning": 30, "error": 40}


@dataclass(frozen=True)
class AuditContext:
    run_id: Optional[str] = None
    agent_id: Optional[str] = None
    trace_id: Optional[str] = None


@dataclass(frozen=True)
class AuditRecord:
    timestamp: datetime
    event_type: str
    level: str
    payload: Dict[str, Any]
    simulated: bool = False
    run_id: Optional[str] = None
    agent_id: Optional[str] = None
    trace_id: Optional[str] = None

    def to_doc(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "event_type": self.event_type,
            "level": self.level,
            "payload": jsonify(self.payload),
            "simulated": self.simulated,
            "run_id": self.run_id,
            "agent_id": self.agent_id,
            "trace_id": self.trace_id,
        }


class AuditSink(Protocol):
    async def emit(self, record: AuditRecord) -> None: ...


def _fmt_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return f"{value:.6g}"
    if isinstance(value, (dict, list)):
        return str(jsonify(value))
    return str(value)


class ConsoleAuditSink:
    """Prints `[LEVEL] ts agent event key=value ...` lines."""

    def __init__(self, *, min_level: str = "info", stream: Optional[TextIO] = None):
        self.min_level = LEVELS.get(min_level.lower(), LEVELS["info"])
        self.stream = stream

    async def emit(self, record: AuditRecord) -> None:
        if LEVELS.get(record.level, LEVELS["info"]) < self.min_level:
            return
        tag = "WARN" if record.level == "warning" else record.level.upper()
        parts = [
            f"[{tag}]",
            record.timestamp.strftime("%Y-%m-%dT%H:%M:%SZ"),
            record.agent_id or "keeper",
            record.event_type,
        ]
        if record.simulated:
            parts.append("[SIMULATED]")
        parts.extend(f"{k}={_fmt_value(v)}" for k, v in record.payload.items())
        print(" ".join(parts), file=self.stream or sys.stdout, flush=True)


class MongoAuditSink:
    """Persists records into MongoDB `audit_log`."""

    def __init__(self, mongo: MongoManager):
        self.mongo = mongo

    async def emit(self, record: AuditRecord) -> None:
        await self.mongo.log_audit_event(
            record.event_type,
            jsonify(record.payload),
            run_id=record.run_id,
            agent_id=record.agent_id,
            trace_id=record.trace_id,
            metadata={"level": record.level, "simulated": record.simulated},
            timestamp=record.timestamp,
        )


class MemoryAuditSink:
    """Collects records in memory (tests, one-shot diagnostics)."""

    def __init__(self) -> None:
        self.records: List[AuditRecord] = []

    async def emit(self, record: AuditRecord) -> None:
        self.records.append(record)

    def events(self, event_type: Optional[str] = None) -> List[AuditRecord]:
        if event_type is None:
            return list(self.records)
        return [r for r in self.records if r.event_type == event_type]

    def event_types(self) -> List[str]:
        return [r.event_type for r in self.records]


class AuditManager:
    """Fan-out audit handle shared by every keeper component."""

    def __init__(
        self,
        sinks: Optional[Sequence[AuditSink]] = None,
        *,
        run_id: Optional[str] = None,
        simulated: bool = False,
    ):
        self.sinks: List[AuditSink] = list(sinks or [])
        self.run_id = run_id
        self.simulated = simulated
        self.sink_failures = 0

    def add_sink(self, sink: AuditSink) -> None:
        self.sinks.append(sink)

    async def log(
        self,
        event_type: str,
        payload: Dict[str, Any],
        *,
        level: str = "info",
        ctx: Optional[AuditContext] = None,
        run_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        trace_id: Optional[str] = None,
        simulated: Optional[bool] = None,
    ) -> AuditRecord:
        c = ctx or AuditContext()
        record = AuditRecord(
            timestamp=utc_now(),
            event_type=event_type,
            level=level if level in LEVELS else "info",
            payload=dict(payload),
            simulated=self.simulated if simulated is None else bool(simulated),
            run_id=run_id or c.run_id or self.run_id,
            agent_id=agent_id or c.agent_id,
            trace_id=trace_id or c.trace_id,
        )
        for sink in self.sinks:
            try:
                await sink.emit(record)
            except Exception:  # pylint: disable=broad-exception-caught
                # Never fail a keeper cycle because a sink is down.
                self.sink_failures += 1
        return record


__all__ = [
    "LEVELS",
    "AuditContext",
    "AuditRecord",
    "AuditSink",
    "AuditManager",
    "ConsoleAuditSink",
    "MongoAuditSink",
    "MemoryAuditSink",
]
