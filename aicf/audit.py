"""
Redaction Audit Log — Caller-Owned Record of Masked Secrets

Every span the secure writer masks (or refuses to write) becomes one
RedactionEvent.  The log is an explicit object: a writer either creates
its own or is handed one, and the caller decides when to clear it.

Privacy rules:
- Never store the raw secret, only its masked preview
- Include a SHA-256 hash of the raw span for correlation across events

write_jsonl() exports the log as schema-versioned compact JSONL.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, TextIO

AUDIT_SCHEMA_VERSION = 1

RedactionAction = Literal["redacted", "blocked"]


def _now_ts() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def span_hash(value: str) -> str:
    """SHA-256 hex digest of a detected span."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


@dataclass
class RedactionEvent:
    """One masked (or blocked) span."""

    file: str
    field: str
    type: str
    action: RedactionAction = "redacted"
    masked: str = ""
    hash: str = ""
    timestamp: str = field(default_factory=_now_ts)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize event to a plain dictionary."""
        return asdict(self)


class RedactionLog:
    """In-memory, queryable list of RedactionEvents."""

    def __init__(self):
        self._events: List[RedactionEvent] = []

    def __len__(self) -> int:
        return len(self._events)

    def __bool__(self) -> bool:
        return bool(self._events)

    def record(self, event: RedactionEvent) -> None:
        """Append one event."""
        self._events.append(event)

    def extend(self, events: List[RedactionEvent]) -> None:
        self._events.extend(events)

    def entries(
        self, *, file: Optional[str] = None, type: Optional[str] = None,
    ) -> List[RedactionEvent]:
        """Copy of the events, optionally filtered by file and/or type."""
        return [
            e for e in self._events
            if (file is None or e.file == file) and (type is None or e.type == type)
        ]

    def stats(self) -> Dict[str, Any]:
        """Counts overall, per file, per type and per action."""
        by_file: Dict[str, int] = {}
        by_type: Dict[str, int] = {}
        by_action: Dict[str, int] = {}
        for e in self._events:
            by_file[e.file] = by_file.get(e.file, 0) + 1
            by_type[e.type] = by_type.get(e.type, 0) + 1
            by_action[e.action] = by_action.get(e.action, 0) + 1
        return {
            "total": len(self._events),
            "by_file": by_file,
            "by_type": by_type,
            "by_action": by_action,
        }

    def clear(self) -> int:
        """Drop all events. Returns how many were dropped."""
        n = len(self._events)
        self._events.clear()
        return n

    def write_jsonl(self, output: TextIO) -> int:
        """Write one compact JSON object per event. Returns the line count."""
        for e in self._events:
            record = {"v": AUDIT_SCHEMA_VERSION, **e.to_dict()}
            output.write(json.dumps(record, ensure_ascii=False, separators=(",", ":")) + "\n")
        output.flush()
        return len(self._events)
