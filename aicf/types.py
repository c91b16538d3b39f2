"""
Context Format Data Model — Typed Records

Defines one dataclass per section kind (metadata, session, conversation,
memory, state, insight, decision, work, link) plus the opaque carrier for
unknown sections and the Document that groups them.

Records are immutable once appended; an "update" is a new record that the
reader reconciles (last-write-wins for state, last session is current).
"""

from __future__ import annotations

import enum
import re
import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, List, Literal, Optional, Tuple

FORMAT_VERSION = "3.1.1"

# ---------------------------------------------------------------------------
# Type aliases (Literal unions for validation)
# ---------------------------------------------------------------------------

Role = Literal["user", "assistant", "system"]
MemoryType = Literal["episodic", "semantic", "procedural"]
Importance = Literal["low", "medium", "high", "critical"]
StateScope = Literal["session", "user", "app", "temp"]
StateValueType = Literal["string", "json", "number", "boolean"]
SessionStatus = Literal["active", "completed", "archived"]
WorkStatus = Literal["not_started", "in_progress", "completed", "blocked"]
Impact = Literal["low", "medium", "high"]

# Valid values for runtime checks
VALID_ROLES: set = {"user", "assistant", "system"}
VALID_MEMORY_TYPES: set = {"episodic", "semantic", "procedural"}
VALID_IMPORTANCE: set = {"low", "medium", "high", "critical"}
VALID_PRIORITIES: set = VALID_IMPORTANCE
VALID_SCOPES: set = {"session", "user", "app", "temp"}
VALID_VALUE_TYPES: set = {"string", "json", "number", "boolean"}
VALID_SESSION_STATUS: set = {"active", "completed", "archived"}
VALID_WORK_STATUS: set = {"not_started", "in_progress", "completed", "blocked"}
VALID_IMPACTS: set = {"low", "medium", "high"}
KNOWN_LINK_TYPES: set = {
    "semantic_cluster", "temporal_sequence", "causal_relationship",
    "reference", "dependency",
}

KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.\-]*$")
HEADER_RE = re.compile(r"^@([A-Z][A-Z0-9_]*)(?::([A-Za-z0-9_.\-]*))?$")
SECTION_NAME_RE = re.compile(r"^[A-Z][A-Z0-9_]*$")
SECTION_ID_RE = re.compile(r"^[A-Za-z0-9_.\-]*$")


def _now_iso() -> str:
    """Current UTC time as ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _generate_id(prefix: str = "C") -> str:
    """Generate a unique record ID with prefix."""
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _check_enum(name: str, value: Any, valid: set) -> None:
    if value not in valid:
        raise ValueError(f"Invalid {name}: {value!r} (expected one of {sorted(valid)})")


def _check_optional_enum(name: str, value: Any, valid: set) -> None:
    if value is not None:
        _check_enum(name, value, valid)


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    return None if value == "" else value


def _check_keys(extra: Dict[str, str]) -> None:
    for key, value in extra.items():
        if not isinstance(key, str) or not KEY_RE.match(key):
            raise ValueError(f"Invalid key: {key!r}")
        if not isinstance(value, str):
            raise ValueError(f"Value for {key!r} must be a string, got {type(value).__name__}")


# ---------------------------------------------------------------------------
# Section kinds
# ---------------------------------------------------------------------------


class SectionKind(enum.Enum):
    """Closed set of section kinds, in canonical output order."""

    METADATA = "METADATA"
    SESSION = "SESSION"
    CONVERSATION = "CONVERSATION"
    MEMORY = "MEMORY"
    STATE = "STATE"
    INSIGHTS = "INSIGHTS"
    DECISIONS = "DECISIONS"
    WORK = "WORK"
    LINKS = "LINKS"
    UNKNOWN = "UNKNOWN"

    @property
    def is_key_value(self) -> bool:
        return self in (SectionKind.METADATA, SectionKind.SESSION)

    @classmethod
    def from_header(cls, name: str) -> SectionKind:
        """Resolve a header name (aliases included). Unknown names → UNKNOWN."""
        name = SECTION_ALIASES.get(name, name)
        if name == cls.UNKNOWN.value:
            return cls.UNKNOWN
        try:
            return cls(name)
        except ValueError:
            return cls.UNKNOWN


# Singular/plural spellings written by older tools
SECTION_ALIASES: Dict[str, str] = {
    "CONVERSATIONS": "CONVERSATION",
    "MEMORIES": "MEMORY",
    "STATES": "STATE",
    "INSIGHT": "INSIGHTS",
    "DECISION": "DECISIONS",
    "LINK": "LINKS",
}

CANONICAL_ORDER: Tuple[SectionKind, ...] = tuple(
    k for k in SectionKind if k is not SectionKind.UNKNOWN
)


# ---------------------------------------------------------------------------
# Key=value records
# ---------------------------------------------------------------------------


@dataclass
class Metadata:
    """Document metadata. Later keys shadow earlier ones on read."""

    SECTION: ClassVar[SectionKind] = SectionKind.METADATA
    KNOWN_KEYS: ClassVar[Tuple[str, ...]] = ("format_version", "created_at", "updated_at")

    format_version: str = FORMAT_VERSION
    created_at: str = field(default_factory=_now_iso)
    updated_at: Optional[str] = None
    extra: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        """Normalize blank optionals and validate extra keys."""
        self.updated_at = _blank_to_none(self.updated_at)
        _check_keys(self.extra)
        clash = set(self.extra) & set(self.KNOWN_KEYS)
        if clash:
            raise ValueError(f"Reserved keys in extra: {sorted(clash)}")

    def items(self) -> List[Tuple[str, str]]:
        """Ordered (key, value) pairs: known keys first, extras sorted."""
        pairs = [("format_version", self.format_version), ("created_at", self.created_at)]
        if self.updated_at is not None:
            pairs.append(("updated_at", self.updated_at))
        pairs.extend(sorted(self.extra.items()))
        return pairs

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        if key in self.KNOWN_KEYS:
            value = getattr(self, key)
            return default if value is None else value
        return self.extra.get(key, default)

    @classmethod
    def from_pairs(cls, pairs: Dict[str, str]) -> Metadata:
        """Build from parsed key=value pairs."""
        known = {k: v for k, v in pairs.items() if k in cls.KNOWN_KEYS}
        extra = {k: v for k, v in pairs.items() if k not in cls.KNOWN_KEYS}
        if "created_at" not in known:
            known["created_at"] = ""
        return cls(extra=extra, **known)


@dataclass
class Session:
    """
    One session block. Sessions are never edited in place: a newer block
    for the same session_id is appended and the last one parsed is current.
    """

    SECTION: ClassVar[SectionKind] = SectionKind.SESSION
    KNOWN_KEYS: ClassVar[Tuple[str, ...]] = (
        "session_id", "app_name", "user_id", "created_at", "updated_at",
        "status", "event_count", "token_count",
    )

    session_id: str = field(default_factory=lambda: _generate_id("S"))
    app_name: Optional[str] = None
    user_id: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)
    updated_at: Optional[str] = None
    status: SessionStatus = "active"
    event_count: int = 0
    token_count: int = 0
    extra: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        """Validate status and counters; normalize blank optionals."""
        _check_enum("session status", self.status, VALID_SESSION_STATUS)
        self.app_name = _blank_to_none(self.app_name)
        self.user_id = _blank_to_none(self.user_id)
        self.updated_at = _blank_to_none(self.updated_at)
        self.event_count = int(self.event_count)
        self.token_count = int(self.token_count)
        if self.event_count < 0 or self.token_count < 0:
            raise ValueError("Session counters must be >= 0")
        _check_keys(self.extra)
        clash = set(self.extra) & set(self.KNOWN_KEYS)
        if clash:
            raise ValueError(f"Reserved keys in extra: {sorted(clash)}")

    def items(self) -> List[Tuple[str, str]]:
        """Ordered (key, value) pairs, session_id always first."""
        pairs: List[Tuple[str, str]] = []
        for key in self.KNOWN_KEYS:
            value = getattr(self, key)
            if value is None:
                continue
            pairs.append((key, str(value)))
        pairs.extend(sorted(self.extra.items()))
        return pairs

    @classmethod
    def from_pairs(cls, pairs: Dict[str, str]) -> Session:
        """Build from parsed key=value pairs. Missing created_at stays blank."""
        known: Dict[str, Any] = {k: v for k, v in pairs.items() if k in cls.KNOWN_KEYS}
        extra = {k: v for k, v in pairs.items() if k not in cls.KNOWN_KEYS}
        known.setdefault("created_at", "")
        known.setdefault("session_id", "")
        return cls(extra=extra, **known)


# ---------------------------------------------------------------------------
# Tabular records
# ---------------------------------------------------------------------------


class _WireRecord:
    """Mixin for pipe-delimited records.

    WIRE_FIELDS fixes the field order; the first REQUIRED of them must be
    present on every line, the rest are optional trailing fields.
    """

    SECTION: ClassVar[SectionKind]
    WIRE_FIELDS: ClassVar[Tuple[str, ...]]
    REQUIRED: ClassVar[int]

    def wire_values(self) -> List[Optional[str]]:
        """Field values as strings in wire order (None for absent optionals)."""
        out: List[Optional[str]] = []
        for name in self.WIRE_FIELDS:
            value = getattr(self, name)
            if value is None:
                out.append(None)
            elif isinstance(value, float):
                out.append(repr(value))
            else:
                out.append(str(value))
        return out

    @classmethod
    def from_wire(cls, values: List[str]):
        """Build a record from decoded field strings. Raises ValueError on bad arity/values."""
        lo, hi = cls.REQUIRED, len(cls.WIRE_FIELDS)
        if not lo <= len(values) <= hi:
            raise ValueError(f"expected {lo}..{hi} fields, got {len(values)}")
        kwargs: Dict[str, Any] = dict(zip(cls.WIRE_FIELDS, values))
        return cls(**cls._coerce(kwargs))

    @classmethod
    def _coerce(cls, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        return kwargs

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a plain dictionary."""
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class Conversation(_WireRecord):
    """One conversation message. id uniqueness is advisory."""

    SECTION: ClassVar[SectionKind] = SectionKind.CONVERSATION
    WIRE_FIELDS: ClassVar[Tuple[str, ...]] = ("id", "timestamp", "role", "content")
    REQUIRED: ClassVar[int] = 4

    id: str = field(default_factory=lambda: _generate_id("C"))
    timestamp: str = field(default_factory=_now_iso)
    role: Role = "user"
    content: str = ""

    def __post_init__(self):
        _check_enum("role", self.role, VALID_ROLES)


@dataclass
class Memory(_WireRecord):
    """Classified memory entry. Classification is a closed enum."""

    SECTION: ClassVar[SectionKind] = SectionKind.MEMORY
    WIRE_FIELDS: ClassVar[Tuple[str, ...]] = ("type", "timestamp", "content", "importance")
    REQUIRED: ClassVar[int] = 3

    type: MemoryType = "episodic"
    timestamp: str = field(default_factory=_now_iso)
    content: str = ""
    importance: Optional[Importance] = None

    def __post_init__(self):
        _check_enum("memory type", self.type, VALID_MEMORY_TYPES)
        self.importance = _blank_to_none(self.importance)
        _check_optional_enum("importance", self.importance, VALID_IMPORTANCE)


@dataclass
class State(_WireRecord):
    """Scoped key/value. Same scope+key is resolved last-write-wins by readers."""

    SECTION: ClassVar[SectionKind] = SectionKind.STATE
    WIRE_FIELDS: ClassVar[Tuple[str, ...]] = ("scope", "key", "value", "value_type", "ttl")
    REQUIRED: ClassVar[int] = 3

    scope: StateScope = "session"
    key: str = ""
    value: str = ""
    value_type: Optional[StateValueType] = None
    ttl: Optional[int] = None  # seconds, best-effort

    def __post_init__(self):
        _check_enum("state scope", self.scope, VALID_SCOPES)
        if not self.key:
            raise ValueError("State key must not be empty")
        self.value_type = _blank_to_none(self.value_type)
        _check_optional_enum("value type", self.value_type, VALID_VALUE_TYPES)
        if self.ttl is not None and self.ttl < 0:
            raise ValueError(f"Invalid ttl: {self.ttl!r}")

    @property
    def scoped_key(self) -> str:
        return f"{self.scope}:{self.key}"

    @classmethod
    def _coerce(cls, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        ttl = kwargs.get("ttl")
        kwargs["ttl"] = int(ttl) if ttl not in (None, "") else None
        return kwargs


@dataclass
class Insight(_WireRecord):
    """Extracted insight with priority and confidence in [0, 1]."""

    SECTION: ClassVar[SectionKind] = SectionKind.INSIGHTS
    WIRE_FIELDS: ClassVar[Tuple[str, ...]] = (
        "content", "category", "priority", "confidence", "memory_type", "timestamp",
    )
    REQUIRED: ClassVar[int] = 4

    content: str = ""
    category: str = ""
    priority: Importance = "medium"
    confidence: float = 0.5
    memory_type: Optional[MemoryType] = None
    timestamp: Optional[str] = None

    def __post_init__(self):
        _check_enum("priority", self.priority, VALID_PRIORITIES)
        self.confidence = float(self.confidence)
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence {self.confidence} not in [0, 1]")
        self.memory_type = _blank_to_none(self.memory_type)
        _check_optional_enum("memory type", self.memory_type, VALID_MEMORY_TYPES)
        self.timestamp = _blank_to_none(self.timestamp)


@dataclass
class Decision(_WireRecord):
    """A decision and its rationale."""

    SECTION: ClassVar[SectionKind] = SectionKind.DECISIONS
    WIRE_FIELDS: ClassVar[Tuple[str, ...]] = ("decision", "rationale", "timestamp", "impact")
    REQUIRED: ClassVar[int] = 2

    decision: str = ""
    rationale: str = ""
    timestamp: Optional[str] = None
    impact: Optional[Impact] = None

    def __post_init__(self):
        self.timestamp = _blank_to_none(self.timestamp)
        self.impact = _blank_to_none(self.impact)
        _check_optional_enum("impact", self.impact, VALID_IMPACTS)


@dataclass
class Work(_WireRecord):
    """Work item with lifecycle status."""

    SECTION: ClassVar[SectionKind] = SectionKind.WORK
    WIRE_FIELDS: ClassVar[Tuple[str, ...]] = ("id", "status", "description")
    REQUIRED: ClassVar[int] = 2

    id: str = field(default_factory=lambda: _generate_id("W"))
    status: WorkStatus = "not_started"
    description: Optional[str] = None

    def __post_init__(self):
        _check_enum("work status", self.status, VALID_WORK_STATUS)
        self.description = _blank_to_none(self.description)


@dataclass
class Link(_WireRecord):
    """Typed link between two records (by id or free-form reference)."""

    SECTION: ClassVar[SectionKind] = SectionKind.LINKS
    WIRE_FIELDS: ClassVar[Tuple[str, ...]] = ("type", "source", "target", "strength")
    REQUIRED: ClassVar[int] = 3

    type: str = "reference"
    source: str = ""
    target: str = ""
    strength: Optional[float] = None

    def __post_init__(self):
        if not self.type:
            raise ValueError("Link type must not be empty")
        if self.strength is not None:
            self.strength = float(self.strength)

    @classmethod
    def _coerce(cls, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        strength = kwargs.get("strength")
        kwargs["strength"] = float(strength) if strength not in (None, "") else None
        return kwargs


@dataclass
class OpaqueSection:
    """An unknown section, carried verbatim so newer files round-trip.

    Lines are written as-is, so each must read back as a body line of this
    same section: no LF, no trailing CR, not blank, not a header.
    """

    name: str
    identifier: str = ""
    lines: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.check()

    def check(self) -> None:
        """Raise ValueError if the section would not re-parse as itself."""
        if not isinstance(self.name, str) or not SECTION_NAME_RE.match(self.name):
            raise ValueError(f"Invalid section name: {self.name!r}")
        if SectionKind.from_header(self.name) is not SectionKind.UNKNOWN:
            raise ValueError(f"{self.name!r} names a known section")
        if not isinstance(self.identifier, str) or not SECTION_ID_RE.match(self.identifier):
            raise ValueError(f"Invalid section identifier: {self.identifier!r}")
        for i, line in enumerate(self.lines):
            if not isinstance(line, str):
                raise ValueError(f"{self.name} line {i}: expected str, got {type(line).__name__}")
            if "\n" in line or line.endswith("\r"):
                raise ValueError(f"{self.name} line {i}: contains a line terminator")
            if not line.strip():
                raise ValueError(f"{self.name} line {i}: blank")
            if HEADER_RE.match(line.strip()):
                raise ValueError(f"{self.name} line {i}: looks like a section header")


# Enum-keyed dispatch for tabular sections
RECORD_TYPES: Dict[SectionKind, type] = {
    SectionKind.CONVERSATION: Conversation,
    SectionKind.MEMORY: Memory,
    SectionKind.STATE: State,
    SectionKind.INSIGHTS: Insight,
    SectionKind.DECISIONS: Decision,
    SectionKind.WORK: Work,
    SectionKind.LINKS: Link,
}

# Document attribute holding each tabular section
_LIST_ATTRS: Dict[SectionKind, str] = {
    SectionKind.CONVERSATION: "conversations",
    SectionKind.MEMORY: "memories",
    SectionKind.STATE: "states",
    SectionKind.INSIGHTS: "insights",
    SectionKind.DECISIONS: "decisions",
    SectionKind.WORK: "work",
    SectionKind.LINKS: "links",
}


# ---------------------------------------------------------------------------
# Document
# ---------------------------------------------------------------------------


@dataclass
class Document:
    """
    A parsed (or to-be-compiled) context file.

    Readers reconcile appended updates through the query helpers; nothing
    here rewrites records in place.
    """

    metadata: Optional[Metadata] = None
    sessions: List[Session] = field(default_factory=list)
    conversations: List[Conversation] = field(default_factory=list)
    memories: List[Memory] = field(default_factory=list)
    states: List[State] = field(default_factory=list)
    insights: List[Insight] = field(default_factory=list)
    decisions: List[Decision] = field(default_factory=list)
    work: List[Work] = field(default_factory=list)
    links: List[Link] = field(default_factory=list)
    unknown: List[OpaqueSection] = field(default_factory=list)

    @property
    def current_session(self) -> Optional[Session]:
        """The last session parsed, or None."""
        return self.sessions[-1] if self.sessions else None

    def records(self, kind: SectionKind) -> list:
        """Records of one tabular section kind."""
        if kind is SectionKind.SESSION:
            return list(self.sessions)
        if kind is SectionKind.METADATA:
            return [self.metadata] if self.metadata else []
        if kind is SectionKind.UNKNOWN:
            return list(self.unknown)
        return getattr(self, _LIST_ATTRS[kind])

    def add(self, record: Any) -> None:
        """Append a record to the list matching its section kind."""
        if isinstance(record, Metadata):
            self.metadata = record
        elif isinstance(record, Session):
            self.sessions.append(record)
        elif isinstance(record, OpaqueSection):
            self.unknown.append(record)
        elif isinstance(record, _WireRecord):
            getattr(self, _LIST_ATTRS[record.SECTION]).append(record)
        else:
            raise TypeError(f"Not a context record: {type(record).__name__}")

    def resolved_state(self) -> Dict[Tuple[str, str], State]:
        """Map (scope, key) → winning State (last in document order)."""
        resolved: Dict[Tuple[str, str], State] = {}
        for st in self.states:
            resolved[(st.scope, st.key)] = st
        return resolved

    def get_state(
        self, scope: str, key: Optional[str] = None, default: Optional[str] = None,
    ) -> Optional[str]:
        """Scoped read with last-write-wins. Accepts ("user", "lang") or ("user:lang")."""
        if key is None:
            scope, _, key = scope.partition(":")
        winner = self.resolved_state().get((scope, key))
        return winner.value if winner is not None else default

    def state_for_scope(self, scope: str) -> Dict[str, str]:
        """All resolved keys of one scope."""
        return {k: st.value for (s, k), st in self.resolved_state().items() if s == scope}

    def is_empty(self) -> bool:
        return self.metadata is None and not self.sessions and not self.unknown and not any(
            getattr(self, attr) for attr in _LIST_ATTRS.values()
        )

    def counts(self) -> Dict[str, int]:
        """Record count per section (for stats/logging)."""
        out = {"sessions": len(self.sessions), "unknown": len(self.unknown)}
        for attr in _LIST_ATTRS.values():
            out[attr] = len(getattr(self, attr))
        return out

    def last_conversations(self, count: int = 5) -> List[Conversation]:
        """The most recent ``count`` conversation entries, oldest first."""
        if count <= 0:
            return []
        return self.conversations[-count:]

    def current_work(self) -> Dict[str, Work]:
        """Map work id → latest Work record, in order of first appearance."""
        latest: Dict[str, Work] = {}
        for item in self.work:
            latest[item.id] = item
        return latest

    def stats(self) -> Dict[str, Any]:
        """Summary for status displays: project, last update, counts, session status."""
        meta = self.metadata
        session = self.current_session
        return {
            "project_name": meta.get("project_name", "Unknown") if meta else "Unknown",
            "format_version": meta.format_version if meta else None,
            "last_update": (meta.updated_at or meta.created_at or None) if meta else None,
            "status": session.status if session else None,
            "counts": self.counts(),
        }
