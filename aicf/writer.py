"""
Secure Writer — Detect, Redact, Compile, Append

Write path for context files.  For every field of every record:

1. run the detector;
2. with throw_on_secrets, refuse the whole call if a secret is found
   (nothing is written);
3. otherwise replace each finding with its smart mask and record one
   RedactionEvent per masked span;
4. compile the cleaned records and append them with a single write().

Every call returns a WriteResult; secrets and I/O failures are reported in
it, never raised.  A failed call leaves the target file byte-identical.

Single writer per file: there is no locking, and each SecureWriter owns
its redaction log independently of any other writer.
"""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

from aicf.audit import RedactionEvent, RedactionLog, span_hash
from aicf.compiler import render_lines, section_header
from aicf.config import WriterConfig
from aicf.detect import SecretDetector
from aicf.guard import GuardError, PathGuard
from aicf.sanitize import escape_line_terminators
from aicf.types import (
    CANONICAL_ORDER,
    HEADER_RE,
    Conversation,
    Decision,
    Document,
    Insight,
    Link,
    Memory,
    Metadata,
    OpaqueSection,
    SectionKind,
    Session,
    State,
    Work,
    _WireRecord,
)

logger = logging.getLogger(__name__)

DEFAULT_FILE = "context.aicf"
TAIL_BYTES = 8192

Record = Union[Metadata, Session, _WireRecord, OpaqueSection]


@dataclass(frozen=True)
class _Tail:
    """Where the next append starts: just past the file's last LF."""

    end: int = 0
    last_header: Optional[str] = None
    torn: bytes = b""


# ---------------------------------------------------------------------------
# Errors and results
# ---------------------------------------------------------------------------


class SecretsDetectedError(Exception):
    """Write refused: secrets found while throw_on_secrets is set."""

    def __init__(self, file: str, types: List[str]):
        self.file = file
        self.types = list(types)
        super().__init__(
            f"Secrets detected in {file}: {', '.join(self.types)}. Writing blocked."
        )


class WriteError(Exception):
    """File-system failure during a write; the OSError is kept in .cause."""

    def __init__(self, file: str, cause: OSError):
        self.file = file
        self.cause = cause
        super().__init__(f"Write to {file} failed: {cause}")


@dataclass
class WriteResult:
    """Outcome of one writer call."""

    ok: bool
    path: Optional[str] = None
    bytes_written: int = 0
    redactions: int = 0
    error: Optional[Exception] = None

    def raise_for_error(self) -> None:
        """Re-raise the stored error, if any."""
        if self.error is not None:
            raise self.error


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------


class SecureWriter:
    """
    Append-only writer with secret/PII redaction.

    Args:
        base_dir: Directory holding the context files (overrides config.base_dir).
        config: WriterConfig (defaults if None).
        detector: SecretDetector to use (default detector if None).
        redaction_log: Caller-owned RedactionLog; a fresh one if None.
    """

    def __init__(
        self,
        base_dir: Optional[Union[str, Path]] = None,
        config: Optional[WriterConfig] = None,
        detector: Optional[SecretDetector] = None,
        redaction_log: Optional[RedactionLog] = None,
    ):
        self._config = config or WriterConfig()
        root = Path(base_dir) if base_dir is not None else Path(self._config.base_dir)
        self._guard = PathGuard(root, max_write_bytes=self._config.max_line_bytes)
        self._detector = detector or SecretDetector()
        self._log = redaction_log if redaction_log is not None else RedactionLog()

    @property
    def root(self) -> Path:
        return self._guard.root

    @property
    def config(self) -> WriterConfig:
        return self._config

    @property
    def redaction_log(self) -> RedactionLog:
        return self._log

    # -- typed operations -----------------------------------------------------

    def write_conversation(self, conversation: Any, file_name: Optional[str] = None) -> WriteResult:
        return self._write_typed(Conversation, conversation, file_name)

    def write_memory(self, memory: Any, file_name: Optional[str] = None) -> WriteResult:
        return self._write_typed(Memory, memory, file_name)

    def write_decision(self, decision: Any, file_name: Optional[str] = None) -> WriteResult:
        return self._write_typed(Decision, decision, file_name)

    def write_session(self, session: Any, file_name: Optional[str] = None) -> WriteResult:
        return self._write_typed(Session, session, file_name)

    def write_state(self, state: Any, file_name: Optional[str] = None) -> WriteResult:
        return self._write_typed(State, state, file_name)

    def write_insight(self, insight: Any, file_name: Optional[str] = None) -> WriteResult:
        return self._write_typed(Insight, insight, file_name)

    def write_work(self, work: Any, file_name: Optional[str] = None) -> WriteResult:
        return self._write_typed(Work, work, file_name)

    def write_link(self, link: Any, file_name: Optional[str] = None) -> WriteResult:
        return self._write_typed(Link, link, file_name)

    def write_metadata(self, metadata: Metadata, file_name: Optional[str] = None) -> WriteResult:
        """Append a metadata block; its keys shadow earlier ones on read."""
        return self._write_typed(Metadata, metadata, file_name)

    def write(self, record: Record, file_name: Optional[str] = None) -> WriteResult:
        """Append any single record."""
        return self.write_records([record], file_name)

    def write_document(self, doc: Document, file_name: Optional[str] = None) -> WriteResult:
        """Append every record of a document in canonical order, all or nothing."""
        records: List[Record] = []
        for kind in CANONICAL_ORDER:
            records.extend(doc.records(kind))
        records.extend(doc.unknown)
        return self.write_records(records, file_name)

    def _write_typed(self, cls: type, record: Any, file_name: Optional[str]) -> WriteResult:
        if isinstance(record, dict):
            try:
                record = cls(**record)
            except (TypeError, ValueError) as exc:
                return WriteResult(ok=False, error=exc)
        elif not isinstance(record, cls):
            return WriteResult(
                ok=False,
                error=TypeError(f"Expected {cls.__name__}, got {type(record).__name__}"),
            )
        return self.write_records([record], file_name)

    # -- core write path ------------------------------------------------------

    def write_records(self, records: Iterable[Record], file_name: Optional[str] = None) -> WriteResult:
        """Scan, redact and append several records in one write() call."""
        records = list(records)
        try:
            path = self._guard.resolve(file_name or DEFAULT_FILE)
        except GuardError as exc:
            return WriteResult(ok=False, error=exc)
        label = self._guard.relative(path)

        cleaned: List[Record] = []
        events: List[RedactionEvent] = []
        blocked: Set[str] = set()
        for rec in records:
            if not isinstance(rec, (Metadata, Session, _WireRecord, OpaqueSection)):
                return WriteResult(
                    ok=False, path=label,
                    error=TypeError(f"Not a context record: {type(rec).__name__}"),
                )
            try:
                clean, rec_events, rec_blocked = self._scrub_record(rec, label)
            except (TypeError, ValueError) as exc:
                return WriteResult(ok=False, path=label, error=exc)
            cleaned.append(clean)
            events.extend(rec_events)
            blocked.update(rec_blocked)

        if blocked:
            return self._refuse(label, blocked, events)

        try:
            tail = self._tail_state(path)
            chunk = self._build_chunk(tail, cleaned)
            self._guard.check_write_size(chunk)
            written = self._append(path, chunk, tail, label)
        except GuardError as exc:
            return WriteResult(ok=False, path=label, error=exc)
        except OSError as exc:
            logger.error("Write to %s failed: %s", label, exc)
            return WriteResult(ok=False, path=label, error=WriteError(label, exc))

        self._commit_events(label, events)
        return WriteResult(ok=True, path=label, bytes_written=written, redactions=len(events))

    def append_line(self, file_name: str, line: str) -> WriteResult:
        """Append one caller-formatted line after redaction.

        Only line terminators are escaped: delimiters inside ``line`` are the
        caller's structure and are left alone.
        """
        try:
            path = self._guard.resolve(file_name)
        except GuardError as exc:
            return WriteResult(ok=False, error=exc)
        label = self._guard.relative(path)

        text, events, blocked = self._scrub_text(line, label, "line")
        if blocked:
            return self._refuse(label, blocked, events)

        try:
            tail = self._tail_state(path)
            parts: List[str] = []
            if tail.end == 0 and self._config.auto_metadata:
                parts.append(self._metadata_block())
                parts.append("\n")
            parts.append(escape_line_terminators(text) + "\n")
            chunk = "".join(parts)
            self._guard.check_write_size(chunk)
            written = self._append(path, chunk, tail, label)
        except GuardError as exc:
            return WriteResult(ok=False, path=label, error=exc)
        except OSError as exc:
            logger.error("Write to %s failed: %s", label, exc)
            return WriteResult(ok=False, path=label, error=WriteError(label, exc))

        self._commit_events(label, events)
        return WriteResult(ok=True, path=label, bytes_written=written, redactions=len(events))

    # -- redaction ------------------------------------------------------------

    def _categories(self) -> Set[str]:
        cats = {"secret"}
        if self._config.redact_pii:
            cats.add("pii")
        return cats

    def _scanning(self) -> bool:
        return self._config.enable_secret_redaction or self._config.throw_on_secrets

    def _scrub_text(
        self, text: str, file: str, field_name: str,
    ) -> Tuple[str, List[RedactionEvent], Set[str]]:
        """Mask findings in one value. Returns (text, events, blocked secret types)."""
        if not text or not self._scanning():
            return text, [], set()
        result = self._detector.redact(text, self._categories())
        if not result.redacted:
            return text, [], set()

        events: List[RedactionEvent] = []
        blocked: Set[str] = set()
        for det in result.detections:
            is_secret = det.category == "secret"
            block = self._config.throw_on_secrets and is_secret
            if block:
                blocked.add(det.type)
            events.append(RedactionEvent(
                file=file,
                field=field_name,
                type=det.type,
                action="blocked" if block else "redacted",
                masked=det.masked,
                hash=span_hash(text[det.start:det.end]) if is_secret else "",
            ))
        return result.text, events, blocked

    def _scrub_record(
        self, record: Record, file: str,
    ) -> Tuple[Record, List[RedactionEvent], Set[str]]:
        """Scan every string field (and every extra value) of one record."""
        events: List[RedactionEvent] = []
        blocked: Set[str] = set()

        def scrub(value: str, field_name: str) -> str:
            clean, ev, bl = self._scrub_text(value, file, field_name)
            events.extend(ev)
            blocked.update(bl)
            return clean

        if isinstance(record, OpaqueSection):
            lines = [scrub(line, f"{record.name}.line") for line in record.lines]
            return dataclasses.replace(record, lines=lines), events, blocked

        changes: Dict[str, Any] = {}
        for f in dataclasses.fields(record):
            value = getattr(record, f.name)
            if isinstance(value, str):
                clean = scrub(value, f.name)
                if clean != value:
                    changes[f.name] = clean
            elif isinstance(value, dict):
                for key in value:
                    self._block_key(key, file, f.name, events, blocked)
                extra = {key: scrub(item, f"{f.name}.{key}") for key, item in value.items()}
                if extra != value:
                    changes[f.name] = extra

        if changes and not blocked:
            record = dataclasses.replace(record, **changes)
        return record, events, blocked

    def _block_key(
        self, key: str, file: str, field_name: str,
        events: List[RedactionEvent], blocked: Set[str],
    ) -> None:
        """A masked key no longer matches KEY_RE, so any finding in one blocks the write."""
        _, key_events, _ = self._scrub_text(key, file, f"{field_name}.key")
        for ev in key_events:
            events.append(dataclasses.replace(ev, action="blocked"))
            blocked.add(ev.type)

    def _refuse(self, file: str, blocked: Set[str], events: List[RedactionEvent]) -> WriteResult:
        err = SecretsDetectedError(file, sorted(blocked))
        logger.warning("%s", err)
        if self._config.log_redactions:
            self._log.extend([e for e in events if e.action == "blocked"])
        return WriteResult(ok=False, path=file, error=err)

    def _commit_events(self, file: str, events: List[RedactionEvent]) -> None:
        if not events:
            return
        logger.info(
            "Redacted %d span(s) in %s: %s",
            len(events), file, ", ".join(sorted({e.type for e in events})),
        )
        if self._config.log_redactions:
            self._log.extend(events)

    # -- file handling --------------------------------------------------------

    def _metadata_block(self) -> str:
        return "\n".join([section_header(SectionKind.METADATA)] + render_lines(Metadata())) + "\n"

    @staticmethod
    def _tail_state(path: Path) -> _Tail:
        """Locate the last LF and the section open at that point.

        Bytes after the last LF are a torn line left by an interrupted
        write; they are returned so _append can cut them off.
        """
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return _Tail()
        if size == 0:
            return _Tail()
        with open(path, "rb") as fh:
            pos, nl, block = size, -1, b""
            while pos > 0 and nl < 0:
                start = max(0, pos - TAIL_BYTES)
                fh.seek(start)
                block = fh.read(pos - start) + block
                pos = start
                nl = block.rfind(b"\n")
            end = pos + nl + 1
            fh.seek(end)
            torn = fh.read()

        lines = block[:nl + 1].decode("utf-8", errors="replace").split("\n")
        if pos > 0:
            lines = lines[1:]  # first line may be cut
        last_header = None
        for line in reversed(lines):
            m = HEADER_RE.match(line.strip())
            if m:
                last_header = SectionKind.from_header(m.group(1)).value
                if last_header == SectionKind.UNKNOWN.value:
                    last_header = m.group(1)
                break
        return _Tail(end=end, last_header=last_header, torn=torn)

    def _build_chunk(self, tail: _Tail, records: List[Record]) -> str:
        """Text to append so that every record lands in its own section."""
        current = tail.last_header
        parts: List[str] = []
        has_content = tail.end > 0
        if not has_content and self._config.auto_metadata and not any(
            isinstance(r, Metadata) for r in records
        ):
            parts.append(self._metadata_block())
            has_content = True
            current = SectionKind.METADATA.value

        for rec in records:
            if isinstance(rec, OpaqueSection):
                name, header = rec.name, f"@{rec.name}:{rec.identifier}"
            else:
                name, header = rec.SECTION.value, section_header(rec.SECTION)
            if name != current or isinstance(rec, OpaqueSection):
                if has_content:
                    parts.append("\n")
                parts.append(header + "\n")
                current = name
                has_content = True
            parts.extend(line + "\n" for line in render_lines(rec))
        return "".join(parts)

    def _append(self, path: Path, chunk: str, tail: _Tail, label: str) -> int:
        """Append chunk with one write(); restore the prior bytes on failure.

        A torn final line is cut off first, so new records start on a fresh
        line and the fragment is never read back as a record.
        """
        data = chunk.encode("utf-8")
        path.parent.mkdir(parents=True, exist_ok=True)
        existed = path.exists()
        if tail.torn:
            logger.warning(
                "Discarding %d-byte unterminated tail of %s", len(tail.torn), label,
            )
        try:
            with open(path, "ab") as fh:
                if tail.torn:
                    fh.truncate(tail.end)
                fh.write(data)
                fh.flush()
                if self._config.fsync:
                    os.fsync(fh.fileno())
        except OSError:
            self._rollback(path, existed, tail)
            raise
        return len(data)

    @staticmethod
    def _rollback(path: Path, existed: bool, tail: _Tail) -> None:
        try:
            if existed:
                os.truncate(path, tail.end)
                if tail.torn:
                    with open(path, "ab") as fh:
                        fh.write(tail.torn)
            elif path.exists():
                path.unlink()
        except OSError as exc:
            logger.error("Rollback of %s failed: %s", path, exc)

    # -- redaction log --------------------------------------------------------

    def get_redaction_log(self) -> List[RedactionEvent]:
        """Copy of all recorded redaction events."""
        return self._log.entries()

    def get_redaction_stats(self) -> Dict[str, Any]:
        return self._log.stats()

    def clear_redaction_log(self) -> int:
        """Drop all recorded events. Returns how many were dropped."""
        return self._log.clear()
