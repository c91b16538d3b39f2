"""
Context Format Parser — Text → Document

Single linear pass over the input lines:

- ``@NAME`` / ``@NAME:identifier`` closes the current section and opens a
  new one; repeated headers continue the same section.
- Other non-blank lines are records of the current section: pipe-split for
  tabular sections, ``key=value`` for metadata and session.
- Unknown sections are kept verbatim.
- A record line that does not fit its section is skipped and reported as
  a ParseWarning; one bad line never aborts the rest of the document.
- An unterminated final record line (crash mid-append) is discarded, even
  when it stops inside a multibyte character.

ParseError is reserved for stream-level failures (a complete line that is
not UTF-8, an unreadable file).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Union

from aicf.config import ParserConfig
from aicf.sanitize import split_fields, unsanitize
from aicf.types import (
    HEADER_RE,
    KEY_RE,
    RECORD_TYPES,
    Document,
    Metadata,
    OpaqueSection,
    SectionKind,
    Session,
)

logger = logging.getLogger(__name__)

PREVIEW_MAX_CHARS = 120


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


class ParseError(Exception):
    """Unrecoverable stream-level failure (encoding, I/O)."""


@dataclass
class ParseWarning:
    """A skipped line, with enough detail to fix it by hand."""

    line_no: int
    section: str
    reason: str
    preview: str = ""

    def __str__(self) -> str:
        return f"line {self.line_no} [{self.section or '-'}]: {self.reason}"


@dataclass
class ParseResult:
    """Outcome of parse()/read(): best-effort document plus diagnostics."""

    document: Document = field(default_factory=Document)
    warnings: List[ParseWarning] = field(default_factory=list)
    error: Optional[ParseError] = None

    @property
    def ok(self) -> bool:
        """Return True if no stream-level error occurred."""
        return self.error is None


@dataclass
class ValidationReport:
    """Result of validate(): valid unless there is a hard error."""

    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def _preview(line: str) -> str:
    if len(line) > PREVIEW_MAX_CHARS:
        return line[:PREVIEW_MAX_CHARS].rstrip() + "…"
    return line


# ---------------------------------------------------------------------------
# Parser state machine
# ---------------------------------------------------------------------------


class _Parser:
    """Accumulates records while lines are fed in order."""

    def __init__(self):
        self.doc = Document()
        self.warnings: List[ParseWarning] = []
        self._kind: Optional[SectionKind] = None
        self._section_name = ""
        self._meta_pairs: Optional[Dict[str, str]] = None
        self._session_pairs: Optional[Dict[str, str]] = None
        self._session_start = 0
        self._session_has_body = False
        self._opaque: Dict[str, OpaqueSection] = {}
        self._current_opaque: Optional[OpaqueSection] = None

    def warn(self, line_no: int, reason: str, line: str = "") -> None:
        w = ParseWarning(line_no, self._section_name, reason, _preview(line))
        logger.debug("Skipping %s", w)
        self.warnings.append(w)

    # -- headers ------------------------------------------------------------

    def open_section(self, name: str, identifier: str, line_no: int) -> None:
        self._flush_session()
        kind = SectionKind.from_header(name)
        self._kind = kind
        self._section_name = name
        self._current_opaque = None
        if kind is SectionKind.UNKNOWN:
            opaque = self._opaque.get(name)
            if opaque is None:
                opaque = OpaqueSection(name=name, identifier=identifier)
                self._opaque[name] = opaque
                self.doc.unknown.append(opaque)
            self._current_opaque = opaque
        elif kind is SectionKind.METADATA:
            if self._meta_pairs is None:
                self._meta_pairs = {}
        elif kind is SectionKind.SESSION:
            self._session_pairs = {}
            self._session_start = line_no
            self._session_has_body = False
            if identifier:
                self._session_pairs["session_id"] = identifier

    # -- records ------------------------------------------------------------

    def feed_record(self, line: str, line_no: int) -> None:
        kind = self._kind
        if kind is None:
            self.warn(line_no, "record outside of any section", line)
        elif kind is SectionKind.UNKNOWN:
            self._current_opaque.lines.append(line)
        elif kind.is_key_value:
            self._feed_key_value(kind, line, line_no)
        else:
            self._feed_tabular(kind, line, line_no)

    def _feed_key_value(self, kind: SectionKind, line: str, line_no: int) -> None:
        key, sep, raw = line.partition("=")
        key = key.strip()
        if not sep or not key:
            self.warn(line_no, "expected key=value", line)
            return
        if not KEY_RE.match(key):
            self.warn(line_no, f"invalid key {key!r}", line)
            return
        value = unsanitize(raw)
        if kind is SectionKind.METADATA:
            self._meta_pairs[key] = value
            return
        if key == "session_id" and self._session_has_body:
            # a new block for a (possibly same) session
            self._flush_session()
            self._session_pairs = {}
            self._session_start = line_no
        self._session_pairs[key] = value
        self._session_has_body = True

    def _feed_tabular(self, kind: SectionKind, line: str, line_no: int) -> None:
        record_cls = RECORD_TYPES[kind]
        values = [unsanitize(f) for f in split_fields(line)]
        try:
            record = record_cls.from_wire(values)
        except (TypeError, ValueError) as exc:
            self.warn(line_no, str(exc), line)
            return
        self.doc.add(record)

    # -- finalisation ---------------------------------------------------------

    def _flush_session(self) -> None:
        pairs = self._session_pairs
        self._session_pairs = None
        if not pairs:
            return
        try:
            session = Session.from_pairs(pairs)
        except (TypeError, ValueError) as exc:
            saved, self._section_name = self._section_name, SectionKind.SESSION.value
            self.warn(self._session_start, f"invalid session block: {exc}")
            self._section_name = saved
            return
        self.doc.sessions.append(session)

    def finish(self) -> Document:
        self._flush_session()
        if self._meta_pairs is not None:
            try:
                self.doc.metadata = Metadata.from_pairs(self._meta_pairs)
            except (TypeError, ValueError) as exc:
                self._section_name = SectionKind.METADATA.value
                self.warn(0, f"invalid metadata: {exc}")
        return self.doc


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def parse_lines(lines: Iterable[str]) -> ParseResult:
    """Parse an iterable of lines that still carry their LF terminator.

    The last line without a terminator is treated as a torn append and
    dropped (headers excepted, they carry no data).
    """
    p = _Parser()
    pending: Optional[str] = None
    line_no = 0
    for raw in lines:
        if pending is not None:
            # a previous line lacked LF but more input followed
            line_no += 1
            _feed(p, pending, line_no)
            pending = None
        if raw.endswith("\n"):
            line_no += 1
            _feed(p, raw[:-1], line_no)
        else:
            pending = raw
    if pending is not None:
        line_no += 1
        text = pending.rstrip("\r")
        if text.strip():
            stripped = text.strip()
            if HEADER_RE.match(stripped):
                _feed(p, text, line_no)
            else:
                p.warn(line_no, "truncated final line discarded", text)
    return ParseResult(document=p.finish(), warnings=p.warnings)


def _feed(p: _Parser, line: str, line_no: int) -> None:
    line = line.rstrip("\r")
    stripped = line.strip()
    if not stripped:
        return
    m = HEADER_RE.match(stripped)
    if m:
        p.open_section(m.group(1), m.group(2) or "", line_no)
        return
    p.feed_record(line, line_no)


def _split_keepends(text: Union[str, bytes]) -> Iterator[Union[str, bytes]]:
    """Split on LF only, keeping terminators (str.splitlines splits on more)."""
    nl = b"\n" if isinstance(text, bytes) else "\n"
    start = 0
    while True:
        idx = text.find(nl, start)
        if idx < 0:
            if start < len(text):
                yield text[start:]
            return
        yield text[start:idx + 1]
        start = idx + 1


def _decode_lines(raw_lines: Iterable[bytes], source: str) -> Iterator[str]:
    """Decode LF-terminated byte lines as UTF-8.

    Only the last line can lack its LF.  If it also fails to decode, the
    write was torn inside a multibyte character: it is decoded with
    replacement characters and parse_lines drops it as a truncated line.
    """
    for n, raw in enumerate(raw_lines, start=1):
        if not raw.endswith(b"\n"):
            yield raw.decode("utf-8", errors="replace")
            continue
        try:
            yield raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ParseError(f"{source}: invalid UTF-8 on line {n}: {exc}") from exc


def parse(text: Union[str, bytes]) -> ParseResult:
    """Parse context-format text. Bytes are decoded as UTF-8, line by line."""
    if isinstance(text, (bytes, bytearray)):
        try:
            return parse_lines(_decode_lines(_split_keepends(bytes(text)), "input"))
        except ParseError as exc:
            return ParseResult(error=exc)
    return parse_lines(_split_keepends(text))


def read(path: Union[str, Path]) -> ParseResult:
    """Read and parse a context file, streaming line by line."""
    path = Path(path)
    try:
        with open(path, "rb") as fh:
            result = parse_lines(_decode_lines(fh, str(path)))
    except ParseError as exc:
        return ParseResult(error=exc)
    except OSError as exc:
        return ParseResult(error=ParseError(f"Cannot read {path}: {exc}"))
    logger.debug("Parsed %s: %s, %d warning(s)", path, result.document.counts(), len(result.warnings))
    return result


def validate(
    text: Union[str, bytes], config: Optional[ParserConfig] = None,
) -> ValidationReport:
    """Check that text parses and (by default) carries a @METADATA section."""
    config = config or ParserConfig()
    result = parse(text)
    if not result.ok:
        return ValidationReport(valid=False, errors=[str(result.error)])
    errors: List[str] = []
    if config.require_metadata and result.document.metadata is None:
        errors.append("Missing required @METADATA section")
    return ValidationReport(
        valid=not errors,
        errors=errors,
        warnings=[str(w) for w in result.warnings],
    )
